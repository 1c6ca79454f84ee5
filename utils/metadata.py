# ===========================================================
# utils/metadata.py
# Closed-shape metadata for ledger rows and cache entries
# ===========================================================
from datetime import datetime
from decimal import Decimal

from errors import InvalidRequest

MAX_DEPTH = 4


def clean_metadata(data: dict | None, _depth: int = 0) -> dict:
    """
    Validate a metadata mapping at the point it is written.

    Keys must be strings. Values may be:
      - str, int, float, bool (None is kept as-is)
      - Decimal (stored as a string to keep precision)
      - datetime (stored as ISO-8601)
      - nested mappings of the same shapes
    Anything else raises InvalidRequest.
    """
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequest("Metadata must be a mapping")
    if _depth > MAX_DEPTH:
        raise InvalidRequest("Metadata is nested too deeply")

    cleaned = {}
    for key, value in data.items():
        if not isinstance(key, str):
            raise InvalidRequest(f"Metadata key {key!r} must be a string")

        if value is None or isinstance(value, (str, bool, int, float)):
            cleaned[key] = value
        elif isinstance(value, Decimal):
            cleaned[key] = str(value)
        elif isinstance(value, datetime):
            cleaned[key] = value.isoformat()
        elif isinstance(value, dict):
            cleaned[key] = clean_metadata(value, _depth + 1)
        else:
            raise InvalidRequest(
                f"Metadata value for {key!r} has unsupported type {type(value).__name__}"
            )
    return cleaned


def merge_metadata(existing: dict | None, extra: dict | None) -> dict:
    """Enrich without dropping earlier keys."""
    merged = dict(existing or {})
    merged.update(clean_metadata(extra))
    return merged
