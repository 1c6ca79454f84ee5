# ===============================================================
# helpers.py
# ===============================================================
import logging
from decimal import Decimal, ROUND_HALF_UP
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import User

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


# -------------------------------------------------
# Money
# -------------------------------------------------
def to_money(value) -> Decimal:
    """Coerce a number to a 2dp Decimal, rounding half-up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# -------------------------------------------------
# Get user by DB ID (optionally row-locked)
# -------------------------------------------------
async def get_user_by_id(session: AsyncSession, user_id, for_update: bool = False) -> User | None:
    stmt = select(User).where(User.id == user_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


# ----------------------------
# 🧩 Mask Sensitive Helper
# ----------------------------
def mask_sensitive(data: str, visible: int = 4) -> str:
    """Mask all but last few visible characters of sensitive data."""
    if not data:
        return ""
    data = str(data)
    if len(data) <= visible:
        return data
    return f"{'*' * (len(data) - visible)}{data[-visible:]}"
