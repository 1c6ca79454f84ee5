# ===============================================================
# logging_setup.py
# ===============================================================
import logging
import re
import sys
import sentry_sdk

from config import LOG_LEVEL, SENTRY_DSN, ENVIRONMENT

numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)


# ------------------------------------------------
# 🔒 Secret Filter to hide tokens / API keys
# ------------------------------------------------
class SecretFilter(logging.Filter):
    BEARER_PATTERN = re.compile(r"Bearer\s+[A-Za-z0-9._-]+")
    OPENAI_KEY_PATTERN = re.compile(r"\bsk-[A-Za-z0-9_-]{16,}\b")
    KEY_PATTERN = re.compile(
        r"(?:secret|token|key|password|api)[^\s=:'\"]*['\"]?[:=]['\"]?([\w-]+)['\"]?",
        re.IGNORECASE
    )

    def _mask(self, text: str) -> str:
        text = self.BEARER_PATTERN.sub("Bearer [SECRET]", text)
        text = self.OPENAI_KEY_PATTERN.sub("[SECRET]", text)
        return self.KEY_PATTERN.sub("[REDACTED]", text)

    def filter(self, record):
        record.msg = self._mask(str(record.msg))
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask(str(v)) for k, v in record.args.items()}
            else:
                record.args = tuple(self._mask(str(a)) for a in record.args)
        return True


# ------------------------------------------------
# Configure the application logger
# ------------------------------------------------
def setup_logging() -> logging.Logger:
    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        "%Y-%m-%d %H:%M:%S",
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(SecretFilter())

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers = [handler]

    # Ensure uvicorn logs flow through this formatter
    for noisy in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(noisy).handlers = []
        logging.getLogger(noisy).propagate = True

    # Optional: Initialize Sentry
    if SENTRY_DSN:
        sentry_sdk.init(
            dsn=SENTRY_DSN,
            traces_sample_rate=1.0,
            environment=ENVIRONMENT,
        )

    app_logger = logging.getLogger("QuizGate")
    app_logger.info("✅ Secure logger initialized (secrets masked from output).")
    return app_logger


def capture_exception(exc: BaseException) -> None:
    """Forward to Sentry when configured."""
    if SENTRY_DSN:
        sentry_sdk.capture_exception(exc)
