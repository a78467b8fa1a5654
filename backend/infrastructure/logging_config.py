"""Logging setup: JSON lines in production, plain text otherwise, with credentials scrubbed."""

import json
import logging
import re
import sys
from datetime import UTC, datetime

_SENSITIVE_PATTERNS = [
    (re.compile(r"(Authorization:\s*Bearer\s+)\S+", re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r"\b(?:sk|rk)_(?:live|test)_[A-Za-z0-9]+"), "[REDACTED_API_KEY]"),
    (re.compile(r"\bwhsec_[A-Za-z0-9]+"), "[REDACTED_WEBHOOK_SECRET]"),
    (re.compile(r"\b(t=\d+,)(?:v\d=[0-9a-f]+,?)+"), r"\1[REDACTED_SIGNATURE]"),
    (re.compile(r'(api[_-]?key["\s:=]+)[^\s&"\']+', re.IGNORECASE), r"\1[REDACTED]"),
    (re.compile(r'(secret["\s:=]+)[^\s&"\']+', re.IGNORECASE), r"\1[REDACTED]"),
]

# Attributes passed through ``extra=`` that end up as top-level JSON keys
CONTEXT_FIELDS = (
    "request_id",
    "event_id",
    "event_type",
    "subscription_id",
    "method",
    "path",
    "status_code",
)


def redact(value: str) -> str:
    """Replace API keys, webhook secrets and signature headers in ``value``."""
    for pattern, replacement in _SENSITIVE_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


class SensitiveDataFilter(logging.Filter):
    """Scrubs Stripe credentials from the message and its arguments."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(redact(a) if isinstance(a, str) else a for a in record.args)
        elif isinstance(record.args, dict):
            record.args = {k: (redact(v) if isinstance(v, str) else v) for k, v in record.args.items()}
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, carrying webhook and request context when present."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update({key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)})
        if record.exc_info and record.exc_info[0] is not None:
            # Platform errors echo request parameters back
            entry["exception"] = redact(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


def setup_logging(json_output: bool = False, level: str = "INFO") -> None:
    """
    Configure the root logger.

    Args:
        json_output: Emit JSON lines (production) instead of plain text
        level: Log level name
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
    handler.addFilter(SensitiveDataFilter())
    root.addHandler(handler)

    # httpx logs every Stripe request URL at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.INFO)
