"""
logging_config.py — Console logging for the QuantDrop service.

Passwords, keys and storage credentials pass through the transfer code as
plain strings, so every handler installed here carries a filter that masks
them before a record is written.
"""

import logging
import re
import sys
from typing import Optional

_MASK = r"\1***MASKED***"

_PATTERNS = [
    re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE),
    re.compile(r'(secret["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE),
    re.compile(r'(access[_-]?key["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE),
    re.compile(r'(X-Amz-Signature=)([^&\s]+)', re.IGNORECASE),
    re.compile(r'(X-Amz-Credential=)([^&\s]+)', re.IGNORECASE),
]


class SensitiveDataFilter(logging.Filter):
    """Mask credentials and pre-signed URL signatures in log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = _mask(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: _mask(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(_mask(a) for a in record.args)
        return True


def _mask(value):
    if isinstance(value, str):
        for pattern in _PATTERNS:
            value = pattern.sub(_MASK, value)
    return value


def setup_logging(log_level: Optional[str] = None, name: str = "quantdrop") -> logging.Logger:
    """
    Install a stdout handler on the root logger (once) and return the
    named service logger. Module loggers created with
    logging.getLogger(__name__) propagate to it.
    """
    level = getattr(logging, (log_level or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    if not any(getattr(h, "_quantdrop", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        handler.addFilter(SensitiveDataFilter())
        handler._quantdrop = True
        root.addHandler(handler)

    for handler in root.handlers:
        handler.setLevel(level)

    return logging.getLogger(name)
