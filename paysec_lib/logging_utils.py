"""
Logging helpers that keep secret material out of log output.

Modules log through the standard library (``logging.getLogger(__name__)``).
Anything structured that may carry credentials, card data or keys is passed
through ``mask_sensitive_data`` first, and ``SensitiveDataFilter`` applies the
same masking to dict arguments on the way to a handler.
"""

import logging
import re
from typing import Any, Optional

SENSITIVE_FIELDS = (
    "password",
    "pass",
    "pwd",
    "secret",
    "token",
    "apikey",
    "authorization",
    "auth",
    "cardnumber",
    "cvv",
    "cvc",
    "pan",
    "pin",
    "ssn",
    "privatekey",
)

MASK = "****"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _normalize_key(key: Any) -> str:
    return re.sub(r"[_-]", "", str(key).lower())


def is_sensitive_key(key: Any) -> bool:
    """Return True if a field name looks like it holds secret material."""
    normalized = _normalize_key(key)
    return any(field in normalized for field in SENSITIVE_FIELDS)


def _mask_value(normalized_key: str, value: Any) -> str:
    if not isinstance(value, str):
        return MASK
    if len(value) <= 4:
        return MASK
    if "card" in normalized_key or "pan" in normalized_key:
        return MASK + value[-4:]
    return value[:4] + MASK


def mask_sensitive_data(data: Any) -> Any:
    """
    Return a copy of ``data`` with sensitive values masked.

    Dicts are walked recursively, lists and tuples element by element.
    Scalars are returned untouched. The input is never modified.
    """
    if isinstance(data, dict):
        masked = {}
        for key, value in data.items():
            if is_sensitive_key(key):
                masked[key] = _mask_value(_normalize_key(key), value)
            else:
                masked[key] = mask_sensitive_data(value)
        return masked
    if isinstance(data, (list, tuple)):
        return type(data)(mask_sensitive_data(item) for item in data)
    return data


def mask_secret(value: Optional[str]) -> str:
    """Truncated preview of a secret, safe to put in a log line."""
    if not value:
        return "<unset>"
    if len(value) <= 8:
        return MASK
    return value[:4] + MASK


class SensitiveDataFilter(logging.Filter):
    """Mask dict arguments of every record that passes through."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.args, dict):
            record.args = mask_sensitive_data(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(
                mask_sensitive_data(arg) if isinstance(arg, (dict, list)) else arg
                for arg in record.args
            )
        return True


def configure_logging(level: str = "INFO", stream=None) -> logging.Handler:
    """
    Attach a masking stream handler to the ``paysec_lib`` logger.

    Returns the handler so callers (and tests) can remove it again.
    """
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(SensitiveDataFilter())

    package_logger = logging.getLogger("paysec_lib")
    package_logger.setLevel(level.upper())
    package_logger.addHandler(handler)
    return handler
