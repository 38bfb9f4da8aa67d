"""
Log sanitization filter.

Patient contact details must not end up in application logs.  The filter
rewrites log records in place, redacting:
  - Email addresses
  - Phone numbers
  - Values stored under name/contact keys in dict-style arguments
"""

import logging
import re
from typing import Any

_EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_PHONE_PATTERN = re.compile(
    r"(?<![\w-])(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}(?![\w-])"
)

_SENSITIVE_KEYS = frozenset({
    "first_name", "last_name", "firstname", "lastname",
    "patient_name", "patientname", "email", "patient_email",
    "phone", "address", "notes", "password", "password_hash",
})

REDACTED = "[REDACTED]"


def sanitize_text(text: str) -> str:
    if not isinstance(text, str):
        return text
    text = _EMAIL_PATTERN.sub(REDACTED, text)
    return _PHONE_PATTERN.sub(REDACTED, text)


def sanitize_dict(data: Any, depth: int = 0) -> Any:
    """Recursively redact sensitive keys and patterns in nested containers."""
    if depth > 10:
        return data
    if isinstance(data, dict):
        return {
            key: REDACTED
            if isinstance(key, str) and key.lower().replace("-", "_") in _SENSITIVE_KEYS
            else sanitize_dict(value, depth + 1)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(sanitize_dict(item, depth + 1) for item in data)
    if isinstance(data, str):
        return sanitize_text(data)
    return data


class SensitiveDataFilter(logging.Filter):
    """Logging filter that redacts contact details from every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = sanitize_text(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = sanitize_dict(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(sanitize_dict(a) for a in record.args)

        if record.exc_text and isinstance(record.exc_text, str):
            record.exc_text = sanitize_text(record.exc_text)

        return True
