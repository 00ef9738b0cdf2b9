"""Logging Hardening and Redaction.

Filters that keep secret material (sealed envelopes, raw values) out of
application logs.
"""
import logging
import re
from typing import Optional, Union

# Envelope fields (hex-encoded) and keyword-style value assignments.
SECRET_PATTERNS = [
    (re.compile(r'("iv":\s*")[0-9a-f]{24}(")'), r'\1[REDACTED]\2'),
    (re.compile(r'("tag":\s*")[0-9a-f]{32}(")'), r'\1[REDACTED]\2'),
    (re.compile(r'("ciphertext":\s*")[0-9a-f]+(")'), r'\1[REDACTED]\2'),
    (re.compile(r'\b(previous_value|value)=("[^"]*"|\'[^\']*\'|\S+)'), r'\1=[REDACTED]'),
    (re.compile(r'\b(master_key|MASTER_KEY)=\S+'), r'\1=[REDACTED]'),
]


def redact(text: str) -> str:
    for pattern, replacement in SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SecretRedactionFilter(logging.Filter):
    """Filter that redacts secret-like patterns from log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact(record.msg)

        if record.args and isinstance(record.args, tuple):
            record.args = tuple(redact(a) if isinstance(a, str) else a for a in record.args)

        return True


def setup_logging(level: Union[int, str] = logging.INFO, fmt: Optional[str] = None) -> None:
    """Configure the root logger and install the redaction filter once."""
    logging.basicConfig(
        level=level,
        format=fmt or "%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    root_logger = logging.getLogger()
    for f in root_logger.filters[:]:
        if isinstance(f, SecretRedactionFilter):
            root_logger.removeFilter(f)

    redact_filter = SecretRedactionFilter()
    root_logger.addFilter(redact_filter)
    # Filters on the root logger do not apply to records from child loggers.
    for handler in root_logger.handlers:
        if not any(isinstance(f, SecretRedactionFilter) for f in handler.filters):
            handler.addFilter(redact_filter)

    logging.getLogger(__name__).debug("Logging redaction filters active.")
