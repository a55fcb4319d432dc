"""
Text sanitization utilities for outgoing email.

Cleans recipient addresses, subject lines and header values before they are
frozen into a queued job, so control characters and header injection
attempts never reach the mail transport. Subjects stay UTF-8: typographic
quotes, dashes and ellipses are left as the author wrote them.
"""

import re
import unicodedata
from typing import Optional
import logging


# Loose shape check: one @, non-empty local part, dotted domain, no whitespace
_RECIPIENT_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# RFC 5322 field names: printable ASCII except colon
_HEADER_NAME_RE = re.compile(r'^[!-9;-~]+$')

# Unicode categories removed from subjects; Cc covers CR and LF
_STRIPPED_CATEGORIES = ('Cc', 'Cf')


def normalize_recipient(address: Optional[str]) -> str:
    """
    Trim surrounding whitespace from a recipient address.

    The address is otherwise delivered exactly as given; local parts are
    case-sensitive.
    """
    if not address:
        return ''
    return address.strip()


def recipient_key(address: Optional[str]) -> str:
    """
    Case-folded form of an address used only for duplicate detection.

    "Reader@Example.com" and "reader@example.com" share a key, so a campaign
    never queues both, while each job still delivers to its own spelling.
    """
    return normalize_recipient(address).lower()


def is_valid_recipient(address: Optional[str]) -> bool:
    """Check that a (trimmed) address looks like a deliverable email address."""
    return bool(address) and _RECIPIENT_RE.match(address) is not None


def sanitize_subject(
    text: str,
    max_length: int = 255,
    logger: Optional[logging.Logger] = None
) -> str:
    """
    Clean an email subject line for the Subject header.

    NFC-normalizes, drops control and format characters (so CR/LF can't
    start a new header), collapses runs of whitespace and caps the length.
    Longer subjects are cut at the last space when one falls in the final
    fifth of the allowed length, otherwise hard at ``max_length``
    (0 disables the cap).
    """
    if not text:
        return ''

    cleaned = ''.join(
        char for char in unicodedata.normalize('NFC', text)
        if unicodedata.category(char) not in _STRIPPED_CATEGORIES
    )
    cleaned = ' '.join(cleaned.split())

    if max_length > 0 and len(cleaned) > max_length:
        head = cleaned[:max_length]
        cut = head.rfind(' ')
        cleaned = head[:cut] if cut > max_length * 0.8 else head

    if logger and cleaned != text:
        logger.debug(f"Sanitized subject: {len(text)} -> {len(cleaned)} chars")

    return cleaned


def sanitize_header_value(value: str) -> str:
    """
    Validate a header value for use in an outgoing email.

    Raises:
        ValueError: If the value contains CR or LF (header injection)
    """
    if value is None:
        return ''
    value = str(value)
    if '\r' in value or '\n' in value:
        raise ValueError("Header values must not contain line breaks")
    return value.strip()


def sanitize_headers(headers: Optional[dict]) -> dict[str, str]:
    """
    Validate and normalize a header mapping.

    Raises:
        ValueError: On an invalid header name or an injected line break
    """
    if not headers:
        return {}

    clean = {}
    for name, value in headers.items():
        name = str(name).strip()
        if not _HEADER_NAME_RE.match(name):
            raise ValueError(f"Invalid header name: {name!r}")
        clean[name] = sanitize_header_value(value)
    return clean
