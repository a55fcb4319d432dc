"""
Validation module for BlogMailer.

Provides queue configuration validation and text/header sanitization
for outgoing email.
"""

from validation.sanitizers import (
    normalize_recipient,
    recipient_key,
    is_valid_recipient,
    sanitize_subject,
    sanitize_headers,
)
from validation.config import MailerConfig, validate_config

__all__ = [
    'normalize_recipient',
    'recipient_key',
    'is_valid_recipient',
    'sanitize_subject',
    'sanitize_headers',
    'MailerConfig',
    'validate_config',
]
