"""
Per-recipient payload rendering.

A PayloadTemplate holds the campaign-wide subject, body and headers with
``{{placeholder}}`` markers. Rendering for one Recipient substitutes:

    {{subscriber_email}}  the recipient address
    {{subscriber_name}}   the recipient name, "Subscriber" when unknown
    {{unsubscribe_url}}   per-recipient unsubscribe link
    {{<field>}}           any per-recipient field or campaign-wide context value

Unknown placeholders are left as-is so a typo shows up in the delivered
email instead of silently vanishing.
"""

import re
from dataclasses import dataclass, field
from typing import Optional, Union
from urllib.parse import urlencode

from mail_queue.models import EmailPayload
from validation.sanitizers import sanitize_headers, sanitize_subject

DEFAULT_SUBSCRIBER_NAME = 'Subscriber'

_PLACEHOLDER_RE = re.compile(r'\{\{\s*([A-Za-z0-9_.-]+)\s*\}\}')


class TemplateError(ValueError):
    """A template could not be rendered into a sendable payload."""


@dataclass(frozen=True)
class Recipient:
    """One addressee of a campaign."""
    email: str
    name: Optional[str] = None
    unsubscribe_key: Optional[str] = None
    fields: dict = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: Union['Recipient', str, dict]) -> 'Recipient':
        """Accept a Recipient, a bare address or a subscriber dict."""
        if isinstance(value, Recipient):
            return value
        if isinstance(value, str):
            return cls(email=value)
        if isinstance(value, dict):
            extra = {k: v for k, v in value.items()
                     if k not in ('email', 'name', 'first_name', 'unsubscribe_key')}
            return cls(
                email=value.get('email', ''),
                name=value.get('name') or value.get('first_name'),
                unsubscribe_key=value.get('unsubscribe_key'),
                fields=extra,
            )
        raise TypeError(f"Unsupported recipient type: {type(value).__name__}")


@dataclass(frozen=True)
class PayloadTemplate:
    """Campaign-wide email template rendered once per recipient."""
    subject: str
    body: str
    headers: dict = field(default_factory=dict)
    context: dict = field(default_factory=dict)
    unsubscribe_base_url: Optional[str] = None

    def unsubscribe_url(self, recipient: Recipient) -> str:
        if 'unsubscribe_url' in recipient.fields:
            return str(recipient.fields['unsubscribe_url'])
        if not self.unsubscribe_base_url or not recipient.unsubscribe_key:
            return ''
        query = urlencode({
            'action': 'unsubscribe',
            'key': recipient.unsubscribe_key,
            'email': recipient.email,
        })
        separator = '&' if '?' in self.unsubscribe_base_url else '?'
        return f"{self.unsubscribe_base_url}{separator}{query}"

    def values_for(self, recipient: Recipient) -> dict:
        values = {str(k): v for k, v in self.context.items()}
        values.update({str(k): v for k, v in recipient.fields.items()})
        values['subscriber_email'] = recipient.email
        values['subscriber_name'] = recipient.name or DEFAULT_SUBSCRIBER_NAME
        values['unsubscribe_url'] = self.unsubscribe_url(recipient)
        return values

    def render(self, recipient: Recipient) -> EmailPayload:
        """
        Render subject, body and headers for one recipient.

        Raises:
            TemplateError: Empty subject after rendering, or a header that
                           would inject extra lines
        """
        values = self.values_for(recipient)

        subject = sanitize_subject(substitute(self.subject, values))
        if not subject:
            raise TemplateError("Rendered subject is empty")

        body = substitute(self.body, values)
        try:
            headers = sanitize_headers(
                {name: substitute(str(value), values) for name, value in self.headers.items()}
            )
        except ValueError as e:
            raise TemplateError(str(e)) from e

        return EmailPayload(subject=subject, body=body, headers=headers)


def substitute(text: str, values: dict) -> str:
    """Replace {{name}} markers with values; unknown names are kept."""
    if not text:
        return ''

    def _replace(match):
        key = match.group(1)
        if key not in values:
            return match.group(0)
        value = values[key]
        return '' if value is None else str(value)

    return _PLACEHOLDER_RE.sub(_replace, text)
