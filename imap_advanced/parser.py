"""Full MIME parser. Walks the entire message to extract body text, HTML
and attachments.
"""

from __future__ import annotations

import email
import email.message
import email.policy
from dataclasses import dataclass, field
from datetime import datetime

from .envelope import extract_envelope


@dataclass
class ParsedAttachment:
    """A single attachment extracted from a MIME message."""

    filename: str | None
    content_type: str
    payload: bytes

    @property
    def size(self) -> int:
        return len(self.payload)


@dataclass
class ParsedEmail:
    """Structured body/attachment view of a raw source."""

    message_id: str
    subject: str
    date: datetime | None
    body_text: str
    body_html: str
    attachments: list[ParsedAttachment] = field(default_factory=list)


class MimeParser:
    """Stateless parser: raw RFC 822 bytes → ParsedEmail."""

    def parse(self, raw_bytes: bytes) -> ParsedEmail:
        msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
        # Header fields come from the compat32 envelope; policy.default raises
        # on malformed structured headers such as Message-ID
        envelope = extract_envelope(raw_bytes)

        body_text, body_html = self._extract_bodies(msg)

        return ParsedEmail(
            message_id=envelope.message_id,
            subject=envelope.subject,
            date=envelope.date,
            body_text=body_text or "",
            body_html=body_html or "",
            attachments=self._extract_attachments(msg),
        )

    def _extract_bodies(self, msg: email.message.Message) -> tuple[str | None, str | None]:
        """Walk MIME parts and return (plain_text, html_text)."""
        body_text: str | None = None
        body_html: str | None = None

        if not msg.is_multipart():
            content_type = msg.get_content_type()
            payload = _safe_content(msg)
            if content_type == "text/plain" and isinstance(payload, str):
                body_text = payload
            elif content_type == "text/html" and isinstance(payload, str):
                body_html = payload
            return body_text, body_html

        for part in msg.walk():
            # Skip multipart containers, they have no content of their own
            if part.get_content_maintype() == "multipart":
                continue
            if _is_attachment(part):
                continue

            content_type = part.get_content_type()
            payload = _safe_content(part)
            if content_type == "text/plain" and isinstance(payload, str) and body_text is None:
                body_text = payload
            elif content_type == "text/html" and isinstance(payload, str) and body_html is None:
                body_html = payload

        return body_text, body_html

    def _extract_attachments(self, msg: email.message.Message) -> list[ParsedAttachment]:
        """Walk MIME parts and collect attachments in source order."""
        attachments: list[ParsedAttachment] = []

        for part in msg.walk():
            if part.get_content_maintype() == "multipart" or not _is_attachment(part):
                continue

            payload = _safe_content(part)
            if isinstance(payload, bytes):
                raw = payload
            elif isinstance(payload, str):
                raw = payload.encode("utf-8")
            elif isinstance(payload, email.message.Message):
                raw = payload.as_bytes()
            else:
                continue

            attachments.append(
                ParsedAttachment(
                    filename=part.get_filename(),
                    content_type=part.get_content_type(),
                    payload=raw,
                )
            )

        return attachments


def _is_attachment(part: email.message.Message) -> bool:
    # Content-Disposition: attachment, or a named non-multipart part
    disposition = str(part.get("Content-Disposition", ""))
    if "attachment" in disposition.lower():
        return True
    return bool(part.get_filename()) and part.get_content_maintype() != "multipart"


def _safe_content(part: email.message.Message) -> object:
    try:
        return part.get_content()
    except (KeyError, LookupError, ValueError):
        # Unknown charset or broken transfer encoding: fall back to raw bytes
        return part.get_payload(decode=True)
