"""Lightweight envelope extraction from a raw header block.

Uses ``email.parser.BytesHeaderParser`` with the compat32 policy, which parses
*only* the headers without walking the MIME body and never raises on a
malformed header value. It works equally on a ``BODY[HEADER]`` literal and on
a full raw source.
"""

from __future__ import annotations

import email.message
import email.parser
import email.utils
from dataclasses import dataclass, field
from datetime import datetime

from .models import Address
from .normalize import decode_header_value, header_map, normalize_addresses


@dataclass
class Envelope:
    """Protocol-level summary of a message, independent of body parsing."""

    message_id: str = ""
    subject: str = ""
    date: datetime | None = None
    from_: list[Address] = field(default_factory=list)
    to: list[Address] = field(default_factory=list)
    cc: list[Address] = field(default_factory=list)
    bcc: list[Address] = field(default_factory=list)
    in_reply_to: str = ""
    headers: dict[str, str | list[str]] = field(default_factory=dict)


def parse_headers(raw_bytes: bytes) -> email.message.Message:
    parser = email.parser.BytesHeaderParser()
    return parser.parsebytes(raw_bytes)


def extract_envelope(raw_bytes: bytes) -> Envelope:
    """Extract envelope fields and the header map from RFC 822 header bytes."""
    headers = parse_headers(raw_bytes)

    return Envelope(
        message_id=decode_header_value(headers.get("Message-ID")).strip(),
        subject=decode_header_value(headers.get("Subject")),
        date=_parse_date(headers.get("Date")),
        from_=normalize_addresses(headers.get("From")),
        to=normalize_addresses(headers.get("To")),
        cc=normalize_addresses(headers.get("Cc")),
        bcc=normalize_addresses(headers.get("Bcc")),
        in_reply_to=decode_header_value(headers.get("In-Reply-To")).strip(),
        headers=header_map(headers),
    )


def _parse_date(value: object) -> datetime | None:
    """Return an aware datetime for a Date header, or ``None`` if unparseable."""
    if not value:
        return None
    try:
        return email.utils.parsedate_to_datetime(decode_header_value(value))
    except (TypeError, ValueError):
        return None
