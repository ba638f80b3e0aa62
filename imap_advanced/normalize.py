"""Pure helpers flattening address/header structures and parsing CSV inputs."""

from __future__ import annotations

import email.errors
import email.header
import email.message
import email.utils
import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from .models import Address

_FOLD_RE = re.compile(r"\r?\n(?=[ \t])")
_REFERENCE_RE = re.compile(r"<[^>]+>")
_REPLY_PREFIX_RE = re.compile(r"^(re|fwd):\s*", re.IGNORECASE)

REFERENCE_HEADERS = ("references", "in-reply-to", "message-id")


def decode_header_value(value: Any) -> str:
    """Unfold a raw header value and decode any RFC 2047 encoded words.

    Malformed encoded words are returned undecoded rather than raised.
    """
    if value is None:
        return ""
    text = _FOLD_RE.sub("", str(value))
    try:
        return str(email.header.make_header(email.header.decode_header(text)))
    except (email.errors.HeaderParseError, LookupError, UnicodeError):
        return text


def normalize_addresses(value: Any) -> list[Address]:
    """Flatten an address header (groups included) into name/address records."""
    if not value:
        return []
    return [
        Address(name=decode_header_value(name), address=addr)
        for name, addr in email.utils.getaddresses([_FOLD_RE.sub("", str(value))])
        if name or addr
    ]


def header_map(headers: email.message.Message) -> dict[str, str | list[str]]:
    """Build a lowercase-keyed header map; repeated headers become lists."""
    result: dict[str, str | list[str]] = {}
    for name, value in headers.items():
        key = name.lower()
        text = decode_header_value(value)
        existing = result.get(key)
        if existing is None:
            result[key] = text
        elif isinstance(existing, list):
            existing.append(text)
        else:
            result[key] = [existing, text]
    return result


def parse_references(headers: Mapping[str, Any]) -> list[str]:
    """Collect every ``<...>`` token from References, In-Reply-To and Message-ID.

    Tokens are deduplicated; order is first-seen but carries no meaning.
    """
    lines: list[str] = []
    for name in REFERENCE_HEADERS:
        value = headers.get(name)
        if not value:
            continue
        if isinstance(value, (list, tuple)):
            lines.extend(str(v) for v in value)
        else:
            lines.append(str(value))

    seen: dict[str, None] = {}
    for line in lines:
        for token in _REFERENCE_RE.findall(line):
            seen.setdefault(token.strip(), None)
    return list(seen)


def first_header(headers: Mapping[str, Any], name: str) -> str:
    value = headers.get(name)
    if isinstance(value, list):
        return value[0] if value else ""
    return str(value or "")


def parse_uid_list(text: str | None) -> list[int]:
    """Parse ``"1, 2, abc, -3, 4"`` into ``[1, 2, 4]``; bad tokens are dropped."""
    uids: list[int] = []
    for token in (text or "").split(","):
        try:
            uid = int(token.strip())
        except ValueError:
            continue
        if uid > 0:
            uids.append(uid)
    return uids


def parse_csv(text: str | Iterable[str] | None) -> list[str]:
    if not text:
        return []
    parts = text.split(",") if isinstance(text, str) else text
    return [part.strip() for part in parts if part and part.strip()]


def strip_reply_prefix(subject: str) -> str:
    """Drop one leading ``Re:`` / ``Fwd:`` marker for subject-based threading."""
    return _REPLY_PREFIX_RE.sub("", subject or "", count=1).strip()


def iso_datetime(value: datetime | None) -> str | None:
    """Render *value* as a UTC ISO-8601 string so string order is time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()
