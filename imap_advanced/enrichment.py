"""Message enrichment: fetch one UID and build an :class:`EnrichedMessage`.

The raw source is only fetched when it is needed: either the caller asked
for it or attachments have to be re-parsed from the MIME tree.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from .attachments import AttachmentFilter, select_attachments
from .errors import ValidationError
from .models import (
    AttachmentMeta,
    AttachmentMode,
    EnrichedMessage,
    MessageBody,
    ThreadInfo,
)
from .normalize import first_header, iso_datetime, parse_references
from .parser import MimeParser

if TYPE_CHECKING:
    from .binary import BinaryStore
    from .imap_client import ImapSession

logger = structlog.get_logger()

_parser = MimeParser()


@dataclass
class EnrichmentResult:
    message: EnrichedMessage
    binary: dict[str, str] = field(default_factory=dict)
    raw_bytes: bytes | None = None


async def enrich_message(
    session: ImapSession,
    mailbox: str,
    uid: int,
    *,
    include_raw: bool = False,
    attachments_mode: AttachmentMode | str = AttachmentMode.NONE,
    binary_prefix: str = "attachment_",
    attachment_filter: AttachmentFilter | None = None,
    binary_store: BinaryStore | None = None,
) -> EnrichmentResult:
    """Fetch *uid* from *mailbox* and return the enriched record.

    Raises :class:`NotFoundError` (from the session) if the UID is absent.
    In binary mode every kept attachment is handed to *binary_store* under
    ``{binary_prefix}{kept_index}``; the returned ``binary`` mapping holds
    the reference the store returned for each key.
    """
    mode = AttachmentMode(attachments_mode)
    if mode is AttachmentMode.BINARY and binary_store is None:
        raise ValidationError("Binary attachment mode requires a binary store")
    if attachment_filter is None:
        attachment_filter = AttachmentFilter()

    fetched = await session.fetch_one(
        uid, mailbox, include_raw=include_raw or mode is not AttachmentMode.NONE
    )
    envelope = fetched.envelope
    parsed = _parser.parse(fetched.raw_bytes) if fetched.raw_bytes else None

    headers = envelope.headers
    message_id = (parsed.message_id if parsed else "") or envelope.message_id
    date = (parsed.date if parsed else None) or envelope.date or fetched.internal_date

    message = EnrichedMessage(
        uid=fetched.uid,
        seq=fetched.seq,
        message_id=message_id or first_header(headers, "message-id"),
        subject=(parsed.subject if parsed else "") or envelope.subject,
        date=iso_datetime(date),
        from_=envelope.from_,
        to=envelope.to,
        cc=envelope.cc,
        flags=fetched.flags,
        headers=headers,
        thread=ThreadInfo(
            references=parse_references(headers),
            in_reply_to=envelope.in_reply_to,
        ),
        body=MessageBody(
            text=parsed.body_text if parsed else "",
            html=parsed.body_html if parsed else "",
        ),
    )
    result = EnrichmentResult(message=message, raw_bytes=fetched.raw_bytes)

    if mode is AttachmentMode.NONE or parsed is None:
        return result

    kept = select_attachments(parsed.attachments, attachment_filter)
    attachments: list[AttachmentMeta] = []
    for item in kept:
        meta = AttachmentMeta(
            filename=item.filename, content_type=item.content_type, size=item.size
        )
        if mode is AttachmentMode.BINARY:
            assert binary_store is not None
            key = f"{binary_prefix}{item.index}"
            result.binary[key] = await binary_store.put(
                mailbox=mailbox,
                uid=fetched.uid,
                key=key,
                filename=item.filename,
                content_type=item.content_type,
                payload=item.attachment.payload,
            )
            meta.binary_property = key
        attachments.append(meta)
    message.attachments = attachments

    logger.debug(
        "message_enriched",
        mailbox=mailbox,
        uid=fetched.uid,
        attachments=len(attachments),
        dropped=len(parsed.attachments) - len(attachments),
    )
    return result
