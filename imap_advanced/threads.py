"""Identifier resolution and one-hop thread reconstruction."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from .enrichment import enrich_message
from .errors import NotFoundError, ValidationError
from .models import ThreadMessage, ThreadResult
from .normalize import iso_datetime, strip_reply_prefix

if TYPE_CHECKING:
    from .imap_client import ImapSession

logger = structlog.get_logger()


async def resolve_identifier(
    session: ImapSession,
    mailbox: str,
    *,
    uid: int | None = None,
    message_id: str | None = None,
) -> int:
    """Return *uid* as-is, or look up the first UID whose Message-ID matches."""
    if uid:
        return int(uid)
    if not message_id:
        raise ValidationError("A UID or Message-ID is required")

    await session.open_mailbox(mailbox)
    uids = await session.search({"header": ["Message-ID", message_id]})
    if not uids:
        raise NotFoundError(f"No message with Message-ID {message_id} in {mailbox}")
    return uids[0]


async def resolve_thread(
    session: ImapSession,
    mailbox: str,
    uid: int,
    *,
    subject_fallback: bool = False,
) -> ThreadResult:
    """Collect the messages threaded with *uid* inside *mailbox*.

    Every ``<...>`` token from the seed's References, In-Reply-To and
    Message-ID headers is looked up once by Message-ID; references found in
    the discovered messages are not followed. When headers yield nothing
    beyond the seed's own id and *subject_fallback* is set, one subject
    search (reply prefix stripped) is merged in.
    """
    seed = await enrich_message(session, mailbox, uid)
    references = seed.message.thread.references

    thread_uids = {uid}
    for reference in references:
        thread_uids.update(await session.search({"header": ["Message-ID", reference]}))

    if subject_fallback and len(references) <= 1:
        subject = strip_reply_prefix(seed.message.subject)
        if subject:
            thread_uids.update(await session.search({"subject": subject}))

    records = await session.fetch_many(sorted(thread_uids), mailbox)
    messages = [
        ThreadMessage(
            uid=record.uid,
            subject=record.envelope.subject,
            date=iso_datetime(record.envelope.date or record.internal_date),
            flags=record.flags,
        )
        for record in records
    ]
    messages.sort(key=lambda m: m.date or "")

    logger.debug("thread_resolved", mailbox=mailbox, uid=uid, size=len(messages))
    return ThreadResult(message_uid=uid, references=references, messages=messages)
