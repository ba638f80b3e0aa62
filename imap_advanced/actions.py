"""Per-item action execution (mailbox / message / thread operations).

Each request is validated before a connection is opened and then runs on
its own short-lived :class:`ImapSession`.
"""

from __future__ import annotations

import base64
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from functools import partial
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .attachments import AttachmentFilter
from .binary import BinaryStore
from .config import ImapConfig
from .enrichment import enrich_message
from .errors import ValidationError
from .imap_client import DELETED_FLAG, SEEN_FLAG, ImapSession
from .models import AttachmentMode, FlagAction
from .normalize import parse_csv, parse_uid_list
from .search import compile_criteria, normalize_criteria
from .threads import resolve_identifier, resolve_thread

logger = structlog.get_logger()

SessionFactory = Callable[[ImapConfig], ImapSession]
Plan = Callable[[ImapSession], Awaitable[list["ActionResult"]]]


class ActionRequest(BaseModel):
    """One work item: which resource/operation to run and its parameters."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    resource: str
    operation: str
    mailbox: str = "INBOX"
    uid: int | None = None
    message_id: str = Field(default="", alias="messageId")
    uids: str | list[int] = ""
    target_mailbox: str = Field(default="", alias="targetMailbox")
    action: FlagAction = FlagAction.ADD
    flags: str | list[str] = SEEN_FLAG
    criteria: dict[str, Any] = Field(default_factory=dict)
    limit: int = Field(default=100, gt=0)
    include_raw: bool = Field(default=False, alias="includeRaw")
    attachments_mode: AttachmentMode = Field(
        default=AttachmentMode.METADATA_ONLY, alias="attachmentsMode"
    )
    binary_prefix: str = Field(default="attachment_", alias="binaryPrefix")
    max_attachment_size_mb: float | None = Field(default=None, alias="maxAttachmentSizeMb")
    allowed_mime_types: str | list[str] = Field(default="", alias="allowedMimeTypes")
    filename_regex: str = Field(default="", alias="filenameRegex")
    subject_fallback: bool = Field(default=False, alias="subjectFallback")


@dataclass
class ActionResult:
    json: dict[str, Any]
    binary: dict[str, str] = field(default_factory=dict)
    paired_item: int = 0


def parse_request(item: ActionRequest | Mapping[str, Any]) -> ActionRequest:
    if isinstance(item, ActionRequest):
        return item
    try:
        return ActionRequest.model_validate(item)
    except PydanticValidationError as exc:
        raise ValidationError(f"Malformed action request: {exc}") from exc


class ImapActions:
    """Runs action requests against an IMAP server.

    With ``continue_on_fail`` a failing item yields an ``{error, errorType}``
    record paired with its index; otherwise the first failure propagates.
    """

    def __init__(
        self,
        config: ImapConfig,
        *,
        session_factory: SessionFactory = ImapSession,
        binary_store: BinaryStore | None = None,
    ) -> None:
        self._config = config
        self._session_factory = session_factory
        self.binary_store = binary_store

    async def execute(
        self,
        items: Sequence[ActionRequest | Mapping[str, Any]],
        *,
        continue_on_fail: bool = False,
    ) -> list[ActionResult]:
        results: list[ActionResult] = []
        for index, item in enumerate(items):
            try:
                plan = self.prepare(parse_request(item))
                async with self._session_factory(self._config) as session:
                    outputs = await plan(session)
            except Exception as exc:
                if not continue_on_fail:
                    raise
                error_type = getattr(exc, "kind", "error")
                logger.warning(
                    "action_item_failed", item=index, error=str(exc), error_type=error_type
                )
                results.append(
                    ActionResult(
                        json={"error": str(exc), "errorType": error_type},
                        paired_item=index,
                    )
                )
                continue

            for output in outputs:
                output.paired_item = index
                results.append(output)
        return results

    def prepare(self, request: ActionRequest) -> Plan:
        """Validate *request* and bind it to the handler that will run it."""
        key = (request.resource, request.operation)
        mailbox = request.mailbox or "INBOX"

        if key == ("mailbox", "list"):
            return self._list_mailboxes
        if key == ("mailbox", "status"):
            return partial(self._mailbox_status, mailbox=mailbox)

        if key == ("message", "get"):
            _require_identifier(request)
            if request.attachments_mode is AttachmentMode.BINARY and self.binary_store is None:
                raise ValidationError("S3_BUCKET is required for binary attachment mode")
            attachment_filter = AttachmentFilter.build(
                max_size_mb=request.max_attachment_size_mb,
                allowed_mime_types=request.allowed_mime_types,
                filename_regex=request.filename_regex,
            )
            return partial(self._get_message, request=request, attachment_filter=attachment_filter)
        if key == ("message", "search"):
            criteria = normalize_criteria(request.criteria)
            compile_criteria(criteria)
            return partial(self._search, mailbox=mailbox, criteria=criteria, limit=request.limit)
        if key == ("message", "updateFlags"):
            flags = parse_csv(request.flags)
            if not flags and request.action is not FlagAction.REPLACE:
                raise ValidationError("At least one flag is required")
            return partial(
                self._update_flags,
                mailbox=mailbox,
                uids=_require_uids(request),
                action=request.action,
                flags=flags,
            )
        if key in (("message", "move"), ("message", "copy")):
            uids = _require_uids(request)
            if not request.target_mailbox:
                raise ValidationError("Target mailbox is required")
            handler = self._move if request.operation == "move" else self._copy
            return partial(handler, source=mailbox, target=request.target_mailbox, uids=uids)
        if key == ("message", "delete"):
            return partial(
                self._update_flags,
                mailbox=mailbox,
                uids=_require_uids(request),
                action=FlagAction.ADD,
                flags=[DELETED_FLAG],
            )
        if key == ("message", "undelete"):
            return partial(
                self._update_flags,
                mailbox=mailbox,
                uids=_require_uids(request),
                action=FlagAction.REMOVE,
                flags=[DELETED_FLAG],
            )
        if key == ("message", "expunge"):
            return partial(self._expunge, mailbox=mailbox)

        if key == ("thread", "getByMessage"):
            _require_identifier(request)
            return partial(self._get_thread, request=request)

        raise ValidationError(f"Unsupported operation: {request.resource}/{request.operation}")

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _list_mailboxes(self, session: ImapSession) -> list[ActionResult]:
        boxes = await session.list_mailboxes()
        return [ActionResult(json=box.to_payload()) for box in boxes]

    async def _mailbox_status(self, session: ImapSession, *, mailbox: str) -> list[ActionResult]:
        status = await session.status(mailbox)
        return [ActionResult(json=status.to_payload())]

    async def _get_message(
        self,
        session: ImapSession,
        *,
        request: ActionRequest,
        attachment_filter: AttachmentFilter,
    ) -> list[ActionResult]:
        mailbox = request.mailbox or "INBOX"
        uid = await resolve_identifier(
            session, mailbox, uid=request.uid, message_id=request.message_id
        )
        result = await enrich_message(
            session,
            mailbox,
            uid,
            include_raw=True,
            attachments_mode=request.attachments_mode,
            binary_prefix=request.binary_prefix,
            attachment_filter=attachment_filter,
            binary_store=self.binary_store,
        )
        payload = result.message.to_payload()
        if request.include_raw and result.raw_bytes is not None:
            payload["raw"] = base64.b64encode(result.raw_bytes).decode("ascii")
        return [ActionResult(json=payload, binary=result.binary)]

    async def _search(
        self,
        session: ImapSession,
        *,
        mailbox: str,
        criteria: dict[str, Any],
        limit: int,
    ) -> list[ActionResult]:
        await session.open_mailbox(mailbox)
        uids = await session.search(criteria)
        return [ActionResult(json={"uids": uids[:limit], "total": len(uids)})]

    async def _update_flags(
        self,
        session: ImapSession,
        *,
        mailbox: str,
        uids: list[int],
        action: FlagAction,
        flags: list[str],
    ) -> list[ActionResult]:
        result = await session.update_flags(uids, mailbox, action, flags)
        return [ActionResult(json=result.to_payload())]

    async def _move(
        self, session: ImapSession, *, source: str, target: str, uids: list[int]
    ) -> list[ActionResult]:
        result = await session.move(uids, source, target)
        return [ActionResult(json=result.to_payload())]

    async def _copy(
        self, session: ImapSession, *, source: str, target: str, uids: list[int]
    ) -> list[ActionResult]:
        result = await session.copy(uids, source, target)
        return [ActionResult(json=result.to_payload())]

    async def _expunge(self, session: ImapSession, *, mailbox: str) -> list[ActionResult]:
        result = await session.expunge(mailbox)
        return [ActionResult(json=result.to_payload())]

    async def _get_thread(
        self, session: ImapSession, *, request: ActionRequest
    ) -> list[ActionResult]:
        mailbox = request.mailbox or "INBOX"
        uid = await resolve_identifier(
            session, mailbox, uid=request.uid, message_id=request.message_id
        )
        thread = await resolve_thread(
            session, mailbox, uid, subject_fallback=request.subject_fallback
        )
        return [ActionResult(json=thread.to_payload())]


def _require_identifier(request: ActionRequest) -> None:
    if not request.uid and not request.message_id:
        raise ValidationError("A UID or Message-ID is required")


def _require_uids(request: ActionRequest) -> list[int]:
    if isinstance(request.uids, list):
        uids = [uid for uid in request.uids if uid > 0]
    else:
        uids = parse_uid_list(request.uids)
    if not uids:
        raise ValidationError("UID list is empty")
    return uids
