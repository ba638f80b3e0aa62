"""Async IMAP session wrapping stdlib imaplib with asyncio.to_thread.

One :class:`ImapSession` owns one connection. It is not safe for concurrent
use; every caller that needs parallelism opens its own session. Use it as an
async context manager so the connection is released on every exit path::

    async with ImapSession(config) as session:
        uids = await session.search({"seen": False})
"""

from __future__ import annotations

import asyncio
import imaplib
import re
import ssl
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeVar

import structlog

from .config import ImapConfig
from .envelope import Envelope, extract_envelope
from .errors import ImapConnectionError, NotFoundError, ProtocolError, ValidationError
from .models import (
    Capability,
    ConnectionState,
    CopyResult,
    ExpungeResult,
    FlagAction,
    FlagUpdateResult,
    MailboxInfo,
    MailboxStatus,
    MoveResult,
)
from .search import compile_groups, quote

logger = structlog.get_logger()

T = TypeVar("T")

DELETED_FLAG = "\\Deleted"
SEEN_FLAG = "\\Seen"
MOVE_METHOD = "move"
FALLBACK_MOVE_METHOD = "copy-store-expunge"

SPECIAL_USE_FLAGS = frozenset(
    {"\\All", "\\Archive", "\\Drafts", "\\Flagged", "\\Junk", "\\Sent", "\\Trash"}
)

_STORE_COMMANDS = {
    FlagAction.ADD: "+FLAGS.SILENT",
    FlagAction.REMOVE: "-FLAGS.SILENT",
    FlagAction.REPLACE: "FLAGS.SILENT",
}

_FETCH_START_RE = re.compile(rb"^(\d+) \(")
_UID_RE = re.compile(rb"UID (\d+)")
_FLAGS_RE = re.compile(rb"FLAGS \(([^)]*)\)")
_INTERNALDATE_RE = re.compile(rb'INTERNALDATE "([^"]+)"')
_STATUS_ITEM_RE = re.compile(rb"([A-Z]+) (\d+)")
_LIST_RE = re.compile(rb'^\((?P<flags>[^)]*)\) (?P<delimiter>"(?:[^"\\]|\\.)*"|NIL) ?(?P<name>.*)$')
_HEADER_END_RE = re.compile(rb"\r?\n\r?\n")


@dataclass
class FetchedMessage:
    """One message as returned by a UID FETCH."""

    uid: int
    seq: int
    flags: list[str] = field(default_factory=list)
    internal_date: datetime | None = None
    header_bytes: bytes = b""
    raw_bytes: bytes | None = None
    envelope: Envelope = field(default_factory=Envelope)


class ImapSession:
    """Async-friendly IMAP session.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop. Capabilities are
    resolved once per connection and exposed as :class:`Capability` members.
    """

    def __init__(self, config: ImapConfig) -> None:
        self._config = config
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None
        self._state = ConnectionState.DISCONNECTED
        self._mailbox: str | None = None
        self._capabilities: frozenset[Capability] = frozenset()
        self._raw_capabilities: frozenset[str] = frozenset()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def mailbox(self) -> str | None:
        return self._mailbox

    @property
    def capabilities(self) -> frozenset[Capability]:
        return self._capabilities

    @property
    def raw_capabilities(self) -> frozenset[str]:
        return self._raw_capabilities

    def has_capability(self, capability: Capability) -> bool:
        return capability in self._capabilities

    async def __aenter__(self) -> ImapSession:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.logout()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect and login unless a usable connection already exists."""
        if self._conn is not None and self._state is not ConnectionState.DISCONNECTED:
            return
        try:
            await asyncio.to_thread(self._connect_sync)
        except (imaplib.IMAP4.error, OSError) as exc:
            self._reset()
            raise ImapConnectionError(
                f"Could not connect to {self._config.host}:{self._config.port}: {exc}"
            ) from exc
        logger.info(
            "imap_connected",
            host=self._config.host,
            capabilities=sorted(c.value for c in self._capabilities),
        )

    def _connect_sync(self) -> None:
        kwargs: dict[str, Any] = {}
        if self._config.timeout_seconds:
            kwargs["timeout"] = self._config.timeout_seconds
        if self._config.use_ssl:
            conn = imaplib.IMAP4_SSL(
                self._config.host,
                self._config.port,
                ssl_context=build_ssl_context(self._config.allow_unauthorized_certs),
                **kwargs,
            )
        else:
            conn = imaplib.IMAP4(self._config.host, self._config.port, **kwargs)

        try:
            conn.login(self._config.username, self._config.password.get_secret_value())
            typ, data = conn.capability()
        except imaplib.IMAP4.error:
            _quiet_logout(conn)
            raise

        tokens: Iterable[str] = conn.capabilities or ()
        if typ == "OK" and data and data[0]:
            tokens = _decode(data[0]).split()
        self._raw_capabilities = frozenset(t.upper() for t in tokens)
        self._capabilities = frozenset(
            c for c in Capability if c.value in self._raw_capabilities
        )
        self._conn = conn
        self._state = ConnectionState.CONNECTED
        self._mailbox = None

    async def logout(self) -> None:
        """Release the connection; safe to call repeatedly or before connect."""
        conn = self._conn
        self._reset()
        if conn is None:
            return
        await asyncio.to_thread(_quiet_logout, conn)
        logger.info("imap_logged_out", host=self._config.host)

    def _reset(self) -> None:
        self._conn = None
        self._state = ConnectionState.DISCONNECTED
        self._mailbox = None
        self._capabilities = frozenset()
        self._raw_capabilities = frozenset()

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking helper in a thread, mapping imaplib failures."""
        if self._conn is None:
            raise ImapConnectionError("Not connected")
        try:
            return await asyncio.to_thread(func, *args)
        except (imaplib.IMAP4.abort, OSError) as exc:
            logger.warning("imap_connection_lost", host=self._config.host, error=str(exc))
            self._reset()
            raise ImapConnectionError(str(exc)) from exc
        except imaplib.IMAP4.error as exc:
            raise ProtocolError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Mailboxes
    # ------------------------------------------------------------------

    async def open_mailbox(self, mailbox: str) -> None:
        """Select *mailbox*. Always re-selects since server state may have moved."""
        await self._call(self._select_sync, mailbox or "INBOX")

    def _select_sync(self, mailbox: str) -> None:
        assert self._conn is not None
        self._mailbox = None
        self._state = ConnectionState.CONNECTED
        typ, data = self._conn.select(quote(mailbox))
        _check(typ, data, f"SELECT {mailbox}")
        self._mailbox = mailbox
        self._state = ConnectionState.MAILBOX_OPEN

    async def list_mailboxes(self) -> list[MailboxInfo]:
        return await self._call(self._list_sync)

    def _list_sync(self) -> list[MailboxInfo]:
        assert self._conn is not None
        typ, data = self._conn.list()
        _check(typ, data, "LIST")
        subscribed: set[str] = set()
        lsub_typ, lsub_data = self._conn.lsub()
        if lsub_typ == "OK":
            subscribed = {info.path for info in _parse_list(lsub_data)}

        boxes = _parse_list(data)
        for info in boxes:
            info.subscribed = info.path in subscribed
        return boxes

    async def status(self, mailbox: str) -> MailboxStatus:
        """Read counters and UID watermarks without changing the selection."""
        return await self._call(self._status_sync, mailbox or "INBOX")

    def _status_sync(self, mailbox: str) -> MailboxStatus:
        assert self._conn is not None
        names = ["MESSAGES", "UNSEEN", "UIDNEXT", "UIDVALIDITY"]
        if Capability.CONDSTORE in self._capabilities:
            names.append("HIGHESTMODSEQ")
        typ, data = self._conn.status(quote(mailbox), f"({' '.join(names)})")
        _check(typ, data, f"STATUS {mailbox}")

        line = next((d for d in data if isinstance(d, bytes)), b"")
        values = {
            _decode(k): int(v)
            for k, v in _STATUS_ITEM_RE.findall(line[line.rfind(b"(") :])
        }
        return MailboxStatus(
            path=mailbox,
            messages=values.get("MESSAGES", 0),
            unseen=values.get("UNSEEN", 0),
            uid_next=values.get("UIDNEXT", 0),
            uid_validity=values.get("UIDVALIDITY", 0),
            highest_modseq=values.get("HIGHESTMODSEQ"),
        )

    # ------------------------------------------------------------------
    # Search / fetch
    # ------------------------------------------------------------------

    async def search(self, criteria: Mapping[str, Any] | None) -> list[int]:
        """Search the open mailbox; returns matching UIDs in ascending order."""
        groups = compile_groups(criteria)
        return await self._call(self._search_sync, groups)

    def _search_sync(self, groups: list[list[str]]) -> list[int]:
        assert self._conn is not None
        wide = [g for g in groups if not all(token.isascii() for token in g)]
        if not wide:
            typ, data = self._conn.uid("SEARCH", None, *_flatten(groups))
        elif len(wide) == 1 and all(token.isascii() for token in wide[0][:-1]):
            # imaplib only sends a literal as the final argument
            rest = [g for g in groups if g is not wide[0]]
            self._conn.literal = _unquote(wide[0][-1]).encode("utf-8")
            typ, data = self._conn.uid(
                "SEARCH", "CHARSET", "UTF-8", *_flatten(rest), *wide[0][:-1]
            )
        else:
            raise ValidationError("Only one non-ASCII search value is supported")
        _check(typ, data, "UID SEARCH")

        uids: set[int] = set()
        for chunk in data:
            if isinstance(chunk, bytes):
                uids.update(int(token) for token in chunk.split() if token.isdigit())
        return sorted(uids)

    async def fetch_one(self, uid: int, mailbox: str, include_raw: bool = False) -> FetchedMessage:
        """Fetch flags, dates and headers (plus the raw source when asked)."""
        await self.open_mailbox(mailbox)
        messages = await self._call(self._fetch_sync, str(uid), include_raw)
        for message in messages:
            if message.uid == uid:
                return message
        raise NotFoundError(f"Message not found for UID {uid} in {mailbox}")

    async def fetch_many(self, uids: list[int], mailbox: str) -> list[FetchedMessage]:
        """Header-only fetch for a batch of UIDs; no round-trip for an empty list."""
        if not uids:
            return []
        await self.open_mailbox(mailbox)
        return await self._call(self._fetch_sync, _uid_set(uids), False)

    def _fetch_sync(self, uid_set: str, include_raw: bool) -> list[FetchedMessage]:
        assert self._conn is not None
        section = "BODY.PEEK[]" if include_raw else "BODY.PEEK[HEADER]"
        typ, data = self._conn.uid("FETCH", uid_set, f"(UID FLAGS INTERNALDATE {section})")
        _check(typ, data, "UID FETCH")
        return _parse_fetch(data, include_raw)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def update_flags(
        self,
        uids: list[int],
        mailbox: str,
        action: FlagAction | str,
        flags: list[str],
    ) -> FlagUpdateResult:
        """Add, remove or replace *flags* on every UID in one ``UID STORE``."""
        _require_uids(uids)
        action = FlagAction(action)
        if not flags and action is not FlagAction.REPLACE:
            raise ValidationError("At least one flag is required")
        await self.open_mailbox(mailbox)
        await self._call(
            self._uid_sync,
            "STORE",
            _uid_set(uids),
            _STORE_COMMANDS[action],
            f"({' '.join(flags)})",
        )
        logger.debug("imap_flags_updated", mailbox=mailbox, uids=len(uids), action=action.value)
        return FlagUpdateResult(updated=len(uids), action=action, flags=list(flags))

    async def move(self, uids: list[int], source: str, target: str) -> MoveResult:
        """Move messages, falling back to COPY + \\Deleted + EXPUNGE without MOVE.

        The fallback is not atomic: a failure after the copy leaves the
        messages in both mailboxes. The result's ``method`` tells callers
        which path ran.
        """
        _require_uids(uids)
        if not target:
            raise ValidationError("Target mailbox is required")
        await self.open_mailbox(source)
        uid_set = _uid_set(uids)

        if Capability.MOVE in self._capabilities:
            await self._call(self._uid_sync, "MOVE", uid_set, quote(target))
            logger.info("imap_moved", source=source, target=target, count=len(uids))
            return MoveResult(method=MOVE_METHOD, moved=len(uids))

        logger.warning("imap_move_fallback", source=source, target=target, count=len(uids))
        await self._call(self._uid_sync, "COPY", uid_set, quote(target))
        try:
            await self._call(self._uid_sync, "STORE", uid_set, "+FLAGS.SILENT", f"({DELETED_FLAG})")
            if Capability.UIDPLUS in self._capabilities:
                await self._call(self._uid_sync, "EXPUNGE", uid_set)
            else:
                await self._call(self._expunge_sync)
        except Exception:
            logger.error(
                "imap_move_fallback_incomplete",
                source=source,
                target=target,
                uids=uids,
            )
            raise
        return MoveResult(method=FALLBACK_MOVE_METHOD, moved=len(uids))

    async def copy(self, uids: list[int], source: str, target: str) -> CopyResult:
        _require_uids(uids)
        if not target:
            raise ValidationError("Target mailbox is required")
        await self.open_mailbox(source)
        await self._call(self._uid_sync, "COPY", _uid_set(uids), quote(target))
        return CopyResult(copied=len(uids))

    async def expunge(self, mailbox: str) -> ExpungeResult:
        """Permanently remove messages already flagged \\Deleted in *mailbox*."""
        await self.open_mailbox(mailbox)
        await self._call(self._expunge_sync)
        logger.info("imap_expunged", mailbox=mailbox)
        return ExpungeResult(mailbox=mailbox)

    def _uid_sync(self, command: str, *args: str) -> list[Any]:
        assert self._conn is not None
        typ, data = self._conn.uid(command, *args)
        _check(typ, data, f"UID {command}")
        return data

    def _expunge_sync(self) -> None:
        assert self._conn is not None
        typ, data = self._conn.expunge()
        _check(typ, data, "EXPUNGE")


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def build_ssl_context(allow_unauthorized_certs: bool) -> ssl.SSLContext:
    """TLS context; verification is disabled only when explicitly allowed."""
    context = ssl.create_default_context()
    if allow_unauthorized_certs:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _quiet_logout(conn: imaplib.IMAP4) -> None:
    # No CLOSE first: it would silently expunge \Deleted messages
    try:
        conn.logout()
    except (imaplib.IMAP4.error, OSError):
        pass


def _check(typ: str, data: list[Any], what: str) -> None:
    if typ != "OK":
        detail = b" ".join(d for d in data if isinstance(d, bytes)) if data else b""
        raise ProtocolError(f"{what} failed: {typ} {_decode(detail)}".strip())


def _decode(value: bytes | str) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _require_uids(uids: list[int]) -> None:
    if not uids:
        raise ValidationError("UID list is empty")


def _uid_set(uids: list[int]) -> str:
    return ",".join(str(uid) for uid in uids)


def _flatten(groups: list[list[str]]) -> list[str]:
    return [token for group in groups for token in group]


def _unquote(token: str) -> str:
    if len(token) >= 2 and token[0] == token[-1] == '"':
        return token[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return token


def _parse_list(data: list[Any]) -> list[MailboxInfo]:
    """Parse LIST / LSUB lines into :class:`MailboxInfo` records."""
    boxes: list[MailboxInfo] = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            # Literal mailbox name: (b'(\\HasNoChildren) "/" {5}', b'name')
            line, name = item[0], _decode(item[1])
        else:
            line, name = item, None
        match = _LIST_RE.match(line)
        if match is None:
            continue
        if name is None:
            name = _unquote(_decode(match.group("name")).strip())
        delimiter = _decode(match.group("delimiter"))
        flags = _decode(match.group("flags")).split()
        special = next((f for f in flags if f in SPECIAL_USE_FLAGS), None)
        boxes.append(
            MailboxInfo(
                path=name,
                delimiter=None if delimiter == "NIL" else _unquote(delimiter),
                special_use=special,
                flags=flags,
            )
        )
    return boxes


def _parse_fetch(data: list[Any], include_raw: bool) -> list[FetchedMessage]:
    """Group an imaplib FETCH response into one record per message.

    imaplib returns ``(meta, literal)`` tuples for items carrying a literal
    and plain bytes for the rest (closing parens, trailing FLAGS, messages
    without literals).
    """
    entries: list[list[Any]] = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            meta, literal = item[0], item[1]
            if entries and not _FETCH_START_RE.match(meta):
                entries[-1][0] += b" " + meta
                if entries[-1][1] is None:
                    entries[-1][1] = literal
            else:
                entries.append([meta, literal])
        elif isinstance(item, bytes):
            if _FETCH_START_RE.match(item):
                entries.append([item, None])
            elif entries:
                entries[-1][0] += item

    messages: list[FetchedMessage] = []
    for meta, literal in entries:
        uid_match = _UID_RE.search(meta)
        if uid_match is None:
            # Unsolicited FETCH (e.g. a flag change by another client)
            continue
        seq_match = _FETCH_START_RE.match(meta)
        flags_match = _FLAGS_RE.search(meta)
        date_match = _INTERNALDATE_RE.search(meta)
        body = literal or b""

        if include_raw:
            header_bytes = _HEADER_END_RE.split(body, maxsplit=1)[0]
        else:
            header_bytes = body

        messages.append(
            FetchedMessage(
                uid=int(uid_match.group(1)),
                seq=int(seq_match.group(1)) if seq_match else 0,
                flags=_decode(flags_match.group(1)).split() if flags_match else [],
                internal_date=_parse_internal_date(date_match.group(1)) if date_match else None,
                header_bytes=header_bytes,
                raw_bytes=body if include_raw else None,
                envelope=extract_envelope(header_bytes),
            )
        )
    return messages


def _parse_internal_date(value: bytes) -> datetime | None:
    try:
        return datetime.strptime(_decode(value).strip(), "%d-%b-%Y %H:%M:%S %z")
    except ValueError:
        return None
