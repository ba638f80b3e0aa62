"""Enums and output records shared across the package.

Records serialize with camelCase keys (``model_dump(by_alias=True)``) since
they are handed to a workflow host as JSON payloads.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class AttachmentMode(str, Enum):
    NONE = "none"
    METADATA_ONLY = "metadataOnly"
    BINARY = "binary"


class TriggerMode(str, Enum):
    AUTO = "auto"
    IDLE = "idle"
    POLL = "poll"


class OutputFormat(str, Enum):
    HEADERS_SNIPPET = "headersSnippet"
    FULL = "full"
    RAW = "raw"


class FlagAction(str, Enum):
    ADD = "add"
    REMOVE = "remove"
    REPLACE = "replace"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    MAILBOX_OPEN = "mailbox_open"


class RunnerStatus(str, Enum):
    """Lifecycle of a standalone trigger process."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


class Capability(str, Enum):
    """Server features the session dispatches on."""

    MOVE = "MOVE"
    IDLE = "IDLE"
    UIDPLUS = "UIDPLUS"
    CONDSTORE = "CONDSTORE"
    SPECIAL_USE = "SPECIAL-USE"


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Address(_Record):
    name: str = ""
    address: str = ""


class ThreadInfo(_Record):
    references: list[str] = Field(default_factory=list)
    in_reply_to: str = Field(default="", alias="inReplyTo")


class MessageBody(_Record):
    text: str = ""
    html: str = ""


class AttachmentMeta(_Record):
    filename: str
    content_type: str = Field(default="application/octet-stream", alias="contentType")
    size: int
    binary_property: str | None = Field(default=None, alias="binaryProperty")


class EnrichedMessage(_Record):
    """Primary output record for a single message."""

    uid: int
    seq: int
    message_id: str = Field(default="", alias="messageId")
    subject: str = ""
    date: str | None = None
    from_: list[Address] = Field(default_factory=list, alias="from")
    to: list[Address] = Field(default_factory=list)
    cc: list[Address] = Field(default_factory=list)
    flags: list[str] = Field(default_factory=list)
    headers: dict[str, Any] = Field(default_factory=dict)
    thread: ThreadInfo = Field(default_factory=ThreadInfo)
    body: MessageBody = Field(default_factory=MessageBody)
    attachments: list[AttachmentMeta] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        for attachment in payload["attachments"]:
            if attachment.get("binaryProperty") is None:
                attachment.pop("binaryProperty", None)
        return payload


class MailboxInfo(_Record):
    path: str
    delimiter: str | None = None
    special_use: str | None = Field(default=None, alias="specialUse")
    flags: list[str] = Field(default_factory=list)
    subscribed: bool = False


class MailboxStatus(_Record):
    path: str
    messages: int = 0
    unseen: int = 0
    uid_next: int = Field(default=0, alias="uidNext")
    uid_validity: int = Field(default=0, alias="uidValidity")
    highest_modseq: int | None = Field(default=None, alias="highestModseq")


class FlagUpdateResult(_Record):
    updated: int
    action: FlagAction
    flags: list[str]


class MoveResult(_Record):
    method: str
    moved: int


class CopyResult(_Record):
    copied: int


class ExpungeResult(_Record):
    expunged: bool = True
    mailbox: str


class ThreadMessage(_Record):
    uid: int
    subject: str = ""
    date: str | None = None
    flags: list[str] = Field(default_factory=list)


class ThreadResult(_Record):
    message_uid: int = Field(alias="messageUid")
    references: list[str] = Field(default_factory=list)
    messages: list[ThreadMessage] = Field(default_factory=list)


class Watermark(_Record):
    """Last UID considered delivered, tied to the UID-validity epoch it was seen in."""

    last_uid: int = Field(alias="lastUid")
    uid_validity: int | None = Field(default=None, alias="uidValidity")


class HealthStatus(BaseModel):
    """Response body of the /health probe."""

    name: str
    status: RunnerStatus
    uptime_seconds: float
    details: dict[str, Any] = Field(default_factory=dict)
