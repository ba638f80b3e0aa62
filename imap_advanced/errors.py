"""Error kinds raised by the IMAP session, pipeline and action layers."""

from __future__ import annotations


class ImapAdvancedError(Exception):
    """Base class for every error surfaced by this package."""

    kind: str = "error"


class ImapConnectionError(ImapAdvancedError):
    """Transport or authentication failure; the session is left disconnected."""

    kind = "connection"


class NotFoundError(ImapAdvancedError):
    """A UID or Message-ID could not be resolved in the mailbox."""

    kind = "not_found"


class ValidationError(ImapAdvancedError):
    """A request was rejected before any protocol call was made."""

    kind = "validation"


class ProtocolError(ImapAdvancedError):
    """The server rejected an otherwise well-formed command (NO / BAD)."""

    kind = "protocol"
