"""IMAP mailbox operations and a change trigger (IDLE / poll) for workflow hosts."""

from .actions import ActionRequest, ActionResult, ImapActions
from .attachments import AttachmentFilter
from .binary import MemoryBinaryStore, S3BinaryStore
from .config import ImapConfig, KafkaConfig, RetryConfig, RunnerConfig, S3Config, TriggerConfig
from .enrichment import EnrichmentResult, enrich_message
from .errors import (
    ImapAdvancedError,
    ImapConnectionError,
    NotFoundError,
    ProtocolError,
    ValidationError,
)
from .idle import IdleMonitor
from .imap_client import FetchedMessage, ImapSession
from .models import (
    AttachmentMode,
    Capability,
    EnrichedMessage,
    FlagAction,
    OutputFormat,
    TriggerMode,
    Watermark,
)
from .runner import TriggerRunner
from .sink import KafkaEmitter
from .state import JsonFileWatermarkStore, MemoryWatermarkStore
from .threads import resolve_identifier, resolve_thread
from .trigger import TriggerContext, format_record

__all__ = [
    "ActionRequest",
    "ActionResult",
    "AttachmentFilter",
    "AttachmentMode",
    "Capability",
    "EnrichedMessage",
    "EnrichmentResult",
    "FetchedMessage",
    "FlagAction",
    "IdleMonitor",
    "ImapActions",
    "ImapAdvancedError",
    "ImapConfig",
    "ImapConnectionError",
    "ImapSession",
    "JsonFileWatermarkStore",
    "KafkaConfig",
    "KafkaEmitter",
    "MemoryBinaryStore",
    "MemoryWatermarkStore",
    "NotFoundError",
    "OutputFormat",
    "ProtocolError",
    "RetryConfig",
    "RunnerConfig",
    "S3BinaryStore",
    "S3Config",
    "TriggerConfig",
    "TriggerContext",
    "TriggerMode",
    "TriggerRunner",
    "ValidationError",
    "Watermark",
    "enrich_message",
    "format_record",
    "resolve_identifier",
    "resolve_thread",
]
