"""Change detection: emit one record per message that arrived since the watermark.

A :class:`TriggerContext` owns everything one trigger instance needs: the
admission gate, the interval timer and (in push mode) the IDLE monitor. The
timer and the monitor both call :meth:`TriggerContext.poll_cycle`; whichever
finds the gate taken is skipped, never queued.
"""

from __future__ import annotations

import asyncio
import base64
from collections.abc import Callable
from datetime import UTC, datetime
from functools import partial
from typing import Any

import structlog

from .attachments import AttachmentFilter
from .binary import BinaryStore
from .config import ImapConfig, RetryConfig, TriggerConfig
from .enrichment import EnrichmentResult, enrich_message
from .errors import ImapAdvancedError, NotFoundError, ValidationError
from .idle import IdleMonitor
from .imap_client import SEEN_FLAG, ImapSession
from .models import AttachmentMode, Capability, FlagAction, OutputFormat, TriggerMode, Watermark
from .normalize import parse_csv
from .sink import Emitter
from .state import WatermarkStore

logger = structlog.get_logger()

SNIPPET_LENGTH = 500

SessionFactory = Callable[[ImapConfig], ImapSession]
MonitorFactory = Callable[..., IdleMonitor]


def format_record(result: EnrichmentResult, output_format: OutputFormat | str) -> dict[str, Any]:
    """Shape an enriched message for emission according to *output_format*."""
    payload = result.message.to_payload()
    fmt = OutputFormat(output_format)
    if fmt is OutputFormat.HEADERS_SNIPPET:
        payload["body"] = {"snippet": payload["body"]["text"][:SNIPPET_LENGTH]}
    elif fmt is OutputFormat.RAW:
        payload["body"] = {}
        if result.raw_bytes is not None:
            payload["raw"] = base64.b64encode(result.raw_bytes).decode("ascii")
    payload["binary"] = dict(result.binary)
    return payload


class TriggerContext:
    """One active trigger instance watching one mailbox."""

    def __init__(
        self,
        settings: TriggerConfig,
        imap_config: ImapConfig,
        store: WatermarkStore,
        emitter: Emitter,
        *,
        binary_store: BinaryStore | None = None,
        retry: RetryConfig | None = None,
        session_factory: SessionFactory = ImapSession,
        monitor_factory: MonitorFactory = IdleMonitor,
    ) -> None:
        if settings.attachments_mode is AttachmentMode.BINARY and binary_store is None:
            raise ValidationError("Binary attachment mode requires a binary store")

        self._settings = settings
        self._imap = imap_config
        self._store = store
        self._emitter = emitter
        self._binary_store = binary_store
        self._retry = retry or RetryConfig()
        self._session_factory = session_factory
        self._monitor_factory = monitor_factory

        self._filter = AttachmentFilter.build(
            max_size_mb=settings.max_attachment_size_mb,
            allowed_mime_types=settings.allowed_mime_types,
            filename_regex=settings.filename_regex,
        )
        self._extra_flags = parse_csv(settings.add_flags_csv)

        self._gate = asyncio.Lock()
        self._timer: asyncio.Task | None = None
        self._monitor: IdleMonitor | None = None

        self.strategy: TriggerMode | None = None
        self.last_uid: int | None = None
        self.last_poll_time: datetime | None = None
        self.messages_emitted = 0
        self.cycles_skipped = 0
        self.cycles_failed = 0

    @property
    def mailbox(self) -> str:
        return self._settings.mailbox or "INBOX"

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Pick the strategy, sync the watermark once and arm the timer."""
        self.strategy = await self._resolve_mode()
        interval = self._settings.poll_interval_seconds

        if self.strategy is TriggerMode.IDLE:
            monitor = self._monitor_factory(
                self._imap,
                self.mailbox,
                self.poll_cycle,
                check_timeout=self._settings.idle_check_timeout_seconds,
                renew_seconds=self._settings.idle_renew_seconds,
                retry=self._retry,
            )
            try:
                await monitor.start()
            except Exception:
                logger.exception("idle_monitor_start_failed", mailbox=self.mailbox)
                self.strategy = TriggerMode.POLL
            else:
                self._monitor = monitor
                interval = self._settings.safety_net_interval_seconds

        await self.poll_cycle()
        self._timer = asyncio.create_task(self._run_timer(interval), name=f"poll:{self.mailbox}")
        logger.info(
            "trigger_started",
            trigger_id=self._settings.trigger_id,
            mailbox=self.mailbox,
            strategy=self.strategy.value,
            interval=interval,
        )

    async def stop(self) -> None:
        """Clear the timer, release the monitor, then let an in-flight cycle finish."""
        if self._timer is not None:
            self._timer.cancel()
            await asyncio.gather(self._timer, return_exceptions=True)
            self._timer = None
        if self._monitor is not None:
            await self._monitor.stop()
            self._monitor = None
        async with self._gate:
            pass
        logger.info("trigger_stopped", trigger_id=self._settings.trigger_id)

    async def _resolve_mode(self) -> TriggerMode:
        mode = self._settings.mode
        if mode is not TriggerMode.AUTO:
            return mode
        try:
            async with self._session_factory(self._imap) as session:
                supports_idle = session.has_capability(Capability.IDLE)
        except ImapAdvancedError as exc:
            logger.warning("trigger_capability_probe_failed", error=str(exc))
            return TriggerMode.POLL
        return TriggerMode.IDLE if supports_idle else TriggerMode.POLL

    async def _run_timer(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            # Shielded so stop() never interrupts a cycle between emit and checkpoint
            await asyncio.shield(self.poll_cycle())

    # ------------------------------------------------------------------
    # Poll cycle
    # ------------------------------------------------------------------

    async def poll_cycle(self) -> int | None:
        """Run one guarded sync; ``None`` means another cycle held the gate."""
        if self._gate.locked():
            self.cycles_skipped += 1
            logger.debug("trigger_cycle_skipped", mailbox=self.mailbox)
            return None
        async with self._gate:
            try:
                return await self._sync()
            except Exception:
                self.cycles_failed += 1
                logger.exception("trigger_poll_failed", mailbox=self.mailbox)
                return 0
            finally:
                self.last_poll_time = datetime.now(UTC)

    async def _sync(self) -> int:
        trigger_id = self._settings.trigger_id
        async with self._session_factory(self._imap) as session:
            status = await session.status(self.mailbox)
        max_uid = max(status.uid_next - 1, 0)

        stored = await self._store.load(trigger_id)
        if stored is not None and stored.uid_validity not in (None, status.uid_validity):
            logger.warning(
                "trigger_uid_validity_changed",
                mailbox=self.mailbox,
                stored=stored.uid_validity,
                current=status.uid_validity,
            )
            stored = None

        if stored is None:
            await self._checkpoint(max_uid, status.uid_validity)
            logger.info("trigger_watermark_initialized", mailbox=self.mailbox, last_uid=max_uid)
            return 0

        self.last_uid = stored.last_uid
        if max_uid <= stored.last_uid:
            if stored.uid_validity is None:
                await self._checkpoint(stored.last_uid, status.uid_validity)
            return 0

        emitted = 0
        for uid in range(max(stored.last_uid + 1, 1), max_uid + 1):
            try:
                if await self._emit_one(uid):
                    emitted += 1
            except Exception:
                logger.exception("trigger_message_failed", mailbox=self.mailbox, uid=uid)

        await self._checkpoint(max_uid, status.uid_validity)
        logger.info(
            "trigger_cycle_completed", mailbox=self.mailbox, emitted=emitted, last_uid=max_uid
        )
        return emitted

    async def _checkpoint(self, last_uid: int, uid_validity: int) -> None:
        await self._store.save(
            self._settings.trigger_id,
            Watermark(last_uid=last_uid, uid_validity=uid_validity),
        )
        self.last_uid = last_uid

    async def _emit_one(self, uid: int) -> bool:
        async with self._session_factory(self._imap) as session:
            try:
                result = await enrich_message(
                    session,
                    self.mailbox,
                    uid,
                    include_raw=True,
                    attachments_mode=self._settings.attachments_mode,
                    binary_prefix=self._settings.binary_prefix,
                    attachment_filter=self._filter,
                    binary_store=self._binary_store,
                )
            except NotFoundError:
                # UIDs are sparse: expunged or moved messages leave gaps
                logger.debug("trigger_uid_missing", mailbox=self.mailbox, uid=uid)
                return False

            record = format_record(result, self._settings.output_format)
            await self._emitter.emit(record, key=f"{self.mailbox}:{uid}")
            self.messages_emitted += 1
            await self._apply_side_effects(session, uid)
        return True

    async def _apply_side_effects(self, session: ImapSession, uid: int) -> None:
        add_flags = partial(session.update_flags, [uid], self.mailbox, FlagAction.ADD)
        steps = []
        if self._settings.mark_seen:
            steps.append(("mark_seen", partial(add_flags, [SEEN_FLAG])))
        if self._extra_flags:
            steps.append(("add_flags", partial(add_flags, self._extra_flags)))
        if self._settings.move_to_mailbox:
            target = self._settings.move_to_mailbox
            steps.append(("move", partial(session.move, [uid], self.mailbox, target)))

        for name, step in steps:
            try:
                await step()
            except Exception as exc:
                logger.warning(
                    "trigger_side_effect_failed",
                    step=name,
                    mailbox=self.mailbox,
                    uid=uid,
                    error=str(exc),
                )

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_details(self) -> dict[str, Any]:
        return {
            "trigger_id": self._settings.trigger_id,
            "mailbox": self.mailbox,
            "strategy": self.strategy.value if self.strategy else None,
            "idle_connected": self._monitor.connected if self._monitor else None,
            "last_uid": self.last_uid,
            "last_poll_time": self.last_poll_time.isoformat() if self.last_poll_time else None,
            "messages_emitted": self.messages_emitted,
            "cycles_skipped": self.cycles_skipped,
            "cycles_failed": self.cycles_failed,
        }
