"""TriggerRunner: wires one trigger to Kafka, S3, the state file and health probes."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import structlog
import uvicorn

from .binary import S3BinaryStore
from .config import RunnerConfig
from .errors import ValidationError
from .health import create_health_app
from .models import AttachmentMode, RunnerStatus
from .shutdown import install_signal_handlers
from .sink import KafkaEmitter
from .state import JsonFileWatermarkStore
from .trigger import TriggerContext

logger = structlog.get_logger()


class TriggerRunner:
    """Runs a single :class:`TriggerContext` until SIGTERM / SIGINT.

    ``run()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * the trigger (watermark sync, timer, IDLE monitor)
    * the FastAPI health server

    Call ``asyncio.run(runner.run())`` to start it.
    """

    def __init__(self, config: RunnerConfig) -> None:
        self.config = config
        self.status: RunnerStatus = RunnerStatus.STARTING
        self.start_time: float = time.monotonic()

        self._binary_store: S3BinaryStore | None = None
        if config.trigger.attachments_mode is AttachmentMode.BINARY:
            if not config.s3.bucket:
                raise ValidationError("S3_BUCKET is required for binary attachment mode")
            self._binary_store = S3BinaryStore(config.s3)

        self._emitter = KafkaEmitter(config.kafka, config.retry, source=config.name)
        self._trigger = TriggerContext(
            config.trigger,
            config.imap,
            JsonFileWatermarkStore(config.state_path),
            self._emitter,
            binary_store=self._binary_store,
            retry=config.retry,
        )
        self._shutdown_event = asyncio.Event()

    def health_details(self) -> dict[str, Any]:
        return self._trigger.health_details()

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def _run_trigger(self) -> None:
        await self._trigger.start()
        self.status = RunnerStatus.RUNNING
        try:
            await self._shutdown_event.wait()
        finally:
            await self._trigger.stop()

    async def _run_health_server(self) -> None:
        """Serve the health app until the shutdown event fires."""
        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start all subsystems and run until shutdown."""
        install_signal_handlers(self._shutdown_event)
        self.start_time = time.monotonic()
        logger.info("runner_starting", name=self.config.name, mailbox=self._trigger.mailbox)

        await self._emitter.start()
        if self._binary_store is not None:
            await self._binary_store.start()

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_trigger())
                tg.create_task(self._run_health_server())
        except* Exception:
            self.status = RunnerStatus.DEGRADED
            logger.exception("runner_task_group_error", name=self.config.name)
        finally:
            self.status = RunnerStatus.STOPPING
            if self._binary_store is not None:
                await self._binary_store.stop()
            await self._emitter.stop()
            self.status = RunnerStatus.STOPPED
            logger.info("runner_stopped", name=self.config.name)
