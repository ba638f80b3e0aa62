"""Destinations for records emitted by the trigger."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from aiokafka import AIOKafkaProducer

from .config import KafkaConfig, RetryConfig
from .retry import with_retry

logger = structlog.get_logger()


class Emitter(Protocol):
    async def emit(self, record: dict[str, Any], *, key: str) -> None:
        """Deliver one formatted record; raise if it could not be delivered."""
        ...


class KafkaEmitter:
    """Publishes trigger records as JSON to a Kafka topic.

    Delivery is retried with the configured backoff; a record that still
    fails is wrapped in a dead-letter envelope and sent to the dead-letter
    topic, and the original error is re-raised to the caller.
    """

    def __init__(self, config: KafkaConfig, retry: RetryConfig, *, source: str) -> None:
        self._config = config
        self._retry = retry
        self._source = source
        self._producer: AIOKafkaProducer | None = None

    @property
    def started(self) -> bool:
        return self._producer is not None

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=self._config.bootstrap_servers,
            acks=self._config.producer_acks,
            compression_type=self._config.producer_compression,
        )
        await self._producer.start()
        logger.info("kafka_emitter_started", servers=self._config.bootstrap_servers)

    async def stop(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
            logger.info("kafka_emitter_stopped")

    async def emit(self, record: dict[str, Any], *, key: str) -> None:
        value = json.dumps(record).encode("utf-8")

        @with_retry(self._retry, retryable_exceptions=(Exception,), operation="kafka_send")
        async def _send() -> None:
            await self._send(self._config.topic, value, key)

        try:
            await _send()
        except Exception as exc:
            logger.error("kafka_delivery_failed_permanently", key=key, error=str(exc))
            await self._dead_letter(record, key=key, error=str(exc))
            raise
        logger.debug("record_emitted", topic=self._config.topic, key=key)

    async def _dead_letter(self, record: dict[str, Any], *, key: str, error: str) -> None:
        envelope = {
            "source": self._source,
            "error": error,
            "attempts": self._retry.max_attempts,
            "failed_at": datetime.now(UTC).isoformat(),
            "record": record,
        }
        try:
            await self._send(
                self._config.dead_letter_topic, json.dumps(envelope).encode("utf-8"), key
            )
        except Exception as exc:
            logger.error("dead_letter_failed", key=key, error=str(exc))
            return
        logger.warning("dead_letter_sent", topic=self._config.dead_letter_topic, key=key)

    async def _send(self, topic: str, value: bytes, key: str) -> None:
        assert self._producer is not None, "Producer not started"
        await self._producer.send_and_wait(topic, value=value, key=key.encode("utf-8"))
