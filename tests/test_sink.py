"""Tests for imap_advanced.sink."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest

from imap_advanced.config import KafkaConfig, RetryConfig
from imap_advanced.sink import KafkaEmitter

PATCH_PRODUCER = "imap_advanced.sink.AIOKafkaProducer"


@pytest.fixture
def emitter(kafka_config: KafkaConfig, retry_config: RetryConfig) -> KafkaEmitter:
    return KafkaEmitter(kafka_config, retry_config, source="imap-test")


class TestKafkaEmitter:
    @pytest.mark.asyncio
    async def test_start_creates_producer(self, emitter: KafkaEmitter):
        with patch(PATCH_PRODUCER) as MockProducer:
            mock_instance = AsyncMock()
            MockProducer.return_value = mock_instance
            await emitter.start()
            MockProducer.assert_called_once_with(
                bootstrap_servers="localhost:9092", acks="all", compression_type="gzip"
            )
            mock_instance.start.assert_awaited_once()
        assert emitter.started

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self, emitter: KafkaEmitter):
        await emitter.stop()

    @pytest.mark.asyncio
    async def test_stop_calls_producer_stop(self, emitter: KafkaEmitter):
        with patch(PATCH_PRODUCER) as MockProducer:
            mock_instance = AsyncMock()
            MockProducer.return_value = mock_instance
            await emitter.start()
            await emitter.stop()
            mock_instance.stop.assert_awaited_once()
        assert not emitter.started

    @pytest.mark.asyncio
    async def test_emit(self, emitter: KafkaEmitter):
        with patch(PATCH_PRODUCER) as MockProducer:
            mock_instance = AsyncMock()
            MockProducer.return_value = mock_instance
            await emitter.start()

            await emitter.emit({"uid": 51, "subject": "Hi"}, key="INBOX:51")

            mock_instance.send_and_wait.assert_awaited_once()
            call_args = mock_instance.send_and_wait.call_args
            assert call_args[0][0] == "imap-messages"
            assert json.loads(call_args[1]["value"]) == {"uid": 51, "subject": "Hi"}
            assert call_args[1]["key"] == b"INBOX:51"

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, emitter: KafkaEmitter):
        with patch(PATCH_PRODUCER) as MockProducer:
            mock_instance = AsyncMock()
            mock_instance.send_and_wait.side_effect = [ConnectionError("broker away"), None]
            MockProducer.return_value = mock_instance
            await emitter.start()

            await emitter.emit({"uid": 1}, key="INBOX:1")

            topics = [c[0][0] for c in mock_instance.send_and_wait.call_args_list]
            assert topics == ["imap-messages", "imap-messages"]

    @pytest.mark.asyncio
    async def test_exhausted_retries_go_to_dead_letter(self, emitter: KafkaEmitter):
        async def send(topic, *, value, key):
            if topic == "imap-messages":
                raise ConnectionError("broker away")

        with patch(PATCH_PRODUCER) as MockProducer:
            mock_instance = AsyncMock()
            mock_instance.send_and_wait.side_effect = send
            MockProducer.return_value = mock_instance
            await emitter.start()

            with pytest.raises(ConnectionError, match="broker away"):
                await emitter.emit({"uid": 7}, key="INBOX:7")

            calls = mock_instance.send_and_wait.call_args_list
            assert [c[0][0] for c in calls] == [
                "imap-messages",
                "imap-messages",
                "imap-messages-dlq",
            ]
            envelope = json.loads(calls[-1][1]["value"])
            assert envelope["source"] == "imap-test"
            assert envelope["error"] == "broker away"
            assert envelope["attempts"] == 2
            assert envelope["record"] == {"uid": 7}
            assert "failed_at" in envelope
            assert calls[-1][1]["key"] == b"INBOX:7"

    @pytest.mark.asyncio
    async def test_dead_letter_failure_keeps_original_error(self, emitter: KafkaEmitter):
        with patch(PATCH_PRODUCER) as MockProducer:
            mock_instance = AsyncMock()
            mock_instance.send_and_wait.side_effect = ConnectionError("all brokers down")
            MockProducer.return_value = mock_instance
            await emitter.start()

            with pytest.raises(ConnectionError, match="all brokers down"):
                await emitter.emit({"uid": 7}, key="INBOX:7")
            assert mock_instance.send_and_wait.await_count == 3

    @pytest.mark.asyncio
    async def test_emit_not_started_raises(self, emitter: KafkaEmitter):
        with pytest.raises(AssertionError, match="Producer not started"):
            await emitter.emit({"uid": 1}, key="INBOX:1")
