"""Binary attachment storage.

The enrichment pipeline decides the binary key; a store receives the bytes
and returns a reference the host can resolve later. All boto3 calls are
wrapped with ``asyncio.to_thread()`` to avoid blocking.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from dataclasses import dataclass
from typing import Protocol

import boto3
import structlog

from .config import S3Config

logger = structlog.get_logger()


class BinaryStore(Protocol):
    async def put(
        self,
        *,
        mailbox: str,
        uid: int,
        key: str,
        filename: str,
        content_type: str,
        payload: bytes,
    ) -> str:
        """Persist *payload* and return a reference for binary *key*."""
        ...


@dataclass
class StoredBinary:
    filename: str
    content_type: str
    payload: bytes


class MemoryBinaryStore:
    """Keeps attachment bytes in a dict; used for one-shot actions and tests."""

    def __init__(self) -> None:
        self.items: dict[str, StoredBinary] = {}

    async def put(
        self,
        *,
        mailbox: str,
        uid: int,
        key: str,
        filename: str,
        content_type: str,
        payload: bytes,
    ) -> str:
        ref = f"memory://{mailbox}/{uid}/{key}"
        self.items[ref] = StoredBinary(filename, content_type, payload)
        return ref


class S3BinaryStore:
    """Upload attachment bytes to S3 under a per-message prefix."""

    def __init__(self, config: S3Config) -> None:
        self._config = config
        self._client = None  # type: ignore[assignment]

    async def start(self) -> None:
        """Create the boto3 S3 client."""
        kwargs: dict = {"region_name": self._config.region}
        if self._config.endpoint_url:
            kwargs["endpoint_url"] = self._config.endpoint_url
        self._client = await asyncio.to_thread(boto3.client, "s3", **kwargs)
        logger.info("s3_store_started", bucket=self._config.bucket)

    async def stop(self) -> None:
        self._client = None
        logger.info("s3_store_stopped")

    async def put(
        self,
        *,
        mailbox: str,
        uid: int,
        key: str,
        filename: str,
        content_type: str,
        payload: bytes,
    ) -> str:
        """Upload a single attachment. Returns the ``s3://`` URI."""
        assert self._client is not None, "S3 client not started"
        content_hash = hashlib.sha256(payload).hexdigest()[:12]
        object_key = (
            f"{self._config.prefix}/{_sanitize(mailbox)}/{uid}/"
            f"{key}_{content_hash}_{_sanitize(filename)}"
        )

        await asyncio.to_thread(
            self._client.put_object,
            Bucket=self._config.bucket,
            Key=object_key,
            Body=payload,
            ContentType=content_type,
        )
        uri = f"s3://{self._config.bucket}/{object_key}"
        logger.debug("attachment_uploaded", mailbox=mailbox, uid=uid, key=key, uri=uri)
        return uri


def _sanitize(name: str) -> str:
    """Remove characters unsafe for S3 keys."""
    return re.sub(r"[^\w.\-]", "_", name)
