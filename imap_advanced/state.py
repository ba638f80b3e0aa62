"""Watermark persistence keyed by trigger identity."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Protocol

import structlog

from .models import Watermark

logger = structlog.get_logger()


class WatermarkStore(Protocol):
    async def load(self, trigger_id: str) -> Watermark | None: ...

    async def save(self, trigger_id: str, watermark: Watermark) -> None: ...


class MemoryWatermarkStore:
    def __init__(self) -> None:
        self.watermarks: dict[str, Watermark] = {}

    async def load(self, trigger_id: str) -> Watermark | None:
        return self.watermarks.get(trigger_id)

    async def save(self, trigger_id: str, watermark: Watermark) -> None:
        self.watermarks[trigger_id] = watermark


class JsonFileWatermarkStore:
    """All watermarks live in one JSON document, replaced atomically on save.

    Layout: ``{"<trigger_id>": {"lastUid": 50, "uidValidity": 7}}``.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    async def load(self, trigger_id: str) -> Watermark | None:
        data = await asyncio.to_thread(self._read)
        entry = data.get(trigger_id)
        if entry is None:
            return None
        return Watermark.model_validate(entry)

    async def save(self, trigger_id: str, watermark: Watermark) -> None:
        await asyncio.to_thread(self._write_entry, trigger_id, watermark)
        logger.debug("watermark_saved", trigger_id=trigger_id, last_uid=watermark.last_uid)

    def _read(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError):
            # Treated as a first run: the watermark is re-initialized, nothing replayed
            logger.warning("watermark_state_unreadable", path=str(self._path))
            return {}
        return data if isinstance(data, dict) else {}

    def _write_entry(self, trigger_id: str, watermark: Watermark) -> None:
        data = self._read()
        data[trigger_id] = watermark.to_payload()

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2, sort_keys=True)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
