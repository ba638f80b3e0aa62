"""Tests for imap_advanced.state."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from imap_advanced.models import Watermark
from imap_advanced.state import JsonFileWatermarkStore, MemoryWatermarkStore


class TestMemoryWatermarkStore:
    @pytest.mark.asyncio
    async def test_roundtrip(self):
        store = MemoryWatermarkStore()
        assert await store.load("t1") is None
        await store.save("t1", Watermark(last_uid=5, uid_validity=2))
        assert (await store.load("t1")).last_uid == 5


class TestJsonFileWatermarkStore:
    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path: Path):
        store = JsonFileWatermarkStore(tmp_path / "state.json")
        assert await store.load("t1") is None

    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path: Path):
        path = tmp_path / "nested" / "state.json"
        store = JsonFileWatermarkStore(path)

        await store.save("t1", Watermark(last_uid=50, uid_validity=7))

        loaded = await JsonFileWatermarkStore(path).load("t1")
        assert loaded == Watermark(last_uid=50, uid_validity=7)
        assert json.loads(path.read_text()) == {"t1": {"lastUid": 50, "uidValidity": 7}}

    @pytest.mark.asyncio
    async def test_keyed_by_trigger(self, tmp_path: Path):
        store = JsonFileWatermarkStore(tmp_path / "state.json")
        await store.save("a", Watermark(last_uid=1))
        await store.save("b", Watermark(last_uid=2))
        await store.save("a", Watermark(last_uid=3))

        assert (await store.load("a")).last_uid == 3
        assert (await store.load("b")).last_uid == 2
        assert (await store.load("a")).uid_validity is None

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, tmp_path: Path):
        store = JsonFileWatermarkStore(tmp_path / "state.json")
        await store.save("a", Watermark(last_uid=1))
        assert [p.name for p in tmp_path.iterdir()] == ["state.json"]

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_as_empty(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        store = JsonFileWatermarkStore(path)

        assert await store.load("t1") is None
        await store.save("t1", Watermark(last_uid=9))
        assert (await store.load("t1")).last_uid == 9
