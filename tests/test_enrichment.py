"""Tests for imap_advanced.enrichment."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from tests.conftest import _build_multipart_email, _build_plain_email
from tests.fakes import FakeServer

from imap_advanced.attachments import AttachmentFilter
from imap_advanced.binary import MemoryBinaryStore
from imap_advanced.enrichment import enrich_message
from imap_advanced.errors import NotFoundError, ValidationError
from imap_advanced.models import AttachmentMode


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


async def _connected(server: FakeServer):
    session = server.session()
    await session.connect()
    return session


class TestEnrichHeaders:
    @pytest.mark.asyncio
    async def test_plain_message_fields(self, server: FakeServer, plain_eml_bytes: bytes):
        uid = server.add(plain_eml_bytes, flags=("\\Seen",))
        session = await _connected(server)

        result = await enrich_message(session, "INBOX", uid)

        message = result.message
        assert message.uid == uid
        assert message.seq == 1
        assert message.message_id == "<test-001@example.com>"
        assert message.subject == "Test Subject"
        assert message.date == "2025-06-02T12:00:00+00:00"
        assert message.from_[0].address == "sender@example.com"
        assert message.flags == ["\\Seen"]
        assert message.attachments == []
        assert result.binary == {}

    @pytest.mark.asyncio
    async def test_headers_only_fetch_by_default(self, server: FakeServer, plain_eml_bytes: bytes):
        uid = server.add(plain_eml_bytes)
        session = await _connected(server)

        result = await enrich_message(session, "INBOX", uid)

        assert ("fetch_one", uid, False) in server.calls
        assert result.raw_bytes is None
        assert result.message.body.text == ""

    @pytest.mark.asyncio
    async def test_include_raw_parses_body(self, server: FakeServer, plain_eml_bytes: bytes):
        uid = server.add(plain_eml_bytes)
        session = await _connected(server)

        result = await enrich_message(session, "INBOX", uid, include_raw=True)

        assert result.raw_bytes == plain_eml_bytes
        assert result.message.body.text == "Hello, World!"

    @pytest.mark.asyncio
    async def test_date_falls_back_to_internal_date(self, server: FakeServer):
        uid = server.add(
            _build_plain_email(date=None),
            internal_date=datetime(2025, 1, 5, 8, 30, tzinfo=UTC),
        )
        session = await _connected(server)

        result = await enrich_message(session, "INBOX", uid)

        assert result.message.date == "2025-01-05T08:30:00+00:00"

    @pytest.mark.asyncio
    async def test_no_date_anywhere(self, server: FakeServer):
        uid = server.add(_build_plain_email(date=None))
        session = await _connected(server)

        result = await enrich_message(session, "INBOX", uid)

        assert result.message.date is None

    @pytest.mark.asyncio
    async def test_thread_info(self, server: FakeServer):
        raw = _build_plain_email(references="<a@x> <b@x>", in_reply_to="<b@x>")
        uid = server.add(raw)
        session = await _connected(server)

        result = await enrich_message(session, "INBOX", uid)

        thread = result.message.thread
        assert thread.in_reply_to == "<b@x>"
        assert thread.references == ["<a@x>", "<b@x>", "<test-001@example.com>"]

    @pytest.mark.asyncio
    async def test_missing_uid(self, server: FakeServer):
        session = await _connected(server)
        with pytest.raises(NotFoundError):
            await enrich_message(session, "INBOX", 404)


class TestEnrichAttachments:
    @pytest.mark.asyncio
    async def test_none_mode_lists_nothing(self, server: FakeServer, multipart_eml_bytes: bytes):
        uid = server.add(multipart_eml_bytes)
        session = await _connected(server)

        result = await enrich_message(session, "INBOX", uid)

        assert result.message.attachments == []

    @pytest.mark.asyncio
    async def test_metadata_only(self, server: FakeServer, multipart_eml_bytes: bytes):
        uid = server.add(multipart_eml_bytes)
        session = await _connected(server)

        result = await enrich_message(
            session, "INBOX", uid, attachments_mode=AttachmentMode.METADATA_ONLY
        )

        assert ("fetch_one", uid, True) in server.calls
        payload = result.message.to_payload()
        assert payload["attachments"] == [
            {"filename": "report.pdf", "contentType": "application/pdf", "size": 25},
            {"filename": "data.csv", "contentType": "text/csv", "size": 14},
        ]
        assert result.binary == {}
        assert result.message.body.text == "Plain body"

    @pytest.mark.asyncio
    async def test_metadata_only_with_filter(self, server: FakeServer, multipart_eml_bytes: bytes):
        uid = server.add(multipart_eml_bytes)
        session = await _connected(server)

        result = await enrich_message(
            session,
            "INBOX",
            uid,
            attachments_mode="metadataOnly",
            attachment_filter=AttachmentFilter(allowed_mime_types="text/csv"),
        )

        assert [a.filename for a in result.message.attachments] == ["data.csv"]

    @pytest.mark.asyncio
    async def test_binary_mode_stores_kept_attachments(self, server: FakeServer):
        raw = _build_multipart_email(
            attachments=[
                ("a.png", "image/png", b"\x89PNG"),
                ("b.pdf", "application/pdf", b"%PDF-1"),
                ("c.pdf", "application/pdf", b"%PDF-2"),
            ]
        )
        uid = server.add(raw)
        session = await _connected(server)
        store = MemoryBinaryStore()

        result = await enrich_message(
            session,
            "INBOX",
            uid,
            attachments_mode=AttachmentMode.BINARY,
            binary_prefix="file_",
            attachment_filter=AttachmentFilter(allowed_mime_types="application/pdf"),
            binary_store=store,
        )

        assert sorted(result.binary) == ["file_0", "file_1"]
        assert [a.binary_property for a in result.message.attachments] == ["file_0", "file_1"]
        stored = store.items[result.binary["file_1"]]
        assert stored.filename == "c.pdf"
        assert stored.payload == b"%PDF-2"

    @pytest.mark.asyncio
    async def test_binary_mode_default_prefix(self, server: FakeServer, multipart_eml_bytes: bytes):
        uid = server.add(multipart_eml_bytes)
        session = await _connected(server)

        result = await enrich_message(
            session,
            "INBOX",
            uid,
            attachments_mode=AttachmentMode.BINARY,
            binary_store=MemoryBinaryStore(),
        )

        assert sorted(result.binary) == ["attachment_0", "attachment_1"]

    @pytest.mark.asyncio
    async def test_binary_mode_requires_store(self, server: FakeServer, multipart_eml_bytes: bytes):
        uid = server.add(multipart_eml_bytes)
        session = await _connected(server)

        with pytest.raises(ValidationError):
            await enrich_message(session, "INBOX", uid, attachments_mode=AttachmentMode.BINARY)
        assert server.calls == []
