"""Tests for imap_advanced.threads."""

from __future__ import annotations

import pytest

from tests.conftest import _build_plain_email
from tests.fakes import FakeServer

from imap_advanced.errors import NotFoundError, ValidationError
from imap_advanced.threads import resolve_identifier, resolve_thread


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


async def _connected(server: FakeServer):
    session = server.session()
    await session.connect()
    return session


class TestResolveIdentifier:
    @pytest.mark.asyncio
    async def test_uid_wins(self, server: FakeServer):
        session = await _connected(server)
        assert await resolve_identifier(session, "INBOX", uid=7, message_id="<x@y>") == 7
        assert server.calls == []

    @pytest.mark.asyncio
    async def test_lookup_by_message_id(self, server: FakeServer):
        server.add(_build_plain_email(message_id="<first@x>"))
        uid = server.add(_build_plain_email(message_id="<second@x>"))
        session = await _connected(server)

        assert await resolve_identifier(session, "INBOX", message_id="<second@x>") == uid

    @pytest.mark.asyncio
    async def test_unknown_message_id(self, server: FakeServer):
        session = await _connected(server)
        with pytest.raises(NotFoundError):
            await resolve_identifier(session, "INBOX", message_id="<ghost@x>")

    @pytest.mark.asyncio
    async def test_neither_given(self, server: FakeServer):
        session = await _connected(server)
        with pytest.raises(ValidationError):
            await resolve_identifier(session, "INBOX")


class TestResolveThread:
    @pytest.mark.asyncio
    async def test_lone_message(self, server: FakeServer):
        uid = server.add(_build_plain_email(subject="Standalone", message_id="<solo@x>"))
        server.add(_build_plain_email(subject="Standalone", message_id="<other@x>"))
        session = await _connected(server)

        result = await resolve_thread(session, "INBOX", uid)

        assert result.message_uid == uid
        assert result.references == ["<solo@x>"]
        assert [m.uid for m in result.messages] == [uid]
        assert not any(call[0] == "search" and "subject" in call[1] for call in server.calls)

    @pytest.mark.asyncio
    async def test_one_hop_expansion(self, server: FakeServer):
        root = server.add(
            _build_plain_email(
                subject="Plan", message_id="<root@x>", date="Mon, 02 Jun 2025 09:00:00 +0000"
            )
        )
        reply = server.add(
            _build_plain_email(
                subject="Re: Plan",
                message_id="<reply@x>",
                in_reply_to="<root@x>",
                references="<root@x>",
                date="Mon, 02 Jun 2025 10:00:00 +0000",
            )
        )
        seed = server.add(
            _build_plain_email(
                subject="Re: Plan",
                message_id="<seed@x>",
                in_reply_to="<reply@x>",
                references="<root@x> <reply@x>",
                date="Mon, 02 Jun 2025 11:00:00 +0000",
            )
        )
        # References the seed but is never referenced by it
        server.add(
            _build_plain_email(
                subject="Re: Plan",
                message_id="<later@x>",
                references="<root@x> <reply@x> <seed@x>",
            )
        )
        session = await _connected(server)

        result = await resolve_thread(session, "INBOX", seed)

        assert [m.uid for m in result.messages] == [root, reply, seed]
        assert result.messages[0].date == "2025-06-02T09:00:00+00:00"
        assert set(result.references) == {"<root@x>", "<reply@x>", "<seed@x>"}

    @pytest.mark.asyncio
    async def test_messages_sorted_by_date_with_undated_first(self, server: FakeServer):
        late = server.add(
            _build_plain_email(message_id="<late@x>", date="Tue, 03 Jun 2025 12:00:00 +0000")
        )
        undated = server.add(_build_plain_email(message_id="<undated@x>", date=None))
        seed = server.add(
            _build_plain_email(message_id="<seed@x>", references="<late@x> <undated@x>")
        )
        session = await _connected(server)

        result = await resolve_thread(session, "INBOX", seed)

        assert [m.uid for m in result.messages] == [undated, seed, late]

    @pytest.mark.asyncio
    async def test_subject_fallback(self, server: FakeServer):
        first = server.add(_build_plain_email(subject="Quarterly report", message_id="<q1@x>"))
        seed = server.add(_build_plain_email(subject="RE: Quarterly report", message_id="<q2@x>"))
        server.add(_build_plain_email(subject="Lunch", message_id="<l@x>"))
        session = await _connected(server)

        result = await resolve_thread(session, "INBOX", seed, subject_fallback=True)

        assert sorted(m.uid for m in result.messages) == [first, seed]
        assert ("search", {"subject": "Quarterly report"}) in server.calls

    @pytest.mark.asyncio
    async def test_subject_fallback_skipped_when_references_exist(self, server: FakeServer):
        server.add(_build_plain_email(subject="Topic", message_id="<a@x>"))
        seed = server.add(
            _build_plain_email(subject="Topic", message_id="<b@x>", references="<a@x>")
        )
        session = await _connected(server)

        await resolve_thread(session, "INBOX", seed, subject_fallback=True)

        assert not any(call[0] == "search" and "subject" in call[1] for call in server.calls)

    @pytest.mark.asyncio
    async def test_missing_seed(self, server: FakeServer):
        session = await _connected(server)
        with pytest.raises(NotFoundError):
            await resolve_thread(session, "INBOX", 99)
