"""Tests for mail-piece stores."""

from datetime import date, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from maildigest.database import MailPiece, create_engine, create_schema, create_session_factory
from maildigest.ingestion.models import IngestRecord, InsertOutcome, SectionHint
from maildigest.ingestion.store import InMemoryStore, SqlAlchemyStore


def _record(user_id="user-1", fingerprint="f" * 64, message_id="msg-1"):
    return IngestRecord(
        user_id=user_id,
        message_id=message_id,
        fingerprint=fingerprint,
        image_locator="cid:scan-001",
        delivery_date=date(2025, 11, 15),
        raw_sender_text="Widgets Inc",
        section_hint=SectionHint.TODAY,
        llm_raw_output={"mailType": "flyer"},
    )


class TestInMemoryStore:
    """Test the process-local store."""

    @pytest.mark.asyncio
    async def test_insert_and_dedup(self):
        """One record per user and fingerprint."""
        store = InMemoryStore()

        assert await store.insert(_record()) == InsertOutcome.INSERTED
        assert await store.insert(_record(message_id="msg-2")) == InsertOutcome.DUPLICATE
        assert await store.insert(_record(user_id="user-2")) == InsertOutcome.INSERTED
        assert await store.exists_by_fingerprint("user-1", "f" * 64)
        assert not await store.exists_by_fingerprint("user-1", "e" * 64)
        assert len(store.for_user("user-1")) == 1

    @pytest.mark.asyncio
    async def test_list_recent_newest_first(self):
        """The review queue lists one user's records newest first, bounded by the limit."""
        store = InMemoryStore()
        for index in range(3):
            await store.insert(_record(fingerprint=str(index) * 64, message_id=f"msg-{index}"))
        await store.insert(_record(user_id="user-2"))

        recent = await store.list_recent("user-1", limit=2)

        assert [record.message_id for record in recent] == ["msg-2", "msg-1"]
        assert await store.list_recent("user-3") == []


class TestSqlAlchemyStore:
    """Test the database-backed store on a temporary SQLite file."""

    @pytest_asyncio.fixture
    async def session_factory(self, tmp_path):
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'mail.db'}")
        await create_schema(engine)
        yield create_session_factory(engine)
        await engine.dispose()

    @pytest.mark.asyncio
    async def test_insert_and_exists(self, session_factory):
        """Inserted records are found by fingerprint."""
        store = SqlAlchemyStore(session_factory)

        assert not await store.exists_by_fingerprint("user-1", "f" * 64)
        assert await store.insert(_record()) == InsertOutcome.INSERTED
        assert await store.exists_by_fingerprint("user-1", "f" * 64)
        assert not await store.exists_by_fingerprint("user-2", "f" * 64)

        async with session_factory() as session:
            row = (await session.execute(select(MailPiece))).scalar_one()
        assert row.message_id == "msg-1:" + "f" * 16
        assert row.source_message_id == "msg-1"
        assert row.section_hint == "today"
        assert row.llm_raw_output == {"mailType": "flyer"}

    @pytest.mark.asyncio
    async def test_conflict_is_duplicate(self, session_factory):
        """The uniqueness constraint maps to DUPLICATE instead of raising."""
        store = SqlAlchemyStore(session_factory)

        assert await store.insert(_record()) == InsertOutcome.INSERTED
        assert await store.insert(_record(message_id="msg-2")) == InsertOutcome.DUPLICATE

        async with session_factory() as session:
            count = (await session.execute(select(func.count()).select_from(MailPiece))).scalar_one()
        assert count == 1

    @pytest.mark.asyncio
    async def test_non_duplicate_integrity_error_is_raised(self, session_factory):
        """A NOT NULL violation is an error, not a silent duplicate."""
        store = SqlAlchemyStore(session_factory)
        broken = _record()
        broken.image_locator = None

        with pytest.raises(IntegrityError):
            await store.insert(broken)

        assert not await store.exists_by_fingerprint("user-1", "f" * 64)
        assert await store.insert(_record()) == InsertOutcome.INSERTED

    @pytest.mark.asyncio
    async def test_list_recent_newest_first(self, session_factory):
        """Stored rows come back as records, newest first, for one user only."""
        store = SqlAlchemyStore(session_factory)
        base = datetime(2025, 11, 15, 8, 0, 0)
        for index in range(3):
            record = _record(fingerprint=str(index) * 64, message_id=f"msg-{index}")
            record.created_at = base + timedelta(minutes=index)
            await store.insert(record)
        await store.insert(_record(user_id="user-2"))

        recent = await store.list_recent("user-1", limit=2)

        assert [record.message_id for record in recent] == ["msg-2", "msg-1"]
        assert recent[0].fingerprint == "2" * 64
        assert recent[0].record_id == "msg-2:" + "2" * 16
        assert recent[0].section_hint == SectionHint.TODAY
        assert recent[0].delivery_date == date(2025, 11, 15)
        assert recent[0].to_dict()["sender"] == "Widgets Inc"
        assert len(await store.list_recent("user-1")) == 3
        assert await store.list_recent("user-3") == []
