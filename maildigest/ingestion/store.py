"""Mail-piece persistence: the abstract store and two implementations."""

from abc import ABC, abstractmethod
from typing import Dict, List, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..database.models import MailPiece
from .models import IngestRecord, InsertOutcome, SectionHint

logger = structlog.get_logger(__name__)

DEFAULT_QUEUE_LIMIT = 50


class Store(ABC):
    """Dedup lookup and persistence for ingest records.

    Implementations enforce at most one record per ``(user_id, fingerprint)``.
    """

    @abstractmethod
    async def exists_by_fingerprint(self, user_id: str, fingerprint: str) -> bool:
        """Check whether the user already has a record with this fingerprint."""
        pass

    @abstractmethod
    async def insert(self, record: IngestRecord) -> InsertOutcome:
        """Insert a record; a uniqueness conflict returns DUPLICATE instead of raising."""
        pass

    @abstractmethod
    async def list_recent(self, user_id: str, limit: int = DEFAULT_QUEUE_LIMIT) -> List[IngestRecord]:
        """The user's most recently stored records, newest first."""
        pass


class InMemoryStore(Store):
    """Process-local store, used by tests and dry runs."""

    def __init__(self):
        """Initialize in-memory store."""
        self.records: Dict[Tuple[str, str], IngestRecord] = {}

    async def exists_by_fingerprint(self, user_id: str, fingerprint: str) -> bool:
        return (user_id, fingerprint) in self.records

    async def insert(self, record: IngestRecord) -> InsertOutcome:
        key = (record.user_id, record.fingerprint)
        if key in self.records:
            return InsertOutcome.DUPLICATE
        self.records[key] = record
        return InsertOutcome.INSERTED

    async def list_recent(self, user_id: str, limit: int = DEFAULT_QUEUE_LIMIT) -> List[IngestRecord]:
        return list(reversed(self.for_user(user_id)))[:max(limit, 0)]

    def for_user(self, user_id: str) -> List[IngestRecord]:
        """Records of one user in insertion order."""
        return [record for (owner, _), record in self.records.items() if owner == user_id]


def _record_from_row(row: MailPiece) -> IngestRecord:
    return IngestRecord(
        user_id=row.user_id,
        message_id=row.source_message_id,
        fingerprint=row.fingerprint,
        image_locator=row.image_locator,
        delivery_date=row.delivery_date,
        raw_sender_text=row.raw_sender_text,
        section_hint=SectionHint(row.section_hint) if row.section_hint else None,
        ocr_text=row.ocr_text,
        llm_sender=row.llm_sender,
        llm_mail_type=row.llm_mail_type,
        llm_summary=row.llm_summary,
        llm_is_important=row.llm_is_important,
        llm_importance_reason=row.llm_importance_reason,
        llm_raw_output=row.llm_raw_output,
        created_at=row.created_at,
    )


class SqlAlchemyStore(Store):
    """Store backed by the ``mail_pieces`` table."""

    def __init__(self, session_factory: async_sessionmaker):
        """Initialize SQLAlchemy store."""
        self.session_factory = session_factory

    async def exists_by_fingerprint(self, user_id: str, fingerprint: str) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(MailPiece.id).where(
                    MailPiece.user_id == user_id,
                    MailPiece.fingerprint == fingerprint
                ).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def insert(self, record: IngestRecord) -> InsertOutcome:
        """Insert one row.

        Only a conflict on the user's fingerprint is a DUPLICATE. Any other
        integrity failure (a NULL in a required column, say) is re-raised.
        """
        row = MailPiece(
            user_id=record.user_id,
            message_id=record.record_id,
            source_message_id=record.message_id,
            fingerprint=record.fingerprint,
            image_locator=record.image_locator,
            delivery_date=record.delivery_date,
            section_hint=record.section_hint.value if record.section_hint else None,
            raw_sender_text=record.raw_sender_text,
            ocr_text=record.ocr_text,
            llm_sender=record.llm_sender,
            llm_mail_type=record.llm_mail_type,
            llm_summary=record.llm_summary,
            llm_is_important=record.llm_is_important,
            llm_importance_reason=record.llm_importance_reason,
            llm_raw_output=record.llm_raw_output,
            created_at=record.created_at,
        )

        async with self.session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                if not await self.exists_by_fingerprint(record.user_id, record.fingerprint):
                    logger.error("Mail piece violates a table constraint",
                                 user_id=record.user_id, fingerprint=record.fingerprint[:12], error=str(exc.orig))
                    raise
                logger.info("Mail piece already stored",
                            user_id=record.user_id, fingerprint=record.fingerprint[:12])
                return InsertOutcome.DUPLICATE

        return InsertOutcome.INSERTED

    async def list_recent(self, user_id: str, limit: int = DEFAULT_QUEUE_LIMIT) -> List[IngestRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(MailPiece)
                .where(MailPiece.user_id == user_id)
                .order_by(MailPiece.created_at.desc())
                .limit(max(limit, 0))
            )
            return [_record_from_row(row) for row in result.scalars()]
