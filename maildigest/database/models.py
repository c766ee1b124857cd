"""SQLAlchemy 2.0 models for the mail-piece queue."""

from datetime import date, datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON, Boolean, Date, DateTime, Index, String, Text, UniqueConstraint
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class MailPiece(Base):
    """One physical mail piece seen in a digest."""

    __tablename__ = "mail_pieces"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    source_message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    image_locator: Mapped[str] = mapped_column(Text, nullable=False)
    delivery_date: Mapped[Optional[date]] = mapped_column(Date)
    section_hint: Mapped[Optional[str]] = mapped_column(String(32))
    raw_sender_text: Mapped[Optional[str]] = mapped_column(String(255))
    ocr_text: Mapped[Optional[str]] = mapped_column(Text)

    llm_sender: Mapped[Optional[str]] = mapped_column(String(255))
    llm_mail_type: Mapped[Optional[str]] = mapped_column(String(255))
    llm_summary: Mapped[Optional[str]] = mapped_column(Text)
    llm_is_important: Mapped[Optional[bool]] = mapped_column(Boolean)
    llm_importance_reason: Mapped[Optional[str]] = mapped_column(Text)
    llm_raw_output: Mapped[Optional[Any]] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "fingerprint", name="uq_mail_pieces_user_fingerprint"),
        UniqueConstraint("user_id", "message_id", name="uq_mail_pieces_user_message"),
        Index("idx_mail_pieces_user_delivery", "user_id", "delivery_date"),
    )
