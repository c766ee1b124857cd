"""Data models for the digest ingestion pipeline."""

import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from urllib.parse import unquote

from pydantic import BaseModel, Field


class SectionHint(str, Enum):
    """Digest section a tile was found in."""
    TODAY = "today"
    THIS_WEEK = "this_week"


class IngestStage(str, Enum):
    """Pipeline stages, used to label per-tile diagnostics."""
    FETCH = "fetch"
    PARSE = "parse"
    DEDUP = "dedup"
    RESOLVE_IMAGE = "resolve_image"
    OCR = "ocr"
    INTERPRET = "interpret"
    PERSIST = "persist"


class InsertOutcome(str, Enum):
    """Result of a store insert."""
    INSERTED = "inserted"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class InlineContentLocator:
    """Image carried inside the message itself (``cid:`` reference)."""

    content_id: str
    raw: str

    def __str__(self) -> str:
        return self.raw


@dataclass(frozen=True)
class RemoteUrlLocator:
    """Image hosted on a remote server."""

    url: str

    def __str__(self) -> str:
        return self.url


ImageLocator = Union[InlineContentLocator, RemoteUrlLocator]


def parse_locator(src: Optional[str]) -> Optional[ImageLocator]:
    """Map an ``<img src>`` value to a locator variant, or None if unusable."""
    if not src:
        return None

    value = src.strip()
    lowered = value.lower()

    if lowered.startswith("cid:"):
        content_id = unquote(value[4:]).strip().strip("<>").strip()
        if not content_id:
            return None
        return InlineContentLocator(content_id=content_id, raw=value)

    if lowered.startswith("http://") or lowered.startswith("https://"):
        return RemoteUrlLocator(url=value)

    if lowered.startswith("//"):
        return RemoteUrlLocator(url=f"https:{value}")

    return None


@dataclass
class RawDigestMessage:
    """One digest email as fetched from the mailbox."""

    id: str
    html_body: Optional[str]
    payload: Optional[Dict[str, Any]] = None


@dataclass
class MessageContext:
    """What the image resolver knows about the message a tile came from."""

    message_id: str
    payload: Optional[Dict[str, Any]] = None


@dataclass
class MailPieceCandidate:
    """A mail-piece tile found in a digest."""

    image_locator: ImageLocator
    sender_guess: Optional[str] = None
    delivery_date: Optional[date] = None
    section_hint: Optional[SectionHint] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for logs and CLI output."""
        return {
            "image_locator": str(self.image_locator),
            "sender_guess": self.sender_guess,
            "delivery_date": self.delivery_date.isoformat() if self.delivery_date else None,
            "section_hint": self.section_hint.value if self.section_hint else None
        }


def compute_fingerprint(image_locator: Union[ImageLocator, str], delivery_date: Optional[date]) -> str:
    """Stable identity of a physical mail piece across ingestion runs."""
    date_part = delivery_date.isoformat() if delivery_date else ""
    material = f"{image_locator}|{date_part}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class BoundingBox:
    """Pixel box of a recognized line."""

    x0: int
    y0: int
    x1: int
    y1: int


@dataclass
class OcrLine:
    """One recognized text line."""

    text: str
    bounding_box: BoundingBox

    def to_dict(self) -> Dict[str, Any]:
        box = self.bounding_box
        return {"text": self.text, "x0": box.x0, "y0": box.y0, "x1": box.x1, "y1": box.y1}


@dataclass
class OcrResult:
    """Text recognized on a scanned mail piece."""

    raw_text: str
    normalized_text: str
    lines: List[OcrLine] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rawText": self.raw_text,
            "normalizedText": self.normalized_text,
            "lines": [line.to_dict() for line in self.lines]
        }


@dataclass
class MailInterpretation:
    """Semantic reading of a mail piece produced by the LLM."""

    mail_type: str
    short_summary: str
    is_important: bool
    importance_reason: str
    sender_name: Optional[str] = None
    raw_model_output: Optional[Any] = None


@dataclass
class IngestRecord:
    """Row persisted for one physical mail piece."""

    user_id: str
    message_id: str
    fingerprint: str
    image_locator: str
    delivery_date: Optional[date] = None
    raw_sender_text: Optional[str] = None
    section_hint: Optional[SectionHint] = None
    ocr_text: Optional[str] = None
    llm_sender: Optional[str] = None
    llm_mail_type: Optional[str] = None
    llm_summary: Optional[str] = None
    llm_is_important: Optional[bool] = None
    llm_importance_reason: Optional[str] = None
    llm_raw_output: Optional[Any] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def record_id(self) -> str:
        """Message-derived id, unique per fingerprint within a message."""
        return f"{self.message_id}:{self.fingerprint[:16]}"

    @property
    def display_sender(self) -> Optional[str]:
        """Sender read from the scan when available, else the digest's label."""
        return self.llm_sender or self.raw_sender_text

    def apply_interpretation(self, interpretation: MailInterpretation) -> None:
        """Copy interpretation fields onto the record."""
        self.llm_sender = interpretation.sender_name
        self.llm_mail_type = interpretation.mail_type
        self.llm_summary = interpretation.short_summary
        self.llm_is_important = interpretation.is_important
        self.llm_importance_reason = interpretation.importance_reason
        self.llm_raw_output = interpretation.raw_model_output

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the review queue."""
        return {
            "id": self.record_id,
            "user_id": self.user_id,
            "message_id": self.message_id,
            "image_locator": self.image_locator,
            "delivery_date": self.delivery_date.isoformat() if self.delivery_date else None,
            "section_hint": self.section_hint.value if self.section_hint else None,
            "sender": self.display_sender,
            "raw_sender_text": self.raw_sender_text,
            "ocr_text": self.ocr_text,
            "llm_sender": self.llm_sender,
            "llm_mail_type": self.llm_mail_type,
            "llm_summary": self.llm_summary,
            "llm_is_important": self.llm_is_important,
            "llm_importance_reason": self.llm_importance_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class IngestionReport(BaseModel):
    """Counters collected over one ingest run."""

    user_id: Optional[str] = None
    messages_seen: int = 0
    messages_skipped: int = 0
    tiles_seen: int = 0
    duplicates_skipped: int = 0
    inserted: int = 0
    conflicts: int = 0
    image_misses: int = 0
    ocr_failures: int = 0
    interpret_failures: int = 0
    interpret_skipped: int = 0

    error_buckets: Dict[str, int] = Field(default_factory=dict)

    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    def record_error(self, stage: IngestStage) -> None:
        """Count a per-tile failure under its stage."""
        self.error_buckets[stage.value] = self.error_buckets.get(stage.value, 0) + 1
