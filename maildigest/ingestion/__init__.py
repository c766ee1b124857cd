"""Ingestion package for digest emails.

The pipeline lives in ``maildigest.ingestion.pipeline`` and is imported from
there directly, since it depends on the OCR and LLM services.
"""

from .mailbox import GmailMailbox, Mailbox, decode_base64url, extract_html
from .models import (
    ImageLocator, InlineContentLocator, IngestionReport, IngestRecord, InsertOutcome,
    MailInterpretation, MailPieceCandidate, OcrResult, RemoteUrlLocator, SectionHint,
    compute_fingerprint, parse_locator
)
from .parser import TileExtractor
from .resolver import ImageResolver
from .store import InMemoryStore, SqlAlchemyStore, Store

__all__ = [
    "GmailMailbox",
    "Mailbox",
    "decode_base64url",
    "extract_html",
    "ImageLocator",
    "InlineContentLocator",
    "IngestionReport",
    "IngestRecord",
    "InsertOutcome",
    "MailInterpretation",
    "MailPieceCandidate",
    "OcrResult",
    "RemoteUrlLocator",
    "SectionHint",
    "compute_fingerprint",
    "parse_locator",
    "TileExtractor",
    "ImageResolver",
    "InMemoryStore",
    "SqlAlchemyStore",
    "Store"
]
