"""Ingest pipeline: digest messages in, one persisted record per physical mail piece out."""

from datetime import datetime
from typing import Any, Dict, Optional

import structlog

from ..config.settings import IngestSettings, get_settings
from ..exceptions import (
    LlmConfigurationError, MailboxError, OcrEngineError, ReauthenticationRequired
)
from ..services.llm import SemanticInterpreter
from ..services.ocr import TextExtractor
from .mailbox import Mailbox, extract_html
from .models import (
    IngestionReport, IngestRecord, IngestStage, InsertOutcome, MailInterpretation,
    MailPieceCandidate, MessageContext, OcrResult, RawDigestMessage, compute_fingerprint
)
from .parser import TileExtractor
from .resolver import ImageResolver
from .store import Store

logger = structlog.get_logger(__name__)


class IngestOrchestrator:
    """Runs the ingest state machine for one user.

    Per message: fetch, parse tiles. Per tile: fingerprint, dedup check,
    resolve image, OCR, interpret, persist. Messages and tiles are handled
    strictly one at a time. Image, OCR and interpretation failures are
    isolated to their tile; credential rejections abort the run.
    """

    def __init__(self, extractor: TileExtractor, resolver: ImageResolver,
                 text_extractor: Optional[TextExtractor] = None,
                 interpreter: Optional[SemanticInterpreter] = None,
                 settings: Optional[IngestSettings] = None):
        """Initialize ingest orchestrator."""
        self.extractor = extractor
        self.resolver = resolver
        self.text_extractor = text_extractor
        self.interpreter = interpreter
        self.settings = settings or get_settings().ingest

        self.last_report: Optional[IngestionReport] = None
        self._ocr_active = False
        self._interpret_active = False

    async def run(self, user_id: str, mailbox: Mailbox, store: Store, query: Optional[str] = None) -> int:
        """Ingest every digest matching ``query``; returns the number of records inserted."""
        query = query or get_settings().mailbox.query
        report = IngestionReport(user_id=user_id)
        self.last_report = report
        self._ocr_active = self.text_extractor is not None
        self._interpret_active = self.interpreter is not None and self.settings.interpret_enabled

        logger.info("Starting ingest run",
                    user_id=user_id,
                    ocr_enabled=self._ocr_active,
                    interpret_enabled=self._interpret_active)

        message_refs = await mailbox.list_messages(query)

        for ref in message_refs:
            message_id = ref.get("id")
            if not message_id:
                continue
            report.messages_seen += 1

            message = await self._fetch_message(mailbox, message_id, report)
            if message is None:
                report.messages_skipped += 1
                continue
            if not message.html_body:
                logger.info("Digest message has no HTML body, skipping", message_id=message_id)
                report.messages_skipped += 1
                continue

            await self._process_message(user_id, message, store, report)

        report.finished_at = datetime.utcnow()
        logger.info("Ingest run completed", **report.model_dump(exclude={"started_at", "finished_at"}))
        return report.inserted

    async def _fetch_message(self, mailbox: Mailbox, message_id: str,
                             report: IngestionReport) -> Optional[RawDigestMessage]:
        try:
            message = await mailbox.get_message(message_id)
        except MailboxError as exc:
            logger.warning("Digest message fetch failed",
                           message_id=message_id, stage=IngestStage.FETCH.value, error=str(exc))
            report.record_error(IngestStage.FETCH)
            return None

        payload = message.get("payload") or {}
        return RawDigestMessage(id=message_id, html_body=extract_html(payload), payload=payload)

    async def _process_message(self, user_id: str, message: RawDigestMessage, store: Store,
                               report: IngestionReport) -> None:
        candidates = self.extractor.parse(message.html_body)
        logger.info("Processing digest message", message_id=message.id, tiles=len(candidates))

        context = MessageContext(message_id=message.id, payload=message.payload)
        for candidate in candidates:
            report.tiles_seen += 1
            await self._process_tile(user_id, candidate, context, store, report)

    async def _process_tile(self, user_id: str, candidate: MailPieceCandidate, context: MessageContext,
                            store: Store, report: IngestionReport) -> None:
        fingerprint = compute_fingerprint(candidate.image_locator, candidate.delivery_date)
        tile_log = logger.bind(message_id=context.message_id,
                               image_locator=str(candidate.image_locator),
                               fingerprint=fingerprint[:12])

        try:
            if await store.exists_by_fingerprint(user_id, fingerprint):
                tile_log.debug("Mail piece already ingested, skipping")
                report.duplicates_skipped += 1
                return
        except Exception as exc:
            tile_log.error("Dedup lookup failed", stage=IngestStage.DEDUP.value, exc_info=exc)
            report.record_error(IngestStage.DEDUP)
            return

        image_bytes = await self._resolve_image(candidate, context, report, tile_log)

        ocr_result = None
        if image_bytes is not None:
            ocr_result = await self._extract_text(image_bytes, report, tile_log)

        interpretation = None
        if ocr_result is not None:
            interpretation = await self._interpret(ocr_result, report, tile_log)

        record = IngestRecord(
            user_id=user_id,
            message_id=context.message_id,
            fingerprint=fingerprint,
            image_locator=str(candidate.image_locator),
            delivery_date=candidate.delivery_date,
            raw_sender_text=candidate.sender_guess,
            section_hint=candidate.section_hint,
            ocr_text=ocr_result.raw_text if ocr_result is not None else None,
        )
        if interpretation is not None:
            record.apply_interpretation(interpretation)

        try:
            outcome = await store.insert(record)
        except Exception as exc:
            tile_log.error("Mail piece could not be stored", stage=IngestStage.PERSIST.value, exc_info=exc)
            report.record_error(IngestStage.PERSIST)
            return

        if outcome == InsertOutcome.DUPLICATE:
            tile_log.info("Mail piece stored concurrently, skipping")
            report.conflicts += 1
            return

        report.inserted += 1
        tile_log.info("Mail piece stored",
                      sender=record.display_sender,
                      delivery_date=record.delivery_date.isoformat() if record.delivery_date else None)

    async def _resolve_image(self, candidate: MailPieceCandidate, context: MessageContext,
                             report: IngestionReport, tile_log: Any) -> Optional[bytes]:
        try:
            image_bytes = await self.resolver.resolve(candidate.image_locator, context)
        except ReauthenticationRequired:
            raise
        except Exception as exc:
            tile_log.warning("Image resolution failed", stage=IngestStage.RESOLVE_IMAGE.value, exc_info=exc)
            report.record_error(IngestStage.RESOLVE_IMAGE)
            image_bytes = None

        if image_bytes is None:
            tile_log.info("Scan image not available, storing parser fields only")
            report.image_misses += 1
        return image_bytes

    async def _extract_text(self, image_bytes: bytes, report: IngestionReport,
                            tile_log: Any) -> Optional[OcrResult]:
        if not self._ocr_active:
            return None

        try:
            return await self.text_extractor.extract(image_bytes)
        except OcrEngineError as exc:
            tile_log.error("OCR engine unavailable, OCR disabled for the rest of this run",
                           stage=IngestStage.OCR.value, exc_info=exc)
            self._ocr_active = False
        except Exception as exc:
            tile_log.warning("OCR failed", stage=IngestStage.OCR.value, exc_info=exc)

        report.ocr_failures += 1
        report.record_error(IngestStage.OCR)
        return None

    async def _interpret(self, ocr_result: OcrResult, report: IngestionReport,
                         tile_log: Any) -> Optional[MailInterpretation]:
        if not self._interpret_active:
            report.interpret_skipped += 1
            return None
        if not ocr_result.normalized_text:
            tile_log.info("No text recognized, skipping interpretation")
            report.interpret_skipped += 1
            return None

        try:
            return await self.interpreter.interpret(ocr_result)
        except ReauthenticationRequired:
            raise
        except LlmConfigurationError as exc:
            tile_log.warning("LLM not configured, interpretation disabled for the rest of this run",
                             provider=exc.provider, reason=exc.reason)
            self._interpret_active = False
            report.interpret_skipped += 1
            return None
        except Exception as exc:
            tile_log.warning("Interpretation failed", stage=IngestStage.INTERPRET.value, exc_info=exc)
            report.interpret_failures += 1
            report.record_error(IngestStage.INTERPRET)
            return None

    def summary(self) -> Dict[str, Any]:
        """JSON-ready view of the last run's report."""
        if self.last_report is None:
            return {}
        return self.last_report.model_dump(mode="json")
