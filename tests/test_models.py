"""Tests for ingestion data models."""

from datetime import date

from maildigest.ingestion.models import (
    IngestionReport, IngestRecord, IngestStage, InlineContentLocator, MailInterpretation,
    MailPieceCandidate, RemoteUrlLocator, SectionHint, compute_fingerprint, parse_locator
)


class TestParseLocator:
    """Test mapping of <img src> values to locators."""

    def test_inline_content(self):
        """cid: references become inline locators without brackets."""
        locator = parse_locator("cid:%3Cscan-001@usps.gov%3E")

        assert isinstance(locator, InlineContentLocator)
        assert locator.content_id == "scan-001@usps.gov"
        assert str(locator) == "cid:%3Cscan-001@usps.gov%3E"

    def test_remote_url(self):
        """http(s) and protocol-relative sources become remote locators."""
        assert parse_locator("https://example.com/a.jpg") == RemoteUrlLocator(url="https://example.com/a.jpg")
        assert parse_locator("//example.com/a.jpg") == RemoteUrlLocator(url="https://example.com/a.jpg")

    def test_unusable_sources(self):
        """Empty, data: and relative sources are rejected."""
        assert parse_locator(None) is None
        assert parse_locator("") is None
        assert parse_locator("cid:") is None
        assert parse_locator("data:image/png;base64,AAAA") is None
        assert parse_locator("images/scan.jpg") is None


class TestFingerprint:
    """Test content fingerprint identity."""

    def test_deterministic(self):
        """The same locator and date always give the same fingerprint."""
        locator = InlineContentLocator(content_id="scan-001", raw="cid:scan-001")

        first = compute_fingerprint(locator, date(2025, 11, 15))
        second = compute_fingerprint("cid:scan-001", date(2025, 11, 15))

        assert first == second
        assert len(first) == 64

    def test_inputs_change_fingerprint(self):
        """Changing either the locator or the date changes the fingerprint."""
        base = compute_fingerprint("cid:scan-001", date(2025, 11, 15))

        assert compute_fingerprint("cid:scan-002", date(2025, 11, 15)) != base
        assert compute_fingerprint("cid:scan-001", date(2025, 11, 16)) != base
        assert compute_fingerprint("cid:scan-001", None) != base


class TestIngestRecord:
    """Test the persisted record model."""

    def test_record_id_and_display_sender(self):
        """Record ids are message-derived; the OCR-derived sender wins for display."""
        record = IngestRecord(
            user_id="user-1",
            message_id="msg-1",
            fingerprint="a" * 64,
            image_locator="cid:scan-001",
            raw_sender_text="Widgets Inc",
            section_hint=SectionHint.TODAY,
        )

        assert record.record_id == "msg-1:" + "a" * 16
        assert record.display_sender == "Widgets Inc"

        record.apply_interpretation(MailInterpretation(
            sender_name="Widgets Incorporated",
            mail_type="advertising flyer",
            short_summary="A flyer.",
            is_important=False,
            importance_reason="Marketing.",
            raw_model_output={"mailType": "advertising flyer"},
        ))

        assert record.display_sender == "Widgets Incorporated"
        assert record.llm_mail_type == "advertising flyer"
        assert record.llm_raw_output == {"mailType": "advertising flyer"}


class TestReports:
    """Test candidate and report serialization."""

    def test_candidate_to_dict(self):
        """Candidates serialize to JSON-ready values."""
        candidate = MailPieceCandidate(
            image_locator=InlineContentLocator(content_id="scan-001", raw="cid:scan-001"),
            sender_guess="Acme Corp",
            delivery_date=date(2025, 11, 17),
            section_hint=SectionHint.THIS_WEEK,
        )

        assert candidate.to_dict() == {
            "image_locator": "cid:scan-001",
            "sender_guess": "Acme Corp",
            "delivery_date": "2025-11-17",
            "section_hint": "this_week",
        }

    def test_error_buckets(self):
        """Per-stage failures are counted by stage name."""
        report = IngestionReport(user_id="user-1")
        report.record_error(IngestStage.OCR)
        report.record_error(IngestStage.OCR)
        report.record_error(IngestStage.RESOLVE_IMAGE)

        assert report.error_buckets == {"ocr": 2, "resolve_image": 1}
