"""Tests for settings and the digest template."""

import pytest
from pydantic import ValidationError

from maildigest.config.settings import (
    DEFAULT_DIGEST_QUERY, LLMSettings, MailboxSettings, OCRSettings, ParserSettings, ResolverSettings
)
from maildigest.config.template import DigestTemplate, load_digest_template


class TestSettings:
    """Test settings defaults, environment overrides and validators."""

    def test_defaults(self):
        """Defaults match the digest workflow."""
        assert MailboxSettings().query == DEFAULT_DIGEST_QUERY
        assert MailboxSettings().max_results == 25
        assert ParserSettings().min_image_dimension == 50
        assert ParserSettings().accept_remote_images is False
        assert ResolverSettings().max_part_depth == 10
        assert OCRSettings().page_segmentation_mode == 3
        assert LLMSettings().temperature == 0.15
        assert LLMSettings().max_output_tokens == 600

    def test_environment_override(self, monkeypatch):
        """Environment variables with the section prefix override defaults."""
        monkeypatch.setenv("PARSER_MIN_IMAGE_DIMENSION", "80")
        monkeypatch.setenv("LLM_PROVIDER", "anthropic")

        assert ParserSettings().min_image_dimension == 80
        assert LLMSettings().provider == "anthropic"

    def test_validators(self):
        """Out-of-range values are rejected."""
        with pytest.raises(ValidationError):
            MailboxSettings(max_results=0)
        with pytest.raises(ValidationError):
            ParserSettings(sender_ancestor_depth=6)
        with pytest.raises(ValidationError):
            ResolverSettings(max_part_depth=11)
        with pytest.raises(ValidationError):
            OCRSettings(page_segmentation_mode=14)
        with pytest.raises(ValidationError):
            LLMSettings(provider="gemini")


class TestDigestTemplate:
    """Test template loading."""

    def test_bundled_template(self):
        """The bundled template carries both sections and the denylist."""
        template = load_digest_template()

        assert set(template.section_markers) == {"today", "this_week"}
        assert "logo" in template.image_denylist
        assert template.sender_label_selector == 'span[id="campaign-from-span-id"]'
        assert "deliveryDate" in template.tracking_date_params

    def test_custom_template_file(self, tmp_path):
        """An alternative YAML file replaces the markers."""
        path = tmp_path / "template.yaml"
        path.write_text(
            "image_denylist: ['promo']\n"
            "section_markers:\n"
            "  today:\n"
            "    attributes: ['Arriving-Today']\n"
        )

        template = load_digest_template(str(path))

        assert template.image_denylist == ["promo"]
        assert template.section_markers["today"].attributes == ["arriving-today"]

    def test_missing_file_uses_defaults(self, tmp_path):
        """A missing template path falls back to built-in defaults."""
        template = load_digest_template(str(tmp_path / "missing.yaml"))

        assert template.image_denylist == []
        assert template.sender_label_selector == 'span[id="campaign-from-span-id"]'

    def test_invalid_denylist_pattern(self):
        """Denylist entries must compile."""
        with pytest.raises(ValidationError):
            DigestTemplate(image_denylist=["("])

    def test_boilerplate_pattern(self):
        """Boilerplate tokens match on word boundaries only."""
        pattern = DigestTemplate(boilerplate_tokens=["mail", "view"]).boilerplate_pattern()

        assert pattern.search("View all")
        assert not pattern.search("Mailchimp Reviews")
        assert DigestTemplate().boilerplate_pattern() is None
