"""Digest template marker configuration.

The digest vendor's markup changes from time to time. Everything the tile
parser keys on (selectors, marker ids, tracking parameters, boilerplate
words) is loaded from YAML so a template change is a config edit.
"""

import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern

import structlog
import yaml
from pydantic import BaseModel, Field, field_validator

logger = structlog.get_logger(__name__)

DEFAULT_TEMPLATE_PATH = Path(__file__).parent / "template.yaml"


class SectionMarker(BaseModel):
    """Markers identifying one digest section."""

    attributes: List[str] = Field(default_factory=list)
    text: Optional[str] = None

    @field_validator("attributes")
    @classmethod
    def lowercase_attributes(cls, v: List[str]) -> List[str]:
        """Attribute markers are matched case-insensitively."""
        return [item.lower() for item in v]


class DigestTemplate(BaseModel):
    """Vendor-specific markers used by the tile parser."""

    image_denylist: List[str] = Field(default_factory=list)
    sender_label_selector: str = 'span[id="campaign-from-span-id"]'
    tracking_date_params: List[str] = Field(default_factory=lambda: ["deliveryDate"])
    tracking_date_formats: List[str] = Field(default_factory=lambda: ["%Y%m%d", "%Y-%m-%d"])
    date_marker_selectors: Dict[str, str] = Field(default_factory=dict)
    section_markers: Dict[str, SectionMarker] = Field(default_factory=dict)
    week_label_selector: Optional[str] = None
    boilerplate_tokens: List[str] = Field(default_factory=list)

    @field_validator("image_denylist")
    @classmethod
    def validate_denylist(cls, v: List[str]) -> List[str]:
        """Reject patterns that do not compile."""
        for pattern in v:
            try:
                re.compile(pattern)
            except re.error as exc:
                raise ValueError(f"Invalid denylist pattern {pattern!r}: {exc}")
        return v

    def denylist_patterns(self) -> List[Pattern[str]]:
        """Compiled decorative-image patterns."""
        return [re.compile(pattern, re.IGNORECASE) for pattern in self.image_denylist]

    def boilerplate_pattern(self) -> Optional[Pattern[str]]:
        """One word-boundary regex matching any boilerplate token."""
        if not self.boilerplate_tokens:
            return None
        alternatives = "|".join(re.escape(token) for token in self.boilerplate_tokens)
        return re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)


def load_template_data(path: Optional[Path] = None) -> Dict[str, Any]:
    """Load raw template data from a YAML file."""
    template_path = Path(path) if path else DEFAULT_TEMPLATE_PATH

    if not template_path.exists():
        logger.warning("Digest template not found, using built-in defaults", path=str(template_path))
        return {}

    with open(template_path, "r") as f:
        data = yaml.safe_load(f)
    return data or {}


def load_digest_template(path: Optional[str] = None) -> DigestTemplate:
    """Load and validate the digest template."""
    data = load_template_data(Path(path) if path else None)
    template = DigestTemplate(**data)
    logger.debug("Digest template loaded",
                 path=str(path or DEFAULT_TEMPLATE_PATH),
                 sections=sorted(template.section_markers))
    return template
