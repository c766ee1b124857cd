"""Application settings configuration."""

from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


DEFAULT_DIGEST_QUERY = (
    'from:USPSInformedDelivery@usps.gov '
    'subject:"Informed Delivery Daily Digest" newer_than:60d'
)


class MailboxSettings(BaseSettings):
    """Mailbox (Gmail REST) configuration settings."""

    access_token: Optional[str] = Field(default=None, description="OAuth bearer token for the mailbox")
    query: str = Field(default=DEFAULT_DIGEST_QUERY, description="Search filter selecting digest emails")
    max_results: int = Field(default=25, description="Maximum digest messages listed per run")
    api_base_url: str = Field(
        default="https://gmail.googleapis.com/gmail/v1/users/me",
        description="Mailbox REST API base URL"
    )
    timeout_seconds: float = Field(default=30.0, description="HTTP timeout for mailbox calls")

    @field_validator("max_results")
    @classmethod
    def validate_max_results(cls, v: int) -> int:
        """Validate listing bound."""
        if v < 1 or v > 500:
            raise ValueError("max_results must be between 1 and 500")
        return v

    model_config = {
        "env_prefix": "MAILBOX_",
        "case_sensitive": False
    }


class ParserSettings(BaseSettings):
    """Digest tile parser settings."""

    min_image_dimension: int = Field(default=50, description="Declared width/height below this is a marker, not a scan")
    accept_remote_images: bool = Field(default=False, description="Accept http(s) images as mail-piece scans")
    sender_ancestor_depth: int = Field(default=5, description="Ancestor levels walked when looking for a sender")
    section_ancestor_depth: int = Field(default=15, description="Ancestor levels walked when classifying a section")
    sender_max_length: int = Field(default=120, description="Maximum sender text length")
    template_path: Optional[str] = Field(default=None, description="Path to a digest template YAML file")

    @field_validator("sender_ancestor_depth")
    @classmethod
    def validate_sender_depth(cls, v: int) -> int:
        """Validate sender walk depth."""
        if v < 0 or v > 5:
            raise ValueError("sender_ancestor_depth must be between 0 and 5")
        return v

    @field_validator("min_image_dimension")
    @classmethod
    def validate_min_dimension(cls, v: int) -> int:
        """Validate size threshold."""
        if v < 0:
            raise ValueError("min_image_dimension must not be negative")
        return v

    model_config = {
        "env_prefix": "PARSER_",
        "case_sensitive": False
    }


class ResolverSettings(BaseSettings):
    """Image resolver settings."""

    timeout_seconds: float = Field(default=20.0, description="HTTP timeout for remote image fetches")
    max_part_depth: int = Field(default=10, description="Maximum MIME tree depth searched for inline images")

    @field_validator("max_part_depth")
    @classmethod
    def validate_depth(cls, v: int) -> int:
        """Validate MIME search depth."""
        if v < 1 or v > 10:
            raise ValueError("max_part_depth must be between 1 and 10")
        return v

    model_config = {
        "env_prefix": "RESOLVER_",
        "case_sensitive": False
    }


class OCRSettings(BaseSettings):
    """OCR engine configuration settings."""

    language: str = Field(default="eng", description="Tesseract language pack")
    page_segmentation_mode: int = Field(default=3, description="Tesseract --psm value")
    engine_mode: int = Field(default=3, description="Tesseract --oem value")
    tesseract_cmd: Optional[str] = Field(default=None, description="Path to the tesseract binary")
    preprocess_grayscale: bool = Field(default=True, description="Convert to grayscale before recognition")
    preprocess_normalize: bool = Field(default=True, description="Stretch contrast before recognition")
    preprocess_sharpen: bool = Field(default=True, description="Sharpen before recognition")

    @field_validator("page_segmentation_mode")
    @classmethod
    def validate_psm(cls, v: int) -> int:
        """Validate page segmentation mode."""
        if v < 0 or v > 13:
            raise ValueError("page_segmentation_mode must be between 0 and 13")
        return v

    @field_validator("engine_mode")
    @classmethod
    def validate_oem(cls, v: int) -> int:
        """Validate OCR engine mode."""
        if v < 0 or v > 3:
            raise ValueError("engine_mode must be between 0 and 3")
        return v

    model_config = {
        "env_prefix": "OCR_",
        "case_sensitive": False
    }


class LLMSettings(BaseSettings):
    """Large Language Model configuration settings."""

    provider: str = Field(default="openai", description="openai or anthropic")
    api_key: Optional[str] = Field(default=None, description="Provider API key")
    model: str = Field(default="gpt-4o-mini", description="Model identifier")
    base_url: Optional[str] = Field(default=None, description="Override for OpenAI-compatible endpoints")
    temperature: float = Field(default=0.15)
    max_output_tokens: int = Field(default=600)
    summary_max_chars: int = Field(default=200)
    reason_max_chars: int = Field(default=200)

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        """Validate LLM provider."""
        if v not in ["openai", "anthropic"]:
            raise ValueError("LLM provider must be openai or anthropic")
        return v

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float) -> float:
        """Validate sampling temperature."""
        if not 0.0 <= v <= 2.0:
            raise ValueError("temperature must be between 0.0 and 2.0")
        return v

    model_config = {
        "env_prefix": "LLM_",
        "case_sensitive": False
    }


class IngestSettings(BaseSettings):
    """Ingest orchestration settings."""

    interpret_enabled: bool = Field(default=True, description="Run the LLM interpretation stage")
    database_url: str = Field(default="sqlite+aiosqlite:///./maildigest.db")

    model_config = {
        "env_prefix": "INGEST_",
        "case_sensitive": False
    }


class Settings(BaseModel):
    """Main application settings."""

    mailbox: MailboxSettings = Field(default_factory=MailboxSettings)
    parser: ParserSettings = Field(default_factory=ParserSettings)
    resolver: ResolverSettings = Field(default_factory=ResolverSettings)
    ocr: OCRSettings = Field(default_factory=OCRSettings)
    llm: LLMSettings = Field(default_factory=LLMSettings)
    ingest: IngestSettings = Field(default_factory=IngestSettings)


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
