"""Configuration package for the digest ingestion pipeline."""

from .settings import (
    Settings, MailboxSettings, ParserSettings, ResolverSettings,
    OCRSettings, LLMSettings, IngestSettings, get_settings
)
from .template import DigestTemplate, load_digest_template

__all__ = [
    "Settings",
    "MailboxSettings",
    "ParserSettings",
    "ResolverSettings",
    "OCRSettings",
    "LLMSettings",
    "IngestSettings",
    "get_settings",
    "DigestTemplate",
    "load_digest_template"
]
