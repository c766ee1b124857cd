"""OCR and LLM services."""

from .llm import LLMClient, SemanticInterpreter, parse_model_json
from .ocr import OcrEngine, TesseractEngine, TextExtractor

__all__ = [
    "LLMClient",
    "SemanticInterpreter",
    "parse_model_json",
    "OcrEngine",
    "TesseractEngine",
    "TextExtractor"
]
