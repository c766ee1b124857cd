"""OCR service for text extraction from scanned mail pieces."""

import asyncio
import io
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import pytesseract
import structlog
from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError

from ..config.settings import OCRSettings, get_settings
from ..exceptions import OcrEngineError, OcrError
from ..ingestion.dom import normalize_whitespace
from ..ingestion.models import BoundingBox, OcrLine, OcrResult

logger = structlog.get_logger(__name__)

WORD_LEVEL = 5


class OcrEngine(ABC):
    """Recognition engine handle with an explicit lifecycle.

    ``acquire`` prepares the engine (expensive, done once), ``recognize`` runs
    it, ``release`` frees it. Callers own the handle and pass it where needed.
    """

    @abstractmethod
    def acquire(self) -> None:
        """Initialize the engine; raise OcrEngineError on failure."""
        pass

    @abstractmethod
    async def recognize(self, image: Image.Image) -> Dict[str, List[Any]]:
        """Word-level recognition data in ``pytesseract.Output.DICT`` shape."""
        pass

    @abstractmethod
    def release(self) -> None:
        """Release the engine."""
        pass

    async def __aenter__(self):
        await asyncio.to_thread(self.acquire)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.release()


class TesseractEngine(OcrEngine):
    """Tesseract engine driven through pytesseract."""

    def __init__(self, settings: Optional[OCRSettings] = None):
        """Initialize Tesseract engine handle (not yet acquired)."""
        self.settings = settings or get_settings().ocr
        self._config: Optional[str] = None
        self._version: Optional[str] = None
        # recognition is not safe to run concurrently on one handle
        self._lock = asyncio.Lock()

    @property
    def is_acquired(self) -> bool:
        return self._config is not None

    def acquire(self) -> None:
        """Check the tesseract binary and language packs, then build the config."""
        if self.is_acquired:
            return

        if self.settings.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.settings.tesseract_cmd

        try:
            version = pytesseract.get_tesseract_version()
            languages = set(pytesseract.get_languages(config=""))
        except (pytesseract.TesseractNotFoundError, pytesseract.TesseractError, OSError) as exc:
            logger.error("Tesseract engine initialization failed", exc_info=exc)
            raise OcrEngineError(f"Tesseract is not available: {exc}") from exc

        missing = [lang for lang in self.settings.language.split("+") if lang not in languages]
        if missing:
            raise OcrEngineError(f"Tesseract language data missing: {', '.join(missing)}")

        self._version = str(version)
        self._config = (
            f"--oem {self.settings.engine_mode} --psm {self.settings.page_segmentation_mode} "
            f"-c preserve_interword_spaces=1"
        )
        logger.info("Tesseract engine acquired",
                    version=self._version,
                    language=self.settings.language,
                    config=self._config)

    async def recognize(self, image: Image.Image) -> Dict[str, List[Any]]:
        async with self._lock:
            if not self.is_acquired:
                # acquire shells out to the tesseract binary
                await asyncio.to_thread(self.acquire)
            try:
                return await asyncio.to_thread(
                    pytesseract.image_to_data,
                    image,
                    lang=self.settings.language,
                    config=self._config,
                    output_type=pytesseract.Output.DICT,
                )
            except pytesseract.TesseractError as exc:
                logger.warning("Tesseract recognition failed, returning no text", exc_info=exc)
                return {}

    def release(self) -> None:
        if self.is_acquired:
            logger.info("Tesseract engine released", version=self._version)
        self._config = None
        self._version = None


def build_ocr_result(data: Dict[str, List[Any]]) -> OcrResult:
    """Group word-level recognition data into lines.

    Words are grouped by (block, paragraph, line); each line keeps the union of
    its word boxes. Raw text joins lines with newlines and blocks with a blank
    line; normalized text collapses all whitespace.
    """
    texts = data.get("text") or []
    grouped: Dict[Tuple[int, int, int], Dict[str, Any]] = {}

    for index, word in enumerate(texts):
        if int(data["level"][index]) != WORD_LEVEL:
            continue
        word = (word or "").strip()
        if not word:
            continue

        key = (int(data["block_num"][index]), int(data["par_num"][index]), int(data["line_num"][index]))
        left = int(data["left"][index])
        top = int(data["top"][index])
        right = left + int(data["width"][index])
        bottom = top + int(data["height"][index])

        entry = grouped.get(key)
        if entry is None:
            grouped[key] = {"words": [word], "box": [left, top, right, bottom]}
            continue
        entry["words"].append(word)
        box = entry["box"]
        box[0], box[1] = min(box[0], left), min(box[1], top)
        box[2], box[3] = max(box[2], right), max(box[3], bottom)

    lines: List[OcrLine] = []
    raw_blocks: List[List[str]] = []
    last_block = None
    for (block, _, _), entry in grouped.items():
        line_text = " ".join(entry["words"])
        lines.append(OcrLine(text=normalize_whitespace(line_text), bounding_box=BoundingBox(*entry["box"])))
        if block != last_block:
            raw_blocks.append([])
            last_block = block
        raw_blocks[-1].append(line_text)

    raw_text = "\n\n".join("\n".join(block_lines) for block_lines in raw_blocks)
    return OcrResult(raw_text=raw_text, normalized_text=normalize_whitespace(raw_text), lines=lines)


class TextExtractor:
    """Converts scan bytes to text with an owned OCR engine."""

    def __init__(self, engine: OcrEngine, settings: Optional[OCRSettings] = None):
        """Initialize text extractor."""
        self.engine = engine
        self.settings = settings or get_settings().ocr

    async def extract(self, image_bytes: bytes) -> OcrResult:
        """Recognize every line on the image; no filtering beyond whitespace."""
        start_time = time.time()

        image = self._load_image(image_bytes)
        image = self.preprocess(image)
        data = await self.engine.recognize(image)
        result = build_ocr_result(data)

        logger.info("OCR text extraction completed",
                    lines=len(result.lines),
                    text_length=len(result.normalized_text),
                    processing_time=round(time.time() - start_time, 3))
        logger.debug("OCR text", raw_text=result.raw_text)
        return result

    def preprocess(self, image: Image.Image) -> Image.Image:
        """Grayscale, stretch contrast and sharpen low-resolution scans."""
        if self.settings.preprocess_grayscale:
            image = ImageOps.grayscale(image)
        elif image.mode not in ("L", "RGB"):
            image = image.convert("RGB")
        if self.settings.preprocess_normalize:
            image = ImageOps.autocontrast(image)
        if self.settings.preprocess_sharpen:
            image = image.filter(ImageFilter.SHARPEN)
        return image

    def _load_image(self, image_bytes: bytes) -> Image.Image:
        if not image_bytes:
            raise OcrError("No image bytes to recognize")
        try:
            image = Image.open(io.BytesIO(image_bytes))
            image.load()
        except (UnidentifiedImageError, OSError) as exc:
            raise OcrError(f"Image could not be decoded: {exc}") from exc
        return image
