#!/usr/bin/env python3
"""
Year extraction from drawing content.

The PDF is sent to the vision model inline. Inline payloads are capped, so a
PDF whose base64 form is over the cap is rasterized (page 1) and squeezed into
a JPEG by a short list of compression strategies tried in order. If none gets
under budget the year is reported as unknown.

Year extraction is best-effort: every failure ends in UNKNOWN_YEAR.
"""

import io
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import pdfplumber
from PIL import Image

from ai_providers import AIProvider, Attachment
from concurrency import NamedSemaphore
from errors import AIProviderError, ErrorKind
from models import PDF_MIME_TYPE, FileRef
from settings import get_logger

logger = get_logger("year")

# Large sheet drawings rasterize to big images; keep a bound on decompression
Image.MAX_IMAGE_PIXELS = 200_000_000

UNKNOWN_YEAR = "Unknown_Year"
MIN_YEAR = 1950

MAX_BASE64_SIZE = 48 * 1024 * 1024  # characters of base64 accepted inline
TARGET_BYTES = 35 * 1024 * 1024
RASTER_DPI = 150

START_QUALITY = 95
MIN_QUALITY = 40
COARSE_STEP_ABOVE = 70
SHRINK_FACTOR = 0.8
MIN_DIMENSION = 600

YEAR_PROMPT = (
    "Look at this construction/landscape drawing PDF and find the YEAR it was created.\n"
    "Respond ONLY with a 4-digit year (1950-current) or UNKNOWN."
)

YEAR_PATTERN = re.compile(r"\b(?:19|20)\d{2}\b")


def is_pdf_like(mime_type: Optional[str]) -> bool:
    return bool(mime_type) and "pdf" in mime_type.lower()


def base64_length(size: int) -> int:
    """Length of the base64 encoding of `size` bytes."""
    return 4 * math.ceil(size / 3)


def parse_year(text: Optional[str], current_year: Optional[int] = None) -> str:
    """First 19xx/20xx token within [1950, current year], else UNKNOWN_YEAR."""
    if not text:
        return UNKNOWN_YEAR
    current_year = current_year or datetime.now().year
    for match in YEAR_PATTERN.finditer(text):
        if MIN_YEAR <= int(match.group()) <= current_year:
            return match.group()
    return UNKNOWN_YEAR


def rasterize_first_page(pdf_bytes: bytes, dpi: int = RASTER_DPI) -> Image.Image:
    """Render page 1 of a PDF to a PIL image."""
    with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
        if not pdf.pages:
            raise ValueError("PDF has no pages")
        return pdf.pages[0].to_image(resolution=dpi).original.copy()


def encode_jpeg(image: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    image.convert("RGB").save(buffer, format="JPEG", quality=quality, optimize=True)
    return buffer.getvalue()


# ==============================================================================
# COMPRESSION STRATEGIES
# ==============================================================================

@dataclass
class CompressionResult:
    success: bool
    size: int
    data: Optional[bytes] = None
    quality: Optional[int] = None
    dimensions: Optional[tuple[int, int]] = None


class CompressionStrategy(ABC):
    name: str = "base"

    @abstractmethod
    def apply(self, image: Image.Image, target_bytes: int) -> CompressionResult:
        pass


class QualityStepStrategy(CompressionStrategy):
    """Re-encode at falling JPEG quality: steps of 10 above 70, then steps of 5."""

    name = "quality"

    def __init__(self, start: int = START_QUALITY, floor: int = MIN_QUALITY):
        self.start = start
        self.floor = floor

    def qualities(self) -> list[int]:
        steps = []
        quality = self.start
        while quality >= self.floor:
            steps.append(quality)
            quality -= 10 if quality > COARSE_STEP_ABOVE else 5
        return steps

    def apply(self, image, target_bytes):
        result = CompressionResult(success=False, size=0)
        for quality in self.qualities():
            data = encode_jpeg(image, quality)
            result = CompressionResult(len(data) <= target_bytes, len(data), data, quality, image.size)
            if result.success:
                break
        return result


class DownscaleStrategy(CompressionStrategy):
    """Shrink both sides by a fixed factor at floor quality until under budget or too small."""

    name = "downscale"

    def __init__(self, factor: float = SHRINK_FACTOR, min_dimension: int = MIN_DIMENSION, quality: int = MIN_QUALITY):
        self.factor = factor
        self.min_dimension = min_dimension
        self.quality = quality

    def apply(self, image, target_bytes):
        width, height = image.size
        result = CompressionResult(success=False, size=0)
        while width > self.min_dimension and height > self.min_dimension:
            width, height = round(width * self.factor), round(height * self.factor)
            data = encode_jpeg(image.resize((width, height), Image.Resampling.LANCZOS), self.quality)
            result = CompressionResult(len(data) <= target_bytes, len(data), data, self.quality, (width, height))
            if result.success:
                break
        return result


DEFAULT_STRATEGIES = (QualityStepStrategy(), DownscaleStrategy())


def compress_image(image: Image.Image, target_bytes: int = TARGET_BYTES, strategies=DEFAULT_STRATEGIES) -> CompressionResult:
    """Try each strategy in order; the first success wins."""
    result = CompressionResult(success=False, size=0)
    for strategy in strategies:
        result = strategy.apply(image, target_bytes)
        logger.debug(f"Compression strategy '{strategy.name}': success={result.success}, size={result.size}")
        if result.success:
            break
    return result


# ==============================================================================
# EXTRACTOR
# ==============================================================================

class YearExtractor:
    """Reads the creation year off a drawing with the vision model."""

    def __init__(
        self,
        storage,
        provider: AIProvider,
        api_semaphore: NamedSemaphore,
        timeout: float = 15.0,
        max_base64_size: int = MAX_BASE64_SIZE,
        target_bytes: int = TARGET_BYTES,
        current_year: Callable[[], int] = lambda: datetime.now().year,
    ):
        self.storage = storage
        self.provider = provider
        self.api_semaphore = api_semaphore
        self.timeout = timeout
        self.max_base64_size = max_base64_size
        self.target_bytes = target_bytes
        self.current_year = current_year

    def prepare_attachment(self, file: FileRef, data: bytes) -> Optional[Attachment]:
        """The PDF itself if small enough, else a compressed page-1 JPEG, else None."""
        encoded_size = base64_length(len(data))
        if encoded_size <= self.max_base64_size:
            return Attachment(data, PDF_MIME_TYPE)

        logger.info(f"PDF too large for inline upload ({encoded_size / 1024 / 1024:.2f}MB base64): {file.name}, compressing")
        image = rasterize_first_page(data)
        result = compress_image(image, self.target_bytes)
        if not result.success:
            logger.warning(f"Could not compress {file.name} below {self.target_bytes} bytes, skipping year extraction")
            return None

        logger.info(f"Compressed {file.name} to {result.size / 1024 / 1024:.2f}MB (quality {result.quality})")
        return Attachment(result.data, "image/jpeg")

    def extract(self, file: FileRef) -> Optional[str]:
        """
        Year string for a PDF-like file, or None if the file is not PDF-like.
        Never raises.
        """
        if not is_pdf_like(file.mime_type):
            return None

        try:
            data = self.storage.get_media(file.id)
            attachment = self.prepare_attachment(file, data)
            if attachment is None:
                return UNKNOWN_YEAR

            with self.api_semaphore.slot():
                text = self.provider.generate(YEAR_PROMPT, attachment=attachment, timeout=self.timeout)
        except AIProviderError as e:
            if e.kind == ErrorKind.TIMEOUT:
                logger.error(f"Year request timed out after {self.timeout:.0f}s for {file.name}")
            else:
                logger.error(f"Year request failed for {file.name}: {e}")
            return UNKNOWN_YEAR
        except Exception as e:
            logger.error(f"Error extracting year from {file.name}: {e}")
            return UNKNOWN_YEAR

        year = parse_year(text, self.current_year())
        logger.info(f"Year for {file.name}: {year} (model said {text!r})")
        return year

    def resolve(self, file: FileRef) -> str:
        return self.extract(file) or UNKNOWN_YEAR
