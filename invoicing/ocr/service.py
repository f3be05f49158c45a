"""OCR adapter using Tesseract.

Text extraction itself is an external concern; the worker only calls this
adapter when an image invoice arrives without OCR text.

Based on pytesseract documentation:
https://github.com/madmaze/pytesseract
"""

import io
import logging
import os

import pytesseract
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel

from invoicing.shared.config import Settings

logger = logging.getLogger(__name__)


class OCRResult(BaseModel):
    """Result of OCR operation.

    Attributes:
        text: Extracted text content
        success: Whether operation succeeded
        error: Error message if operation failed
    """

    text: str
    success: bool
    error: str | None = None


class OCRService:
    """OCR service using Tesseract engine."""

    def __init__(self, settings: Settings, lang: str = "por+eng") -> None:
        """Initialize OCR service.

        Args:
            settings: Application settings
            lang: Tesseract language packs to use
        """
        self.settings = settings
        self.lang = lang
        self._configure_tesseract()

    def _configure_tesseract(self) -> None:
        """Configure Tesseract command path from the TESSERACT_CMD environment variable."""
        tesseract_cmd = os.getenv("TESSERACT_CMD")
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def extract_text(self, data: bytes) -> OCRResult:
        """Extract text from image bytes.

        Args:
            data: Raw image file content (JPEG, PNG, WEBP)

        Returns:
            OCRResult with extracted text or error information
        """
        try:
            image = Image.open(io.BytesIO(data))
        except UnidentifiedImageError as e:
            return OCRResult(text="", success=False, error=f"unreadable image: {e}")

        try:
            text = pytesseract.image_to_string(image, lang=self.lang)
        except pytesseract.TesseractError as e:
            logger.error(f"Tesseract failed: {e}")
            return OCRResult(text="", success=False, error=f"OCR processing failed: {e}")

        logger.info(f"OCR extracted {len(text)} characters")
        return OCRResult(text=text, success=True)
