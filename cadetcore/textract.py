"""
Text extraction port.

Everything that turns document or image bytes into plain text sits behind
``TextExtractor.extract_text(data, mime_type)`` so the normalizer and matcher
can be exercised with synthetic text. ``DefaultTextExtractor`` uses PyMuPDF
for PDF text layers, python-docx for Word files and Tesseract (pytesseract +
Pillow) for images.
"""
from __future__ import annotations
import io
import logging
import zipfile
from typing import Protocol

import docx
import fitz  # PyMuPDF
import pytesseract
from docx.opc.exceptions import PackageNotFoundError
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import ExtractionFailed, UnsupportedFormat

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

FLAVOR_MIME = {
    "pdf": PDF_MIME,
    "docx": DOCX_MIME,
    "image": "image/*",
}


class TextExtractor(Protocol):
    def extract_text(self, data: bytes, mime_type: str) -> str: ...


def _pdf_text(data: bytes) -> str:
    try:
        doc = fitz.open(stream=data, filetype="pdf")
    except (fitz.FileDataError, RuntimeError, ValueError) as e:
        raise ExtractionFailed(f"unreadable PDF: {e}") from e
    with doc:
        return "\n".join(page.get_text() for page in doc)


def _docx_text(data: bytes) -> str:
    try:
        document = docx.Document(io.BytesIO(data))
    except (PackageNotFoundError, zipfile.BadZipFile, ValueError, KeyError) as e:
        raise ExtractionFailed(f"unreadable Word document: {e}") from e
    lines = [p.text for p in document.paragraphs]
    # rosters are often pasted as Word tables: one line per table row
    for table in document.tables:
        for row in table.rows:
            cells = []
            for cell in row.cells:
                t = cell.text.strip()
                if t and (not cells or cells[-1] != t):  # merged cells repeat their text
                    cells.append(t)
            if cells:
                lines.append("\t".join(cells))
    return "\n".join(lines)


def _image_text(data: bytes, lang: str, timeout: float) -> str:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ExtractionFailed(f"unreadable image: {e}") from e

    # grayscale + autocontrast helps on phone screenshots of printed sheets
    img = ImageOps.autocontrast(ImageOps.grayscale(img))
    try:
        return pytesseract.image_to_string(img, lang=lang, timeout=timeout or 0)
    except (pytesseract.TesseractNotFoundError, pytesseract.TesseractError) as e:
        raise ExtractionFailed(f"OCR failed: {e}") from e
    except RuntimeError as e:
        # pytesseract signals its own timeout with a bare RuntimeError
        raise ExtractionFailed(f"OCR timed out: {e}") from e


class DefaultTextExtractor:
    def __init__(self, ocr_language: str = "eng", ocr_timeout: float = 0):
        self.ocr_language = ocr_language
        self.ocr_timeout = ocr_timeout

    def extract_text(self, data: bytes, mime_type: str) -> str:
        mime = (mime_type or "").lower()
        if mime == PDF_MIME:
            text = _pdf_text(data)
        elif mime == DOCX_MIME:
            text = _docx_text(data)
        elif mime.startswith("image/"):
            text = _image_text(data, self.ocr_language, self.ocr_timeout)
        else:
            raise UnsupportedFormat(f"no text extractor for {mime_type!r}")
        logger.debug("Extracted %d characters from %s", len(text), mime)
        return text
