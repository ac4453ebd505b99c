import io

import docx
import fitz
import pytest
import pytesseract
from PIL import Image

from cadetcore.errors import ExtractionFailed, UnsupportedFormat
from cadetcore.textract import DOCX_MIME, PDF_MIME, DefaultTextExtractor


@pytest.fixture
def extractor():
    return DefaultTextExtractor()


def test_pdf_text(extractor):
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), "2024-0001 Juan Dela Cruz present")
    data = doc.tobytes()
    doc.close()
    assert "Juan Dela Cruz" in extractor.extract_text(data, PDF_MIME)


def test_docx_paragraphs_and_tables(extractor):
    document = docx.Document()
    document.add_paragraph("Attendance, 16 August")
    table = document.add_table(rows=2, cols=3)
    for i, value in enumerate(["Student ID", "Name", "Status"]):
        table.cell(0, i).text = value
    for i, value in enumerate(["2024-0001", "Juan Dela Cruz", "present"]):
        table.cell(1, i).text = value
    buf = io.BytesIO()
    document.save(buf)

    lines = extractor.extract_text(buf.getvalue(), DOCX_MIME).splitlines()
    assert lines[0] == "Attendance, 16 August"
    assert "Student ID\tName\tStatus" in lines
    assert "2024-0001\tJuan Dela Cruz\tpresent" in lines


@pytest.mark.parametrize("mime", [PDF_MIME, DOCX_MIME, "image/png"])
def test_broken_files(extractor, mime):
    with pytest.raises(ExtractionFailed):
        extractor.extract_text(b"definitely not a document", mime)


def test_unknown_mime(extractor):
    with pytest.raises(UnsupportedFormat):
        extractor.extract_text(b"x", "application/zip")


def png_bytes():
    buf = io.BytesIO()
    Image.new("RGB", (40, 20), "white").save(buf, format="PNG")
    return buf.getvalue()


@pytest.mark.parametrize("error,message", [
    (pytesseract.TesseractError(1, "Failed loading language 'xyz'"), "OCR failed"),
    (RuntimeError("Tesseract process timeout"), "OCR timed out"),
])
def test_ocr_errors_are_told_apart(extractor, monkeypatch, error, message):
    def fail(*args, **kwargs):
        raise error

    monkeypatch.setattr(pytesseract, "image_to_string", fail)
    with pytest.raises(ExtractionFailed, match=message):
        extractor.extract_text(png_bytes(), "image/png")
