import io
import zipfile

import pytest

from cadetcore.detect import Artifact, SourceKind, detect_format, parse_input
from cadetcore.errors import UnsupportedFormat


def _zip_with(name):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr(name, "<x/>")
    return buf.getvalue()


@pytest.mark.parametrize("filename,kind", [
    ("roster.csv", SourceKind.TABULAR),
    ("ROSTER.XLSX", SourceKind.TABULAR),
    ("attendance.tsv", SourceKind.TABULAR),
    ("sheet.pdf", SourceKind.DOCUMENT),
    ("list.docx", SourceKind.DOCUMENT),
    ("photo.JPG", SourceKind.IMAGE),
    ("scan.webp", SourceKind.IMAGE),
])
def test_extension_decides_first(filename, kind):
    assert detect_format(Artifact(b"whatever", filename)) is kind


def test_mime_type_when_no_extension():
    assert detect_format(Artifact(b"a,b\n1,2\n", "", "text/csv; charset=utf-8")) is SourceKind.TABULAR
    assert detect_format(Artifact(b"...", "", "image/jpeg")) is SourceKind.IMAGE
    assert detect_format(Artifact(b"...", "blob", "application/pdf")) is SourceKind.DOCUMENT


def test_magic_bytes_when_nothing_else_is_known():
    assert detect_format(Artifact(b"%PDF-1.7\n...")) is SourceKind.DOCUMENT
    assert detect_format(Artifact(b"\x89PNG\r\n\x1a\n" + b"\x00" * 16)) is SourceKind.IMAGE
    assert detect_format(Artifact(_zip_with("word/document.xml"))) is SourceKind.DOCUMENT
    assert detect_format(Artifact(_zip_with("xl/workbook.xml"))) is SourceKind.TABULAR


def test_parse_input_tags_flavor():
    parsed = parse_input(Artifact(b"x", "roster.xlsx"))
    assert parsed.kind is SourceKind.TABULAR
    assert parsed.flavor == "excel"
    assert parsed.url == ""


def test_url_strings_are_remote_links():
    parsed = parse_input("  https://docs.google.com/spreadsheets/d/abc/edit  ")
    assert parsed.kind is SourceKind.REMOTE_LINK
    assert parsed.url == "https://docs.google.com/spreadsheets/d/abc/edit"
    assert parsed.artifact is None


@pytest.mark.parametrize("source", [
    Artifact(b"\x00\x01\x02garbage", "blob.bin"),
    Artifact(b"PK\x03\x04not really a zip"),
    "not a url",
    42,
])
def test_unsupported_inputs(source):
    with pytest.raises(UnsupportedFormat):
        detect_format(source)
