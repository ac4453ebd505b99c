from __future__ import annotations
import io
import re
import zipfile
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union
from .errors import UnsupportedFormat

_URL_RE = re.compile(r"^\s*https?://\S+\s*$", re.I)


class SourceKind(str, Enum):
    TABULAR = "tabular"
    DOCUMENT = "document"
    IMAGE = "image"
    REMOTE_LINK = "remote-link"


TABULAR_EXT = {".csv", ".tsv", ".txt", ".xlsx", ".xlsm", ".xls"}
DOCUMENT_EXT = {".pdf", ".docx"}
IMAGE_EXT = {".png", ".jpg", ".jpeg", ".gif", ".bmp", ".tif", ".tiff", ".webp"}

MIME_MAP = {
    "text/csv": SourceKind.TABULAR,
    "text/tab-separated-values": SourceKind.TABULAR,
    "application/csv": SourceKind.TABULAR,
    "application/vnd.ms-excel": SourceKind.TABULAR,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": SourceKind.TABULAR,
    "application/vnd.ms-excel.sheet.macroenabled.12": SourceKind.TABULAR,
    "application/pdf": SourceKind.DOCUMENT,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": SourceKind.DOCUMENT,
}


@dataclass(frozen=True)
class Artifact:
    """An uploaded blob and what the uploader told us about it."""
    data: bytes
    filename: str = ""
    content_type: str = ""

    @property
    def extension(self) -> str:
        name = (self.filename or "").lower().split("?")[0]
        dot = name.rfind(".")
        return name[dot:] if dot != -1 else ""

    @property
    def mime(self) -> str:
        return (self.content_type or "").split(";")[0].strip().lower()


@dataclass(frozen=True)
class ParsedInput:
    """Tagged input: exactly one of ``artifact`` / ``url`` is set."""
    kind: SourceKind
    artifact: Optional[Artifact] = None
    url: str = ""
    # finer tag inside a class: "csv", "excel", "pdf", "docx", "image"
    flavor: str = ""


def _is_url(source) -> bool:
    return isinstance(source, str) and bool(_URL_RE.match(source))


def _flavor_from_ext(ext: str) -> str:
    if ext in (".csv", ".tsv", ".txt"):
        return "csv"
    if ext in (".xlsx", ".xlsm", ".xls"):
        return "excel"
    if ext == ".pdf":
        return "pdf"
    if ext == ".docx":
        return "docx"
    if ext in IMAGE_EXT:
        return "image"
    return ""


def _kind_from_flavor(flavor: str) -> Optional[SourceKind]:
    return {
        "csv": SourceKind.TABULAR,
        "excel": SourceKind.TABULAR,
        "pdf": SourceKind.DOCUMENT,
        "docx": SourceKind.DOCUMENT,
        "image": SourceKind.IMAGE,
    }.get(flavor)


def sniff_bytes(data: bytes) -> str:
    # magic numbers; returns a flavor or ""
    head = data[:16]
    if head.startswith(b"%PDF"):
        return "pdf"
    if head.startswith(b"\x89PNG") or head.startswith(b"\xff\xd8\xff") or head[:6] in (b"GIF87a", b"GIF89a") \
            or head.startswith(b"BM") or head[:4] in (b"II*\x00", b"MM\x00*") \
            or (head[:4] == b"RIFF" and data[8:12] == b"WEBP"):
        return "image"
    if head.startswith(b"\xd0\xcf\x11\xe0"):
        return "excel"  # legacy .xls (OLE2)
    if head.startswith(b"PK"):
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as zf:
                names = zf.namelist()
        except zipfile.BadZipFile:
            return ""
        if any(n.startswith("word/") for n in names):
            return "docx"
        if any(n.startswith("xl/") for n in names):
            return "excel"
    return ""


def flavor_of(artifact: Artifact) -> str:
    flavor = _flavor_from_ext(artifact.extension)
    if flavor:
        return flavor
    mime = artifact.mime
    if mime in MIME_MAP:
        if mime == "application/pdf":
            return "pdf"
        if "wordprocessingml" in mime:
            return "docx"
        if mime.startswith("text/") or mime == "application/csv":
            return "csv"
        return "excel"
    if mime.startswith("image/"):
        return "image"
    return sniff_bytes(artifact.data or b"")


def detect_format(source: Union[Artifact, str]) -> SourceKind:
    """
    Classify an input: extension first, then MIME type, then magic bytes.
    URL strings are always remote links; they are resolved later.
    """
    if _is_url(source):
        return SourceKind.REMOTE_LINK
    if not isinstance(source, Artifact):
        raise UnsupportedFormat(f"not a file or URL: {type(source).__name__}")
    kind = _kind_from_flavor(flavor_of(source))
    if kind is None:
        raise UnsupportedFormat(
            f"unsupported file {source.filename or '<unnamed>'!r} ({source.content_type or 'unknown type'})"
        )
    return kind


def parse_input(source: Union[Artifact, str]) -> ParsedInput:
    kind = detect_format(source)
    if kind is SourceKind.REMOTE_LINK:
        return ParsedInput(kind=kind, url=str(source).strip())
    return ParsedInput(kind=kind, artifact=source, flavor=flavor_of(source))
