"""
Parsing adapters: one per source class, each turning a ParsedInput into a
RowSource of RawRow objects.

Tabular files keep their columns (``RawRow.cells`` maps our field names to
cell text); documents and OCR output are plain lines (``cells`` is None),
except Word/PDF tables whose header line names known columns.
"""
from __future__ import annotations
import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional
from urllib.parse import unquote, urlparse

from .detect import Artifact, ParsedInput, SourceKind, parse_input, sniff_bytes
from .errors import UnsupportedFormat
from .header_detect import build_dataframe_with_headers, match_header
from .ingest import load_tables
from .remote import ShareLinkResolver
from .settings import Settings
from .textract import FLAVOR_MIME, TextExtractor
from .utils import cell_str

logger = logging.getLogger(__name__)

_DISPOSITION_RE = re.compile(r"filename\*?=(?:UTF-8'')?[\"']?([^\"';]+)", re.I)
_CELL_SPLIT_RE = re.compile(r"\t|\s{3,}")


@dataclass(frozen=True)
class RawRow:
    index: int
    text: str
    cells: Optional[Dict[str, str]] = None
    sheet: str = ""

    @property
    def label(self) -> str:
        return f"{self.index} ({self.sheet})" if self.sheet else str(self.index)


class RowSource:
    """
    Finite, restartable sequence of rows. The producer runs once, on the first
    iteration; later iterations replay the same rows.
    """

    def __init__(self, produce: Callable[[], Iterable[RawRow]]):
        self._produce = produce
        self._rows: Optional[List[RawRow]] = None

    def __iter__(self) -> Iterator[RawRow]:
        if self._rows is None:
            self._rows = list(self._produce())
        return iter(self._rows)

    def __len__(self) -> int:
        return sum(1 for _ in self)

    @classmethod
    def of(cls, rows: Iterable[RawRow]) -> "RowSource":
        fixed = list(rows)
        return cls(lambda: fixed)


class TabularAdapter:
    def __init__(self, settings: Settings):
        self.settings = settings

    def _table_rows(self, table: dict, sheet_label: str) -> Iterator[RawRow]:
        df_raw = table["df_raw"]
        aliases = self.settings.header_aliases
        df, mapping = build_dataframe_with_headers(df_raw, aliases, self.settings.header_fuzzy_threshold)

        if not mapping:
            # no recognizable header: every line is free text
            logger.debug("No known header in %s/%s; reading rows as text", table["source_name"], table["sheet_name"])
            df = df_raw

        for _, r in df.iterrows():
            values = [cell_str(v) for k, v in r.items() if k != "_origin_row"]
            if not any(values):
                continue
            text = "\t".join(v for v in values if v)
            cells = None
            if mapping:
                cells = {fld: cell_str(r.get(label)) for fld, label in mapping.items()}
            yield RawRow(index=int(r["_origin_row"]), text=text, cells=cells, sheet=sheet_label)

    def rows(self, parsed: ParsedInput) -> RowSource:
        art = parsed.artifact

        def produce():
            tables = load_tables(art.data, art.filename or "upload", parsed.flavor)
            multi = len(tables) > 1
            for t in tables:
                yield from self._table_rows(t, t["sheet_name"] if multi else "")

        return RowSource(produce)


def _split_cells(line: str) -> List[str]:
    return [c.strip() for c in _CELL_SPLIT_RE.split(line) if c.strip()]


class TextLinesAdapter:
    """Documents and images: extract text, then one row per non-empty line."""

    def __init__(self, settings: Settings, extractor: TextExtractor):
        self.settings = settings
        self.extractor = extractor

    def _mime(self, parsed: ParsedInput) -> str:
        mime = parsed.artifact.mime
        if parsed.flavor == "image":
            return mime if mime.startswith("image/") else "image/png"
        return FLAVOR_MIME.get(parsed.flavor, mime)

    def _header_fields(self, cells: List[str]) -> Optional[List[Optional[str]]]:
        if len(cells) < 2:
            return None
        fields = [match_header(c, self.settings.header_aliases, self.settings.header_fuzzy_threshold) for c in cells]
        hits = [f for f in fields if f]
        return fields if len(hits) >= 2 and len(set(hits)) == len(hits) else None

    def lines_to_rows(self, text: str) -> Iterator[RawRow]:
        header: Optional[List[Optional[str]]] = None
        lineno = 0
        for raw_line in (text or "").splitlines():
            line = raw_line.strip()
            if not line:
                continue
            lineno += 1
            cells = _split_cells(line)
            fields = self._header_fields(cells)
            if fields:
                header = fields
                continue
            structured = None
            if header and len(cells) == len(header):
                structured = {f: c for f, c in zip(header, cells) if f}
            yield RawRow(index=lineno, text=line, cells=structured)

    def rows(self, parsed: ParsedInput) -> RowSource:
        art = parsed.artifact

        def produce():
            text = self.extractor.extract_text(art.data, self._mime(parsed))
            return self.lines_to_rows(text)

        return RowSource(produce)


def _filename_for(fetched_url: str, content_type: str, disposition: str, data: bytes) -> str:
    m = _DISPOSITION_RE.search(disposition or "")
    name = unquote(m.group(1)).strip() if m else ""
    if not name:
        try:
            name = unquote(urlparse(fetched_url).path.rsplit("/", 1)[-1])
        except ValueError:
            name = ""
    if "." in name:
        return name
    flavor = sniff_bytes(data)
    ext = {"pdf": ".pdf", "docx": ".docx", "excel": ".xlsx"}.get(flavor, "")
    if not ext and flavor == "image":
        ext = ".png"
    if not ext and (content_type or "").lower().startswith("text/"):
        ext = ".csv"
    return (name or "download") + ext


class RemoteLinkAdapter:
    """Downloads the link, classifies the bytes and hands them to the right adapter."""

    def __init__(self, resolver: ShareLinkResolver, registry: "AdapterRegistry"):
        self.resolver = resolver
        self.registry = registry

    def resolve(self, parsed: ParsedInput) -> ParsedInput:
        resp = self.resolver.fetch(parsed.url)
        filename = _filename_for(resp.url, resp.content_type, resp.disposition, resp.data)
        art = Artifact(data=resp.data, filename=filename, content_type=resp.content_type)
        inner = parse_input(art)
        logger.info("Remote link %s resolved to %s (%s)", parsed.url, filename, inner.kind.value)
        return inner

    def rows(self, parsed: ParsedInput) -> RowSource:
        def produce():
            inner = self.resolve(parsed)
            return self.registry.rows(inner)

        return RowSource(produce)


class AdapterRegistry:
    """Closed dispatch table from source class to adapter."""

    def __init__(self, settings: Settings, extractor: TextExtractor, resolver: ShareLinkResolver):
        text_adapter = TextLinesAdapter(settings, extractor)
        self._adapters = {
            SourceKind.TABULAR: TabularAdapter(settings),
            SourceKind.DOCUMENT: text_adapter,
            SourceKind.IMAGE: text_adapter,
            SourceKind.REMOTE_LINK: RemoteLinkAdapter(resolver, self),
        }

    def adapter_for(self, kind: SourceKind):
        try:
            return self._adapters[kind]
        except KeyError:
            raise UnsupportedFormat(f"no adapter for {kind}") from None

    def rows(self, parsed: ParsedInput) -> RowSource:
        if parsed.kind is SourceKind.REMOTE_LINK and parsed.artifact is not None:
            raise UnsupportedFormat("remote link inputs carry a URL, not bytes")
        return self.adapter_for(parsed.kind).rows(parsed)
