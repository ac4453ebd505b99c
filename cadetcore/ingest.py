from __future__ import annotations
import csv
import logging
import zipfile
from io import BytesIO, StringIO
from typing import List, Dict, Any, Optional
import pandas as pd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from xlrd import XLRDError
from xlrd.compdoc import CompDocError
from .errors import ExtractionFailed

logger = logging.getLogger(__name__)

# ImportError: pandas reports a missing or too old engine this way
_WORKBOOK_ERRORS = (ValueError, ImportError, XLRDError, CompDocError, zipfile.BadZipFile, InvalidFileException)

# =========================

# Excel: read a sheet as a matrix, expanding merged cells
# =========================
def _sheet_to_matrix_with_merged(wb_bytes: bytes, sheet_name: str, max_rows: Optional[int] = None) -> List[List[Any]]:
    wb = load_workbook(BytesIO(wb_bytes), read_only=False, data_only=True)
    ws = wb[sheet_name]
    merged_map = {}
    for r in ws.merged_cells.ranges:
        min_col, min_row, max_col, max_row = r.bounds
        top_val = ws.cell(min_row, min_col).value
        for rr in range(min_row, max_row + 1):
            for cc in range(min_col, max_col + 1):
                merged_map[(rr, cc)] = top_val

    rows = []
    max_r = ws.max_row
    max_c = ws.max_column
    if max_rows is not None:
        max_r = min(max_r, max_rows)

    for r in range(1, max_r + 1):
        row_vals = []
        for c in range(1, max_c + 1):
            v = ws.cell(r, c).value
            if (r, c) in merged_map and (v is None or str(v).strip() == ""):
                v = merged_map[(r, c)]
            row_vals.append(v)
        rows.append(row_vals)

    return rows
# =========================

# CSV: tolerant reading from bytes (form exports, registrar dumps)
# =========================
def _decode_sample(data: bytes, enc: str, limit: int = 65536) -> str:
    try:
        return data[:limit].decode(enc, errors="replace")
    except LookupError:
        return data[:limit].decode("utf-8", errors="replace")


def _guess_delimiter(sample_text: str) -> str:
    # Google Forms / Excel exports: ',' most of the time, ';' from some locales, tabs from copy-paste
    try:
        dialect = csv.Sniffer().sniff(sample_text, delimiters=";,\t|")
        if dialect.delimiter:
            return dialect.delimiter
    except csv.Error:
        pass

    # fallback: average count per line over the first rows
    candidates = [",", ";", "\t", "|"]
    lines = [ln for ln in sample_text.splitlines() if ln.strip()][:20]
    if not lines:
        return ","

    scores = {}
    for d in candidates:
        cnts = [ln.count(d) for ln in lines]
        scores[d] = sum(cnts) / max(1, len(cnts))

    best = max(scores.items(), key=lambda x: x[1])[0]
    return best if scores.get(best, 0) > 0 else ","


def _read_csv_bytes(data: bytes) -> pd.DataFrame:
    # read WITHOUT a header so the header row stays in df_raw like any other row
    encodings = ["utf-8-sig", "utf-8", "cp1252"]
    last_err: Exception | None = None

    for enc in encodings:
        try:
            sample = _decode_sample(data, enc)
            delim = _guess_delimiter(sample)

            df = pd.read_csv(
                BytesIO(data),
                header=None,
                sep=delim,
                engine="python",
                encoding=enc,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
            )

            # came out as a single column: try the other delimiters
            if df.shape[1] == 1:
                for d2 in [",", ";", "\t", "|"]:
                    if d2 == delim:
                        continue
                    try:
                        df2 = pd.read_csv(
                            BytesIO(data),
                            header=None,
                            sep=d2,
                            engine="python",
                            encoding=enc,
                            dtype=str,
                            keep_default_na=False,
                            skip_blank_lines=True,
                        )
                    except (pd.errors.ParserError, UnicodeDecodeError):
                        continue
                    if df2.shape[1] > 1:
                        df = df2
                        break

            return df

        except (pd.errors.ParserError, pd.errors.EmptyDataError, UnicodeDecodeError) as e:
            last_err = e
            continue

    # decode with replacement and give it one more go
    sample = _decode_sample(data, "utf-8", limit=len(data))
    delim = _guess_delimiter(sample)
    try:
        return pd.read_csv(
            StringIO(sample),
            header=None,
            sep=delim,
            engine="python",
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            on_bad_lines="skip",
        )
    except pd.errors.EmptyDataError:
        return pd.DataFrame()
    except pd.errors.ParserError as e:
        raise ExtractionFailed(f"unreadable CSV: {last_err or e}") from e
# =========================

# Main: bytes -> tables
# =========================
def load_tables(data: bytes, name: str, flavor: str) -> List[Dict[str, Any]]:
    """
    Returns a list of tables:
      {
        "source_name": <file name>,
        "sheet_name": <sheet or 'CSV'>,
        "df_raw": DataFrame  (first column is _origin_row),
      }

    In df_raw:
      - CSV is read as a bare matrix (header=None)
      - Excel is read as a matrix, merged cells expanded
      - _origin_row is the 1-based row number in the source
    """
    tables: List[Dict[str, Any]] = []

    if flavor == "csv":
        df = _read_csv_bytes(data)
        df.insert(0, "_origin_row", range(1, len(df) + 1))
        tables.append({"source_name": name, "sheet_name": "CSV", "df_raw": df})
        return tables

    try:
        xls = pd.ExcelFile(BytesIO(data))
    except _WORKBOOK_ERRORS as e:
        raise ExtractionFailed(f"unreadable workbook {name!r}: {e}") from e

    for sheet in xls.sheet_names:
        try:
            matrix = _sheet_to_matrix_with_merged(data, sheet_name=sheet, max_rows=None)
            df_raw = pd.DataFrame(matrix)
        except (KeyError, InvalidFileException, zipfile.BadZipFile):
            # legacy .xls goes through xlrd
            try:
                df_raw = xls.parse(sheet, header=None)
            except _WORKBOOK_ERRORS as e:
                raise ExtractionFailed(f"unreadable sheet {sheet!r} in {name!r}: {e}") from e

        df_raw.insert(0, "_origin_row", range(1, len(df_raw) + 1))
        tables.append({"source_name": name, "sheet_name": sheet, "df_raw": df_raw})
        logger.debug("Loaded sheet %r from %s: %d rows", sheet, name, len(df_raw))

    return tables
