from __future__ import annotations
import re
from typing import Dict, List, Optional, Tuple
import pandas as pd
from rapidfuzz import fuzz
from .utils import norm_header, is_blank, cell_str

EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+", re.I)
NUMERIC_RE = re.compile(r"^\s*[-+]?\d+([.,]\d+)?\s*$")


def _alias_index(aliases: Dict[str, List[str]]) -> Dict[str, str]:
    # normalized alias -> field; first declaration wins ("Username" stays an ID alias)
    idx: Dict[str, str] = {}
    for fld, names in aliases.items():
        for n in names:
            key = norm_header(n)
            if key and key not in idx:
                idx[key] = fld
    return idx


def match_header(cell, aliases: Dict[str, List[str]], fuzzy_threshold: int = 92) -> Optional[str]:
    """Field name for one header cell, or None."""
    key = norm_header(cell)
    if not key:
        return None
    idx = _alias_index(aliases)
    if key in idx:
        return idx[key]
    # near misses ("First Nme", "Studen ID"); short keys are too risky
    if len(key) < 5:
        return None
    best_field, best_score = None, 0.0
    for alias_key, fld in idx.items():
        if len(alias_key) < 5:
            continue
        sc = fuzz.ratio(key, alias_key)
        if sc > best_score:
            best_field, best_score = fld, sc
    return best_field if best_score >= fuzzy_threshold else None


def _row_keyword_score(row: pd.Series, aliases: Dict[str, List[str]], fuzzy_threshold: int) -> float:
    # how many cells of the row look like known column names
    score = 0.0
    seen = set()
    for v in row.tolist():
        if is_blank(v):
            continue
        fld = match_header(v, aliases, fuzzy_threshold)
        if fld and fld not in seen:
            seen.add(fld)
            score += 1.0
    return score


def _row_dataish_score(row: pd.Series) -> float:
    # looks like data: emails, numbers, IDs
    hits = 0
    for v in row.tolist():
        s = cell_str(v)
        if not s:
            continue
        if EMAIL_RE.search(s) or NUMERIC_RE.match(s):
            hits += 1
        elif re.search(r"\d", s):
            hits += 1
    return float(hits)


def detect_header_row(df_raw: pd.DataFrame, aliases: Dict[str, List[str]],
                      fuzzy_threshold: int = 92, max_scan_rows: int = 30) -> int:
    """
    0-based index of the header row.

    Title blocks ("ROTC Unit Attendance Sheet", dates, signatures) often sit
    above the real header, so the first rows are scored by how many cells name
    a known column; data-looking cells count against a row. Earlier rows win
    ties. Without any hit the first row is the header.
    """
    n = min(max_scan_rows, len(df_raw))
    best_row, best_score = 0, 0.0
    for i in range(n):
        row = df_raw.iloc[i, 1:]  # skip _origin_row
        kw = _row_keyword_score(row, aliases, fuzzy_threshold)
        if kw <= 0:
            continue
        score = 2.0 * kw - 0.5 * _row_dataish_score(row) - 0.05 * i
        if score > best_score:
            best_row, best_score = i, score
    return best_row


def resolve_columns(headers: List[str], aliases: Dict[str, List[str]],
                    fuzzy_threshold: int = 92) -> Dict[str, str]:
    """
    Maps our field names to actual header labels. When two labels resolve to
    the same field the first one (left-most) is kept.
    """
    out: Dict[str, str] = {}
    for h in headers:
        fld = match_header(h, aliases, fuzzy_threshold)
        if fld and fld not in out:
            out[fld] = h
    return out


def _make_unique(cols):
    seen = {}
    out = []
    for c in cols:
        base = str(c).strip()
        if base == "" or base.lower() == "nan":
            base = "col"
        n = seen.get(base, 0) + 1
        seen[base] = n
        out.append(base if n == 1 else f"{base}__{n}")
    return out


def build_dataframe_with_headers(df_raw: pd.DataFrame, aliases: Dict[str, List[str]],
                                 fuzzy_threshold: int = 92) -> Tuple[pd.DataFrame, Dict[str, str]]:
    """Returns (data rows with labelled columns, field -> column label)."""
    if df_raw.empty:
        return pd.DataFrame(columns=["_origin_row"]), {}

    start = detect_header_row(df_raw, aliases, fuzzy_threshold)
    header_cells = df_raw.iloc[start, 1:].tolist()
    headers = _make_unique([cell_str(v) or f"col_{i + 1}" for i, v in enumerate(header_cells)])

    df = df_raw.iloc[start + 1:, :].copy()
    df.columns = ["_origin_row"] + headers
    mapping = resolve_columns(headers, aliases, fuzzy_threshold)
    return df, mapping

