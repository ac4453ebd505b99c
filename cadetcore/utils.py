import os
import re
import json
import hashlib
import unicodedata
from pathlib import Path
from typing import Any, Optional
from dateutil import parser as dtparser

PACKAGE_DIR = Path(__file__).resolve().parent
DEFAULT_DATA_DIR = PACKAGE_DIR / "data"


def user_data_dir() -> Path:
    # CADETCORE_DATA_DIR > APPDATA/CadetCore/data > bundled data dir
    explicit = os.environ.get("CADETCORE_DATA_DIR")
    if explicit:
        return Path(explicit)
    appdata = os.environ.get("APPDATA")
    if appdata:
        return Path(appdata) / "CadetCore" / "data"
    return DEFAULT_DATA_DIR


def load_json(path: Path, default: Any):
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        return default


def save_json(path: Path, obj: Any):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(obj, f, ensure_ascii=False, indent=2)


_DASH_CHARS_RE = re.compile(r"[\u2010\u2011\u2012\u2013\u2014\u2212]")
_NBSP_RE = re.compile(r"[\u00A0\u2007\u202F]")


def norm_text(s: Any) -> str:
    """
    Generic text normalization:
    - BOM / non-breaking spaces
    - outer quotes
    - lower case
    - every dash variant -> '-'
    - collapsed whitespace
    """
    if s is None:
        return ""

    s = str(s)

    # invisible characters that CSV/Excel exports like to carry
    s = s.replace("\ufeff", "")
    s = _NBSP_RE.sub(" ", s)
    s = s.strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in ('"', "'"):
        s = s[1:-1].strip()
    s = s.lower()
    s = _DASH_CHARS_RE.sub("-", s)
    s = re.sub(r"\s+", " ", s).strip()
    return s


def strip_accents(s: str) -> str:
    # "Peñafrancia" -> "Penafrancia"
    decomposed = unicodedata.normalize("NFKD", s)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def norm_name(s: Any) -> str:
    """
    Name normalization used for matching:
    - based on norm_text
    - diacritics removed
    - keeps letters/digits/spaces/hyphen/apostrophe, drops the rest
    - hyphens without surrounding spaces
    """
    s = norm_text(s)
    if not s:
        return ""

    s = strip_accents(s)
    s = re.sub(r"[^a-z0-9\s\-\']", " ", s)
    s = re.sub(r"\s*-\s*", "-", s)
    s = re.sub(r"\s+", " ", s).strip()
    return s


def norm_header(s: Any) -> str:
    # "First Name" / "first_name" / "FIRST-NAME" -> "firstname"
    return re.sub(r"[^a-z0-9]", "", strip_accents(norm_text(s)))


def is_blank(v: Any) -> bool:
    if v is None:
        return True
    t = norm_text(v)
    return t in ("", "nan", "none", "nat")


def cell_str(v: Any) -> str:
    # Excel hands back floats for numeric IDs: 20240001.0 -> "20240001"
    if is_blank(v):
        return ""
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return str(v).replace("\ufeff", "").strip()


def try_parse_date(s: Any) -> Optional[str]:
    # training-day dates come as datetime objects, ISO strings or mm/dd/yyyy
    if s is None:
        return None

    if hasattr(s, "year") and hasattr(s, "month") and hasattr(s, "day"):
        return f"{int(s.year):04d}-{int(s.month):02d}-{int(s.day):02d}"

    txt = norm_text(s)
    if not txt:
        return None

    # month-first: local exports write 08/16/2025
    try:
        dt = dtparser.parse(txt, dayfirst=False, fuzzy=True)
    except (ValueError, OverflowError):
        return None
    return dt.strftime("%Y-%m-%d")


def content_digest(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def rules_path() -> Path:
    return DEFAULT_DATA_DIR / "rules.json"


def user_rules_path() -> Path:
    return user_data_dir() / "rules.json"


def state_path() -> Path:
    d = user_data_dir()
    d.mkdir(parents=True, exist_ok=True)
    return d / "state.json"
