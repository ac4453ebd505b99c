from __future__ import annotations
import re
from typing import Dict, List, Optional, Set, Tuple

from .adapters import RawRow
from .errors import AmbiguousRow, InvalidLedgerRow, NoIdentifiableCandidate
from .models import (
    PROFILE_FIELDS, AttendanceStatus, Candidate, ImportKind, ImportOptions, LedgerType, Purpose,
)
from .settings import Settings
from .utils import norm_name, norm_text, strip_accents

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+\-]+@[A-Za-z0-9\-]+(?:\.[A-Za-z0-9\-]+)*\.[A-Za-z]{2,}")
_EMAIL_FULL_RE = re.compile(r"^[A-Za-z0-9._%+\-]+@[A-Za-z0-9\-]+(?:\.[A-Za-z0-9\-]+)*\.[A-Za-z]{2,}$")
_WORD_RE = re.compile(r"[^\s,;|\t]+")
_INITIAL_RE = re.compile(r"^[A-Za-z]\.?$")
_INT_RE = re.compile(r"(?<![\w.])[+-]?\d{1,4}(?![\w.])")
_SUFFIXES = {"jr", "sr", "ii", "iii", "iv", "v"}


def _clean_token(t: str) -> str:
    return norm_text(t).strip(".:()[]")


def _is_cap_word(t: str) -> bool:
    # "Juan", "Dela", "O'Neil", "Peña", "M."
    core = t.rstrip(".")
    return bool(core) and core[0].isupper() and all(ch.isalpha() or ch in "'-" for ch in core)


def _titlecase(s: str) -> str:
    return " ".join(p[:1].upper() + p[1:].lower() for p in s.split())


def derive_name_from_email(email: str) -> Tuple[str, str]:
    """juan.delacruz@school.edu -> ("Juan", "Delacruz"); a single part gets "Cadet" as last name."""
    base = (email or "").split("@")[0]
    parts = [p for p in re.split(r"[._, \-]+", base) if p and not p.isdigit()]
    if len(parts) >= 2:
        return _titlecase(parts[0]), _titlecase(" ".join(parts[1:]))
    return _titlecase(base or "Unknown"), "Cadet"


def generate_external_id(last_name: str, first_name: str, seq: int) -> str:
    last = re.sub(r"[^A-Z0-9]", "", strip_accents(last_name or "").upper()) or "X"
    first = re.sub(r"[^A-Z0-9]", "", strip_accents(first_name or "").upper())[:1] or "X"
    return f"GEN-{last}-{first}-{seq:04d}"


class RowNormalizer:
    """Turns RawRow objects into Candidates for one import kind."""

    def __init__(self, settings: Settings, kind: ImportKind, options: Optional[ImportOptions] = None):
        self.settings = settings
        self.kind = kind
        self.options = options or ImportOptions()

        self._status_codes: Dict[str, AttendanceStatus] = {}
        self._status_words: Dict[str, AttendanceStatus] = {}
        for st in AttendanceStatus:
            self._status_codes[st.value] = st
            self._status_words[st.value] = st
            for tok in settings.attendance_tokens.get(st.value, []):
                t = norm_text(tok)
                self._status_codes.setdefault(t, st)
                # one- or two-letter codes only count inside a status column
                if len(t) >= 4 and t.isalpha():
                    self._status_words.setdefault(t, st)

        self._ledger_codes: Dict[str, LedgerType] = {}
        for lt in LedgerType:
            self._ledger_codes[lt.value] = lt
            for tok in settings.ledger_tokens.get(lt.value, []):
                self._ledger_codes.setdefault(norm_text(tok), lt)

        # words that never belong to a name on a free-text line
        self._status_strip = {t for t in self._status_codes if len(t) > 1 and t.isalpha()}
        self._ledger_words = {LedgerType.MERIT.value, LedgerType.DEMERIT.value}

        self._particles: Set[str] = set()
        for p in settings.surname_particles:
            self._particles.update(norm_name(p).split())
        self._ranks = {norm_text(r).rstrip(".") for r in settings.rank_prefixes}

    # ---------- field rules ----------
    def _valid_id(self, value: str) -> str:
        v = (value or "").strip()
        return v if v and self.settings.id_full_re.match(v) else ""

    def _search_id(self, text: str) -> str:
        m = self.settings.id_search_re.search(text or "")
        return m.group(0) if m else ""

    @staticmethod
    def _valid_email(value: str) -> str:
        v = (value or "").strip()
        return v if _EMAIL_FULL_RE.match(v) else ""

    @staticmethod
    def _search_email(text: str) -> str:
        m = EMAIL_RE.search(text or "")
        return m.group(0) if m else ""

    def _statuses_in(self, text: str, lookup: Dict[str, AttendanceStatus]) -> List[AttendanceStatus]:
        t = norm_text(text)
        if t in lookup:
            return [lookup[t]]
        found: List[AttendanceStatus] = []
        for tok in _WORD_RE.findall(t):
            st = lookup.get(_clean_token(tok))
            if st is not None and st not in found:
                found.append(st)
        return found

    def _is_rank(self, tok: str) -> bool:
        return _clean_token(tok).rstrip(".") in self._ranks

    def _strip_ranks(self, tokens: List[str]) -> List[str]:
        while tokens and self._is_rank(tokens[0]):
            tokens = tokens[1:]
        return tokens

    def _is_particle(self, tok: str) -> bool:
        return norm_name(tok) in self._particles

    # ---------- names ----------
    def _split_given(self, tokens: List[str]) -> Tuple[str, str, str]:
        # (first, middle, suffix) from the given-name side; trailing initials become the middle name
        suffix = ""
        if tokens and _clean_token(tokens[-1]).rstrip(".") in _SUFFIXES:
            suffix = tokens[-1].strip(",")
            tokens = tokens[:-1]
        middle: List[str] = []
        while len(tokens) > 1 and _INITIAL_RE.match(tokens[-1]):
            middle.insert(0, tokens[-1].rstrip("."))
            tokens = tokens[:-1]
        return " ".join(tokens), " ".join(middle), suffix

    def parse_full_name(self, text: str) -> Tuple[str, str, str, str]:
        """
        "Dela Cruz, Juan M." or "Juan M. Dela Cruz" -> (first, middle, last, suffix).
        Surname particles stay with the last name.
        """
        s = re.sub(r"\s+", " ", (text or "").strip(" ,;"))
        if not s:
            return "", "", "", ""

        if "," in s:
            last, _, rest = s.partition(",")
            last_tokens = self._strip_ranks(last.split())
            given = self._strip_ranks([t for t in rest.replace(",", " ").split() if t])
            first, middle, suffix = self._split_given(given)
            # "Dela Cruz Jr., Juan"
            if last_tokens and _clean_token(last_tokens[-1]).rstrip(".") in _SUFFIXES and not suffix:
                suffix = last_tokens[-1]
                last_tokens = last_tokens[:-1]
            return first, middle, " ".join(last_tokens), suffix

        tokens = self._strip_ranks(s.split())
        suffix = ""
        if len(tokens) > 2 and _clean_token(tokens[-1]).rstrip(".") in _SUFFIXES:
            suffix = tokens[-1]
            tokens = tokens[:-1]
        if len(tokens) < 2:
            return "", "", " ".join(tokens), suffix

        # surname = last token plus the particles right before it, leaving at least one given name
        start = len(tokens) - 1
        while start - 1 >= 1 and self._is_particle(tokens[start - 1]):
            start -= 1
        first, middle, _ = self._split_given(tokens[:start])
        return first, middle, " ".join(tokens[start:]), suffix

    def _name_run(self, tokens: List[str]) -> str:
        # first run of two or more capitalized words (particles and initials may sit inside)
        best: List[str] = []
        run: List[str] = []
        for tok in tokens + [""]:
            t = tok.strip(",;")
            if t and (_is_cap_word(t) or (run and self._is_particle(t))):
                run.append(tok)
                continue
            while run and self._is_particle(run[-1]) and not _is_cap_word(run[-1].strip(",;")):
                run.pop()
            caps = sum(1 for r in run if not _INITIAL_RE.match(r.strip(",;")))
            if caps >= 2:
                best = run
                break
            run = []
        return " ".join(best)

    def _line_name(self, text: str, drop: List[str]) -> Tuple[str, str, str, str]:
        s = text
        for d in drop:
            if d:
                s = s.replace(d, " ")
        tokens = []
        for tok in s.split():
            c = _clean_token(tok)
            if c in self._ledger_words:
                break  # everything after the entry type is the reason
            if not c or c in self._status_strip or self._is_rank(tok) or re.search(r"\d", tok):
                continue
            tokens.append(tok)
        cleaned = " ".join(tokens)

        if "," in cleaned:
            head, _, tail = cleaned.partition(",")
            given = []
            for tok in tail.split():
                t = tok.strip(",;")
                if not (_is_cap_word(t) or _INITIAL_RE.match(t)):
                    break
                given.append(t)
            if head.strip() and given:
                return self.parse_full_name(f"{head}, {' '.join(given)}")

        run = self._name_run(cleaned.split())
        if run:
            return self.parse_full_name(run)
        # all-lowercase lines ("juan dela cruz present")
        words = cleaned.replace(",", " ").split()
        if 2 <= len(words) <= 5 and all(w.replace("-", "").replace("'", "").isalpha() for w in words):
            return self.parse_full_name(" ".join(_titlecase(w) for w in words))
        return "", "", "", ""

    # ---------- ledger ----------
    def _ledger_fields(self, cand: Candidate, type_text: str, points_text: str, reason: str) -> None:
        lt = self._ledger_codes.get(norm_text(type_text)) if type_text else None
        pts_raw = (points_text or "").strip().replace(",", ".")
        try:
            pts_val = float(pts_raw) if pts_raw else None
        except ValueError:
            raise InvalidLedgerRow(f"points {points_text!r} is not a number", cand.row_index, cand.raw_text)
        if pts_val is not None and lt is None:
            # "+5" / "-3" without a type column
            if pts_raw.startswith("-"):
                lt = LedgerType.DEMERIT
            elif pts_raw.startswith("+"):
                lt = LedgerType.MERIT
        if lt is None:
            raise InvalidLedgerRow("merit/demerit type missing", cand.row_index, cand.raw_text)
        if pts_val is None or not float(abs(pts_val)).is_integer() or abs(pts_val) == 0:
            raise InvalidLedgerRow("points must be a positive whole number", cand.row_index, cand.raw_text)
        cand.ledger_type = lt
        cand.points = int(abs(pts_val))
        cand.reason = (reason or "").strip()

    def _ledger_from_line(self, cand: Candidate, text: str) -> None:
        type_text = ""
        after = text
        for tok in _WORD_RE.findall(text):
            c = _clean_token(tok)
            if c in (LedgerType.MERIT.value, LedgerType.DEMERIT.value):
                type_text = c
                after = text.split(tok, 1)[1]
                break
        m = _INT_RE.search(after)
        points = m.group(0) if m else ""
        reason = after[m.end():] if m else ""
        self._ledger_fields(cand, type_text, points, reason.strip(" -:,;\t"))

    # ---------- entry point ----------
    def normalize(self, raw: RawRow) -> Candidate:
        cand = Candidate(row_index=raw.index, raw_text=raw.text)
        purpose = self.kind.purpose
        drop: List[str] = []
        status_hits: List[AttendanceStatus] = []

        if raw.cells is not None:
            cells = {k: (v or "").strip() for k, v in raw.cells.items()}
            if "external_id" in cells:
                cand.external_id = self._valid_id(cells["external_id"])
            else:
                cand.external_id = self._search_id(raw.text)
            if "email" in cells:
                cand.email = self._valid_email(cells["email"])
            if not cand.email and self._valid_email(cells.get("external_id", "")):
                # Username columns often hold the login email
                cand.email = cells["external_id"]

            first, last = cells.get("first_name", ""), cells.get("last_name", "")
            if first and last:
                cand.first_name, cand.last_name = first, last
                cand.middle_name = cells.get("middle_name", "")
                cand.suffix_name = cells.get("suffix_name", "")
            elif cells.get("full_name"):
                f, m, l, sfx = self.parse_full_name(cells["full_name"])
                cand.first_name, cand.middle_name, cand.last_name, cand.suffix_name = f, m, l, sfx
                cand.middle_name = cells.get("middle_name") or cand.middle_name
                cand.suffix_name = cells.get("suffix_name") or cand.suffix_name
            else:
                cand.first_name, cand.last_name = first, last
                cand.middle_name = cells.get("middle_name", "")
                cand.suffix_name = cells.get("suffix_name", "")

            cand.remarks = cells.get("remarks", "")
            if purpose is Purpose.ATTENDANCE:
                if "status" in cells:
                    status_hits = self._statuses_in(cells["status"], self._status_codes)
                else:
                    status_hits = self._statuses_in(raw.text, self._status_words)
            if purpose is Purpose.ROSTER:
                cand.fields = {f: cells[f] for f in PROFILE_FIELDS if cells.get(f)}
            if purpose is Purpose.LEDGER:
                if cand.external_id or cand.email or cand.first_name:
                    self._ledger_fields(cand, cells.get("ledger_type", ""), cells.get("points", ""),
                                        cells.get("reason", ""))
        else:
            text = raw.text
            cand.external_id = self._search_id(text)
            cand.email = self._search_email(text)
            drop = [cand.external_id, cand.email]
            f, m, l, sfx = self._line_name(text, drop)
            cand.first_name, cand.middle_name, cand.last_name, cand.suffix_name = f, m, l, sfx
            if purpose is Purpose.ATTENDANCE:
                status_hits = self._statuses_in(text, self._status_words)
            if purpose is Purpose.LEDGER and (cand.external_id or cand.email or cand.has_name):
                stripped = text
                for d in drop:
                    if d:
                        stripped = stripped.replace(d, " ")
                self._ledger_from_line(cand, stripped)

        if purpose is Purpose.ROSTER and not cand.has_name and cand.email:
            first, last = derive_name_from_email(cand.email)
            cand.first_name = cand.first_name or first
            cand.last_name = cand.last_name or last

        if not (cand.external_id or cand.email or cand.has_name):
            raise NoIdentifiableCandidate("no ID, email or name found", raw.label, raw.text)

        if purpose is Purpose.ATTENDANCE:
            if len(status_hits) > 1:
                names = ", ".join(s.value for s in status_hits)
                raise AmbiguousRow(f"conflicting statuses ({names})", raw.label, raw.text)
            if status_hits:
                cand.status = status_hits[0]
            elif self.options.assume_present:
                cand.status = AttendanceStatus.PRESENT
            else:
                raise AmbiguousRow("no attendance status", raw.label, raw.text)

        return cand


def normalize_row(raw: RawRow, kind: ImportKind, settings: Settings,
                  options: Optional[ImportOptions] = None) -> Candidate:
    return RowNormalizer(settings, kind, options).normalize(raw)
