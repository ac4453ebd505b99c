from __future__ import annotations
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .models import Candidate, Person
from .stores import RegistryStore
from .utils import norm_name, norm_text


class MatchTier(str, Enum):
    EXTERNAL_ID = "external_id"
    EMAIL = "email"
    NAME = "name"


@dataclass(frozen=True)
class ExactMatch:
    person: Person
    tier: MatchTier


@dataclass(frozen=True)
class NoMatch:
    reason: str
    # name tier found several people
    ambiguous: bool = False


MatchResult = Union[ExactMatch, NoMatch]


def _canon_id(s: str) -> str:
    # IDs compare case-sensitively; only surrounding whitespace is dropped
    x = str(s or "").strip()
    if norm_text(x) in ("", "nan", "none", "0"):
        return ""
    return re.sub(r"\s+", "", x)


def _canon_email(s: str) -> str:
    return norm_text(s).replace(" ", "")


def _canon_name(s: str) -> str:
    # diacritics, case and spacing do not matter; digits mean it is not a name
    x = norm_name(s)
    if re.search(r"\d", x):
        return ""
    return x


def _holds_other_id(person: Person, ext: str) -> bool:
    # a real ID that differs from the row's ID means a different person
    own = _canon_id(person.external_id)
    return bool(ext and own and not person.id_generated and own != ext)


def match_candidate(candidate: Candidate, registry: RegistryStore) -> MatchResult:
    """
    External ID, then email, then last + first name. The first tier that
    yields a person wins; later tiers are not consulted. A row carrying an ID
    never matches someone registered under another real ID.
    """
    ext = _canon_id(candidate.external_id)
    if ext:
        p = registry.find_by_external_id(ext)
        if p is not None:
            return ExactMatch(p, MatchTier.EXTERNAL_ID)

    email = _canon_email(candidate.email)
    if email:
        p = registry.find_by_email(email)
        if p is not None:
            if _holds_other_id(p, ext):
                return NoMatch(f"{candidate.email} belongs to ID {p.external_id}, not {candidate.external_id}",
                               ambiguous=True)
            return ExactMatch(p, MatchTier.EMAIL)

    first, last = _canon_name(candidate.first_name), _canon_name(candidate.last_name)
    if first and last:
        found = [p for p in registry.find_by_name(first, last) if not _holds_other_id(p, ext)]
        if len(found) == 1:
            return ExactMatch(found[0], MatchTier.NAME)
        if len(found) > 1:
            return NoMatch(f"{len(found)} people share the name {candidate.last_name}, {candidate.first_name}",
                           ambiguous=True)

    return NoMatch(_describe_missing(candidate))


def _describe_missing(candidate: Candidate) -> str:
    parts = []
    if candidate.external_id:
        parts.append(f"ID {candidate.external_id}")
    if candidate.email:
        parts.append(candidate.email)
    if candidate.has_name:
        parts.append(f"{candidate.last_name}, {candidate.first_name}")
    return "no registered person matches " + (" / ".join(parts) or "this row")
