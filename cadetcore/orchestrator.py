"""
Import pipeline: detect -> extract rows -> normalize -> match -> apply.

Whole-file problems raise an ImportAborted subclass before anything is
written. Row problems are collected into ``ImportResult.errors`` and the run
carries on.
"""
from __future__ import annotations
import hashlib
import logging
import threading
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set, Tuple, Union

from .adapters import AdapterRegistry, RawRow
from .detect import Artifact, ParsedInput, parse_input
from .entity import ExactMatch, match_candidate
from .errors import (
    CapacityExceeded, DuplicateIdentity, ImportAborted, NoIdentifiableCandidate, NoMatch,
    ProcessingTimeout, RowError, UnknownTrainingDay,
)
from .events import ATTENDANCE_MARKED, IMPORT_COMPLETED, LEDGER_CHANGED, EventBus
from .grading import GradeService
from .models import (
    PROFILE_FIELDS, Candidate, ImportKind, ImportOptions, ImportResult, Person, Purpose, Subject,
)
from .normalize import RowNormalizer, generate_external_id
from .settings import Settings
from .stores import MemoryRegistry, Stores
from .utils import content_digest

logger = logging.getLogger(__name__)

Source = Union[Artifact, str]


@dataclass
class _Tally:
    total_rows: int = 0
    matched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    generated_ids: List[Tuple[int, str]] = field(default_factory=list)
    touched: Set[str] = field(default_factory=set)

    def reject(self, err: RowError) -> None:
        self.skipped += 1
        self.errors.append(err.describe())

    def result(self, kind: ImportKind) -> ImportResult:
        return ImportResult(
            kind=kind,
            total_rows=self.total_rows,
            matched=self.matched,
            created=self.created,
            updated=self.updated,
            skipped=self.skipped,
            errors=tuple(self.errors),
            generated_ids=tuple(self.generated_ids),
        )


def ledger_fingerprint(cadet_id: str, cand: Candidate, digest: str, row_label: str) -> str:
    # same file + same row + same entry -> same key, so re-running appends nothing
    parts = [cadet_id, cand.ledger_type.value if cand.ledger_type else "", str(cand.points),
             " ".join(cand.reason.split()).lower(), digest, row_label]
    return hashlib.md5("|".join(parts).encode("utf-8")).hexdigest()


class ImportOrchestrator:
    def __init__(self, stores: Stores, settings: Settings, adapters: AdapterRegistry,
                 grades: Optional[GradeService] = None, events: Optional[EventBus] = None):
        self.stores = stores
        self.settings = settings
        self.adapters = adapters
        self.grades = grades
        self.events = events
        self._day_locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._day_locks_guard = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="cadetcore-extract")

    def day_lock(self, day_id: str) -> threading.Lock:
        with self._day_locks_guard:
            return self._day_locks[day_id]

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ---------- phases ----------
    def extract_rows(self, parsed: ParsedInput, timeout: Optional[float] = None) -> List[RawRow]:
        """Runs the adapter in a worker thread; OCR and PDF parsing are the slow part."""
        timeout = self.settings.processing_timeout if timeout is None else timeout
        future = self._executor.submit(lambda: list(self.adapters.rows(parsed)))
        try:
            return future.result(timeout=timeout if timeout and timeout > 0 else None)
        except FutureTimeout:
            future.cancel()
            raise ProcessingTimeout(f"text extraction did not finish within {timeout:g}s") from None

    def normalize_rows(self, rows: List[RawRow], kind: ImportKind, options: ImportOptions,
                       tally: _Tally) -> List[Tuple[RawRow, Candidate]]:
        normalizer = RowNormalizer(self.settings, kind, options)
        out = []
        for raw in rows:
            tally.total_rows += 1
            try:
                out.append((raw, normalizer.normalize(raw)))
            except RowError as e:
                e.row_index = raw.label
                logger.debug("Rejected row %s: %s", raw.label, e)
                tally.reject(e)
        return out

    # ---------- entry point ----------
    def run_import(self, source: Source, kind: ImportKind, target: Optional[str] = None,
                   options: Optional[ImportOptions] = None, timeout: Optional[float] = None) -> ImportResult:
        options = options or ImportOptions()
        if kind.purpose is Purpose.LEDGER and kind.subject is not Subject.CADET:
            raise ValueError("ledger imports are for cadets only")
        if kind.purpose is Purpose.ATTENDANCE and (not target or self.stores.days.get(target) is None):
            raise UnknownTrainingDay(f"training day {target!r} does not exist")

        logger.info("Import started: %s (target=%s)", kind, target)
        try:
            parsed = parse_input(source)
            rows = self.extract_rows(parsed, timeout)
            tally = _Tally()
            pairs = self.normalize_rows(rows, kind, options, tally)

            if kind.purpose is Purpose.ROSTER:
                self._apply_roster(pairs, kind, options, tally)
            elif kind.purpose is Purpose.ATTENDANCE:
                self._apply_attendance(pairs, kind, target, tally)
            else:
                digest = content_digest(parsed.artifact.data) if parsed.artifact else content_digest(
                    parsed.url.encode("utf-8"))
                self._apply_ledger(pairs, digest, tally)
        except ImportAborted as e:
            logger.warning("Import aborted (%s): %s", kind, e)
            raise

        result = tally.result(kind)
        logger.info(result.summary())
        for err in result.errors:
            logger.debug("  %s", err)

        if self.grades is not None and kind.subject is Subject.CADET:
            self.grades.recompute(tally.touched)
        if self.events is not None:
            if kind.purpose is Purpose.ATTENDANCE and tally.touched:
                self.events.publish(ATTENDANCE_MARKED, {"day_id": target, "person_ids": sorted(tally.touched)})
            if kind.purpose is Purpose.LEDGER and tally.touched:
                self.events.publish(LEDGER_CHANGED, {"cadet_ids": sorted(tally.touched), "action": "imported"})
            self.events.publish(IMPORT_COMPLETED, {"target": target, **result.as_dict()})
        return result

    # ---------- roster ----------
    def _check_capacity(self, registry: MemoryRegistry, pairs, kind: ImportKind) -> None:
        cap = int(self.settings.max_roster_size.get(kind.subject.value, 0) or 0)
        if cap <= 0:
            return
        # rows are resolved against the people this batch would create so far,
        # the same way the apply loop will see them
        pending = MemoryRegistry(kind.subject)
        for _, cand in pairs:
            res = match_candidate(cand, registry)
            if isinstance(res, ExactMatch) or res.ambiguous or not cand.has_name:
                continue
            hit = match_candidate(cand, pending)
            if isinstance(hit, ExactMatch) or hit.ambiguous:
                continue
            try:
                pending.create(self._new_person(cand, kind.subject))
            except DuplicateIdentity:
                continue
        current = registry.bulk_size()
        incoming = pending.bulk_size()
        if current + incoming > cap:
            raise CapacityExceeded(kind.subject.value, current, incoming, cap)

    def _next_generated_id(self, registry: MemoryRegistry, cand: Candidate, seq: int) -> Tuple[str, int]:
        while True:
            gid = generate_external_id(cand.last_name, cand.first_name, seq)
            if registry.find_by_external_id(gid) is None:
                return gid, seq + 1
            seq += 1

    def _new_person(self, cand: Candidate, subject: Subject) -> Person:
        person = Person(
            id="",
            subject=subject,
            first_name=cand.first_name,
            last_name=cand.last_name,
            middle_name=cand.middle_name,
            suffix_name=cand.suffix_name,
            external_id=cand.external_id,
            email=cand.email,
            id_generated=cand.id_generated,
        )
        for f, v in cand.fields.items():
            setattr(person, f, v)
        if not person.rank:
            person.rank = self.settings.default_rank.get(subject.value, "")
        if not person.role:
            person.role = self.settings.default_role.get(subject.value, "")
        return person

    @staticmethod
    def _merge_person(person: Person, cand: Candidate) -> Optional[Person]:
        """Copy of ``person`` with the non-empty import values applied, or None when nothing changes."""
        changes = {}
        for f in ("first_name", "last_name", "middle_name", "suffix_name", "email"):
            v = getattr(cand, f)
            if v and v != getattr(person, f):
                changes[f] = v
        if cand.external_id and cand.external_id != person.external_id and (
                not person.external_id or person.id_generated):
            # a real ID replaces a synthesized one
            changes["external_id"] = cand.external_id
            changes["id_generated"] = False
        for f in PROFILE_FIELDS:
            v = cand.fields.get(f, "")
            if v and v != getattr(person, f):
                changes[f] = v
        return replace(person, **changes) if changes else None

    def _apply_roster(self, pairs, kind: ImportKind, options: ImportOptions, tally: _Tally) -> None:
        registry = self.stores.registry(kind.subject)
        require_id = bool(self.settings.require_external_id.get(kind.subject.value, False))
        with registry.lock:
            self._check_capacity(registry, pairs, kind)
            seq = 1
            for raw, cand in pairs:
                res = match_candidate(cand, registry)
                try:
                    if isinstance(res, ExactMatch):
                        tally.matched += 1
                        merged = self._merge_person(res.person, cand)
                        if merged is not None:
                            registry.update(merged)
                            tally.updated += 1
                        tally.touched.add(res.person.id)
                        continue

                    if res.ambiguous:
                        raise NoMatch(res.reason, raw.label, raw.text)
                    if not cand.has_name:
                        raise NoIdentifiableCandidate("a new record needs first and last name", raw.label, raw.text)
                    if require_id and not cand.external_id:
                        if not options.generate_missing_ids:
                            raise NoIdentifiableCandidate("external ID required", raw.label, raw.text)
                        cand.external_id, seq = self._next_generated_id(registry, cand, seq)
                        cand.id_generated = True
                        tally.generated_ids.append((cand.row_index, cand.external_id))
                    person = registry.create(self._new_person(cand, kind.subject))
                    tally.created += 1
                    tally.touched.add(person.id)
                except DuplicateIdentity as e:
                    e.row_index, e.raw = raw.label, raw.text
                    tally.reject(e)
                except RowError as e:
                    tally.reject(e)
        if tally.created or tally.updated:
            logger.info("Roster %s: %d created, %d updated", kind.subject.value, tally.created, tally.updated)

    # ---------- attendance ----------
    def _apply_attendance(self, pairs, kind: ImportKind, day_id: str, tally: _Tally) -> None:
        registry = self.stores.registry(kind.subject)
        with self.day_lock(day_id):
            for raw, cand in pairs:
                res = match_candidate(cand, registry)
                if not isinstance(res, ExactMatch):
                    tally.reject(NoMatch(res.reason, raw.label, raw.text))
                    continue
                tally.matched += 1
                prev = self.stores.attendance.get(res.person.id, day_id)
                if prev is not None and prev.status == cand.status and prev.remarks == (cand.remarks or ""):
                    continue
                inserted = self.stores.attendance.upsert(res.person.id, day_id, cand.status, cand.remarks)
                if inserted:
                    tally.created += 1
                else:
                    tally.updated += 1
                tally.touched.add(res.person.id)

    # ---------- ledger ----------
    def _apply_ledger(self, pairs, digest: str, tally: _Tally) -> None:
        registry = self.stores.registry(Subject.CADET)
        with registry.lock:
            for raw, cand in pairs:
                res = match_candidate(cand, registry)
                if not isinstance(res, ExactMatch):
                    tally.reject(NoMatch(res.reason, raw.label, raw.text))
                    continue
                tally.matched += 1
                key = ledger_fingerprint(res.person.id, cand, digest, raw.label)
                if self.stores.ledger.has_source_key(key):
                    continue
                self.stores.ledger.append(res.person.id, cand.ledger_type, cand.points, cand.reason, source_key=key)
                tally.created += 1
                tally.touched.add(res.person.id)
