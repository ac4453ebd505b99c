"""
TrainingProgram: the one object an application talks to.

Every write that can change a cadet's grade (attendance, ledger, exam
scores, status flags, training days) recomputes the affected snapshots
before returning, so ``grade()`` never serves a stale value.
"""
from __future__ import annotations
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from .adapters import AdapterRegistry
from .cache import StaleCache
from .detect import Artifact
from .errors import UnknownPerson, UnknownTrainingDay
from .events import ATTENDANCE_MARKED, LEDGER_CHANGED, EventBus
from .export import export_import_report_bytes, export_to_excel_bytes, grade_sheet_frame, ledger_detail_frame
from .grading import GradeService
from .models import (
    AttendanceStatus, ExamScores, GradeSnapshot, GradeStatus, ImportKind, ImportOptions, ImportResult,
    LedgerEntry, LedgerType, Person, Purpose, Subject, TrainingDay,
)
from .orchestrator import ImportOrchestrator
from .remote import ShareLinkResolver
from .settings import Settings, load_settings
from .stores import Stores, load_state, save_state
from .textract import DefaultTextExtractor, TextExtractor
from .utils import try_parse_date

logger = logging.getLogger(__name__)

KindLike = Union[ImportKind, Tuple[str, str], str]


def as_import_kind(kind: KindLike) -> ImportKind:
    """ImportKind, ("cadet", "roster") or "cadet/roster"."""
    if isinstance(kind, ImportKind):
        return kind
    if isinstance(kind, str):
        subject, _, purpose = kind.partition("/")
        return ImportKind.of(subject.strip(), purpose.strip())
    subject, purpose = kind
    return ImportKind.of(subject, purpose)


class TrainingProgram:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        stores: Optional[Stores] = None,
        extractor: Optional[TextExtractor] = None,
        resolver: Optional[ShareLinkResolver] = None,
        events: Optional[EventBus] = None,
    ):
        self.settings = settings or load_settings()
        self.stores = stores or Stores()
        self.events = events or EventBus()
        self.cache = StaleCache()
        self.extractor = extractor or DefaultTextExtractor(
            ocr_language=self.settings.ocr_language,
            ocr_timeout=self.settings.processing_timeout,
        )
        self.resolver = resolver or ShareLinkResolver(self.settings.remote)
        self.adapters = AdapterRegistry(self.settings, self.extractor, self.resolver)
        self.grades = GradeService(self.stores, self.settings, events=self.events)
        self.orchestrator = ImportOrchestrator(self.stores, self.settings, self.adapters,
                                               grades=self.grades, events=self.events)

    # ---------- persistence ----------
    @classmethod
    def load(cls, path: Optional[Path] = None, **kwargs) -> "TrainingProgram":
        program = cls(stores=load_state(path), **kwargs)
        program.grades.recompute_all()
        return program

    def save(self, path: Optional[Path] = None) -> Path:
        return save_state(self.stores, path)

    def close(self) -> None:
        self.orchestrator.close()

    # ---------- grades ----------
    def compute_grade(self, cadet_id: str) -> GradeSnapshot:
        return self.grades.compute_grade(cadet_id)

    def grade(self, cadet_id: str) -> GradeSnapshot:
        snap = self.grades.snapshot(cadet_id)
        return snap if snap is not None else self.compute_grade(cadet_id)

    # ---------- people ----------
    @property
    def cadets_registry(self):
        return self.stores.registry(Subject.CADET)

    def _cadet(self, cadet_id: str) -> Person:
        p = self.cadets_registry.get(cadet_id)
        if p is None:
            raise UnknownPerson(cadet_id)
        return p

    def people(self, subject: Union[str, Subject] = Subject.CADET, company: Optional[str] = None,
               platoon: Optional[str] = None) -> List[Person]:
        subject = Subject(subject)
        everyone = self.cache.get_stale_then_refresh(("people", subject), self.stores.registry(subject).list)
        return [
            p for p in everyone
            if (not company or p.company == company) and (not platoon or p.platoon == platoon)
        ]

    def set_grade_status(self, cadet_id: str, status: Union[str, GradeStatus]) -> GradeSnapshot:
        cadet = self._cadet(cadet_id)
        self.cadets_registry.update(replace(cadet, status=GradeStatus(status)))
        self.cache.invalidate(("people", Subject.CADET))
        return self.compute_grade(cadet_id)

    # ---------- imports ----------
    def run_import(self, source: Union[Artifact, str], kind: KindLike, target: Optional[str] = None,
                   options: Optional[ImportOptions] = None) -> ImportResult:
        kind = as_import_kind(kind)
        result = self.orchestrator.run_import(source, kind, target, options)
        if kind.purpose is Purpose.ROSTER:
            self.cache.invalidate(("people", kind.subject))
            if isinstance(source, str):
                self.stores.linked_sources[kind.subject.value] = source.strip()
        return result

    def sync_roster(self, subject: Union[str, Subject] = Subject.CADET,
                    options: Optional[ImportOptions] = None) -> ImportResult:
        """Re-import the roster from the share link it was last imported from."""
        subject = Subject(subject)
        url = self.stores.linked_sources.get(subject.value)
        if not url:
            raise KeyError(f"no linked roster source for {subject.value}")
        return self.run_import(url, ImportKind(subject, Purpose.ROSTER), options=options)

    def export_import_report(self, result: ImportResult) -> bytes:
        return export_import_report_bytes(result)

    # ---------- training days & attendance ----------
    def create_training_day(self, date: Any, title: str = "", description: str = "") -> TrainingDay:
        day = self.stores.days.create(try_parse_date(date) or str(date or ""), title, description)
        logger.info("Training day %s created (%s)", day.id, day.date)
        self.grades.recompute_all()
        return day

    def delete_training_day(self, day_id: str) -> None:
        if self.stores.days.get(day_id) is None:
            raise UnknownTrainingDay(f"training day {day_id!r} does not exist")
        with self.orchestrator.day_lock(day_id):
            removed = self.stores.attendance.delete_by_day(day_id)
            self.stores.days.delete(day_id)
        logger.info("Training day %s deleted with %d attendance records", day_id, len(removed))
        self.grades.recompute_all()

    def training_days(self) -> List[TrainingDay]:
        return self.stores.days.list()

    def mark_attendance(self, person_id: str, day_id: str, status: Union[str, AttendanceStatus],
                        remarks: str = "", subject: Union[str, Subject] = Subject.CADET) -> Optional[GradeSnapshot]:
        subject = Subject(subject)
        if self.stores.registry(subject).get(person_id) is None:
            raise UnknownPerson(person_id)
        if self.stores.days.get(day_id) is None:
            raise UnknownTrainingDay(f"training day {day_id!r} does not exist")
        with self.orchestrator.day_lock(day_id):
            self.stores.attendance.upsert(person_id, day_id, AttendanceStatus(status), remarks)
        self.events.publish(ATTENDANCE_MARKED, {"day_id": day_id, "person_ids": [person_id]})
        if subject is Subject.CADET:
            return self.compute_grade(person_id)
        return None

    def day_attendance(self, day_id: str, subject: Union[str, Subject] = Subject.CADET,
                       company: Optional[str] = None, platoon: Optional[str] = None) -> List[Dict[str, Any]]:
        """Everyone in the (filtered) roster with their status for the day; unmarked people have status None."""
        if self.stores.days.get(day_id) is None:
            raise UnknownTrainingDay(f"training day {day_id!r} does not exist")
        records = {r.person_id: r for r in self.stores.attendance.list_by_day(day_id)}
        out = []
        for p in self.people(subject, company=company, platoon=platoon):
            rec = records.get(p.id)
            out.append({
                "person_id": p.id,
                "external_id": p.external_id,
                "name": p.display_name,
                "company": p.company,
                "platoon": p.platoon,
                "status": rec.status.value if rec else None,
                "remarks": rec.remarks if rec else "",
            })
        return out

    # ---------- ledger ----------
    def add_ledger_entry(self, cadet_id: str, type: Union[str, LedgerType], points: int,
                         reason: str = "") -> LedgerEntry:
        self._cadet(cadet_id)
        entry = self.stores.ledger.append(cadet_id, LedgerType(type), points, reason)
        self.events.publish(LEDGER_CHANGED, {"cadet_id": cadet_id, "entry_id": entry.id, "action": "added"})
        self.compute_grade(cadet_id)
        return entry

    def delete_ledger_entry(self, entry_id: str) -> LedgerEntry:
        entry = self.stores.ledger.delete(entry_id)
        if entry is None:
            raise KeyError(f"ledger entry {entry_id!r} does not exist")
        self.events.publish(LEDGER_CHANGED, {"cadet_id": entry.cadet_id, "entry_id": entry.id, "action": "deleted"})
        self.grades.recompute([entry.cadet_id])
        return entry

    def ledger(self, cadet_id: str) -> List[LedgerEntry]:
        return self.stores.ledger.list_by_cadet(cadet_id)

    # ---------- exams ----------
    def set_exam_scores(self, cadet_id: str, prelim: Optional[float] = None, midterm: Optional[float] = None,
                        final: Optional[float] = None) -> GradeSnapshot:
        self._cadet(cadet_id)
        cur = self.stores.exams.get(cadet_id)
        self.stores.exams.put(cadet_id, ExamScores(
            prelim=cur.prelim if prelim is None else prelim,
            midterm=cur.midterm if midterm is None else midterm,
            final=cur.final if final is None else final,
        ))
        return self.compute_grade(cadet_id)

    # ---------- reports ----------
    def grade_sheet(self, company: Optional[str] = None, platoon: Optional[str] = None):
        cadets = self.people(Subject.CADET, company=company, platoon=platoon)
        snapshots = {p.id: self.grade(p.id) for p in cadets}
        present = {p.id: self.grades.days_present(p.id) for p in cadets}
        return grade_sheet_frame(cadets, snapshots, present)

    def export_grade_sheet(self, company: Optional[str] = None, platoon: Optional[str] = None,
                           with_ledger: bool = True) -> bytes:
        cadets = self.people(Subject.CADET, company=company, platoon=platoon)
        detail = None
        if with_ledger:
            detail = ledger_detail_frame(cadets, {p.id: self.ledger(p.id) for p in cadets})
        return export_to_excel_bytes(self.grade_sheet(company, platoon), detail)
