"""
Storage collaborators.

The engine only talks to the Protocols below. The in-memory classes are the
bundled implementation; ``save_state`` / ``load_state`` write them to a JSON
file in the user data directory (see ``utils.state_path``).
"""
from __future__ import annotations
import itertools
import logging
import threading
from dataclasses import asdict, fields
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from .errors import DuplicateIdentity, UnknownPerson
from .models import (
    AttendanceRecord, AttendanceStatus, ExamScores, GradeSnapshot, GradeStatus,
    LedgerEntry, LedgerType, Person, Subject, TrainingDay,
)
from .utils import load_json, norm_name, save_json, state_path

logger = logging.getLogger(__name__)


class RegistryStore(Protocol):
    subject: Subject

    def get(self, person_id: str) -> Optional[Person]: ...
    def find_by_external_id(self, external_id: str) -> Optional[Person]: ...
    def find_by_email(self, email: str) -> Optional[Person]: ...
    def find_by_name(self, first_name: str, last_name: str) -> List[Person]: ...
    def create(self, person: Person) -> Person: ...
    def update(self, person: Person) -> Person: ...
    def delete(self, person_id: str) -> None: ...
    def bulk_size(self) -> int: ...
    def list(self) -> List[Person]: ...


class AttendanceStore(Protocol):
    def upsert(self, person_id: str, day_id: str, status: AttendanceStatus, remarks: str = "") -> bool: ...
    def get(self, person_id: str, day_id: str) -> Optional[AttendanceRecord]: ...
    def list_by_day(self, day_id: str) -> List[AttendanceRecord]: ...
    def list_by_person(self, person_id: str) -> List[AttendanceRecord]: ...
    def delete_by_day(self, day_id: str) -> List[str]: ...


class LedgerStore(Protocol):
    def append(self, cadet_id: str, type: LedgerType, points: int, reason: str = "",
               source_key: str = "") -> LedgerEntry: ...
    def sum_by_cadet(self, cadet_id: str) -> Tuple[int, int]: ...
    def list_by_cadet(self, cadet_id: str) -> List[LedgerEntry]: ...
    def delete(self, entry_id: str) -> Optional[LedgerEntry]: ...
    def has_source_key(self, source_key: str) -> bool: ...


def _name_key(first_name: str, last_name: str) -> Tuple[str, str]:
    return norm_name(last_name), norm_name(first_name)


class MemoryRegistry:
    """Cadet or staff registry with unique external ID / email indexes."""

    def __init__(self, subject: Subject):
        self.subject = Subject(subject)
        self._people: Dict[str, Person] = {}
        self._seq = itertools.count(1)
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    def _next_id(self) -> str:
        while True:
            pid = f"{self.subject.value}-{next(self._seq)}"
            if pid not in self._people:
                return pid

    def get(self, person_id: str) -> Optional[Person]:
        return self._people.get(person_id)

    def find_by_external_id(self, external_id: str) -> Optional[Person]:
        if not external_id:
            return None
        for p in self._people.values():
            if p.external_id == external_id:
                return p
        return None

    def find_by_email(self, email: str) -> Optional[Person]:
        e = (email or "").strip().lower()
        if not e:
            return None
        for p in self._people.values():
            if p.email and p.email.strip().lower() == e:
                return p
        return None

    def find_by_name(self, first_name: str, last_name: str) -> List[Person]:
        key = _name_key(first_name, last_name)
        if not key[0] or not key[1]:
            return []
        return [p for p in self._people.values() if _name_key(p.first_name, p.last_name) == key]

    def _check_unique(self, person: Person) -> None:
        other = self.find_by_external_id(person.external_id)
        if other is not None and other.id != person.id:
            raise DuplicateIdentity(f"external ID {person.external_id} already belongs to {other.display_name}")
        other = self.find_by_email(person.email)
        if other is not None and other.id != person.id:
            raise DuplicateIdentity(f"email {person.email} already belongs to {other.display_name}")

    def create(self, person: Person) -> Person:
        with self._lock:
            if not person.id:
                person.id = self._next_id()
            elif person.id in self._people:
                raise DuplicateIdentity(f"person id {person.id} already exists")
            person.subject = self.subject
            self._check_unique(person)
            self._people[person.id] = person
            return person

    def update(self, person: Person) -> Person:
        with self._lock:
            if person.id not in self._people:
                raise UnknownPerson(person.id)
            self._check_unique(person)
            self._people[person.id] = person
            return person

    def delete(self, person_id: str) -> None:
        with self._lock:
            if self._people.pop(person_id, None) is None:
                raise UnknownPerson(person_id)

    def bulk_size(self) -> int:
        return len(self._people)

    def list(self) -> List[Person]:
        return sorted(self._people.values(), key=lambda p: (norm_name(p.last_name), norm_name(p.first_name), p.id))


class MemoryAttendanceStore:
    def __init__(self):
        self._records: Dict[Tuple[str, str], AttendanceRecord] = {}
        self._lock = threading.Lock()

    def upsert(self, person_id: str, day_id: str, status: AttendanceStatus, remarks: str = "") -> bool:
        """Returns True when a new record was inserted, False when one was overwritten."""
        with self._lock:
            key = (person_id, day_id)
            created = key not in self._records
            self._records[key] = AttendanceRecord(person_id, day_id, AttendanceStatus(status), remarks or "")
            return created

    def get(self, person_id: str, day_id: str) -> Optional[AttendanceRecord]:
        return self._records.get((person_id, day_id))

    def list_by_day(self, day_id: str) -> List[AttendanceRecord]:
        return [r for (_, d), r in self._records.items() if d == day_id]

    def list_by_person(self, person_id: str) -> List[AttendanceRecord]:
        return [r for (p, _), r in self._records.items() if p == person_id]

    def delete_by_day(self, day_id: str) -> List[str]:
        with self._lock:
            keys = [k for k in self._records if k[1] == day_id]
            for k in keys:
                del self._records[k]
            return [k[0] for k in keys]

    def all(self) -> Iterable[AttendanceRecord]:
        return list(self._records.values())


class MemoryLedgerStore:
    def __init__(self):
        self._entries: Dict[str, LedgerEntry] = {}
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def append(self, cadet_id: str, type: LedgerType, points: int, reason: str = "",
               source_key: str = "") -> LedgerEntry:
        points = int(points)
        if points <= 0:
            raise ValueError(f"ledger points must be positive, got {points}")
        with self._lock:
            entry_id = f"ledger-{next(self._seq)}"
            while entry_id in self._entries:
                entry_id = f"ledger-{next(self._seq)}"
            entry = LedgerEntry(entry_id, cadet_id, LedgerType(type), points, reason or "", source_key=source_key or "")
            self._entries[entry_id] = entry
            return entry

    def add(self, entry: LedgerEntry) -> LedgerEntry:
        self._entries[entry.id] = entry
        return entry

    def sum_by_cadet(self, cadet_id: str) -> Tuple[int, int]:
        merit = demerit = 0
        for e in self._entries.values():
            if e.cadet_id != cadet_id:
                continue
            if e.type is LedgerType.MERIT:
                merit += e.points
            else:
                demerit += e.points
        return merit, demerit

    def list_by_cadet(self, cadet_id: str) -> List[LedgerEntry]:
        rows = [e for e in self._entries.values() if e.cadet_id == cadet_id]
        return sorted(rows, key=lambda e: e.timestamp, reverse=True)

    def delete(self, entry_id: str) -> Optional[LedgerEntry]:
        with self._lock:
            return self._entries.pop(entry_id, None)

    def has_source_key(self, source_key: str) -> bool:
        return bool(source_key) and any(e.source_key == source_key for e in self._entries.values())

    def all(self) -> Iterable[LedgerEntry]:
        return list(self._entries.values())


class MemoryTrainingDayStore:
    def __init__(self):
        self._days: Dict[str, TrainingDay] = {}
        self._seq = itertools.count(1)

    def create(self, date: str, title: str = "", description: str = "") -> TrainingDay:
        day_id = f"day-{next(self._seq)}"
        while day_id in self._days:
            day_id = f"day-{next(self._seq)}"
        day = TrainingDay(day_id, date, title, description)
        self._days[day_id] = day
        return day

    def add(self, day: TrainingDay) -> TrainingDay:
        self._days[day.id] = day
        return day

    def get(self, day_id: str) -> Optional[TrainingDay]:
        return self._days.get(day_id)

    def delete(self, day_id: str) -> Optional[TrainingDay]:
        return self._days.pop(day_id, None)

    def count(self) -> int:
        return len(self._days)

    def list(self) -> List[TrainingDay]:
        return sorted(self._days.values(), key=lambda d: (d.date, d.id), reverse=True)


class MemoryExamStore:
    def __init__(self):
        self._scores: Dict[str, ExamScores] = {}

    def get(self, cadet_id: str) -> ExamScores:
        return self._scores.get(cadet_id, ExamScores())

    def put(self, cadet_id: str, scores: ExamScores) -> ExamScores:
        clamped = scores.clamped()
        self._scores[cadet_id] = clamped
        return clamped

    def items(self):
        return list(self._scores.items())


class MemorySnapshotStore:
    def __init__(self):
        self._snapshots: Dict[str, GradeSnapshot] = {}

    def get(self, cadet_id: str) -> Optional[GradeSnapshot]:
        return self._snapshots.get(cadet_id)

    def put(self, snapshot: GradeSnapshot) -> None:
        self._snapshots[snapshot.cadet_id] = snapshot

    def discard(self, cadet_id: str) -> None:
        self._snapshots.pop(cadet_id, None)


class Stores:
    """The full set of collaborators one training program needs."""

    def __init__(self):
        self.registries: Dict[Subject, MemoryRegistry] = {
            Subject.CADET: MemoryRegistry(Subject.CADET),
            Subject.STAFF: MemoryRegistry(Subject.STAFF),
        }
        self.attendance = MemoryAttendanceStore()
        self.ledger = MemoryLedgerStore()
        self.days = MemoryTrainingDayStore()
        self.exams = MemoryExamStore()
        self.snapshots = MemorySnapshotStore()
        # subject -> share link the roster was last imported from
        self.linked_sources: Dict[str, str] = {}

    def registry(self, subject) -> MemoryRegistry:
        return self.registries[Subject(subject)]


# =========================
# JSON persistence
# =========================
def _person_to_dict(p: Person) -> dict:
    d = asdict(p)
    d["subject"] = p.subject.value
    d["status"] = p.status.value
    return d


def _person_from_dict(d: dict) -> Person:
    known = {f.name for f in fields(Person)}
    kw = {k: v for k, v in d.items() if k in known}
    kw["subject"] = Subject(kw.get("subject", "cadet"))
    kw["status"] = GradeStatus(kw.get("status", "active"))
    return Person(**kw)


def dump_state(stores: Stores) -> dict:
    return {
        "people": [_person_to_dict(p) for reg in stores.registries.values() for p in reg.list()],
        "days": [asdict(d) for d in stores.days.list()],
        "attendance": [
            {"person_id": r.person_id, "day_id": r.day_id, "status": r.status.value, "remarks": r.remarks}
            for r in stores.attendance.all()
        ],
        "ledger": [
            {"id": e.id, "cadet_id": e.cadet_id, "type": e.type.value, "points": e.points,
             "reason": e.reason, "timestamp": e.timestamp.isoformat(), "source_key": e.source_key}
            for e in stores.ledger.all()
        ],
        "exams": {cid: asdict(s) for cid, s in stores.exams.items()},
        "linked_sources": dict(stores.linked_sources),
    }


def restore_state(obj: dict) -> Stores:
    stores = Stores()
    if not isinstance(obj, dict):
        return stores

    for d in obj.get("people", []) or []:
        try:
            p = _person_from_dict(d)
            stores.registry(p.subject).create(p)
        except (TypeError, ValueError, DuplicateIdentity) as e:
            logger.warning("Skipping stored person %r: %s", d.get("id"), e)

    for d in obj.get("days", []) or []:
        stores.days.add(TrainingDay(str(d["id"]), str(d.get("date", "")), d.get("title", ""), d.get("description", "")))

    for d in obj.get("attendance", []) or []:
        stores.attendance.upsert(d["person_id"], d["day_id"], AttendanceStatus(d["status"]), d.get("remarks", ""))

    for d in obj.get("ledger", []) or []:
        entry = LedgerEntry(
            id=str(d["id"]),
            cadet_id=str(d["cadet_id"]),
            type=LedgerType(d["type"]),
            points=int(d["points"]),
            reason=d.get("reason", ""),
            timestamp=datetime.fromisoformat(d["timestamp"]) if d.get("timestamp") else datetime.now(),
            source_key=d.get("source_key", ""),
        )
        stores.ledger.add(entry)

    for cid, s in (obj.get("exams", {}) or {}).items():
        stores.exams.put(cid, ExamScores(**s))

    for subject, url in (obj.get("linked_sources", {}) or {}).items():
        stores.linked_sources[str(subject)] = str(url)

    return stores


def save_state(stores: Stores, path: Optional[Path] = None) -> Path:
    path = path or state_path()
    save_json(path, dump_state(stores))
    return path


def load_state(path: Optional[Path] = None) -> Stores:
    path = path or state_path()
    return restore_state(load_json(path, {}))
