from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Subject(str, Enum):
    CADET = "cadet"
    STAFF = "staff"


class Purpose(str, Enum):
    ROSTER = "roster"
    ATTENDANCE = "attendance"
    LEDGER = "ledger"


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"
    LATE = "late"
    EXCUSED = "excused"


class LedgerType(str, Enum):
    MERIT = "merit"
    DEMERIT = "demerit"


class GradeStatus(str, Enum):
    ACTIVE = "active"
    DROPPED = "DO"
    INCOMPLETE = "INC"
    TRANSFERRED = "T"


# fields an import may fill in; identity fields are handled separately
PROFILE_FIELDS = (
    "rank", "middle_name", "suffix_name", "contact_number", "address",
    "course", "year_level", "school_year", "battalion", "company", "platoon",
    "cadet_course", "semester", "role",
)


@dataclass
class Person:
    id: str
    subject: Subject
    first_name: str
    last_name: str
    external_id: str = ""
    email: str = ""
    middle_name: str = ""
    suffix_name: str = ""
    rank: str = ""
    contact_number: str = ""
    address: str = ""
    course: str = ""
    year_level: str = ""
    school_year: str = ""
    battalion: str = ""
    company: str = ""
    platoon: str = ""
    cadet_course: str = ""
    semester: str = ""
    role: str = ""
    status: GradeStatus = GradeStatus.ACTIVE
    id_generated: bool = False

    @property
    def display_name(self) -> str:
        first = " ".join(p for p in (self.first_name, self.middle_name) if p)
        name = f"{self.last_name}, {first}" if first else self.last_name
        return f"{name} {self.suffix_name}".strip()


@dataclass
class TrainingDay:
    id: str
    date: str
    title: str = ""
    description: str = ""


@dataclass
class AttendanceRecord:
    person_id: str
    day_id: str
    status: AttendanceStatus
    remarks: str = ""


@dataclass
class LedgerEntry:
    id: str
    cadet_id: str
    type: LedgerType
    points: int
    reason: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    source_key: str = ""


@dataclass
class ExamScores:
    prelim: float = 0.0
    midterm: float = 0.0
    final: float = 0.0

    def clamped(self) -> "ExamScores":
        return ExamScores(*(min(100.0, max(0.0, float(v))) for v in (self.prelim, self.midterm, self.final)))


@dataclass(frozen=True)
class ImportKind:
    subject: Subject
    purpose: Purpose

    @classmethod
    def of(cls, subject: str | Subject, purpose: str | Purpose) -> "ImportKind":
        return cls(Subject(subject), Purpose(purpose))

    def __str__(self):
        return f"{self.subject.value}/{self.purpose.value}"


@dataclass
class ImportOptions:
    # attendance rows without a status token count as present
    assume_present: bool = False
    # roster: permit synthesized IDs when the subject requires one
    generate_missing_ids: bool = True


@dataclass
class Candidate:
    row_index: int
    raw_text: str
    first_name: str = ""
    last_name: str = ""
    middle_name: str = ""
    suffix_name: str = ""
    external_id: str = ""
    email: str = ""
    status: Optional[AttendanceStatus] = None
    remarks: str = ""
    fields: Dict[str, str] = field(default_factory=dict)
    ledger_type: Optional[LedgerType] = None
    points: int = 0
    reason: str = ""
    id_generated: bool = False

    @property
    def has_name(self) -> bool:
        return bool(self.first_name and self.last_name)


@dataclass(frozen=True)
class ImportResult:
    kind: ImportKind
    total_rows: int = 0
    matched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: Tuple[str, ...] = ()
    generated_ids: Tuple[Tuple[int, str], ...] = ()

    @property
    def applied(self) -> int:
        return self.created + self.updated

    def summary(self) -> str:
        return (
            f"Import complete ({self.kind}). Rows: {self.total_rows}, matched: {self.matched}, "
            f"created: {self.created}, updated: {self.updated}, skipped: {self.skipped}"
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": str(self.kind),
            "total_rows": self.total_rows,
            "matched": self.matched,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "generated_ids": [list(x) for x in self.generated_ids],
        }


@dataclass(frozen=True)
class GradeSnapshot:
    cadet_id: str
    attendance_score: float
    aptitude_score: float
    subject_score: float
    final_grade: float
    transmuted_grade: float
    remark: str
    status: GradeStatus = GradeStatus.ACTIVE

    @property
    def transmuted_label(self) -> str:
        if self.status is not GradeStatus.ACTIVE:
            return self.status.value
        return f"{self.transmuted_grade:.2f}"
