"""
This package contains:
- input classification and parsing (CSV/XLSX, PDF/DOCX, images, share links)
- row normalization into candidate people
- tiered identity matching against the cadet/staff registries
- the import pipeline (roster, attendance, merit/demerit ledger)
- grade composition and transmutation
- report export
"""
from .detect import Artifact, SourceKind, detect_format, parse_input
from .errors import (
    AmbiguousRow, CadetCoreError, CapacityExceeded, DuplicateIdentity, ExtractionFailed, ImportAborted,
    InvalidLedgerRow, NoIdentifiableCandidate, NoMatch, ProcessingTimeout, RowError, UnknownPerson,
    UnknownTrainingDay, UnresolvableLink, UnsupportedFormat,
)
from .models import (
    AttendanceStatus, ExamScores, GradeSnapshot, GradeStatus, ImportKind, ImportOptions, ImportResult,
    LedgerType, Person, Purpose, Subject,
)
from .entity import match_candidate
from .normalize import normalize_row
from .scoring import GradeInputs, compose_grade, transmute
from .service import TrainingProgram
from .settings import Settings, load_settings
from .logging_setup import setup_logger

__all__ = [
    "Artifact",
    "SourceKind",
    "detect_format",
    "parse_input",
    "normalize_row",
    "match_candidate",
    "GradeInputs",
    "compose_grade",
    "transmute",
    "TrainingProgram",
    "Settings",
    "load_settings",
    "setup_logger",
    "AttendanceStatus",
    "ExamScores",
    "GradeSnapshot",
    "GradeStatus",
    "ImportKind",
    "ImportOptions",
    "ImportResult",
    "LedgerType",
    "Person",
    "Purpose",
    "Subject",
    "CadetCoreError",
    "ImportAborted",
    "UnsupportedFormat",
    "UnresolvableLink",
    "ProcessingTimeout",
    "CapacityExceeded",
    "ExtractionFailed",
    "UnknownTrainingDay",
    "RowError",
    "AmbiguousRow",
    "NoIdentifiableCandidate",
    "NoMatch",
    "DuplicateIdentity",
    "InvalidLedgerRow",
    "UnknownPerson",
]
