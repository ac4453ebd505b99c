from __future__ import annotations
from dataclasses import dataclass, field
from typing import Tuple

import numpy as np

from .models import ExamScores, GradeSnapshot, GradeStatus

ATTENDANCE_MAX = 30.0
APTITUDE_MAX = 30.0
APTITUDE_BASE = 30.0
SUBJECT_MAX = 40.0
SUBJECT_WEIGHT = 0.40
FAILING_GRADE = 5.00

# (lower bound inclusive, transmuted grade), best first
TRANSMUTATION: Tuple[Tuple[float, float], ...] = (
    (98.0, 1.00),
    (95.0, 1.25),
    (92.0, 1.50),
    (89.0, 1.75),
    (86.0, 2.00),
    (83.0, 2.25),
    (80.0, 2.50),
    (77.0, 2.75),
    (75.0, 3.00),
)


@dataclass(frozen=True)
class GradeInputs:
    cadet_id: str
    days_present: int
    total_training_days: int
    merit_points: int = 0
    demerit_points: int = 0
    exams: ExamScores = field(default_factory=ExamScores)
    status: GradeStatus = GradeStatus.ACTIVE


def attendance_score(days_present: int, total_training_days: int) -> float:
    if total_training_days <= 0:
        return 0.0
    return float(np.clip(days_present / total_training_days * ATTENDANCE_MAX, 0, ATTENDANCE_MAX))


def aptitude_score(merit: int, demerit: int) -> float:
    return float(np.clip(APTITUDE_BASE + merit - demerit, 0, APTITUDE_MAX))


def subject_score(exams: ExamScores) -> float:
    e = exams.clamped()
    mean = float(np.mean([e.prelim, e.midterm, e.final]))
    return float(np.clip(mean * SUBJECT_WEIGHT, 0, SUBJECT_MAX))


def transmute(final_grade: float) -> float:
    """
    Lower edges are inclusive: 75.0 -> 3.00, 74.999 -> 5.00. The value is
    rounded to 6 decimals first so float sums like 74.99999999999999 land on
    the intended side of a boundary.
    """
    g = round(float(final_grade), 6)
    for lower, grade in TRANSMUTATION:
        if g >= lower:
            return grade
    return FAILING_GRADE


def remark_for(transmuted_grade: float, status: GradeStatus = GradeStatus.ACTIVE) -> str:
    if status is not GradeStatus.ACTIVE:
        # DO/INC/T show the flag as the grade and always fail
        return "Failed"
    return "Failed" if transmuted_grade >= FAILING_GRADE else "Passed"


def compose_grade(inputs: GradeInputs) -> GradeSnapshot:
    att = attendance_score(inputs.days_present, inputs.total_training_days)
    apt = aptitude_score(inputs.merit_points, inputs.demerit_points)
    sub = subject_score(inputs.exams)
    final = round(att + apt + sub, 6)
    transmuted = transmute(final)
    return GradeSnapshot(
        cadet_id=inputs.cadet_id,
        attendance_score=round(att, 6),
        aptitude_score=round(apt, 6),
        subject_score=round(sub, 6),
        final_grade=final,
        transmuted_grade=transmuted,
        remark=remark_for(transmuted, inputs.status),
        status=inputs.status,
    )
