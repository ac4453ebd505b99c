from __future__ import annotations
import logging
import threading
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from .errors import UnknownPerson
from .events import GRADE_UPDATED, EventBus
from .models import AttendanceStatus, GradeSnapshot, Subject
from .scoring import GradeInputs, compose_grade
from .settings import Settings
from .stores import Stores

logger = logging.getLogger(__name__)


class GradeService:
    """Reads a cadet's facts from the stores, composes the grade and keeps the snapshot."""

    def __init__(self, stores: Stores, settings: Settings, events: Optional[EventBus] = None):
        self.stores = stores
        self.settings = settings
        self.events = events
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._locks_guard = threading.Lock()

    def _lock_for(self, cadet_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks[cadet_id]

    def total_training_days(self) -> int:
        n = self.stores.days.count()
        return n if n > 0 else int(self.settings.default_total_training_days)

    def days_present(self, cadet_id: str) -> int:
        present = {AttendanceStatus(s) for s in self.settings.present_statuses}
        # records of deleted days do not count
        return sum(
            1 for r in self.stores.attendance.list_by_person(cadet_id)
            if r.status in present and self.stores.days.get(r.day_id) is not None
        )

    def inputs_for(self, cadet_id: str) -> GradeInputs:
        cadet = self.stores.registry(Subject.CADET).get(cadet_id)
        if cadet is None:
            raise UnknownPerson(cadet_id)
        merit, demerit = self.stores.ledger.sum_by_cadet(cadet_id)
        return GradeInputs(
            cadet_id=cadet_id,
            days_present=self.days_present(cadet_id),
            total_training_days=self.total_training_days(),
            merit_points=merit,
            demerit_points=demerit,
            exams=self.stores.exams.get(cadet_id),
            status=cadet.status,
        )

    def compute_grade(self, cadet_id: str) -> GradeSnapshot:
        with self._lock_for(cadet_id):
            snapshot = compose_grade(self.inputs_for(cadet_id))
            self.stores.snapshots.put(snapshot)
        logger.debug("Grade for %s: %.2f -> %s (%s)", cadet_id, snapshot.final_grade,
                     snapshot.transmuted_label, snapshot.remark)
        if self.events is not None:
            self.events.publish(GRADE_UPDATED, {
                "cadet_id": snapshot.cadet_id,
                "final_grade": snapshot.final_grade,
                "transmuted_grade": snapshot.transmuted_grade,
                "remark": snapshot.remark,
            })
        return snapshot

    def recompute(self, cadet_ids: Iterable[str]) -> List[GradeSnapshot]:
        out = []
        for cid in sorted(set(cadet_ids)):
            if self.stores.registry(Subject.CADET).get(cid) is None:
                continue  # staff ids or deleted cadets
            out.append(self.compute_grade(cid))
        return out

    def recompute_all(self) -> List[GradeSnapshot]:
        return self.recompute(p.id for p in self.stores.registry(Subject.CADET).list())

    def snapshot(self, cadet_id: str) -> Optional[GradeSnapshot]:
        return self.stores.snapshots.get(cadet_id)
