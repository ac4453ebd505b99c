import pytest

from cadetcore.errors import DuplicateIdentity, UnknownPerson
from cadetcore.models import AttendanceStatus, ExamScores, LedgerType, Person, Subject
from cadetcore.stores import MemoryAttendanceStore, MemoryLedgerStore, MemoryRegistry, Stores, load_state, save_state


def person(first, last, **kw):
    return Person("", Subject.CADET, first, last, **kw)


def test_registry_assigns_ids_and_enforces_unique_identity():
    reg = MemoryRegistry(Subject.CADET)
    juan = reg.create(person("Juan", "Dela Cruz", external_id="2024-0001", email="juan@school.edu"))
    assert juan.id == "cadet-1"

    with pytest.raises(DuplicateIdentity):
        reg.create(person("Juan", "Cruz", external_id="2024-0001"))
    with pytest.raises(DuplicateIdentity):
        reg.create(person("J", "Cruz", email="JUAN@school.edu"))
    assert reg.bulk_size() == 1


def test_registry_lookups():
    reg = MemoryRegistry("staff")
    sgt = reg.create(person("María", "Santos", email="maria@unit.mil"))
    assert sgt.subject is Subject.STAFF
    assert reg.find_by_email(" MARIA@unit.mil ") is sgt
    assert reg.find_by_name("maria", "SANTOS") == [sgt]
    assert reg.find_by_external_id("") is None

    reg.delete(sgt.id)
    with pytest.raises(UnknownPerson):
        reg.delete(sgt.id)
    with pytest.raises(UnknownPerson):
        reg.update(sgt)


def test_attendance_upsert_reports_insert_vs_overwrite():
    store = MemoryAttendanceStore()
    assert store.upsert("cadet-1", "day-1", AttendanceStatus.PRESENT) is True
    assert store.upsert("cadet-1", "day-1", "absent", "sick") is False
    assert store.get("cadet-1", "day-1").status is AttendanceStatus.ABSENT
    store.upsert("cadet-2", "day-1", "late")
    store.upsert("cadet-1", "day-2", "present")

    assert sorted(store.delete_by_day("day-1")) == ["cadet-1", "cadet-2"]
    assert store.list_by_day("day-1") == []
    assert len(store.list_by_person("cadet-1")) == 1


def test_ledger_sums_and_source_keys():
    store = MemoryLedgerStore()
    store.append("cadet-1", LedgerType.MERIT, 3, source_key="abc")
    store.append("cadet-1", "demerit", 5)
    store.append("cadet-2", "merit", 1)
    assert store.sum_by_cadet("cadet-1") == (3, 5)
    assert store.has_source_key("abc")
    assert not store.has_source_key("")
    with pytest.raises(ValueError):
        store.append("cadet-1", "merit", -1)


def test_state_round_trip(tmp_path):
    stores = Stores()
    juan = stores.registry("cadet").create(person("Juan", "Dela Cruz", external_id="2024-0001", id_generated=True))
    day = stores.days.create("2025-08-16", "Day 1")
    stores.attendance.upsert(juan.id, day.id, "excused", "medical")
    entry = stores.ledger.append(juan.id, "merit", 2, "Flag detail", source_key="k1")
    stores.exams.put(juan.id, ExamScores(88, 92, 95))

    path = save_state(stores, tmp_path / "state.json")
    restored = load_state(path)

    again = restored.registry("cadet").get(juan.id)
    assert again == juan
    assert restored.days.get(day.id).title == "Day 1"
    assert restored.attendance.get(juan.id, day.id).remarks == "medical"
    loaded_entry = restored.ledger.list_by_cadet(juan.id)[0]
    assert (loaded_entry.id, loaded_entry.points, loaded_entry.source_key) == (entry.id, 2, "k1")
    assert loaded_entry.timestamp == entry.timestamp
    assert restored.exams.get(juan.id) == ExamScores(88, 92, 95)


def test_missing_state_file_gives_empty_stores(tmp_path):
    stores = load_state(tmp_path / "nope.json")
    assert stores.registry("cadet").bulk_size() == 0
    assert stores.days.count() == 0
