import io

import pandas as pd
import pytest
from openpyxl import Workbook

from cadetcore.adapters import RawRow, RowSource, TabularAdapter, TextLinesAdapter
from cadetcore.detect import Artifact, parse_input
from cadetcore.errors import ExtractionFailed
from cadetcore.header_detect import detect_header_row, match_header, resolve_columns
from cadetcore.ingest import load_tables

from conftest import FakeExtractor, csv_artifact, xlsx_bytes


@pytest.fixture
def aliases(settings):
    return settings.header_aliases


@pytest.mark.parametrize("cell,field", [
    ("Student ID", "external_id"),
    ("STUDENT_ID", "external_id"),
    ("E-mail", "email"),
    ("Surname", "last_name"),
    ("First Nme", "first_name"),
    ("Studen ID", "external_id"),
    ("Coy", "company"),
    ("Merit/Demerit", "ledger_type"),
])
def test_match_header(aliases, cell, field):
    assert match_header(cell, aliases) == field


@pytest.mark.parametrize("cell", ["", "Remarks by", "Fnam", "Signature"])
def test_match_header_misses(aliases, cell):
    assert match_header(cell, aliases) is None


def test_resolve_columns_keeps_leftmost_duplicate(aliases):
    mapping = resolve_columns(["Student No", "ID", "Name"], aliases)
    assert mapping == {"external_id": "Student No", "full_name": "Name"}


def test_header_below_title_block(aliases):
    data = (
        "ROTC Unit Attendance Sheet,,\n"
        "Date: 08/16/2025,,\n"
        "Student ID,Name,Status\n"
        "2024-0001,Juan Dela Cruz,present\n"
    ).encode("utf-8")
    df_raw = load_tables(data, "att.csv", "csv")[0]["df_raw"]
    assert detect_header_row(df_raw, aliases) == 2


def test_semicolon_csv_with_bom(settings):
    data = b"\xef\xbb\xbf" + "Student ID;Last Name;First Name\n2024-0001;Dela Cruz;Juan\n".encode("utf-8")
    rows = list(TabularAdapter(settings).rows(parse_input(Artifact(data, "roster.csv"))))
    assert len(rows) == 1
    assert rows[0].cells["external_id"] == "2024-0001"
    assert rows[0].cells["last_name"] == "Dela Cruz"
    assert rows[0].index == 2


def test_rows_keep_source_line_numbers_and_skip_blank_rows(settings):
    art = csv_artifact("ID,Name,Status\n2024-0001,Juan Dela Cruz,present\n,,\n,Ana Reyes,late\n")
    rows = list(TabularAdapter(settings).rows(parse_input(art)))
    assert [r.index for r in rows] == [2, 4]
    assert rows[1].cells == {"external_id": "", "full_name": "Ana Reyes", "status": "late"}
    assert rows[1].text == "Ana Reyes\tlate"


def test_excel_merged_cells_are_expanded(settings):
    data = xlsx_bytes(
        [
            ["ROTC Roster", None, None],
            ["Student ID", "Name", "Company"],
            ["2024-0001", "Juan Dela Cruz", "Alpha"],
            ["2024-0002", "Ana Reyes", None],
        ],
        merges=["A1:C1", "C3:C4"],
    )
    rows = list(TabularAdapter(settings).rows(parse_input(Artifact(data, "roster.xlsx"))))
    assert [r.cells["company"] for r in rows] == ["Alpha", "Alpha"]
    assert rows[0].index == 3


def test_numeric_ids_from_excel_lose_the_float_tail(settings):
    data = xlsx_bytes([["Student No", "Name"], [20240001, "Juan Dela Cruz"]])
    rows = list(TabularAdapter(settings).rows(parse_input(Artifact(data, "roster.xlsx"))))
    assert rows[0].cells["external_id"] == "20240001"


def test_every_sheet_is_read_and_labelled(settings):
    wb = Workbook()
    wb.active.title = "Alpha"
    wb.active.append(["Student ID", "Name"])
    wb.active.append(["2024-0001", "Juan Dela Cruz"])
    ws = wb.create_sheet("Bravo")
    ws.append(["Student ID", "Name"])
    ws.append(["2024-0002", "Ana Reyes"])
    buf = io.BytesIO()
    wb.save(buf)
    rows = list(TabularAdapter(settings).rows(parse_input(Artifact(buf.getvalue(), "roster.xlsx"))))
    assert [r.label for r in rows] == ["2 (Alpha)", "2 (Bravo)"]


def test_headerless_sheet_is_read_as_text(settings):
    art = csv_artifact("2024-0001 Juan Dela Cruz present\n2024-0002 Ana Reyes absent\n")
    rows = list(TabularAdapter(settings).rows(parse_input(art)))
    assert [r.cells for r in rows] == [None, None]
    assert rows[0].text == "2024-0001 Juan Dela Cruz present"


def test_text_lines_pick_up_a_header_line(settings):
    adapter = TextLinesAdapter(settings, FakeExtractor())
    rows = list(adapter.lines_to_rows(
        "Attendance for 16 August\n"
        "Student ID\tName\tStatus\n"
        "2024-0001\tJuan Dela Cruz\tpresent\n"
        "\n"
        "Ana Reyes was late\n"
    ))
    assert [r.index for r in rows] == [1, 3, 4]
    assert rows[0].cells is None
    assert rows[1].cells == {"external_id": "2024-0001", "full_name": "Juan Dela Cruz", "status": "present"}
    assert rows[2].cells is None


def test_document_adapter_asks_for_the_right_mime(settings):
    fake = FakeExtractor("2024-0001 Juan Dela Cruz present")
    adapter = TextLinesAdapter(settings, fake)
    rows = list(adapter.rows(parse_input(Artifact(b"%PDF-1.4", "scan.pdf"))))
    assert fake.calls == ["application/pdf"]
    assert rows == [RawRow(1, "2024-0001 Juan Dela Cruz present")]

    list(adapter.rows(parse_input(Artifact(b"\xff\xd8\xff\xe0", "photo.jpg", "image/jpeg"))))
    assert fake.calls[-1] == "image/jpeg"


def test_row_source_is_restartable():
    calls = []

    def produce():
        calls.append(1)
        yield RawRow(1, "a")
        yield RawRow(2, "b")

    src = RowSource(produce)
    assert [r.text for r in src] == ["a", "b"]
    assert [r.text for r in src] == ["a", "b"]
    assert len(src) == 2
    assert calls == [1]


def test_load_tables_rejects_a_broken_workbook():
    with pytest.raises(ExtractionFailed):
        load_tables(b"PK\x03\x04broken", "bad.xlsx", "excel")


def test_empty_csv_gives_no_rows(settings):
    rows = list(TabularAdapter(settings).rows(parse_input(csv_artifact(""))))
    assert rows == []
    assert isinstance(load_tables(b"", "e.csv", "csv")[0]["df_raw"], pd.DataFrame)
