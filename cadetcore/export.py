from __future__ import annotations
import re
from io import BytesIO
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

from .models import GradeSnapshot, ImportResult, LedgerEntry, Person

ID_COL = "Student ID"
GRADE_COLUMNS = [
    "Place", ID_COL, "Name", "Company", "Platoon", "Days Present",
    "Attendance (30%)", "Aptitude (30%)", "Subject (40%)", "Final Grade", "Transmuted", "Remark",
]
DETAIL_COLUMNS = ["Name", ID_COL, "Type", "Points", "Reason", "Date"]

_ROW_RE = re.compile(r"^row (\S+(?: \([^)]*\))?): (.*)$", re.S)


def grade_sheet_frame(cadets: Iterable[Person], snapshots: Dict[str, GradeSnapshot],
                      present: Dict[str, int]) -> pd.DataFrame:
    rows = []
    for p in cadets:
        snap = snapshots.get(p.id)
        if snap is None:
            continue
        rows.append({
            ID_COL: p.external_id,
            "Name": p.display_name,
            "Company": p.company,
            "Platoon": p.platoon,
            "Days Present": int(present.get(p.id, 0)),
            "Attendance (30%)": round(snap.attendance_score, 2),
            "Aptitude (30%)": round(snap.aptitude_score, 2),
            "Subject (40%)": round(snap.subject_score, 2),
            "Final Grade": round(snap.final_grade, 2),
            "Transmuted": snap.transmuted_label,
            "Remark": snap.remark,
        })
    if not rows:
        return pd.DataFrame(columns=GRADE_COLUMNS)

    df = pd.DataFrame(rows).sort_values(["Final Grade", "Name"], ascending=[False, True]).reset_index(drop=True)
    df.insert(0, "Place", df.index + 1)
    return df[GRADE_COLUMNS]


def ledger_detail_frame(cadets: Iterable[Person], entries: Dict[str, List[LedgerEntry]]) -> pd.DataFrame:
    rows = []
    for p in cadets:
        for e in entries.get(p.id, []):
            rows.append({
                "Name": p.display_name,
                ID_COL: p.external_id,
                "Type": e.type.value,
                "Points": e.points if e.type.value == "merit" else -e.points,
                "Reason": e.reason,
                "Date": e.timestamp.strftime("%Y-%m-%d %H:%M"),
            })
    if not rows:
        return pd.DataFrame(columns=DETAIL_COLUMNS)
    return pd.DataFrame(rows).sort_values(["Name", ID_COL, "Date"]).reset_index(drop=True)


def import_report_frames(result: ImportResult) -> Tuple[pd.DataFrame, pd.DataFrame]:
    summary = pd.DataFrame([
        {"Item": "Import", "Value": str(result.kind)},
        {"Item": "Rows", "Value": result.total_rows},
        {"Item": "Matched", "Value": result.matched},
        {"Item": "Created", "Value": result.created},
        {"Item": "Updated", "Value": result.updated},
        {"Item": "Skipped", "Value": result.skipped},
        {"Item": "Generated IDs", "Value": len(result.generated_ids)},
    ])
    err_rows = []
    for msg in result.errors:
        m = _ROW_RE.match(msg)
        err_rows.append({"Row": m.group(1) if m else "", "Problem": m.group(2) if m else msg})
    errors = pd.DataFrame(err_rows, columns=["Row", "Problem"])
    return summary, errors


def export_to_excel_bytes(
    grade_df: Optional[pd.DataFrame],
    detail_df: Optional[pd.DataFrame] = None,
    *,
    report: Optional[ImportResult] = None,
) -> bytes:
    bio = BytesIO()

    with pd.ExcelWriter(bio, engine="xlsxwriter") as writer:
        if grade_df is not None:
            grade_df.to_excel(writer, index=False, sheet_name="Grades")

        report_frames = import_report_frames(report) if report is not None else None
        if report_frames is not None:
            report_frames[0].to_excel(writer, index=False, sheet_name="Import Summary")
            if not report_frames[1].empty:
                report_frames[1].to_excel(writer, index=False, sheet_name="Import Errors")

        wb = writer.book

        fmt_header = wb.add_format({"bold": True, "bg_color": "#F2F2F2", "border": 1, "valign": "vcenter"})
        fmt_text = wb.add_format({"border": 1, "valign": "top"})
        fmt_num = wb.add_format({"border": 1, "valign": "top", "num_format": "0.00"})
        fmt_title = wb.add_format({"bold": True, "bg_color": "#E8F0FE", "border": 1, "valign": "vcenter"})
        fmt_small = wb.add_format({"border": 1, "valign": "top", "font_color": "#555555"})
        fmt_failed = wb.add_format({"bg_color": "#FCE8E6"})

        def format_df_sheet(sheet_name: str, df: pd.DataFrame, default_width: int = 14, max_width: int = 60):
            ws = writer.sheets.get(sheet_name)
            if ws is None:
                return
            ws.freeze_panes(1, 0)
            ws.autofilter(0, 0, max(1, len(df)), max(0, len(df.columns) - 1))
            for col, name in enumerate(df.columns):
                ws.write(0, col, name, fmt_header)
                w = max(10, min(max_width, int(len(str(name)) * 1.2) + 4))
                ws.set_column(col, col, max(default_width, w))

        if grade_df is not None:
            format_df_sheet("Grades", grade_df)
            ws_grades = writer.sheets["Grades"]
            if "Name" in grade_df.columns:
                j = list(grade_df.columns).index("Name")
                ws_grades.set_column(j, j, 34)
            if "Remark" in grade_df.columns and len(grade_df):
                j = list(grade_df.columns).index("Remark")
                ws_grades.conditional_format(1, j, len(grade_df), j, {
                    "type": "text",
                    "criteria": "containing",
                    "value": "Failed",
                    "format": fmt_failed,
                })

        if report_frames is not None:
            format_df_sheet("Import Summary", report_frames[0], default_width=18)
            if not report_frames[1].empty:
                format_df_sheet("Import Errors", report_frames[1], default_width=12, max_width=90)
                writer.sheets["Import Errors"].set_column(1, 1, 90)

        if detail_df is not None and not detail_df.empty:
            ws3 = wb.add_worksheet("Ledger Detail")
            writer.sheets["Ledger Detail"] = ws3
            for c, n in enumerate(DETAIL_COLUMNS):
                ws3.write(0, c, n, fmt_header)
            ws3.freeze_panes(1, 0)
            for c, w in enumerate([34, 16, 10, 10, 55, 18]):
                ws3.set_column(c, c, w)

            r = 1
            for (name, sid), block in detail_df.groupby(["Name", ID_COL], sort=True):
                net = float(pd.to_numeric(block["Points"], errors="coerce").fillna(0).sum())
                ws3.merge_range(r, 0, r, len(DETAIL_COLUMNS) - 1,
                                f"{name} | {ID_COL}: {sid} | Net: {net:+.0f}", fmt_title)
                ws3.set_row(r, None, None, {"level": 0, "collapsed": True})
                r += 1
                for _, rr in block.iterrows():
                    ws3.write(r, 0, "", fmt_text)
                    ws3.write(r, 1, "", fmt_text)
                    ws3.write(r, 2, rr["Type"], fmt_text)
                    ws3.write_number(r, 3, float(rr["Points"]), fmt_num)
                    ws3.write(r, 4, rr["Reason"], fmt_small)
                    ws3.write(r, 5, rr["Date"], fmt_text)
                    ws3.set_row(r, None, None, {"level": 1, "hidden": True})
                    r += 1
            ws3.autofilter(0, 0, max(1, r - 1), len(DETAIL_COLUMNS) - 1)

    return bio.getvalue()


def export_import_report_bytes(result: ImportResult) -> bytes:
    return export_to_excel_bytes(None, report=result)
