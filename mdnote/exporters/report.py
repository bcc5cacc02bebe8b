"""Batch and library reports: CSV and Excel."""

import csv
import logging
from datetime import datetime, timezone

import openpyxl
from openpyxl.styles import Font

from mdnote.batch.models import LibraryStats, ParseTask

logger = logging.getLogger(__name__)

TASK_HEADERS = [
    "document_key",
    "title",
    "category",
    "status",
    "status_text",
    "progress",
    "error_message",
    "note_id",
    "started_at",
    "ended_at",
    "duration_ms",
]

CATEGORY_HEADERS = ["category", "total", "parsed", "unparsed", "percent"]
CANDIDATE_HEADERS = ["document_id", "document_key", "title", "category", "source_file_id"]


# ── Rows ─────────────────────────────────────────────────────────────


def _task_rows(tasks: list[ParseTask]) -> list[list]:
    return [
        [
            t.document_key,
            t.title,
            t.category,
            t.status,
            t.status_text,
            t.progress,
            t.error_message or "",
            t.note_id if t.note_id is not None else "",
            _iso(t.started_at),
            _iso(t.ended_at),
            t.duration_ms if t.duration_ms is not None else "",
        ]
        for t in tasks
    ]


def _category_rows(stats: LibraryStats) -> list[list]:
    rows = [[c.category, c.total, c.parsed, c.unparsed, c.percent] for c in stats.categories]
    rows.append(["all", stats.total_pdfs, stats.parsed, stats.unparsed, stats.percent])
    return rows


def _iso(epoch_ms: int | None) -> str:
    if epoch_ms is None:
        return ""
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc).isoformat()


# ── CSV Export ───────────────────────────────────────────────────────


def export_tasks_csv(tasks: list[ParseTask], output_path: str) -> None:
    rows = _task_rows(tasks)
    with open(output_path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(TASK_HEADERS)
        writer.writerows(rows)
    logger.info("Task report CSV exported to %s (%d rows)", output_path, len(rows))


def export_library_stats_csv(stats: LibraryStats, output_path: str) -> None:
    rows = _category_rows(stats)
    with open(output_path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(CATEGORY_HEADERS)
        writer.writerows(rows)
    logger.info("Library stats CSV exported to %s", output_path)


# ── Excel Export ─────────────────────────────────────────────────────


def export_tasks_excel(tasks: list[ParseTask], output_path: str) -> None:
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Tasks"
    ws.append(TASK_HEADERS)
    for row in _task_rows(tasks):
        ws.append(row)
    _style_header(ws)
    wb.save(output_path)
    logger.info("Task report Excel exported to %s", output_path)


def export_library_stats_excel(stats: LibraryStats, output_path: str) -> None:
    """Two sheets: per-category counts and the unparsed candidates."""
    wb = openpyxl.Workbook()

    ws1 = wb.active
    ws1.title = "Categories"
    ws1.append(CATEGORY_HEADERS)
    for row in _category_rows(stats):
        ws1.append(row)
    _style_header(ws1)

    ws2 = wb.create_sheet("Unparsed")
    ws2.append(CANDIDATE_HEADERS)
    for c in stats.candidates:
        ws2.append([c.document_id, c.document_key, c.title, c.category, c.source_file_id])
    _style_header(ws2)

    wb.save(output_path)
    logger.info("Library stats Excel exported to %s", output_path)


def _style_header(ws) -> None:
    """Bold the header row."""
    for cell in ws[1]:
        cell.font = Font(bold=True)
