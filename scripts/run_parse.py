#!/usr/bin/env python3
"""Command-line runner: parse one document, run a batch, scan a library."""

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path

from tqdm import tqdm

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from mdnote.batch.auto import AutoParser
from mdnote.batch.models import ParseTask
from mdnote.batch.queue import BatchQueue
from mdnote.batch.scanner import detect_from_selection, scan_library, task_from_candidate
from mdnote.core.config import Settings, load_settings
from mdnote.core.errors import MdnoteError
from mdnote.core.store import LibraryDatabase
from mdnote.exporters import export_all
from mdnote.parsers.intake import import_latest_and_parse
from mdnote.parsers.models import ParseCallbacks
from mdnote.parsers.pipeline import ParsePipeline

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("mdnote")


# ── Single document ──────────────────────────────────────────────────


def _progress_callbacks(bar: tqdm) -> ParseCallbacks:
    def on_status(stage: str, text: str) -> None:
        bar.set_postfix_str(text)

    def on_progress(value: int) -> None:
        bar.n = value
        bar.refresh()

    return ParseCallbacks(on_status_change=on_status, on_progress=on_progress)


async def parse_single(
    db: LibraryDatabase, settings: Settings, document_id: int, force: bool = False
) -> int:
    """Parse one document's best PDF. The bar stays on screen only when it fails."""
    pdf = db.get_best_pdf_attachment(document_id)
    if pdf is None:
        logger.error("Document %d has no PDF attachment", document_id)
        return 1

    pipeline = ParsePipeline(db, settings)
    bar = tqdm(total=100, desc=f"doc {document_id}", unit="%")
    try:
        outcome = await pipeline.parse(
            document_id, pdf["id"], force=force, callbacks=_progress_callbacks(bar)
        )
    except MdnoteError as exc:
        bar.set_postfix_str(f"Failed: {exc}")
        bar.close()
        logger.error("Parse failed: %s", exc)
        return 1

    bar.set_postfix_str(outcome.status_text)
    bar.leave = False
    bar.close()
    logger.info(
        "Note %d created from %s%s",
        outcome.note_id,
        outcome.markdown_path,
        " (cache)" if outcome.from_cache else "",
    )
    return 0


async def import_latest(db: LibraryDatabase, settings: Settings, document_id: int) -> int:
    pipeline = ParsePipeline(db, settings)
    auto = AutoParser(db, pipeline, enabled=settings.auto_parse)
    auto.register()
    bar = tqdm(total=100, desc=f"doc {document_id}", unit="%")
    try:
        outcome = await import_latest_and_parse(
            db,
            pipeline,
            document_id,
            settings.import_folder,
            auto_parser=auto,
            callbacks=_progress_callbacks(bar),
        )
    except MdnoteError as exc:
        bar.set_postfix_str(f"Failed: {exc}")
        bar.close()
        logger.error("Import failed: %s", exc)
        return 1
    finally:
        await auto.wait_idle()

    bar.set_postfix_str(outcome.status_text)
    bar.leave = False
    bar.close()
    logger.info("Imported and parsed into note %d", outcome.note_id)
    return 0


# ── Batch ────────────────────────────────────────────────────────────


async def run_batch(
    db: LibraryDatabase,
    settings: Settings,
    document_ids: list[int] | None,
    library_id: int,
    concurrency: int | None,
    force: bool,
    report_dir: str | None,
) -> int:
    t_start = time.time()
    if document_ids:
        detected = detect_from_selection(db, document_ids)
        candidates = detected.candidates
    else:
        stats = await scan_library(db, library_id)
        candidates = stats.candidates

    if not candidates:
        logger.info("Nothing to parse")
        return 0

    bar = tqdm(total=len(candidates), desc="Batch", unit="doc")
    finished: set[str] = set()

    def on_task_change(task: ParseTask) -> None:
        if task.is_terminal and task.id not in finished:
            finished.add(task.id)
            bar.update(1)
            s = queue.summary()
            bar.set_postfix(ok=s.success, failed=s.failed, stopped=s.stopped)

    queue = BatchQueue(
        ParsePipeline(db, settings),
        concurrency=concurrency or settings.batch_concurrency,
        on_task_change=on_task_change,
        force=force,
    )
    queue.add_tasks(task_from_candidate(c) for c in candidates)
    queue.start()
    try:
        await queue.wait_idle()
    except asyncio.CancelledError:
        queue.stop_all()
        await queue.wait_idle()
        raise
    finally:
        bar.close()

    summary = queue.summary()
    logger.info("=" * 60)
    logger.info(
        "BATCH COMPLETE in %.1fs: %d succeeded, %d failed, %d stopped",
        time.time() - t_start,
        summary.success,
        summary.failed,
        summary.stopped,
    )
    for task in queue.tasks:
        if task.status == "failed":
            logger.info("  %s  %s: %s", task.document_key, task.title, task.error_message)

    if report_dir:
        export_all(report_dir, tasks=queue.tasks)
    return 0 if summary.failed == 0 else 1


async def run_scan(db: LibraryDatabase, library_id: int, report_dir: str | None) -> int:
    bar = tqdm(desc="Scanning", unit="doc")

    def on_progress(p) -> None:
        bar.total = p.total
        bar.n = p.processed
        bar.refresh()

    try:
        stats = await scan_library(db, library_id, on_progress=on_progress)
    finally:
        bar.close()

    logger.info(
        "Library %d: %d PDFs, %d parsed (%.1f%%)",
        library_id,
        stats.total_pdfs,
        stats.parsed,
        stats.percent,
    )
    for c in stats.categories:
        logger.info(
            "  %-10s %5d total %5d parsed %5d unparsed",
            c.category,
            c.total,
            c.parsed,
            c.unparsed,
        )
    if report_dir:
        export_all(report_dir, stats=stats)
    return 0


# ── CLI ──────────────────────────────────────────────────────────────


def main():
    parser = argparse.ArgumentParser(description="Parse PDF attachments into notes")
    parser.add_argument("--library", required=True, help="Library name (used for database/directory)")
    parser.add_argument("--config", default=None, help="Path to settings YAML file")
    sub = parser.add_subparsers(dest="command", required=True)

    p_add = sub.add_parser("add", help="Add a document with a PDF attachment")
    p_add.add_argument("--title", required=True)
    p_add.add_argument("--pdf", required=True, help="Path to the PDF file")
    p_add.add_argument("--item-type", default="journalArticle")

    p_parse = sub.add_parser("parse", help="Parse one document")
    p_parse.add_argument("--document", type=int, required=True)
    p_parse.add_argument("--force", action="store_true", help="Ignore the result cache")

    p_batch = sub.add_parser("batch", help="Parse many documents")
    p_batch.add_argument("--documents", type=int, nargs="*", default=None)
    p_batch.add_argument("--library-id", type=int, default=1)
    p_batch.add_argument("--concurrency", type=int, default=None)
    p_batch.add_argument("--force", action="store_true")
    p_batch.add_argument("--report-dir", default=None)

    p_scan = sub.add_parser("scan", help="Report parsed/unparsed PDFs per category")
    p_scan.add_argument("--library-id", type=int, default=1)
    p_scan.add_argument("--report-dir", default=None)

    p_import = sub.add_parser("import-latest", help="Attach the newest PDF in the import folder and parse it")
    p_import.add_argument("--document", type=int, required=True)

    args = parser.parse_args()

    settings = load_settings(args.config)
    db = LibraryDatabase(args.library)
    logger.info("Database: %s", db.db_path)
    try:
        if args.command == "add":
            doc_id = db.add_document(args.title, item_type=args.item_type)
            att_id = db.add_attachment(doc_id, Path(args.pdf).resolve())
            logger.info("Added document %d with attachment %d", doc_id, att_id)
            code = 0
        elif args.command == "parse":
            code = asyncio.run(parse_single(db, settings, args.document, force=args.force))
        elif args.command == "batch":
            code = asyncio.run(
                run_batch(
                    db,
                    settings,
                    args.documents,
                    args.library_id,
                    args.concurrency,
                    args.force,
                    args.report_dir,
                )
            )
        elif args.command == "scan":
            code = asyncio.run(run_scan(db, args.library_id, args.report_dir))
        else:
            code = asyncio.run(import_latest(db, settings, args.document))
    finally:
        db.close()
    sys.exit(code)


if __name__ == "__main__":
    main()
