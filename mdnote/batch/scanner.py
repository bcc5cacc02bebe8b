"""Discover documents that still need parsing, from a selection or a whole library."""

import asyncio
import logging
import time
from typing import Callable, Iterable, Optional

from mdnote.batch.models import (
    CATEGORIES,
    CategoryStat,
    DetectResult,
    LibraryStats,
    ParseTask,
    ScanProgress,
    UnparsedCandidate,
)
from mdnote.core.store import LibraryDatabase

logger = logging.getLogger(__name__)

SCAN_CHUNK_SIZE = 400
YIELD_EVERY_CHUNKS = 2

_CATEGORY_BY_TYPE = {
    "journalArticle": "journal",
    "conferencePaper": "conference",
    "thesis": "thesis",
    "book": "book",
    "bookSection": "book",
}

_KIND_BY_TYPE = {
    "note": "note",
    "attachment": "attachment",
}


def resolve_category(item_type: str) -> str:
    """Coarse reporting category; has no effect on how a document is parsed."""
    return _CATEGORY_BY_TYPE.get(item_type, "other")


def resolve_kind(item_type: str) -> str:
    return _KIND_BY_TYPE.get(item_type, "regular")


def task_from_candidate(candidate: UnparsedCandidate) -> ParseTask:
    return ParseTask(
        id=candidate.document_key,
        document_id=candidate.document_id,
        document_key=candidate.document_key,
        title=candidate.title,
        source_file_id=candidate.source_file_id,
        kind=candidate.kind,
        category=candidate.category,
    )


# ── Selection ────────────────────────────────────────────────────────


def detect_from_selection(
    store: LibraryDatabase,
    document_ids: Iterable[int],
    existing: Iterable[str] = (),
) -> DetectResult:
    """Classify selected documents into parse candidates and skip reasons.

    ``existing`` holds task ids already queued; those count as duplicates,
    as does a document selected twice.
    """
    result = DetectResult()
    summary = result.summary
    seen = set(existing)

    for document_id in document_ids:
        try:
            doc = store.get_document(document_id)
        except ValueError:
            summary.skipped_invalid += 1
            continue
        if doc.get("deleted") or resolve_kind(doc["item_type"]) != "regular":
            summary.skipped_invalid += 1
            continue
        if doc["key"] in seen:
            summary.skipped_duplicate += 1
            continue

        pdf = store.get_best_pdf_attachment(document_id)
        if pdf is None:
            summary.skipped_no_pdf += 1
            continue
        if store.has_parsed_note(document_id):
            summary.skipped_parsed += 1
            continue

        seen.add(doc["key"])
        result.candidates.append(_candidate(doc, pdf["id"]))
        summary.added += 1

    logger.info(
        "Selection: %d added, %d without PDF, %d already parsed, %d duplicate, %d invalid",
        summary.added,
        summary.skipped_no_pdf,
        summary.skipped_parsed,
        summary.skipped_duplicate,
        summary.skipped_invalid,
    )
    return result


# ── Library ──────────────────────────────────────────────────────────


async def scan_library(
    store: LibraryDatabase,
    library_id: int = 1,
    on_progress: Optional[Callable[[ScanProgress], None]] = None,
    chunk_size: int = SCAN_CHUNK_SIZE,
) -> LibraryStats:
    """Count parsed/unparsed PDF documents per category, in chunks.

    Control is handed back to the event loop every few chunks so other
    tasks keep running while large libraries are scanned.
    """
    started = time.monotonic()

    best_pdf: dict[int, int] = {}
    for att in store.list_pdf_attachments(library_id):
        best_pdf.setdefault(att["document_id"], att["id"])
    parsed_ids = store.list_parsed_document_ids(library_id)

    by_category = {c: CategoryStat(category=c) for c in CATEGORIES}
    stats = LibraryStats(library_id=library_id)
    doc_ids = list(best_pdf)
    total = len(doc_ids)
    processed = 0

    for index, start in enumerate(range(0, total, chunk_size)):
        chunk = doc_ids[start : start + chunk_size]
        for doc in store.get_documents(chunk):
            if doc.get("deleted") or resolve_kind(doc["item_type"]) != "regular":
                continue
            stat = by_category[resolve_category(doc["item_type"])]
            stat.total += 1
            stats.total_pdfs += 1
            if doc["id"] in parsed_ids:
                stat.parsed += 1
                stats.parsed += 1
            else:
                stat.unparsed += 1
                stats.unparsed += 1
                stats.candidates.append(_candidate(doc, best_pdf[doc["id"]]))

        processed += len(chunk)
        if on_progress is not None:
            on_progress(ScanProgress(processed=processed, total=total))
        if (index + 1) % YIELD_EVERY_CHUNKS == 0:
            await asyncio.sleep(0)

    stats.categories = [s for s in by_category.values() if s.total]
    stats.duration_ms = round((time.monotonic() - started) * 1000)
    logger.info(
        "Library %d scanned: %d PDFs, %d parsed, %d unparsed in %dms",
        library_id,
        stats.total_pdfs,
        stats.parsed,
        stats.unparsed,
        stats.duration_ms,
    )
    return stats


def _candidate(doc: dict, source_file_id: int) -> UnparsedCandidate:
    return UnparsedCandidate(
        document_id=doc["id"],
        document_key=doc["key"],
        title=doc.get("title") or "",
        source_file_id=source_file_id,
        kind=resolve_kind(doc["item_type"]),
        category=resolve_category(doc["item_type"]),
    )
