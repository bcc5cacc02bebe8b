"""Attach the newest PDF from the import folder to a document and parse it."""

import logging
from contextlib import nullcontext
from pathlib import Path
from typing import Optional

from mdnote.batch.auto import AutoParser
from mdnote.core.errors import PreconditionError, SourceFileMissingError
from mdnote.core.store import LibraryDatabase
from mdnote.parsers.models import ParseCallbacks, ParseOutcome
from mdnote.parsers.pipeline import ParsePipeline

logger = logging.getLogger(__name__)


def find_latest_pdf(folder: str | Path) -> Path | None:
    """Most recently modified ``*.pdf`` directly inside ``folder``."""
    folder = Path(folder)
    if not folder.is_dir():
        return None
    pdfs = [p for p in folder.iterdir() if p.is_file() and p.suffix.lower() == ".pdf"]
    if not pdfs:
        return None
    return max(pdfs, key=lambda p: p.stat().st_mtime)


async def import_latest_and_parse(
    store: LibraryDatabase,
    pipeline: ParsePipeline,
    document_id: int,
    import_folder: str | Path,
    auto_parser: Optional[AutoParser] = None,
    callbacks: Optional[ParseCallbacks] = None,
) -> ParseOutcome:
    if not str(import_folder).strip():
        raise PreconditionError("No import folder configured")
    store.get_document(document_id)

    pdf = find_latest_pdf(import_folder)
    if pdf is None:
        raise SourceFileMissingError(f"No PDF found in {import_folder}")

    guard = auto_parser.suppress(document_id) if auto_parser else nullcontext()
    with guard:
        attachment_id = store.add_attachment(document_id, pdf)
        logger.info("Attached %s to document %d", pdf.name, document_id)
        return await pipeline.parse(document_id, attachment_id, callbacks=callbacks)
