"""Auto-parse: start a parse whenever a PDF is attached to a document."""

import asyncio
import logging
from contextlib import contextmanager
from typing import Optional

from mdnote.core.store import ATTACHMENT_ADDED, PDF_CONTENT_TYPE, LibraryDatabase
from mdnote.parsers.models import ParseCallbacks, ParseOutcome
from mdnote.parsers.pipeline import ParsePipeline

logger = logging.getLogger(__name__)


class AutoParser:
    """Listens for new PDF attachments and parses their parent document once.

    Documents that already carry a parsed note, or whose auto-parse is still
    running, are skipped. Callers that attach a PDF and parse it themselves
    wrap the attach in ``suppress(document_id)``.
    """

    def __init__(
        self,
        store: LibraryDatabase,
        pipeline: ParsePipeline,
        enabled: bool = True,
        callbacks: Optional[ParseCallbacks] = None,
    ):
        self.store = store
        self.pipeline = pipeline
        self.enabled = enabled
        self.callbacks = callbacks
        self._active: set[int] = set()
        self._suppressed: dict[int, int] = {}
        self._background: set[asyncio.Task] = set()

    def register(self) -> None:
        self.store.add_listener(self._on_store_event)

    @contextmanager
    def suppress(self, document_id: int):
        self._suppressed[document_id] = self._suppressed.get(document_id, 0) + 1
        try:
            yield
        finally:
            self._suppressed[document_id] -= 1
            if self._suppressed[document_id] == 0:
                del self._suppressed[document_id]

    def is_suppressed(self, document_id: int) -> bool:
        return document_id in self._suppressed

    async def on_attachment_added(self, attachment_id: int) -> ParseOutcome | None:
        """Parse the attachment's document if nothing rules it out."""
        if not self.enabled:
            return None
        attachment = self.store.get_attachment(attachment_id)
        if attachment["content_type"] != PDF_CONTENT_TYPE:
            return None

        document_id = attachment["document_id"]
        if self.is_suppressed(document_id):
            logger.debug("Auto-parse suppressed for document %d", document_id)
            return None
        if document_id in self._active:
            logger.debug("Auto-parse already running for document %d", document_id)
            return None
        if self.store.has_parsed_note(document_id):
            logger.debug("Document %d already has a parsed note", document_id)
            return None

        self._active.add(document_id)
        logger.info("Auto-parsing document %d (attachment %d)", document_id, attachment_id)
        try:
            return await self.pipeline.parse(
                document_id, attachment_id, callbacks=self.callbacks
            )
        except Exception as exc:
            logger.error("Auto-parse of document %d failed: %s", document_id, exc)
            return None
        finally:
            self._active.discard(document_id)

    async def wait_idle(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _on_store_event(self, event: str, row: dict) -> None:
        if event != ATTACHMENT_ADDED or not self.enabled:
            return
        if self.is_suppressed(row["document_id"]):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop, auto-parse skipped for attachment %d", row["id"])
            return
        task = loop.create_task(self.on_attachment_added(row["id"]))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
