"""Parse pipeline: cache check → remote parse → extraction → note import."""

import asyncio
import logging
import shutil
import time
from pathlib import Path

from mdnote.core.config import Settings
from mdnote.core.errors import (
    FileTooLargeError,
    MissingTokenError,
    ParseCancelled,
    ResultFileError,
    SourceFileMissingError,
)
from mdnote.core.store import DocumentStore
from mdnote.parsers.archive import extract_archive
from mdnote.parsers.cache import ResultCache, resolve_cache_dir
from mdnote.parsers.images import (
    batch_import_images,
    extract_image_paths,
    prepare_image_tasks,
    replace_image_srcs,
)
from mdnote.parsers.markup import (
    MarkupConverter,
    resolve_converter,
    strip_before_first_heading,
    wrap_note,
)
from mdnote.parsers.models import ParseCallbacks, ParseFingerprint, ParseOutcome
from mdnote.parsers.pdf_inspect import is_scanned_pdf
from mdnote.remote.mineru import (
    PROGRESS_DOWNLOADING,
    PROGRESS_QUEUED,
    PROGRESS_UPLOADING,
    MineruClient,
)

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 200 * 1024 * 1024
IMAGE_CONCURRENCY = 8

# Import-phase progress windows (start, end).
_CACHE_HIT_RANGE = (70, 99)
_FRESH_RANGE = (85, 99)


# ── Pipeline ─────────────────────────────────────────────────────────


class ParsePipeline:
    """Turns one PDF attachment into a parsed note, reporting through ParseCallbacks."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings,
        client: MineruClient | None = None,
        cache: ResultCache | None = None,
        converter: MarkupConverter | None = None,
    ):
        self.store = store
        self.settings = settings
        self.cache = cache or ResultCache(resolve_cache_dir(settings.cache_dir))
        self._client = client
        self._converter = converter
        # (document_id, source_file_id) -> [lock, holders]
        self._inflight: dict[tuple[int, int], list] = {}

    async def parse(
        self,
        document_id: int,
        source_file_id: int,
        force: bool = False,
        callbacks: ParseCallbacks | None = None,
    ) -> ParseOutcome:
        """Parse one attachment into a new note. Raises on any failure."""
        cb = callbacks or ParseCallbacks()
        key = (document_id, source_file_id)
        slot = self._inflight.setdefault(key, [asyncio.Lock(), 0])
        slot[1] += 1
        try:
            if slot[0].locked():
                logger.info("Document %d is already being parsed, waiting", document_id)
            async with slot[0]:
                return await self._run(document_id, source_file_id, force, cb)
        finally:
            slot[1] -= 1
            if slot[1] == 0:
                self._inflight.pop(key, None)

    # ── Stages ───────────────────────────────────────────────

    async def _run(
        self, document_id: int, source_file_id: int, force: bool, cb: ParseCallbacks
    ) -> ParseOutcome:
        run = _Run(cb)
        try:
            converter = self._resolve_converter()

            run.stage = "fingerprinting"
            document = self.store.get_document(document_id)
            attachment = self.store.get_attachment(source_file_id)
            path = Path(attachment["path"])
            if not path.is_file():
                raise SourceFileMissingError(f"PDF file not found: {path}")
            stat = path.stat()
            if stat.st_size > MAX_FILE_SIZE:
                raise FileTooLargeError(stat.st_size, MAX_FILE_SIZE)
            fp = await self._fingerprint(document, attachment, path, stat)
            run.check()

            run.status("cache-check", "Checking result cache")
            cached = None if force else self.cache.lookup(fp)
            if cached is not None:
                return await self._import_cached(run, document_id, cached, converter)

            return await self._parse_remote(run, document, path, fp, converter)
        except ParseCancelled:
            logger.info("Parse of document %d cancelled during %s", document_id, run.stage)
            run.status("cancelled", "Cancelled")
            raise
        except Exception as exc:
            logger.error("Parse of document %d failed during %s: %s", document_id, run.stage, exc)
            run.status("error", str(exc))
            raise

    async def _import_cached(
        self, run: "_Run", document_id: int, md_path: Path, converter: MarkupConverter
    ) -> ParseOutcome:
        run.status("importing", "Cache hit, skipping upload")
        run.progress(40)
        run.status("importing", "Importing")
        run.progress(_CACHE_HIT_RANGE[0])
        run.check()

        note_id = self.store.create_child_note(document_id)
        total, failed = await self._import_markdown(
            run, note_id, md_path, converter, *_CACHE_HIT_RANGE
        )
        return self._finish(run, document_id, note_id, md_path, True, total, failed)

    async def _parse_remote(
        self,
        run: "_Run",
        document: dict,
        path: Path,
        fp: ParseFingerprint,
        converter: MarkupConverter,
    ) -> ParseOutcome:
        if self._client is None and not self.settings.token:
            raise MissingTokenError("No API token configured")

        data_id = f"{document['key']}-{_now_ms()}"
        options = {
            **self.settings.model_options(),
            "is_ocr": fp.is_ocr,
        }

        run.status("uploading", "Uploading")
        run.progress(PROGRESS_UPLOADING)
        run.check()

        client = self._client or MineruClient(
            self.settings.token,
            api_base=self.settings.api_base,
            timeout=self.settings.request_timeout_s,
        )
        try:
            job = await client.request_upload_slot(path.name, data_id, options)
            run.check()
            await client.upload_file(job, path)
            run.check()

            run.status("queued", "Waiting in remote queue")
            run.progress(PROGRESS_QUEUED)

            def _on_poll(stage: str, text: str, value: int) -> None:
                run.status(stage, text)
                run.progress(value)

            zip_url = await client.poll_result(
                job,
                interval_ms=self.settings.poll_interval_ms,
                timeout_ms=self.settings.poll_timeout_ms,
                on_update=_on_poll,
                should_cancel=run.cb.should_cancel,
            )
            run.check()

            run.status("downloading", "Downloading result")
            run.progress(PROGRESS_DOWNLOADING)
            bundle = await client.download_bundle(zip_url, should_cancel=run.cb.should_cancel)
        finally:
            if self._client is None:
                await client.aclose()
        run.check()

        run.status("extracting", "Extracting result")
        output_dir = self.cache.create_output_dir(data_id)
        try:
            md_path = await asyncio.to_thread(extract_archive, bundle, output_dir)
        except ResultFileError:
            shutil.rmtree(output_dir, ignore_errors=True)
            raise
        # Cache before import so a failed import can resume without re-uploading.
        self.cache.write(output_dir, fp.to_entry(str(md_path), _now_ms(), data_id))

        run.status("importing", "Importing")
        run.progress(_FRESH_RANGE[0])
        run.check()

        note_id = self.store.create_child_note(document["id"])
        total, failed = await self._import_markdown(
            run, note_id, md_path, converter, *_FRESH_RANGE
        )
        return self._finish(run, document["id"], note_id, md_path, False, total, failed)

    # ── Markdown → note ──────────────────────────────────────

    async def _import_markdown(
        self,
        run: "_Run",
        note_id: int,
        md_path: Path,
        converter: MarkupConverter,
        progress_start: int,
        progress_end: int,
    ) -> tuple[int, int]:
        """Convert, import images, save the note. Returns (images total, images failed)."""
        run.check()
        timer = _Timer(md_path.name)
        if not md_path.is_file():
            raise ResultFileError(f"Parse result file not found: {md_path}")

        span = max(0, progress_end - progress_start)

        def update(text: str, value: int) -> None:
            run.check()
            run.status("importing", text)
            run.progress(min(progress_end, max(progress_start, value)))

        raw = await asyncio.to_thread(md_path.read_text, encoding="utf-8")
        run.check()
        timer.lap("read-md")
        update("Importing", progress_start)

        html = converter(strip_before_first_heading(raw))
        run.check()
        timer.lap("md-to-html")
        convert_end = progress_start + round(span * 0.15)
        update("Importing", convert_end)

        tasks = prepare_image_tasks(extract_image_paths(html), md_path.parent)
        timer.lap(f"prepare-images ({len(tasks)} images)")

        image_start = convert_end
        image_end = progress_start + round(span * 0.9)
        image_span = image_end - image_start
        failed = 0

        if tasks:
            run.check()

            def on_image_progress(done: int, total: int, phase: str) -> None:
                ratio = done / total if total else 0.0
                if phase == "reading":
                    offset, phase_span = 0.0, image_span * 0.4
                    label = "Reading images"
                else:
                    offset, phase_span = image_span * 0.4, image_span * 0.6
                    label = "Importing images"
                run.status("importing", f"{label} ({done}/{total})")
                run.progress(round(image_start + offset + ratio * phase_span))

            result = await batch_import_images(
                self.store, note_id, tasks, IMAGE_CONCURRENCY, on_image_progress
            )
            timer.lap(f"batch-import ({result.success_count}/{result.total_count})")
            run.check()

            html = replace_image_srcs(html, result.src_to_key)
            failed = len(result.failed)
            if failed:
                logger.warning("Failed to import %d images: %s", failed, result.failed)

        update("Importing", image_end)
        self.store.set_note_body(note_id, wrap_note(html))
        timer.lap("save-note")
        update("Importing", progress_end)
        return len(tasks), failed

    # ── Helpers ──────────────────────────────────────────────

    def _finish(
        self,
        run: "_Run",
        document_id: int,
        note_id: int,
        md_path: Path,
        from_cache: bool,
        total: int,
        failed: int,
    ) -> ParseOutcome:
        text = import_status_text(failed)
        run.status("done", text)
        run.progress(100)
        logger.info(
            "Document %d parsed into note %d (%s, %d/%d images)",
            document_id,
            note_id,
            "cache" if from_cache else "remote",
            total - failed,
            total,
        )
        return ParseOutcome(
            document_id=document_id,
            note_id=note_id,
            markdown_path=str(md_path),
            from_cache=from_cache,
            images_total=total,
            images_failed=failed,
            status_text=text,
        )

    def _resolve_converter(self) -> MarkupConverter:
        if self._converter is None:
            self._converter = resolve_converter(self.settings.converter)
        return self._converter

    async def _fingerprint(
        self, document: dict, attachment: dict, path: Path, stat
    ) -> ParseFingerprint:
        is_ocr = self.settings.is_ocr
        if self.settings.ocr_auto_detect and not is_ocr:
            try:
                is_ocr = await asyncio.to_thread(is_scanned_pdf, str(path))
            except Exception as exc:
                logger.warning("OCR auto-detect failed for %s: %s", path, exc)
            if is_ocr:
                logger.info("%s has no usable text layer, requesting OCR", path.name)

        opts = self.settings.model_options()
        return ParseFingerprint(
            document_id=document["key"],
            source_file_id=attachment["key"],
            source_file_size=stat.st_size,
            source_file_mtime=int(stat.st_mtime * 1000),
            model_variant=opts["model_version"],
            is_ocr=is_ocr,
            enable_formula=opts["enable_formula"],
            enable_table=opts["enable_table"],
            language=opts["language"],
            page_ranges=opts["page_ranges"],
        )


def import_status_text(failed_images: int) -> str:
    if failed_images <= 0:
        return "Done"
    return f"Done, {failed_images} images pending"


# ── Run state ────────────────────────────────────────────────────────


class _Run:
    """Stage bookkeeping for one parse attempt."""

    def __init__(self, cb: ParseCallbacks):
        self.cb = cb
        self.stage = "idle"

    def status(self, stage: str, text: str) -> None:
        self.stage = stage
        self.cb.on_status_change(stage, text)

    def progress(self, value: int) -> None:
        self.cb.on_progress(value)

    def check(self) -> None:
        if self.cb.should_cancel():
            raise ParseCancelled()


class _Timer:
    def __init__(self, label: str):
        self.label = label
        self.start = self.last = time.monotonic()

    def lap(self, step: str) -> None:
        now = time.monotonic()
        logger.debug(
            "[timing] %s %s +%dms total=%dms",
            self.label,
            step,
            (now - self.last) * 1000,
            (now - self.start) * 1000,
        )
        self.last = now


def _now_ms() -> int:
    return int(time.time() * 1000)
