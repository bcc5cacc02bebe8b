"""Batch import of local images referenced by converted note markup."""

import asyncio
import logging
import os
import posixpath
import re
import time
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import unquote

from mdnote.core.store import DocumentStore
from mdnote.parsers.models import ImageImportResult, ImageTask

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 8

EXT_TO_MIME = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".bmp": "image/bmp",
    ".ico": "image/x-icon",
}

_IMG_SRC_RE = re.compile(r"""<img[^>]+src=["']([^"']+)["']""", re.IGNORECASE)

ImageProgress = Callable[[int, int, str], None]


# ── Markup scanning ──────────────────────────────────────────────────


def extract_image_paths(html: str) -> list[str]:
    """Unique local ``src`` values of every <img>, in document order."""
    seen: dict[str, None] = {}
    for match in _IMG_SRC_RE.finditer(html):
        src = match.group(1)
        if src and not src.startswith("data:") and not src.startswith("http"):
            seen.setdefault(src, None)
    return list(seen)


def prepare_image_tasks(image_srcs: list[str], file_dir: str | Path) -> list[ImageTask]:
    """Resolve each src against the Markdown file's directory; drop non-image paths."""
    tasks: list[ImageTask] = []
    for raw_src in image_srcs:
        decoded = unquote(raw_src).replace("\\", "/")
        ext = posixpath.splitext(decoded)[1].lower().split("?")[0]
        mime = EXT_TO_MIME.get(ext)
        if mime is None:
            continue

        if posixpath.isabs(decoded) or os.path.isabs(decoded):
            absolute = os.path.normpath(decoded)
        else:
            absolute = os.path.normpath(os.path.join(str(file_dir), decoded))

        tasks.append(
            ImageTask(src=raw_src, decoded_src=decoded, absolute_path=absolute, mime_type=mime)
        )
    return tasks


def replace_image_srcs(html: str, src_to_key: dict[str, str]) -> str:
    """Swap ``src="..."`` for ``data-attachment-key="..."`` in a single regex pass."""
    if not src_to_key:
        return html

    alternatives = "|".join(re.escape(src) for src in src_to_key)
    pattern = re.compile(
        rf"""<img([^>]*)\ssrc=["']({alternatives})["']([^>]*)>""", re.IGNORECASE
    )

    def _swap(match: re.Match) -> str:
        key = src_to_key.get(match.group(2))
        if not key:
            return match.group(0)
        return f'<img{match.group(1)} data-attachment-key="{key}"{match.group(3)}>'

    return pattern.sub(_swap, html)


# ── Import ───────────────────────────────────────────────────────────


async def batch_import_images(
    store: DocumentStore,
    note_id: int,
    tasks: list[ImageTask],
    concurrency: int = DEFAULT_CONCURRENCY,
    on_progress: Optional[ImageProgress] = None,
) -> ImageImportResult:
    """Read all images in bounded parallel chunks, then import them one by one."""
    started = time.monotonic()
    result = ImageImportResult(total_count=len(tasks))
    if not tasks:
        return result

    logger.info("Importing %d images into note %d", len(tasks), note_id)

    # Phase 1: parallel reads
    if on_progress:
        on_progress(0, len(tasks), "reading")
    await _read_images(tasks, max(1, concurrency), on_progress)

    # Phase 2: sequential attachment creation against the note
    if on_progress:
        on_progress(0, len(tasks), "importing")
    src_to_key = _create_attachments(store, note_id, tasks, on_progress)

    result.src_to_key = src_to_key
    result.success_count = len(src_to_key)
    result.failed = [t.src for t in tasks if t.src not in src_to_key]
    result.total_time_ms = round((time.monotonic() - started) * 1000)

    logger.info(
        "Image import complete: %d/%d in %dms",
        result.success_count,
        result.total_count,
        result.total_time_ms,
    )
    return result


async def _read_images(
    tasks: list[ImageTask], concurrency: int, on_progress: Optional[ImageProgress]
) -> None:
    total = len(tasks)
    done = 0

    async def _read_one(task: ImageTask) -> None:
        nonlocal done
        try:
            task.data = await asyncio.to_thread(Path(task.absolute_path).read_bytes)
        except OSError as exc:
            logger.warning("Failed to read image %s: %s", task.absolute_path, exc)
        done += 1
        if on_progress:
            on_progress(done, total, "reading")

    for start in range(0, total, concurrency):
        await asyncio.gather(*(_read_one(t) for t in tasks[start : start + concurrency]))


def _create_attachments(
    store: DocumentStore,
    note_id: int,
    tasks: list[ImageTask],
    on_progress: Optional[ImageProgress],
) -> dict[str, str]:
    src_to_key: dict[str, str] = {}
    valid = [t for t in tasks if t.data]
    total = len(valid)
    if total < len(tasks):
        logger.info("Creating %d attachments (%d skipped, no data)", total, len(tasks) - total)

    for done, task in enumerate(valid, 1):
        try:
            src_to_key[task.src] = store.import_embedded_image(note_id, task.data, task.mime_type)
        except Exception as exc:
            logger.warning("Failed to create attachment for %s: %s", task.src, exc)
        if on_progress:
            on_progress(done, total, "importing")
    return src_to_key
