"""Fingerprint-keyed cache of extracted parse results on the local filesystem."""

import logging
import tempfile
from pathlib import Path

from pydantic import ValidationError

from mdnote.parsers.archive import find_markdown_file
from mdnote.parsers.models import CacheEntry, ParseFingerprint

logger = logging.getLogger(__name__)

CACHE_PREFIX = "mdnote-"
METADATA_FILENAME = "cache-info.json"
ORIGIN_PDF_SUFFIX = "_origin.pdf"


def resolve_cache_dir(override: str = "") -> Path:
    """Configured cache directory if it can be created, else the system temp dir."""
    if override:
        path = Path(override).expanduser()
        try:
            path.mkdir(parents=True, exist_ok=True)
            return path
        except OSError as exc:
            logger.warning("Cache dir %s not available (%s), using temp dir", path, exc)
    return Path(tempfile.gettempdir())


# ── ResultCache ──────────────────────────────────────────────────────


class ResultCache:
    """Maps a ParseFingerprint to a previously extracted Markdown file."""

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)

    # ── Writing ──────────────────────────────────────────────

    def create_output_dir(self, data_id: str) -> Path:
        """Fresh output directory for one remote request, inside the cache namespace."""
        out = self.base_dir / f"{CACHE_PREFIX}{data_id}"
        out.mkdir(parents=True, exist_ok=True)
        return out

    def write(self, output_dir: str | Path, entry: CacheEntry) -> bool:
        """Persist the sidecar record. Best effort: failures are logged, never raised."""
        meta_path = Path(output_dir) / METADATA_FILENAME
        try:
            meta_path.write_text(
                entry.model_dump_json(by_alias=True, exclude_none=True), encoding="utf-8"
            )
        except OSError as exc:
            logger.warning("Write cache metadata failed for %s: %s", meta_path, exc)
            return False
        return True

    # ── Lookup ───────────────────────────────────────────────

    def lookup(self, fp: ParseFingerprint) -> Path | None:
        """Newest still-valid cached Markdown for this fingerprint, or None."""
        if not self.base_dir.is_dir():
            return None

        best_path: str = ""
        best_score = -1.0

        try:
            children = list(self.base_dir.iterdir())
        except OSError as exc:
            logger.warning("Cannot list cache dir %s: %s", self.base_dir, exc)
            return None

        for entry_dir in children:
            # The cache dir may be the shared temp dir; skip everything else.
            if not entry_dir.name.startswith(CACHE_PREFIX):
                continue
            try:
                if not entry_dir.is_dir():
                    continue
                dir_mtime_ms = entry_dir.stat().st_mtime * 1000
            except OSError:
                continue

            meta = self.read_metadata(entry_dir)
            if meta is not None:
                if not fp.matches(meta):
                    continue
                if meta.markdown_path and Path(meta.markdown_path).is_file():
                    score = meta.created_at or dir_mtime_ms
                    if score > best_score:
                        best_score = score
                        best_path = meta.markdown_path
                else:
                    logger.debug("Cache entry %s is orphaned, skipping", entry_dir.name)
                continue

            fallback = self._infer_markdown(entry_dir, fp)
            if fallback and dir_mtime_ms > best_score:
                best_score = dir_mtime_ms
                best_path = fallback

        if best_path:
            logger.info("Cache hit for %s/%s: %s", fp.document_id, fp.source_file_id, best_path)
            return Path(best_path)
        return None

    def read_metadata(self, entry_dir: str | Path) -> CacheEntry | None:
        meta_path = Path(entry_dir) / METADATA_FILENAME
        if not meta_path.is_file():
            return None
        try:
            entry = CacheEntry.model_validate_json(meta_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as exc:
            logger.warning("Read cache metadata failed for %s: %s", meta_path, exc)
            return None
        if not entry.markdown_path:
            return None
        return entry

    def _infer_markdown(self, entry_dir: Path, fp: ParseFingerprint) -> str:
        """Legacy entries without metadata: trust the naming convention and file size."""
        if not entry_dir.name.startswith(f"{CACHE_PREFIX}{fp.document_id}-"):
            return ""

        try:
            origin_pdf = next(
                (c for c in entry_dir.iterdir() if c.name.lower().endswith(ORIGIN_PDF_SUFFIX)),
                None,
            )
        except OSError:
            return ""
        if origin_pdf is not None and fp.source_file_size is not None:
            try:
                size = origin_pdf.stat().st_size
            except OSError:
                size = 0
            if size and size != fp.source_file_size:
                return ""

        return find_markdown_file(entry_dir)
