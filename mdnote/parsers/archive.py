"""Result-bundle extraction with path validation and Markdown selection."""

import io
import logging
import re
import shutil
import zipfile
import zlib
from pathlib import Path

from mdnote.core.errors import ResultFileError, UnsafeArchiveError

logger = logging.getLogger(__name__)

_DRIVE_RE = re.compile(r"^[a-zA-Z]:")
_MARKDOWN_SEGMENT_RE = re.compile(r"(^|/)markdown/")


# ── Public API ───────────────────────────────────────────────────────


def extract_archive(data: bytes, output_dir: str | Path) -> Path:
    """Expand a result bundle into ``output_dir`` and return the chosen Markdown path.

    Every entry name is validated before anything is written: one unsafe
    entry aborts the whole extraction and leaves the directory untouched.
    Entries are written to a hidden staging sibling that replaces
    ``output_dir`` only once every entry has been read, so a corrupt bundle
    never leaves a half-written result behind.
    """
    output_dir = Path(output_dir)
    try:
        zf = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as exc:
        raise ResultFileError("Result bundle is not a valid zip archive") from exc

    with zf:
        plan: list[tuple[zipfile.ZipInfo, list[str], bool]] = []
        for info in zf.infolist():
            segments = normalize_entry_path(info.filename)
            is_dir = info.filename.endswith("/")
            if not segments:
                if info.filename and not is_dir:
                    raise UnsafeArchiveError(
                        f"Archive contains an unsafe path, extraction aborted: {info.filename!r}"
                    )
                continue
            plan.append((info, segments, is_dir))

        created_dirs: set[Path] = set()

        def ensure_dir_once(path: Path) -> None:
            if path in created_dirs:
                return
            path.mkdir(parents=True, exist_ok=True)
            created_dirs.add(path)

        staging = output_dir.parent / f".{output_dir.name}.partial"
        shutil.rmtree(staging, ignore_errors=True)
        md_candidates: list[str] = []
        try:
            ensure_dir_once(staging)
            for info, segments, is_dir in plan:
                target = staging.joinpath(*segments)
                if is_dir:
                    ensure_dir_once(target)
                    continue
                ensure_dir_once(target.parent)
                target.write_bytes(zf.read(info))
                if info.filename.lower().endswith(".md"):
                    md_candidates.append("/".join(segments))

            selected = select_markdown(md_candidates)
            if not selected:
                raise ResultFileError("No Markdown result file found in the bundle")
            _promote(staging, output_dir)
        except (zipfile.BadZipFile, zlib.error) as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise ResultFileError(f"Result bundle is corrupt: {exc}") from exc
        except (ResultFileError, OSError):
            shutil.rmtree(staging, ignore_errors=True)
            raise

    logger.debug("Extracted %d entries, selected %s", len(plan), selected)
    return output_dir.joinpath(*selected.split("/"))


def normalize_entry_path(entry_path: str) -> list[str]:
    """Split an archive entry into safe path segments, or [] if it is unsafe/empty."""
    normalized = entry_path.replace("\\", "/")
    normalized = re.sub(r"^\./+", "", normalized)
    if not normalized:
        return []
    if normalized.startswith("/"):
        return []
    if _DRIVE_RE.match(normalized):
        return []
    segments = [seg for seg in normalized.split("/") if seg]
    if not segments:
        return []
    if any(seg in (".", "..") for seg in segments):
        return []
    return segments


def select_markdown(paths: list[str]) -> str:
    """Pick the canonical Markdown file out of several candidates.

    Candidates are ordered case-insensitively, with the raw string as a stable
    tie-break. The first path under a ``markdown/`` segment wins; otherwise
    the first path overall.
    """
    if not paths:
        return ""
    ordered = sorted(paths, key=lambda p: (str(p).casefold(), str(p)))
    for p in ordered:
        normalized = str(p).replace("\\", "/").lower()
        if _MARKDOWN_SEGMENT_RE.search(normalized):
            return p
    return ordered[0]


def find_markdown_file(root_dir: str | Path) -> str:
    """Walk ``root_dir`` recursively and select among the ``.md`` files found."""
    root = Path(root_dir)
    if not root.is_dir():
        return ""
    candidates = [str(p) for p in root.rglob("*") if p.is_file() and p.suffix.lower() == ".md"]
    if not candidates:
        return ""
    # Select on paths relative to the root so the root's own name never counts.
    relative = {Path(c).relative_to(root).as_posix(): c for c in candidates}
    chosen = select_markdown(list(relative))
    return relative[chosen]


# ── Helpers ──────────────────────────────────────────────────────────


def _promote(staging: Path, output_dir: Path) -> None:
    """Move a fully extracted staging tree into place."""
    if output_dir.is_dir():
        if any(output_dir.iterdir()):
            raise ResultFileError(f"Output directory is not empty: {output_dir}")
        output_dir.rmdir()
    staging.rename(output_dir)
