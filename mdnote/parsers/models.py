"""Shared data models for the parse pipeline."""

from dataclasses import dataclass, field
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

# ── Fingerprint & Cache Entry ────────────────────────────────────────


class CacheEntry(BaseModel):
    """Sidecar record written next to each extracted result."""

    model_config = ConfigDict(populate_by_name=True)

    document_id: str = Field(alias="documentId")
    source_file_id: str = Field(alias="sourceFileId")
    source_file_size: Optional[int] = Field(default=None, alias="sourceFileSize")
    source_file_mtime: Optional[int] = Field(default=None, alias="sourceFileMtime")
    model_variant: Optional[str] = Field(default=None, alias="modelVariant")
    markdown_path: str = Field(alias="markdownPath")
    created_at: int = Field(alias="createdAt", description="Epoch milliseconds")
    remote_request_id: Optional[str] = Field(default=None, alias="remoteRequestId")


class ParseFingerprint(BaseModel):
    """Identity of one parse request; computed once per attempt."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    source_file_id: str
    source_file_size: Optional[int] = None
    source_file_mtime: Optional[int] = None
    model_variant: Optional[str] = None
    is_ocr: bool = False
    enable_formula: bool = True
    enable_table: bool = True
    language: str = "ch"
    page_ranges: str = ""

    def matches(self, entry: CacheEntry) -> bool:
        """Cache equivalence: identities exact, size/mtime tolerant, variant if given."""
        if entry.document_id != self.document_id:
            return False
        if entry.source_file_id != self.source_file_id:
            return False
        if not _optional_equal(entry.source_file_size, self.source_file_size):
            return False
        if not _optional_equal(entry.source_file_mtime, self.source_file_mtime):
            return False
        if self.model_variant and entry.model_variant != self.model_variant:
            return False
        return True

    def to_entry(
        self, markdown_path: str, created_at: int, remote_request_id: str | None = None
    ) -> CacheEntry:
        return CacheEntry(
            document_id=self.document_id,
            source_file_id=self.source_file_id,
            source_file_size=self.source_file_size,
            source_file_mtime=self.source_file_mtime,
            model_variant=self.model_variant,
            markdown_path=markdown_path,
            created_at=created_at,
            remote_request_id=remote_request_id,
        )


def _optional_equal(a: Optional[int], b: Optional[int]) -> bool:
    return a is None or b is None or a == b


# ── Images ───────────────────────────────────────────────────────────


@dataclass
class ImageTask:
    """One image referenced by the converted markup."""

    src: str
    decoded_src: str
    absolute_path: str
    mime_type: str = "image/png"
    data: Optional[bytes] = None


@dataclass
class ImageImportResult:
    src_to_key: dict[str, str] = field(default_factory=dict)
    failed: list[str] = field(default_factory=list)
    total_count: int = 0
    success_count: int = 0
    total_time_ms: int = 0


# ── Callbacks & Outcome ──────────────────────────────────────────────


def _noop(*_args) -> None:
    return None


def _never() -> bool:
    return False


@dataclass
class ParseCallbacks:
    """Progress/cancellation contract shared by single-item and batch callers."""

    on_status_change: Callable[[str, str], None] = _noop
    on_progress: Callable[[int], None] = _noop
    should_cancel: Callable[[], bool] = _never


class ParseOutcome(BaseModel):
    """What a successful parse produced."""

    document_id: int
    note_id: int
    markdown_path: str
    from_cache: bool
    images_total: int = 0
    images_failed: int = 0
    status_text: str = ""
