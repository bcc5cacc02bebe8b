"""Pydantic models for batch parsing: tasks, detection results and library stats."""

from typing import Literal, Optional

from pydantic import BaseModel, Field

TaskStatus = Literal["queued", "running", "success", "failed", "stopped"]
QueueState = Literal["idle", "running", "paused"]
DocumentKind = Literal["regular", "attachment", "note"]
Category = Literal["journal", "conference", "thesis", "book", "other"]

TERMINAL_STATUSES = {"success", "failed", "stopped"}
RETRYABLE_STATUSES = {"failed", "stopped"}
CATEGORIES: tuple[str, ...] = ("journal", "conference", "thesis", "book", "other")


# ── Tasks ────────────────────────────────────────────────────────────


class ParseTask(BaseModel):
    """One queued parse. Mutated only by the owning BatchQueue."""

    id: str
    document_id: int
    document_key: str
    title: str = ""
    source_file_id: int
    kind: DocumentKind = "regular"
    category: Category = "other"
    status: TaskStatus = "queued"
    status_text: str = "Queued"
    progress: int = Field(default=0, ge=0, le=100)
    error_message: Optional[str] = None
    note_id: Optional[int] = None
    started_at: Optional[int] = None
    ended_at: Optional[int] = None
    duration_ms: Optional[int] = None
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class BatchSummary(BaseModel):
    total: int = 0
    queued: int = 0
    running: int = 0
    success: int = 0
    failed: int = 0
    stopped: int = 0
    state: QueueState = "idle"


class AddResult(BaseModel):
    added: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)


# ── Detection ────────────────────────────────────────────────────────


class UnparsedCandidate(BaseModel):
    """A document with a PDF but no parsed note yet."""

    document_id: int
    document_key: str
    title: str = ""
    source_file_id: int
    kind: DocumentKind = "regular"
    category: Category = "other"


class DetectSummary(BaseModel):
    added: int = 0
    skipped_no_pdf: int = 0
    skipped_parsed: int = 0
    skipped_duplicate: int = 0
    skipped_invalid: int = 0


class DetectResult(BaseModel):
    candidates: list[UnparsedCandidate] = Field(default_factory=list)
    summary: DetectSummary = Field(default_factory=DetectSummary)


# ── Library scan ─────────────────────────────────────────────────────


class CategoryStat(BaseModel):
    category: Category
    total: int = 0
    parsed: int = 0
    unparsed: int = 0

    @property
    def percent(self) -> float:
        """Parsed share of this category, 0–100, one decimal."""
        if self.total == 0:
            return 0.0
        return round(self.parsed * 100 / self.total, 1)


class LibraryStats(BaseModel):
    library_id: int
    total_pdfs: int = 0
    parsed: int = 0
    unparsed: int = 0
    categories: list[CategoryStat] = Field(default_factory=list)
    candidates: list[UnparsedCandidate] = Field(default_factory=list)
    duration_ms: int = 0

    @property
    def percent(self) -> float:
        if self.total_pdfs == 0:
            return 0.0
        return round(self.parsed * 100 / self.total_pdfs, 1)


class ScanProgress(BaseModel):
    processed: int
    total: int
