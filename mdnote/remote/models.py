"""Response envelopes of the remote parsing service, and the per-submission job."""

from typing import Optional

from pydantic import BaseModel, Field


class RemoteJob(BaseModel):
    """One upload + poll round trip. Lives only as long as that round trip."""

    batch_id: str
    upload_url: str
    data_id: str = Field(description="Correlation id unique to this submission")
    file_name: str


# ── Upload slot ──────────────────────────────────────────────────────


class UploadSlotData(BaseModel):
    batch_id: Optional[str] = None
    file_urls: list[str] = Field(default_factory=list)


class UploadSlotResponse(BaseModel):
    code: int
    msg: Optional[str] = None
    data: Optional[UploadSlotData] = None


# ── Batch status ─────────────────────────────────────────────────────


class ExtractProgress(BaseModel):
    extracted_pages: Optional[int] = None
    total_pages: Optional[int] = None


class ExtractResult(BaseModel):
    """Per-file sub-result inside a batch status response."""

    file_name: Optional[str] = None
    data_id: Optional[str] = None
    state: str
    err_msg: Optional[str] = None
    full_zip_url: Optional[str] = None
    extract_progress: Optional[ExtractProgress] = None


class BatchResultData(BaseModel):
    batch_id: Optional[str] = None
    extract_result: list[ExtractResult] = Field(default_factory=list)


class BatchResultResponse(BaseModel):
    code: int
    msg: Optional[str] = None
    data: Optional[BatchResultData] = None
