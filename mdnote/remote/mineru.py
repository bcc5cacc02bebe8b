"""Async client for the MinerU batch parsing API (upload slot, upload, poll, download)."""

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Optional

import httpx
from pydantic import BaseModel, ValidationError

from mdnote.core.errors import ParseCancelled, RemoteError, RemoteTimeoutError
from mdnote.remote.models import (
    BatchResultResponse,
    ExtractResult,
    RemoteJob,
    UploadSlotResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://mineru.net"

_MAX_RETRIES = 3

# Progress checkpoints (0–100) for the remote phases.
PROGRESS_UPLOADING = 10
PROGRESS_QUEUED = 30
PROGRESS_PENDING = 40
PROGRESS_RUNNING_START = 40
PROGRESS_RUNNING_SPAN = 20
PROGRESS_RUNNING_UNKNOWN = 55
PROGRESS_CONVERTING = 60
PROGRESS_DOWNLOADING = 70

_QUEUED_STATES = {"pending", "waiting-file"}

PollUpdate = Callable[[str, str, int], None]


# ── Client ───────────────────────────────────────────────────────────


class MineruClient:
    """Thin wrapper over the three remote calls and the result download."""

    def __init__(
        self,
        token: str,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.token = token
        self.api_base = api_base.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self._owns_client = client is None

    async def __aenter__(self) -> "MineruClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _auth_headers(self) -> dict:
        return {"Authorization": f"Bearer {self.token}"}

    # ── 1. Upload slot ───────────────────────────────────────

    async def request_upload_slot(
        self, file_name: str, data_id: str, options: dict
    ) -> RemoteJob:
        """Ask for a pre-signed upload URL; exactly one URL and a batch id are required."""
        file_desc = {
            "name": file_name,
            "data_id": data_id,
            "is_ocr": bool(options.get("is_ocr", False)),
        }
        if options.get("page_ranges"):
            file_desc["page_ranges"] = options["page_ranges"]
        body = {
            "files": [file_desc],
            "model_version": options.get("model_version", "pipeline"),
            "enable_formula": bool(options.get("enable_formula", True)),
            "enable_table": bool(options.get("enable_table", True)),
            "language": options.get("language", "ch"),
        }

        try:
            res = await self._request_json(
                UploadSlotResponse,
                "POST",
                f"{self.api_base}/api/v4/file-urls/batch",
                headers={**self._auth_headers(), "Content-Type": "application/json"},
                json=body,
            )
        except httpx.TransportError as exc:
            raise RemoteError(f"Upload slot request failed: {exc}") from exc
        if res.code != 0:
            raise RemoteError(f"Upload slot request failed: {res.msg or res.code}")
        urls = res.data.file_urls if res.data else []
        batch_id = res.data.batch_id if res.data else None
        if len(urls) != 1 or not urls[0] or not batch_id:
            raise RemoteError("Upload slot request failed: incomplete response data")

        logger.info("Upload slot granted: batch %s for %s", batch_id, file_name)
        return RemoteJob(
            batch_id=batch_id, upload_url=urls[0], data_id=data_id, file_name=file_name
        )

    # ── 2. Upload ────────────────────────────────────────────

    async def upload_file(self, job: RemoteJob, file_path: str | Path) -> None:
        """PUT the raw PDF bytes to the pre-signed URL."""
        data = await asyncio.to_thread(Path(file_path).read_bytes)
        try:
            res = await self._client.put(job.upload_url, content=data)
        except httpx.HTTPError as exc:
            raise RemoteError(f"File upload failed: {exc}") from exc
        if not res.is_success:
            raise RemoteError(f"File upload failed: {res.status_code}")
        logger.info("Uploaded %s (%d bytes)", job.file_name, len(data))

    # ── 3. Poll ──────────────────────────────────────────────

    async def poll_result(
        self,
        job: RemoteJob,
        interval_ms: int = 3000,
        timeout_ms: int = 900_000,
        on_update: Optional[PollUpdate] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> str:
        """Poll the batch until our sub-result is done. Returns the bundle URL."""
        start = time.monotonic()
        while (time.monotonic() - start) * 1000 < timeout_ms:
            _check_cancel(should_cancel)
            res = await self._with_retry(
                "poll",
                lambda: self._request_json(
                    BatchResultResponse,
                    "GET",
                    f"{self.api_base}/api/v4/extract-results/batch/{job.batch_id}",
                    headers={**self._auth_headers(), "Accept": "*/*"},
                ),
                should_cancel,
            )
            if res.code != 0:
                raise RemoteError(f"Status query failed: {res.msg or res.code}")

            result = select_result(res.data.extract_result if res.data else [], job)
            if result is None:
                raise RemoteError("Status query failed: no result for this file")

            if result.state == "done":
                if not result.full_zip_url:
                    raise RemoteError("Parse finished but no download URL was returned")
                logger.info("Batch %s done", job.batch_id)
                return result.full_zip_url
            if result.state == "failed":
                raise RemoteError(f"Parse failed: {result.err_msg or 'unknown reason'}")

            if on_update is not None:
                update = describe_state(result)
                if update is not None:
                    on_update(*update)

            _check_cancel(should_cancel)
            await asyncio.sleep(interval_ms / 1000)

        raise RemoteTimeoutError("Parse timed out, please retry later")

    # ── Download ─────────────────────────────────────────────

    async def download_bundle(
        self, url: str, should_cancel: Optional[Callable[[], bool]] = None
    ) -> bytes:
        async def _get() -> bytes:
            try:
                res = await self._client.get(url)
            except httpx.TransportError:
                raise
            except httpx.HTTPError as exc:
                raise RemoteError(f"Download failed: {exc}") from exc
            if not res.is_success:
                raise RemoteError(f"Download failed: {res.status_code}")
            return res.content

        data = await self._with_retry("download", _get, should_cancel)
        logger.info("Downloaded result bundle (%d bytes)", len(data))
        return data

    # ── Internals ────────────────────────────────────────────

    async def _request_json(self, model: type[BaseModel], method: str, url: str, **kwargs):
        """Send a request and validate the JSON envelope. Transport errors propagate."""
        try:
            res = await self._client.request(method, url, **kwargs)
        except httpx.TransportError:
            raise
        except httpx.HTTPError as exc:
            raise RemoteError(f"Request failed: {exc}") from exc
        if not res.is_success:
            raise RemoteError(f"Request failed: {res.status_code}")
        try:
            return model.model_validate_json(res.content)
        except ValidationError as exc:
            raise RemoteError(f"Malformed response from {url}") from exc

    async def _with_retry(
        self, label: str, call, should_cancel: Optional[Callable[[], bool]] = None
    ):
        """Retry transport-level failures (never HTTP status errors) with backoff.

        Cancellation is checked around every backoff sleep.
        """
        for attempt in range(1, _MAX_RETRIES + 1):
            try:
                return await call()
            except httpx.TransportError as exc:
                if attempt == _MAX_RETRIES:
                    raise RemoteError(f"Request failed ({label}): {exc}") from exc
                wait = 2**attempt
                logger.warning(
                    "Remote %s failed (attempt %d/%d): %s, retrying in %ds",
                    label,
                    attempt,
                    _MAX_RETRIES,
                    exc,
                    wait,
                )
                _check_cancel(should_cancel)
                await asyncio.sleep(wait)
                _check_cancel(should_cancel)


# ── Helpers ──────────────────────────────────────────────────────────


def select_result(results: list[ExtractResult], job: RemoteJob) -> ExtractResult | None:
    """Match by correlation id, then by file name, then fall back to the first entry."""
    for r in results:
        if r.data_id == job.data_id:
            return r
    for r in results:
        if r.file_name == job.file_name:
            return r
    return results[0] if results else None


def describe_state(result: ExtractResult) -> tuple[str, str, int] | None:
    """(stage, status text, progress) for a non-terminal remote state."""
    if result.state in _QUEUED_STATES:
        return "queued", "Waiting in remote queue", PROGRESS_PENDING
    if result.state == "running":
        prog = result.extract_progress
        if prog and prog.extracted_pages is not None and prog.total_pages:
            ratio = min(1.0, max(0.0, prog.extracted_pages / prog.total_pages))
            percent = PROGRESS_RUNNING_START + round(ratio * PROGRESS_RUNNING_SPAN)
            return (
                "parsing",
                f"Parsing pages {prog.extracted_pages}/{prog.total_pages}",
                percent,
            )
        return "parsing", "Parsing", PROGRESS_RUNNING_UNKNOWN
    if result.state == "converting":
        return "converting", "Converting result", PROGRESS_CONVERTING
    logger.debug("Unrecognized remote state %r", result.state)
    return None


def _check_cancel(should_cancel: Optional[Callable[[], bool]]) -> None:
    if should_cancel is not None and should_cancel():
        raise ParseCancelled()
