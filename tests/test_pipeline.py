"""Tests for the parse pipeline: cache hit/miss paths, failures, cancellation."""

import asyncio
import json
from unittest.mock import patch

import pytest

from conftest import FakeMineru, build_bundle, corrupt_bundle
from mdnote.core.errors import (
    ConverterUnavailableError,
    FileTooLargeError,
    MissingTokenError,
    ParseCancelled,
    RemoteError,
    ResultFileError,
    SourceFileMissingError,
)
from mdnote.parsers.cache import METADATA_FILENAME
from mdnote.parsers.markup import NOTE_META
from mdnote.parsers.models import ParseCallbacks
from mdnote.parsers.pipeline import ParsePipeline


class Recorder:
    """Collects callback traffic from one parse."""

    def __init__(self, should_cancel=None):
        self.stages: list[str] = []
        self.texts: list[str] = []
        self.progress: list[int] = []
        self.callbacks = ParseCallbacks(
            on_status_change=self._on_status,
            on_progress=self.progress.append,
            should_cancel=should_cancel or (lambda: False),
        )

    def _on_status(self, stage: str, text: str) -> None:
        if not self.stages or self.stages[-1] != stage:
            self.stages.append(stage)
        self.texts.append(text)


def _add_doc(db, pdf_path, title="Paper A"):
    doc_id = db.add_document(title)
    att_id = db.add_attachment(doc_id, pdf_path)
    return doc_id, att_id


# ── Cache-miss path ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_fresh_parse_creates_note_with_images(db, settings, pdf_file, fake_remote):
    doc_id, att_id = _add_doc(db, pdf_file)
    pipeline = ParsePipeline(db, settings, client=fake_remote.client())
    rec = Recorder()

    outcome = await pipeline.parse(doc_id, att_id, callbacks=rec.callbacks)

    assert outcome.from_cache is False
    assert outcome.images_total == 1
    assert outcome.images_failed == 0
    assert outcome.status_text == "Done"
    assert outcome.markdown_path.replace("\\", "/").endswith("markdown/full.md")

    body = db.get_note_body(outcome.note_id)
    assert body.startswith(NOTE_META)
    assert "Results" in body
    assert "Running header" not in body
    assert "data-attachment-key=" in body
    assert 'src="images/fig1.png"' not in body
    assert len(db.get_embedded_images(outcome.note_id)) == 1
    assert db.has_parsed_note(doc_id)

    assert fake_remote.uploads == 1
    assert rec.stages == [
        "cache-check",
        "uploading",
        "queued",
        "parsing",
        "downloading",
        "extracting",
        "importing",
        "done",
    ]
    assert rec.progress == sorted(rec.progress)
    assert rec.progress[-1] == 100


@pytest.mark.asyncio
async def test_upload_slot_request_carries_model_options(db, settings, pdf_file, fake_remote):
    doc_id, att_id = _add_doc(db, pdf_file)
    settings = settings.model_copy(update={"language": "en", "page_ranges": "1-3"})
    pipeline = ParsePipeline(db, settings, client=fake_remote.client())

    await pipeline.parse(doc_id, att_id)

    body = fake_remote.slot_bodies[0]
    assert body["language"] == "en"
    assert body["model_version"] == "pipeline"
    assert body["files"][0]["name"] == "paper.pdf"
    assert body["files"][0]["page_ranges"] == "1-3"
    assert body["files"][0]["data_id"].startswith(db.get_document(doc_id)["key"] + "-")


@pytest.mark.asyncio
async def test_cache_entry_written_with_sidecar_keys(db, settings, pdf_file, fake_remote):
    doc_id, att_id = _add_doc(db, pdf_file)
    pipeline = ParsePipeline(db, settings, client=fake_remote.client())

    await pipeline.parse(doc_id, att_id)

    sidecars = list(pipeline.cache.base_dir.glob(f"mdnote-*/{METADATA_FILENAME}"))
    assert len(sidecars) == 1
    record = json.loads(sidecars[0].read_text())
    assert record["documentId"] == db.get_document(doc_id)["key"]
    assert record["sourceFileId"] == db.get_attachment(att_id)["key"]
    assert record["sourceFileSize"] == pdf_file.stat().st_size
    assert record["modelVariant"] == "pipeline"
    assert record["remoteRequestId"].startswith(record["documentId"] + "-")
    assert isinstance(record["createdAt"], int)


# ── Cache-hit path ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_cache_hit_skips_remote(db, settings, pdf_file, fake_remote):
    doc_id, att_id = _add_doc(db, pdf_file)
    pipeline = ParsePipeline(db, settings, client=fake_remote.client())
    await pipeline.parse(doc_id, att_id)
    requests_before = fake_remote.requests_made

    rec = Recorder()
    outcome = await pipeline.parse(doc_id, att_id, callbacks=rec.callbacks)

    assert rec.stages == ["cache-check", "importing", "done"]
    assert fake_remote.requests_made == requests_before
    assert outcome.from_cache is True
    assert len(db.list_notes(doc_id)) == 2
    assert "Results" in db.get_note_body(outcome.note_id)


@pytest.mark.asyncio
async def test_cache_hit_needs_no_token(db, settings, pdf_file, fake_remote):
    doc_id, att_id = _add_doc(db, pdf_file)
    await ParsePipeline(db, settings, client=fake_remote.client()).parse(doc_id, att_id)

    no_token = settings.model_copy(update={"token": ""})
    outcome = await ParsePipeline(db, no_token).parse(doc_id, att_id)

    assert outcome.from_cache is True


@pytest.mark.asyncio
async def test_force_bypasses_cache(db, settings, pdf_file, fake_remote):
    doc_id, att_id = _add_doc(db, pdf_file)
    pipeline = ParsePipeline(db, settings, client=fake_remote.client())
    await pipeline.parse(doc_id, att_id)

    fake_remote.polls = 0
    outcome = await pipeline.parse(doc_id, att_id, force=True)

    assert outcome.from_cache is False
    assert fake_remote.uploads == 2


@pytest.mark.asyncio
async def test_failed_import_still_leaves_cached_result(db, settings, pdf_file, fake_remote):
    doc_id, att_id = _add_doc(db, pdf_file)

    def broken_converter(text: str) -> str:
        raise RuntimeError("converter crashed")

    failing = ParsePipeline(db, settings, client=fake_remote.client(), converter=broken_converter)
    with pytest.raises(RuntimeError, match="converter crashed"):
        await failing.parse(doc_id, att_id)
    assert fake_remote.uploads == 1

    retry = ParsePipeline(db, settings, client=fake_remote.client())
    outcome = await retry.parse(doc_id, att_id)

    assert outcome.from_cache is True
    assert fake_remote.uploads == 1


@pytest.mark.asyncio
async def test_corrupt_bundle_is_not_cached(db, settings, pdf_file, bundle):
    doc_id, att_id = _add_doc(db, pdf_file)
    remote = FakeMineru(corrupt_bundle())
    pipeline = ParsePipeline(db, settings, client=remote.client())
    rec = Recorder()

    with pytest.raises(ResultFileError, match="corrupt"):
        await pipeline.parse(doc_id, att_id, callbacks=rec.callbacks)
    assert rec.stages[-1] == "error"
    assert list(pipeline.cache.base_dir.iterdir()) == []

    remote.bundle = bundle
    outcome = await pipeline.parse(doc_id, att_id)

    assert outcome.from_cache is False
    assert remote.uploads == 2


# ── Remote failures & cancellation ───────────────────────────────────


@pytest.mark.asyncio
async def test_remote_failure_state_raises_with_message(db, settings, pdf_file, fake_remote):
    doc_id, att_id = _add_doc(db, pdf_file)
    fake_remote.states = ["running", "failed"]
    pipeline = ParsePipeline(db, settings, client=fake_remote.client())
    rec = Recorder()

    with pytest.raises(RemoteError, match="corrupt pdf"):
        await pipeline.parse(doc_id, att_id, callbacks=rec.callbacks)

    assert rec.stages[-1] == "error"
    assert "corrupt pdf" in rec.texts[-1]
    assert db.list_notes(doc_id) == []


@pytest.mark.asyncio
async def test_cancel_after_upload_stops_before_polling(db, settings, pdf_file, fake_remote):
    doc_id, att_id = _add_doc(db, pdf_file)
    pipeline = ParsePipeline(db, settings, client=fake_remote.client())
    rec = Recorder(should_cancel=lambda: fake_remote.uploads >= 1)

    with pytest.raises(ParseCancelled):
        await pipeline.parse(doc_id, att_id, callbacks=rec.callbacks)

    assert fake_remote.uploads == 1
    assert fake_remote.polls == 0
    assert rec.stages[-1] == "cancelled"


@pytest.mark.asyncio
async def test_poll_timeout(db, settings, pdf_file, fake_remote):
    doc_id, att_id = _add_doc(db, pdf_file)
    fake_remote.states = ["running"]
    settings = settings.model_copy(update={"poll_timeout_ms": 20})
    pipeline = ParsePipeline(db, settings, client=fake_remote.client())

    with pytest.raises(RemoteError, match="timed out"):
        await pipeline.parse(doc_id, att_id)


# ── Preconditions ────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_missing_token_on_cache_miss(db, settings, pdf_file):
    doc_id, att_id = _add_doc(db, pdf_file)
    pipeline = ParsePipeline(db, settings.model_copy(update={"token": ""}))

    with pytest.raises(MissingTokenError):
        await pipeline.parse(doc_id, att_id)


@pytest.mark.asyncio
async def test_oversized_file_rejected(db, settings, pdf_file, fake_remote):
    doc_id, att_id = _add_doc(db, pdf_file)
    pipeline = ParsePipeline(db, settings, client=fake_remote.client())

    with patch("mdnote.parsers.pipeline.MAX_FILE_SIZE", 10):
        with pytest.raises(FileTooLargeError):
            await pipeline.parse(doc_id, att_id)
    assert fake_remote.requests_made == 0


@pytest.mark.asyncio
async def test_missing_source_file(db, settings, tmp_path, fake_remote):
    doc_id, att_id = _add_doc(db, tmp_path / "gone.pdf")
    pipeline = ParsePipeline(db, settings, client=fake_remote.client())

    with pytest.raises(SourceFileMissingError):
        await pipeline.parse(doc_id, att_id)


@pytest.mark.asyncio
async def test_unavailable_converter(db, settings, pdf_file, fake_remote):
    doc_id, att_id = _add_doc(db, pdf_file)
    settings = settings.model_copy(update={"converter": "no_such_module_xyz:convert"})
    pipeline = ParsePipeline(db, settings, client=fake_remote.client())
    rec = Recorder()

    with pytest.raises(ConverterUnavailableError):
        await pipeline.parse(doc_id, att_id, callbacks=rec.callbacks)
    assert rec.stages == ["error"]
    assert fake_remote.requests_made == 0


# ── Partial results, OCR, concurrency ────────────────────────────────


@pytest.mark.asyncio
async def test_missing_image_reported_in_status_text(db, settings, pdf_file):
    bundle = build_bundle(
        {
            "markdown/full.md": "# Title\n\n![a](images/a.png)\n\n![b](images/missing.png)\n",
            "markdown/images/a.png": b"\x89PNG fake",
        }
    )
    remote = FakeMineru(bundle)
    doc_id, att_id = _add_doc(db, pdf_file)
    pipeline = ParsePipeline(db, settings, client=remote.client())

    outcome = await pipeline.parse(doc_id, att_id)

    assert outcome.images_total == 2
    assert outcome.images_failed == 1
    assert outcome.status_text == "Done, 1 images pending"
    body = db.get_note_body(outcome.note_id)
    assert 'src="images/missing.png"' in body


@pytest.mark.asyncio
async def test_ocr_auto_detect_requests_ocr(db, settings, pdf_file, fake_remote):
    doc_id, att_id = _add_doc(db, pdf_file)
    settings = settings.model_copy(update={"ocr_auto_detect": True})
    pipeline = ParsePipeline(db, settings, client=fake_remote.client())

    with patch("mdnote.parsers.pipeline.is_scanned_pdf", return_value=True):
        await pipeline.parse(doc_id, att_id)

    assert fake_remote.slot_bodies[0]["files"][0]["is_ocr"] is True


@pytest.mark.asyncio
async def test_concurrent_parses_of_same_document_are_serialized(
    db, settings, pdf_file, fake_remote
):
    doc_id, att_id = _add_doc(db, pdf_file)
    pipeline = ParsePipeline(db, settings, client=fake_remote.client())

    first, second = await asyncio.gather(
        pipeline.parse(doc_id, att_id), pipeline.parse(doc_id, att_id)
    )

    assert {first.from_cache, second.from_cache} == {False, True}
    assert fake_remote.uploads == 1
