"""Shared fixtures: a library database, a generated PDF and a fake remote parser."""

import io
import json
import zipfile
from pathlib import Path

import httpx
import pytest
from fpdf import FPDF

from mdnote.core.config import Settings
from mdnote.core.store import LibraryDatabase
from mdnote.remote.mineru import MineruClient

API_BASE = "https://api.test"
UPLOAD_URL = "https://upload.test/put/1"
BUNDLE_URL = "https://cdn.test/result.zip"

# 1x1 transparent PNG
PNG_BYTES = bytes.fromhex(
    "89504e470d0a1a0a0000000d49484452000000010000000108060000001f15c489"
    "0000000d49444154789c6360000002000154a24f5d0000000049454e44ae426082"
)

SAMPLE_MARKDOWN = (
    "Running header\n"
    "doi:10.1000/xyz\n\n"
    "# Results\n\n"
    "Autonomous suturing reached 95% accuracy.\n\n"
    "![fig 1](images/fig1.png)\n"
)


def build_bundle(files: dict[str, bytes | str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


def corrupt_bundle() -> bytes:
    """A bundle whose Markdown reads fine but whose later image entry fails its CRC."""
    payload = b"IMAGE-PAYLOAD-0001"
    data = build_bundle({"markdown/full.md": SAMPLE_MARKDOWN, "markdown/images/fig1.png": payload})
    return data.replace(payload, b"IMAGE-PAYLOAD-9999")


class FakeMineru:
    """In-memory stand-in for the remote service, served through httpx.MockTransport."""

    def __init__(self, bundle: bytes):
        self.bundle = bundle
        self.states = ["pending", "running", "done"]
        self.err_msg = "corrupt pdf"
        self.slot_bodies: list[dict] = []
        self.uploads = 0
        self.polls = 0
        self.downloads = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if request.method == "POST" and url.endswith("/api/v4/file-urls/batch"):
            self.slot_bodies.append(json.loads(request.content))
            return httpx.Response(
                200,
                json={"code": 0, "msg": "ok", "data": {"batch_id": "batch-1", "file_urls": [UPLOAD_URL]}},
            )
        if request.method == "PUT" and url == UPLOAD_URL:
            self.uploads += 1
            return httpx.Response(200)
        if request.method == "GET" and "/api/v4/extract-results/batch/" in url:
            self.polls += 1
            state = self.states[min(self.polls, len(self.states)) - 1]
            result = {
                "file_name": self.slot_bodies[-1]["files"][0]["name"],
                "data_id": self.slot_bodies[-1]["files"][0]["data_id"],
                "state": state,
            }
            if state == "running":
                result["extract_progress"] = {"extracted_pages": 1, "total_pages": 2}
            elif state == "done":
                result["full_zip_url"] = BUNDLE_URL
            elif state == "failed":
                result["err_msg"] = self.err_msg
            return httpx.Response(
                200, json={"code": 0, "data": {"batch_id": "batch-1", "extract_result": [result]}}
            )
        if request.method == "GET" and url == BUNDLE_URL:
            self.downloads += 1
            return httpx.Response(200, content=self.bundle)
        return httpx.Response(404)

    @property
    def requests_made(self) -> int:
        return len(self.slot_bodies) + self.uploads + self.polls + self.downloads

    def client(self) -> MineruClient:
        transport = httpx.MockTransport(self.handler)
        return MineruClient("test-token", api_base=API_BASE, client=httpx.AsyncClient(transport=transport))


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture()
def db(tmp_path):
    """Create a fresh LibraryDatabase in a temp directory."""
    ldb = LibraryDatabase("test_library", data_root=tmp_path)
    yield ldb
    ldb.close()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        token="test-token",
        api_base=API_BASE,
        cache_dir=str(tmp_path / "cache"),
        poll_interval_ms=1,
        poll_timeout_ms=5_000,
    )


@pytest.fixture()
def pdf_file(tmp_path) -> Path:
    """Create a minimal digital PDF with extractable text."""
    pdf = FPDF()
    pdf.add_page()
    pdf.set_font("Helvetica", size=12)
    pdf.multi_cell(w=0, text="Autonomous robotic suturing in a porcine model. " * 20)
    path = tmp_path / "paper.pdf"
    pdf.output(str(path))
    return path


@pytest.fixture()
def bundle() -> bytes:
    return build_bundle(
        {
            "full.md": "# Wrong pick\n",
            "markdown/full.md": SAMPLE_MARKDOWN,
            "markdown/images/fig1.png": PNG_BYTES,
        }
    )


@pytest.fixture()
def fake_remote(bundle) -> FakeMineru:
    return FakeMineru(bundle)
