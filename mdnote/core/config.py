"""Settings: YAML loader and Pydantic model."""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

TOKEN_ENV_VAR = "MDNOTE_TOKEN"

CONCURRENCY_MIN = 1
CONCURRENCY_MAX = 5


# ── Settings ─────────────────────────────────────────────────────────


class Settings(BaseModel):
    """Everything the parse pipeline and batch queue read from configuration."""

    token: str = ""
    api_base: str = "https://mineru.net"
    model_version: str = Field(
        default="pipeline", description="Remote model variant, e.g. pipeline or vlm"
    )
    is_ocr: bool = False
    ocr_auto_detect: bool = Field(
        default=False,
        description="Force OCR when the PDF has no usable text layer",
    )
    enable_formula: bool = True
    enable_table: bool = True
    language: str = "ch"
    page_ranges: str = ""
    cache_dir: str = ""
    poll_interval_ms: int = Field(default=3000, gt=0)
    poll_timeout_ms: int = Field(default=900_000, gt=0)
    request_timeout_s: float = Field(default=60.0, gt=0)
    batch_concurrency: int = Field(default=2, ge=CONCURRENCY_MIN, le=CONCURRENCY_MAX)
    converter: str = Field(
        default="markdown",
        description="'markdown' or a 'module:function' Markdown → HTML callable",
    )
    import_folder: str = ""
    auto_parse: bool = True

    @field_validator("token", "page_ranges", "cache_dir", "import_folder")
    @classmethod
    def strip_whitespace(cls, v: str) -> str:
        return v.strip()

    @field_validator("api_base")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    # ── Model options ────────────────────────────────────────────

    def model_options(self) -> dict:
        """The subset of settings that changes what the remote parser returns."""
        return {
            "model_version": self.model_version,
            "is_ocr": self.is_ocr,
            "enable_formula": self.enable_formula,
            "enable_table": self.enable_table,
            "language": self.language,
            "page_ranges": self.page_ranges,
        }


# ── Helpers ──────────────────────────────────────────────────────────


def normalize_concurrency(value) -> int:
    """Clamp a user-supplied concurrency into the supported 1–5 range."""
    try:
        n = int(value)
    except (TypeError, ValueError):
        return 2
    return min(CONCURRENCY_MAX, max(CONCURRENCY_MIN, n))


def load_settings(path: str | Path | None = None) -> Settings:
    """Load Settings from a YAML file (or defaults) and apply the token env var."""
    raw: dict = {}
    if path is not None:
        path = Path(path)
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    settings = Settings.model_validate(raw)
    if not settings.token and os.environ.get(TOKEN_ENV_VAR):
        settings = settings.model_copy(
            update={"token": os.environ[TOKEN_ENV_VAR].strip()}
        )
    return settings
