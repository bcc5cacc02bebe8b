"""Local PDF inspection used to decide whether a submission needs OCR."""

import logging
from pathlib import Path

import fitz  # PyMuPDF

logger = logging.getLogger(__name__)

MIN_CHARS_PER_PAGE = 100
SAMPLE_PAGES = 10


def text_density(pdf_path: str | Path, sample_pages: int = SAMPLE_PAGES) -> float:
    """Average non-whitespace characters per page over the leading pages.

    Only the first ``sample_pages`` pages are read; large uploads would
    otherwise spend most of the fingerprinting stage here.
    """
    with fitz.open(str(pdf_path)) as doc:
        sampled = min(len(doc), max(1, sample_pages))
        if sampled == 0:
            return 0.0
        chars = 0
        for index in range(sampled):
            text = doc.load_page(index).get_text("text")
            chars += sum(1 for ch in text if not ch.isspace())
    density = chars / sampled
    logger.debug("%s: %.0f chars/page over %d sampled pages", pdf_path, density, sampled)
    return density


def is_scanned_pdf(pdf_path: str | Path, sample_pages: int = SAMPLE_PAGES) -> bool:
    """True when the sampled pages carry too little text to skip OCR."""
    return text_density(pdf_path, sample_pages) < MIN_CHARS_PER_PAGE
