"""Markdown → note markup: converter resolution and Markdown clean-up."""

import importlib
import re
from typing import Callable

import markdown

from mdnote.core.errors import ConverterUnavailableError

MarkupConverter = Callable[[str], str]

NOTE_META = '<div data-schema-version="9">'
NOTE_TAIL = "</div>"

_HEADING_RE = re.compile(r"^#{1,6}\s", re.MULTILINE)
_MARKDOWN_EXTENSIONS = ["tables", "fenced_code"]


def resolve_converter(spec: str) -> MarkupConverter:
    """Turn the ``converter`` setting into a callable.

    ``"markdown"`` selects Python-Markdown; anything else must be a
    ``"module:function"`` reference. An unimportable converter is a
    precondition failure.
    """
    if spec == "markdown":

        def _convert(text: str) -> str:
            return markdown.markdown(text, extensions=_MARKDOWN_EXTENSIONS)

        return _convert

    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConverterUnavailableError(f"Invalid converter reference: {spec!r}")
    try:
        module = importlib.import_module(module_name)
        func = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ConverterUnavailableError(f"Markup converter unavailable: {spec}") from exc
    if not callable(func):
        raise ConverterUnavailableError(f"Markup converter is not callable: {spec}")
    return func


def strip_before_first_heading(md: str) -> str:
    """Drop running headers, page numbers and DOI banners above the first heading."""
    match = _HEADING_RE.search(md)
    if match is None or match.start() == 0:
        return md
    return md[match.start():]


def wrap_note(html: str) -> str:
    return f"{NOTE_META}{html}{NOTE_TAIL}"
