from __future__ import annotations

# Format selection for the two front ends.

from pathlib import Path

from .errors import ParseError
from .fs import read_document_text
from .models import Document, DocumentFormat
from .parsers.cram import parse_cram
from .parsers.markdown import DEFAULT_MARKDOWN_LANGUAGES, parse_markdown


EXTENSION_FORMATS: dict[str, DocumentFormat] = {
    ".md": "markdown",
    ".markdown": "markdown",
    ".t": "cram",
    ".cram": "cram",
}


def detect_format(path: Path) -> DocumentFormat:
    fmt = EXTENSION_FORMATS.get(path.suffix.lower())
    if fmt is None:
        raise ParseError(f"cannot tell the document format from extension {path.suffix!r}", path=str(path))
    return fmt


def parse(
    text: str,
    fmt: DocumentFormat,
    *,
    path: Path | None = None,
    languages: tuple[str, ...] = DEFAULT_MARKDOWN_LANGUAGES,
) -> Document:
    try:
        if fmt == "markdown":
            return parse_markdown(text, path=path, languages=languages)
        if fmt == "cram":
            return parse_cram(text, path=path)
    except ParseError as exc:
        raise exc.with_path(str(path) if path is not None else None) from exc.__cause__
    raise ValueError(f"unknown_format:{fmt}")


def parse_file(
    path: Path,
    fmt: DocumentFormat | None = None,
    *,
    languages: tuple[str, ...] = DEFAULT_MARKDOWN_LANGUAGES,
) -> Document:
    path = Path(path)
    selected = fmt or detect_format(path)
    try:
        text = read_document_text(path)
    except (OSError, UnicodeDecodeError) as exc:
        raise ParseError(f"cannot read document: {exc}", path=str(path)) from exc
    return parse(text, selected, path=path, languages=languages)
