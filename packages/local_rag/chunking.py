from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

_log = logging.getLogger(__name__)

# Character-based chunking parameters. A window may end early on a sentence or
# paragraph boundary, but only when that boundary lies past the window midpoint.
DEFAULT_CHUNK_SIZE = 500
DEFAULT_CHUNK_OVERLAP = 50
_BOUNDARY_RATIO = 0.5

SENTENCE_END = "."
PARAGRAPH_BREAK = "\n\n"


@dataclass(frozen=True)
class TextSpan:
    """A chunk of text with its position in the source document."""

    text: str
    start_offset: int
    end_offset: int


def _validate(size: int, overlap: int) -> None:
    if size <= 0:
        raise ValueError(f"size must be positive, got {size}")
    if overlap < 0 or overlap >= size:
        raise ValueError(f"overlap must be in [0, size), got overlap={overlap} size={size}")


def _window_end(text: str, start: int, size: int) -> int:
    """
    Pick where the window starting at `start` should be cut.

    The last sentence terminator wins if it lies past the midpoint of the
    window, otherwise the last paragraph break under the same rule, otherwise
    the raw window boundary.
    """
    end = start + size
    window = text[start:end]
    midpoint = size * _BOUNDARY_RATIO

    sentence_end = window.rfind(SENTENCE_END)
    if sentence_end > midpoint:
        return start + sentence_end + len(SENTENCE_END)

    paragraph_end = window.rfind(PARAGRAPH_BREAK)
    if paragraph_end > midpoint:
        return start + paragraph_end + len(PARAGRAPH_BREAK)

    return end


def split_into_spans(
    text: str,
    size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> List[TextSpan]:
    """
    Split text into overlapping chunks and keep track of their offsets.

    Consecutive windows overlap by `overlap` characters. Offsets refer to the
    stripped chunk text, so `text[span.start_offset:span.end_offset] == span.text`.
    Whitespace-only windows are dropped.
    """
    _validate(size, overlap)

    spans: list[TextSpan] = []
    length = len(text)
    start = 0

    while start < length:
        end = min(_window_end(text, start, size), length)
        raw = text[start:end]
        stripped = raw.strip()
        if stripped:
            chunk_start = start + (len(raw) - len(raw.lstrip()))
            spans.append(
                TextSpan(
                    text=stripped,
                    start_offset=chunk_start,
                    end_offset=chunk_start + len(stripped),
                )
            )

        if end >= length:
            break
        start = max(end - overlap, start + 1)

    _log.debug("Split %d characters into %d chunks (size=%d, overlap=%d)", length, len(spans), size, overlap)
    return spans


def chunk_text(
    text: str,
    size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> List[str]:
    """Split document text into an ordered list of overlapping chunks."""
    return [span.text for span in split_into_spans(text, size=size, overlap=overlap)]


__all__ = [
    "DEFAULT_CHUNK_OVERLAP",
    "DEFAULT_CHUNK_SIZE",
    "TextSpan",
    "chunk_text",
    "split_into_spans",
]
