"""Document chunking for long-form records.

Three strategies are supported:

* ``semantic`` accumulates paragraphs up to ``chunk_size`` and, with
  ``preserve_context``, carries the last sentence of a chunk into the next one.
* ``paragraph`` emits one chunk per paragraph and splits oversize paragraphs
  on sentence boundaries.
* ``fixed`` slides a character window with ``chunk_overlap`` backtrack and
  prefers to cut at a sentence end or a newline.

Character offsets on the produced chunks refer to the normalised text.
"""
from __future__ import annotations

import math
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from .errors import ConfigurationError
from .models import Chunk

ChunkStrategy = Literal["semantic", "paragraph", "fixed"]
Span = tuple[int, int]
Piece = tuple[str, int, int]

_PARAGRAPH_BREAK = re.compile(r"\n{2,}")
_SENTENCE = re.compile(r"[^.!?]+(?:[.!?]+|$)")
SENTENCE_LOOKBEHIND = 100
NEWLINE_LOOKBEHIND = 50


@dataclass(slots=True)
class ChunkingOptions:
    chunk_size: int = 512
    chunk_overlap: int = 50
    strategy: ChunkStrategy = "semantic"
    preserve_context: bool = True


def estimate_tokens(text: str) -> int:
    """Approximate LLM token count (~4 characters per token)."""

    return math.ceil(len(text) / 4)


def clean_content(text: str) -> str:
    text = text.replace("\r\n", "\n")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" ?\n ?", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def detect_section(content: str) -> str:
    first_line = content.split("\n", 1)[0].strip()
    if re.match(r"^#+\s", first_line):
        return "heading"
    if re.match(r"^[-*]\s", first_line):
        return "list"
    if first_line.startswith("```"):
        return "code"
    if re.match(r"^>\s", first_line):
        return "quote"
    if re.match(r"^\d+\.\s", first_line):
        return "numbered_list"
    return "paragraph"


def _trim(text: str, start: int, end: int) -> Span:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


def _paragraph_spans(text: str) -> list[Span]:
    spans: list[Span] = []
    cursor = 0
    for match in _PARAGRAPH_BREAK.finditer(text):
        spans.append(_trim(text, cursor, match.start()))
        cursor = match.end()
    spans.append(_trim(text, cursor, len(text)))
    return [(start, end) for start, end in spans if end > start]


def _sentence_spans(text: str, start: int, end: int) -> list[Span]:
    spans = [_trim(text, m.start(), m.end()) for m in _SENTENCE.finditer(text, start, end)]
    spans = [(s, e) for s, e in spans if e > s]
    return spans or [(start, end)]


def _pack(units: list[Span], limit: int) -> list[Span]:
    """Greedily merge adjacent spans while the merged slice fits ``limit``."""

    packed: list[Span] = []
    current: Span | None = None
    for start, end in units:
        if current is None:
            current = (start, end)
        elif end - current[0] <= limit:
            current = (current[0], end)
        else:
            packed.append(current)
            current = (start, end)
    if current is not None:
        packed.append(current)
    return packed


def _bounded_paragraphs(text: str, limit: int) -> list[Span]:
    units: list[Span] = []
    for start, end in _paragraph_spans(text):
        if end - start > limit:
            units.extend(_pack(_sentence_spans(text, start, end), limit))
        else:
            units.append((start, end))
    return units


def _last_sentence(text: str, start: int, end: int) -> str:
    s, e = _sentence_spans(text, start, end)[-1]
    return text[s:e]


def _semantic(text: str, options: ChunkingOptions) -> list[Piece]:
    limit = options.chunk_size
    pieces: list[tuple[str, Span]] = []
    prefix = ""
    current: Span | None = None
    for start, end in _bounded_paragraphs(text, limit):
        if current is None:
            current = (start, end)
            continue
        if len(prefix) + (end - current[0]) <= limit:
            current = (current[0], end)
            continue
        pieces.append((prefix, current))
        prefix = ""
        if options.preserve_context:
            carried = _last_sentence(text, *current)
            if len(carried) + 2 + (end - start) <= limit:
                prefix = carried + "\n\n"
        current = (start, end)
    if current is not None:
        pieces.append((prefix, current))
    return [(prefix + text[s:e], s, e) for prefix, (s, e) in pieces]


def _paragraph(text: str, options: ChunkingOptions) -> list[Piece]:
    return [(text[s:e], s, e) for s, e in _bounded_paragraphs(text, options.chunk_size)]


def _break_point(text: str, start: int, end: int) -> int:
    sentence_end = text.rfind(". ", max(start + 1, end - SENTENCE_LOOKBEHIND), end)
    if sentence_end != -1:
        return sentence_end + 1
    newline = text.rfind("\n", max(start + 1, end - NEWLINE_LOOKBEHIND), end)
    if newline != -1:
        return newline
    return end


def _fixed(text: str, options: ChunkingOptions) -> list[Piece]:
    pieces: list[Piece] = []
    length = len(text)
    start = 0
    while start < length:
        end = min(start + options.chunk_size, length)
        if end < length:
            end = _break_point(text, start, end)
        s, e = _trim(text, start, end)
        if e > s:
            pieces.append((text[s:e], s, e))
        if end >= length:
            break
        next_start = end - options.chunk_overlap
        start = next_start if next_start > start else end
    return pieces


_STRATEGIES: dict[str, Callable[[str, ChunkingOptions], list[Piece]]] = {
    "semantic": _semantic,
    "paragraph": _paragraph,
    "fixed": _fixed,
}


class DocumentChunker:
    """Splits long-form record text into bounded chunks."""

    def __init__(self, options: ChunkingOptions | None = None) -> None:
        self.options = options or ChunkingOptions()

    def chunk(self, text: object, options: ChunkingOptions | None = None, document_id: str = "") -> list[Chunk]:
        opts = options or self.options
        if opts.strategy not in _STRATEGIES:
            raise ConfigurationError(f"Unknown chunking strategy: {opts.strategy}")
        if opts.chunk_size <= 0 or not 0 <= opts.chunk_overlap < opts.chunk_size:
            raise ConfigurationError(
                f"Invalid chunk sizing: size={opts.chunk_size} overlap={opts.chunk_overlap}"
            )
        if not isinstance(text, str):
            return []
        cleaned = clean_content(text)
        if not cleaned:
            return []

        if len(cleaned) <= opts.chunk_size:
            pieces: list[Piece] = [(cleaned, 0, len(cleaned))]
        else:
            pieces = _STRATEGIES[opts.strategy](cleaned, opts)

        pieces = [piece for piece in pieces if piece[0].strip()]
        return [
            Chunk(
                document_id=document_id,
                chunk_index=index,
                content=content,
                section=detect_section(content),
                token_count=estimate_tokens(content),
                start_char=start,
                end_char=end,
            )
            for index, (content, start, end) in enumerate(pieces)
        ]


def validate_chunk(chunk: Chunk) -> tuple[bool, list[str]]:
    issues: list[str] = []
    if not chunk.content.strip():
        issues.append("Empty content")
    if len(chunk.content) < 50:
        issues.append("Content too short for meaningful embedding")
    if len(chunk.content) > 2000:
        issues.append("Content exceeds recommended chunk size")
    if chunk.token_count > 500:
        issues.append("Chunk may exceed LLM context efficiency threshold")
    return not issues, issues
