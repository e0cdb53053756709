# =============================================================================
# Structure-Aware Text Chunker — tiktoken
# =============================================================================
#
# Splits raw document text into ordered chunks sized in tokens, annotated
# with page numbers and section titles when the text carries them.
#
# DESIGN DECISION: Token-based sizing with the same BPE encoding the
# embedding model uses (cl100k_base), so the size band we target is the
# size the embedding model actually sees.
#
# DESIGN DECISION: Boundary preference, strongest first:
#   section header > blank-line paragraph > sentence end > whitespace
# A chunk is never cut inside a word. Only paragraphs that exceed the target
# on their own are broken into sentences, and only sentences that exceed it
# are broken at whitespace.
#
# ALGORITHM:
# 1. Walk the lines once, tracking the current page (form feeds and page
#    marker lines) and section (header lines), and group lines into blocks:
#    paragraphs separated by blank lines, with each header its own block.
# 2. Break oversized blocks into sentence / word-window units.
# 3. Pack units greedily into chunks of at most `chunk_size` tokens. A header
#    closes the current chunk when it already holds `min_chunk_size` tokens.
# 4. A chunk closed because it was full seeds the next one with a
#    word-aligned tail of at most `chunk_overlap` tokens.
#
# The whole procedure is a pure function of (text, hints, sizes): the same
# input always yields the same boundaries.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

import tiktoken

from plugin_engine.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ChunkResult:
    """A single chunk ready for embedding and storage."""

    content: str
    chunk_index: int  # 0-indexed, strictly increasing within a document
    token_count: int  # Exact token count (from tiktoken)
    page_number: int | None = None
    section_title: str | None = None
    metadata: dict = field(default_factory=dict)
    # metadata keys:
    #   file_name, file_type: ingestion hints (may be None)
    #   char_count: len(content)
    #   source_pages: list[int] — all pages this chunk spans


@dataclass
class _Unit:
    text: str
    page: int | None
    section: str | None
    is_header: bool = False
    is_overlap: bool = False


# ---------------------------------------------------------------------------
# Tiktoken Encoder — Cached Singleton
# ---------------------------------------------------------------------------

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def count_tokens(text: str) -> int:
    return len(_get_encoder().encode(text))


# ---------------------------------------------------------------------------
# Structure Detection
# ---------------------------------------------------------------------------
# Page markers are consumed (not kept in chunk text). Headers are kept as
# the first line of the chunk they open.
# ---------------------------------------------------------------------------

_PAGE_MARKER_PATTERNS = [
    re.compile(r"^-{2,}\s*page\s+(\d+)\s*-{2,}$", re.IGNORECASE),
    re.compile(r"^\[\s*page\s+(\d+)\s*\]$", re.IGNORECASE),
    re.compile(r"^page\s+(\d+)(?:\s+of\s+\d+)?$", re.IGNORECASE),
]

_MARKDOWN_HEADER = re.compile(r"^#{1,6}\s+(.+?)\s*#*$")
_NUMBERED_HEADER = re.compile(r"^(\d+(?:\.\d+)*)\.?\s+([A-Z][^.!?]{0,80})$")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")

_MARKDOWN_TYPES = {"md", "markdown", "text/markdown"}


def _page_marker(line: str) -> int | None:
    for pattern in _PAGE_MARKER_PATTERNS:
        match = pattern.match(line)
        if match:
            return int(match.group(1))
    return None


def _header_title(line: str, markdown_only: bool) -> str | None:
    """Return the section title if `line` is a header, else None."""
    match = _MARKDOWN_HEADER.match(line)
    if match:
        return match.group(1).strip()
    if markdown_only:
        return None

    match = _NUMBERED_HEADER.match(line)
    if match and len(line) < 100:
        return line

    # Short ALL-CAPS line with at least two letters, not a sentence
    letters = [c for c in line if c.isalpha()]
    if (
        len(line) < 80
        and len(letters) >= 2
        and line == line.upper()
        and not line.endswith((".", ",", ";", ":"))
    ):
        return line
    return None


def _is_markdown(file_name: str | None, file_type: str | None) -> bool:
    if file_type and file_type.lower() in _MARKDOWN_TYPES:
        return True
    return bool(file_name and file_name.lower().endswith((".md", ".markdown")))


def _split_blocks(text: str, markdown_only: bool) -> list[_Unit]:
    """Group lines into paragraph and header blocks with page/section context."""
    blocks: list[_Unit] = []
    page: int | None = 1 if "\f" in text else None
    section: str | None = None
    paragraph: list[str] = []
    paragraph_page: int | None = page

    def close_paragraph() -> None:
        if paragraph:
            blocks.append(_Unit(" ".join(paragraph), paragraph_page, section))
            paragraph.clear()

    for raw_line in text.split("\n"):
        # Form feeds mark page breaks inside a line
        pieces = raw_line.split("\f")
        for piece_index, piece in enumerate(pieces):
            if piece_index > 0:
                close_paragraph()
                page = (page or 1) + 1
            line = piece.strip()

            if not line:
                close_paragraph()
                continue

            marker = _page_marker(line)
            if marker is not None:
                close_paragraph()
                page = marker
                continue

            title = _header_title(line, markdown_only)
            if title is not None:
                close_paragraph()
                section = title
                blocks.append(_Unit(line, page, section, is_header=True))
                continue

            if not paragraph:
                paragraph_page = page
            paragraph.append(line)

    close_paragraph()
    return blocks


# ---------------------------------------------------------------------------
# Oversized Block Splitting
# ---------------------------------------------------------------------------


def _split_words(text: str, limit: int) -> list[str]:
    """Greedy whitespace windows of at most `limit` tokens; never splits a word."""
    encoder = _get_encoder()
    windows: list[str] = []
    current: list[str] = []
    current_tokens = 0

    for word in text.split():
        word_tokens = len(encoder.encode(" " + word))
        if current and current_tokens + word_tokens > limit:
            windows.append(" ".join(current))
            current, current_tokens = [], 0
        current.append(word)
        current_tokens += word_tokens

    if current:
        windows.append(" ".join(current))
    return windows


def _split_oversized(block: _Unit, limit: int) -> list[_Unit]:
    if count_tokens(block.text) <= limit:
        return [block]

    units: list[_Unit] = []
    for sentence in _SENTENCE_END.split(block.text):
        if not sentence:
            continue
        if count_tokens(sentence) <= limit:
            units.append(_Unit(sentence, block.page, block.section))
        else:
            units.extend(
                _Unit(window, block.page, block.section)
                for window in _split_words(sentence, limit)
            )
    return units


def _overlap_tail(text: str, limit: int) -> str:
    """Longest word-aligned suffix of `text` within `limit` tokens."""
    if limit <= 0:
        return ""
    words = text.split()
    tail: list[str] = []
    for word in reversed(words):
        candidate = [word] + tail
        if count_tokens(" ".join(candidate)) > limit:
            break
        tail = candidate
    # A tail covering the whole chunk would duplicate it entirely
    if len(tail) == len(words):
        return ""
    return " ".join(tail)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def chunk_text(
    text: str,
    file_name: str | None = None,
    file_type: str | None = None,
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
    min_chunk_size: int | None = None,
) -> list[ChunkResult]:
    """
    Split raw document text into token-sized, structure-aware chunks.

    Args:
        text: Raw document text.
        file_name: Optional hint; stored in metadata and used to detect markdown.
        file_type: Optional hint (e.g. "md", "txt", "pdf").
        chunk_size: Maximum tokens per chunk (default settings.chunk_size).
        chunk_overlap: Maximum tail tokens repeated at the start of the next
            chunk (default settings.chunk_overlap).
        min_chunk_size: Tokens a chunk must hold before a section header may
            close it (default settings.chunk_min_tokens).

    Returns:
        Chunks in document order. Empty or whitespace-only input yields [].

    A single word longer than `chunk_size` tokens is kept whole, so such a
    chunk may exceed the target.

    Pipeline position: Step 1 of ingestion (chunk → embed → store).
    """
    size = chunk_size or settings.chunk_size
    overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap
    minimum = settings.chunk_min_tokens if min_chunk_size is None else min_chunk_size
    overlap = min(overlap, size // 2)

    normalised = text.replace("\r\n", "\n").replace("\r", "\n")
    if not normalised.strip():
        return []

    blocks = _split_blocks(normalised, markdown_only=_is_markdown(file_name, file_type))
    units: list[_Unit] = []
    for block in blocks:
        units.extend([block] if block.is_header else _split_oversized(block, size))

    chunks: list[ChunkResult] = []
    buffer: list[_Unit] = []

    def joined(parts: list[_Unit]) -> str:
        return "\n\n".join(u.text for u in parts)

    def flush(carry_overlap: bool) -> None:
        nonlocal buffer
        if not any(not u.is_overlap for u in buffer):
            buffer = []
            return

        content = joined(buffer)
        first = next(u for u in buffer if not u.is_overlap)
        pages = sorted({u.page for u in buffer if u.page is not None})
        chunks.append(ChunkResult(
            content=content,
            chunk_index=len(chunks),
            token_count=count_tokens(content),
            page_number=first.page,
            section_title=first.section,
            metadata={
                "file_name": file_name,
                "file_type": file_type,
                "char_count": len(content),
                "source_pages": pages,
            },
        ))

        last = buffer[-1]
        buffer = []
        if carry_overlap:
            tail = _overlap_tail(content, overlap)
            if tail:
                buffer = [_Unit(tail, last.page, last.section, is_overlap=True)]

    for unit in units:
        if unit.is_header and buffer and count_tokens(joined(buffer)) >= minimum:
            flush(carry_overlap=False)

        if buffer and count_tokens(joined(buffer + [unit])) > size:
            only_overlap = all(u.is_overlap for u in buffer)
            if only_overlap:
                # The seeded tail does not fit next to this unit; drop it
                buffer = []
            else:
                flush(carry_overlap=not unit.is_header)
                if buffer and count_tokens(joined(buffer + [unit])) > size:
                    buffer = []

        buffer.append(unit)

    flush(carry_overlap=False)

    logger.info(
        "Chunked '%s' into %d chunks (size=%d, overlap=%d)",
        file_name or "<text>", len(chunks), size, overlap,
    )
    return chunks
