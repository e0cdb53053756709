# =============================================================================
# Citation Processing — [Source N] Resolution and Confidence
# =============================================================================
#
# Generated answers cite the numbered excerpts they were given as
# "[Source N]" (1-based). This module resolves those markers back to the
# retrieved chunks, strips markers that point at nothing ("phantom"
# citations), and derives a coarse confidence from citation coverage.
#
# CONFIDENCE FROM COVERAGE:
#   low    — no sources, no valid refs, or more phantom refs than valid ones
#   high   — at least two valid refs and no phantom refs
#   medium — anything else
#
# CITATION GAPS (used by the mandatory citation policy):
#   phantom_citations — a marker pointed at a source that was not supplied
#   no_citations      — sources were supplied but none was cited
#   self_refusal      — a short answer that only says it cannot answer
#
# DESIGN DECISION: Counting is per occurrence, not per unique source, so
# "[Source 1] [Source 1] [Source 7]" with one real source is 2 valid refs
# against 1 phantom.
# =============================================================================

from __future__ import annotations

import re
from dataclasses import dataclass, field

from plugin_engine.services.vectorstore import RetrievedChunk

_SOURCE_REF = re.compile(r"\[Source\s+(\d+)\]", re.IGNORECASE)
_EXCERPT_CHARS = 200

CONFIDENCE_LEVELS = ("low", "medium", "high")

# Unambiguous refusals only; generic disclaimers ("consult a qualified
# professional") appear in legitimate answers and must not match.
REFUSAL_PATTERNS = (
    "i don't have verified information",
    "i don't have enough information",
    "i cannot answer this question",
    "not available in my knowledge base",
    "beyond the scope of the provided sources",
    "the provided sources do not contain",
    "the source documents do not contain",
)
_REFUSAL_MAX_CHARS = 300

CORRECTIVE_INSTRUCTION = (
    "Your previous answer did not cite the provided sources correctly. "
    "Rewrite the answer so that every claim drawn from the sources is cited "
    "with [Source N], using ONLY the source numbers listed above. Do not cite "
    "sources that were not provided."
)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class CitationEntry:
    """Reference from an answer or annotation back to a retrieved chunk."""

    id: str
    document: str
    document_id: int
    chunk_id: int | str
    chunk_index: int
    excerpt: str
    similarity: float
    rank: int
    page: int | None = None
    section: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "document": self.document,
            "document_id": self.document_id,
            "chunk_id": self.chunk_id,
            "chunk_index": self.chunk_index,
            "page": self.page,
            "section": self.section,
            "excerpt": self.excerpt,
            "similarity": self.similarity,
            "rank": self.rank,
        }


@dataclass
class CitationResult:
    cleaned_answer: str
    citations: list[CitationEntry] = field(default_factory=list)
    confidence: str = "low"
    real_ref_count: int = 0
    phantom_count: int = 0
    unresolved_refs: list[int] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def citation_from_chunk(chunk: RetrievedChunk, rank: int) -> CitationEntry:
    excerpt = chunk.content[:_EXCERPT_CHARS]
    if len(chunk.content) > _EXCERPT_CHARS:
        excerpt += "..."
    return CitationEntry(
        id=f"src_{rank}",
        document=chunk.document_name,
        document_id=chunk.document_id,
        chunk_id=chunk.chunk_id,
        chunk_index=chunk.chunk_index,
        excerpt=excerpt,
        similarity=chunk.similarity,
        rank=rank,
        page=chunk.page_number,
        section=chunk.section_title,
    )


def process_citations(answer: str, sources: list[RetrievedChunk]) -> CitationResult:
    """Resolve [Source N] markers against `sources` and strip phantom ones."""
    citations: list[CitationEntry] = []
    seen: set[int] = set()
    unresolved: list[int] = []
    real = phantom = 0

    for match in _SOURCE_REF.finditer(answer):
        number = int(match.group(1))
        if 1 <= number <= len(sources):
            real += 1
            if number not in seen:
                seen.add(number)
                citations.append(citation_from_chunk(sources[number - 1], number))
        else:
            phantom += 1
            if number not in unresolved:
                unresolved.append(number)

    cleaned = answer
    if phantom:
        cleaned = _SOURCE_REF.sub(
            lambda m: m.group(0) if 1 <= int(m.group(1)) <= len(sources) else "",
            answer,
        )
        cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
        cleaned = re.sub(r"[ \t]+([.,;:])", r"\1", cleaned)
    cleaned = cleaned.strip()

    return CitationResult(
        cleaned_answer=cleaned,
        citations=citations,
        confidence=coverage_confidence(real, len(sources), phantom),
        real_ref_count=real,
        phantom_count=phantom,
        unresolved_refs=unresolved,
    )


def coverage_confidence(real_ref_count: int, source_count: int, phantom_count: int) -> str:
    if source_count == 0 or real_ref_count == 0 or phantom_count > real_ref_count:
        return "low"
    if real_ref_count >= 2 and phantom_count == 0:
        return "high"
    return "medium"


def detect_self_refusal(answer: str) -> bool:
    """A short answer whose substance is "I can't answer this"."""
    if len(answer) > _REFUSAL_MAX_CHARS:
        return False
    lowered = answer.lower().replace("’", "'")
    return any(pattern in lowered for pattern in REFUSAL_PATTERNS)


def citation_gap(result: CitationResult, source_count: int) -> str | None:
    """Why an answer fails the mandatory citation policy, or None if it passes."""
    if result.phantom_count:
        return "phantom_citations"
    if source_count and not result.real_ref_count:
        return "no_citations"
    if source_count and detect_self_refusal(result.cleaned_answer):
        return "self_refusal"
    return None


# ---------------------------------------------------------------------------
# Confidence Arithmetic
# ---------------------------------------------------------------------------


def min_confidence(levels: list[str]) -> str:
    if not levels:
        return "low"
    return min(levels, key=CONFIDENCE_LEVELS.index)


def lower_confidence(level: str) -> str:
    return CONFIDENCE_LEVELS[max(0, CONFIDENCE_LEVELS.index(level) - 1)]


def cap_confidence(level: str, cap: str) -> str:
    return min_confidence([level, cap])


def format_sources(sources: list[RetrievedChunk]) -> str:
    """Numbered excerpts as shown to the model."""
    blocks = []
    for rank, chunk in enumerate(sources, start=1):
        location = chunk.document_name
        if chunk.section_title:
            location += f", {chunk.section_title}"
        if chunk.page_number is not None:
            location += f", page {chunk.page_number}"
        blocks.append(f"[Source {rank}] ({location})\n{chunk.content}")
    return "\n\n---\n\n".join(blocks)
