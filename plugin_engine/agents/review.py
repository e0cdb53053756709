# =============================================================================
# Review Pipeline — Segment-by-Segment Document Review
# =============================================================================
#
# A plugin reviews a document against its knowledge base:
#
#   segment ──▶ batch (4 segments) ──▶ per batch, at most 3 in flight:
#                 embed segments (one call)
#                 retrieve per segment, dedupe sources by chunk
#                 evaluate the decision tree per segment
#                 generate a JSON array of annotations
#                 resolve [Source N] refs per annotation
#           ──▶ sort + number annotations ──▶ summary ──▶ ReviewLog
#
# COMPLIANCE:
#   non-compliant       — any error
#   partially-compliant — warnings, no errors
#   compliant           — otherwise
#
# DESIGN DECISION: A failed batch fails the review. Remaining batches are
# cancelled and the error propagates (error-status ReviewLog, terminal
# `error` event when streaming). A partial review presented as complete
# would read as "no issues" for the segments that were never reviewed.
#
# DESIGN DECISION: Output the model fails to format as a JSON array does not
# vanish: each segment of that batch gets an `info` annotation saying the
# review output could not be parsed, with low confidence.
#
# DESIGN DECISION: Annotation ids (ann_0, ann_1, ...) are assigned after all
# batches finish, in (segment_index, position) order, so ids do not depend
# on which batch finished first. Streamed `annotation` events therefore
# carry id=None; the `done` event carries the numbered list.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from plugin_engine.agents.citations import format_sources, process_citations
from plugin_engine.agents.decision_tree import evaluate_for_plugin, format_decision_context
from plugin_engine.agents.streaming import EventStream, StreamEvent, open_stream
from plugin_engine.config import settings
from plugin_engine.errors import ValidationError
from plugin_engine.services.llm import LLMProvider, generate, get_llm_provider
from plugin_engine.services.plugins import (
    PluginProfile,
    PluginStore,
    get_plugin_store,
    resolve_plugin,
)
from plugin_engine.services.retriever import Retriever
from plugin_engine.services.vectorstore import RetrievedChunk

logger = logging.getLogger(__name__)

SEVERITIES = ("error", "warning", "info", "pass")
CATEGORIES = ("non-compliance", "omission", "best-practice", "factual-error", "ambiguity")

_ORIGINAL_TEXT_CHARS = 200
_TOP_ISSUES = 5
_MAX_TITLE_CHARS = 500
_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")

REVIEW_SYSTEM_SUFFIX = (
    "You are reviewing a document for compliance and quality. Be thorough but fair."
)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ReviewSegment:
    index: int
    start_line: int
    end_line: int
    content: str
    section_title: str | None = None

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "content": self.content,
            "section_title": self.section_title,
        }


@dataclass
class ReviewAnnotation:
    segment_index: int
    start_line: int
    end_line: int
    original_text: str
    severity: str
    category: str
    issue: str
    suggested_fix: str | None
    citations: list[dict[str, Any]]
    confidence: str
    id: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "segment_index": self.segment_index,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "original_text": self.original_text,
            "severity": self.severity,
            "category": self.category,
            "issue": self.issue,
            "suggested_fix": self.suggested_fix,
            "citations": self.citations,
            "confidence": self.confidence,
        }


@dataclass
class ReviewSummary:
    error_count: int = 0
    warning_count: int = 0
    info_count: int = 0
    pass_count: int = 0
    overall_compliance: str = "compliant"
    top_issues: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "error_count": self.error_count,
            "warning_count": self.warning_count,
            "info_count": self.info_count,
            "pass_count": self.pass_count,
            "overall_compliance": self.overall_compliance,
            "top_issues": self.top_issues,
        }


@dataclass
class ReviewResult:
    document_title: str
    total_segments: int
    annotations: list[ReviewAnnotation]
    summary: ReviewSummary
    confidence: str
    latency_ms: int
    plugin_version: str = "1.0.0"

    def to_dict(self) -> dict:
        return {
            "document_title": self.document_title,
            "total_segments": self.total_segments,
            "annotations": [a.to_dict() for a in self.annotations],
            "summary": self.summary.to_dict(),
            "confidence": self.confidence,
            "latency_ms": self.latency_ms,
            "plugin_version": self.plugin_version,
        }


@dataclass
class ReviewOptions:
    top_k: int | None = None
    threshold: float | None = None

    @classmethod
    def coerce(cls, options: ReviewOptions | dict | None) -> ReviewOptions:
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        return cls(top_k=options.get("top_k"), threshold=options.get("threshold"))


# ---------------------------------------------------------------------------
# Segmentation
# ---------------------------------------------------------------------------


def segment_document(text: str, max_chars: int | None = None) -> list[ReviewSegment]:
    """
    Split a document into line-range segments.

    A blank line ends the current segment, as does a line that would push
    it past `max_chars`. Line numbers are 1-based and inclusive.
    """
    limit = max_chars or settings.review_segment_max_chars
    lines = text.split("\n")
    segments: list[ReviewSegment] = []
    buffer: list[str] = []
    buffer_chars = 0
    start_line = last_line = 0

    def flush() -> None:
        nonlocal buffer, buffer_chars
        content = "\n".join(buffer).strip()
        if content:
            segments.append(ReviewSegment(
                index=len(segments),
                start_line=start_line,
                end_line=last_line,
                content=content,
                section_title=_section_title(content),
            ))
        buffer = []
        buffer_chars = 0

    for number, line in enumerate(lines, start=1):
        if not line.strip():
            flush()
            continue
        if buffer and buffer_chars + 1 + len(line) > limit:
            flush()
        if not buffer:
            start_line = number
            buffer_chars = len(line)
        else:
            buffer_chars += 1 + len(line)
        buffer.append(line)
        last_line = number

    flush()
    return segments


def _section_title(content: str) -> str | None:
    first_line = content.split("\n", 1)[0].strip()
    if first_line.startswith("#"):
        return first_line.lstrip("#").strip() or None
    if len(first_line) < 80 and first_line == first_line.upper() and re.search(r"[A-Z]", first_line):
        return first_line
    return None


# ---------------------------------------------------------------------------
# Prompt & Parsing
# ---------------------------------------------------------------------------


def build_review_prompt(
    segments: list[ReviewSegment],
    sources: list[RetrievedChunk],
    decision_context: str,
) -> str:
    segment_block = "\n\n".join(
        f"--- Segment {s.index} (lines {s.start_line}-{s.end_line}) ---\n{s.content}"
        for s in segments
    )
    source_context = format_sources(sources) or "No relevant sources found."
    guidelines = f"\n{decision_context}\n" if decision_context else ""

    return f"""You are performing a document review. Analyze each segment against the source documents (knowledge base) and flag errors, omissions, non-compliance, and best-practice issues.

Source Documents:
{source_context}
{guidelines}
Document Segments to Review:
{segment_block}

For each issue found, produce a JSON annotation. Return a JSON array (no markdown fences, just the raw JSON array).

Each annotation must have:
- "segmentIndex": number (which segment)
- "originalText": string (the problematic text, up to 200 chars)
- "severity": "error" | "warning" | "info" | "pass"
- "category": "non-compliance" | "omission" | "best-practice" | "factual-error" | "ambiguity"
- "issue": string (clear description of the problem)
- "suggestedFix": string | null (how to fix it)
- "citations": array of citation refs in format "[Source N]" that support your finding

If a segment is correct/compliant, include one annotation with severity "pass" and issue "No issues found".

Cite source documents with [Source N] when your finding is backed by a source. NEVER fabricate citations.

Return ONLY the JSON array, e.g.:
[{{"segmentIndex":0,"originalText":"...","severity":"warning","category":"omission","issue":"...","suggestedFix":"...","citations":["[Source 1]"]}}]"""


def parse_annotations(text: str) -> list[dict] | None:
    """
    Extract the annotation array from model output.

    Tolerates markdown fences and prose around the array. Returns None when
    no JSON array can be recovered.
    """
    raw = text.strip()
    fence = _FENCE.search(raw)
    if fence:
        raw = fence.group(1).strip()
    start, end = raw.find("["), raw.rfind("]")
    if start != -1 and end > start:
        raw = raw[start:end + 1]
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, list):
        return None
    return [item for item in parsed if isinstance(item, dict)]


def dedupe_sources(sources: list[RetrievedChunk]) -> list[RetrievedChunk]:
    """One entry per chunk (highest similarity wins), best first."""
    best: dict[Any, RetrievedChunk] = {}
    for chunk in sources:
        existing = best.get(chunk.chunk_id)
        if existing is None or chunk.similarity > existing.similarity:
            best[chunk.chunk_id] = chunk
    return sorted(
        best.values(),
        key=lambda c: (-c.similarity, c.chunk_index, c.document_id),
    )


def _segment_for(raw: dict, batch: list[ReviewSegment]) -> ReviewSegment:
    try:
        wanted = int(raw.get("segmentIndex"))
    except (TypeError, ValueError):
        return batch[0]
    for segment in batch:
        if segment.index == wanted:
            return segment
    return batch[0]


def build_annotation(
    raw: dict,
    batch: list[ReviewSegment],
    sources: list[RetrievedChunk],
) -> ReviewAnnotation:
    segment = _segment_for(raw, batch)
    issue = str(raw.get("issue") or "No details provided")
    refs = raw.get("citations") if isinstance(raw.get("citations"), list) else []
    citation_text = " ".join(str(ref) for ref in refs) + " " + issue
    citations = process_citations(citation_text, sources)

    severity = raw.get("severity")
    category = raw.get("category")
    return ReviewAnnotation(
        segment_index=segment.index,
        start_line=segment.start_line,
        end_line=segment.end_line,
        original_text=str(raw.get("originalText") or segment.content)[:_ORIGINAL_TEXT_CHARS],
        severity=severity if severity in SEVERITIES else "info",
        category=category if category in CATEGORIES else "best-practice",
        issue=issue,
        suggested_fix=raw.get("suggestedFix") or None,
        citations=[c.to_dict() for c in citations.citations],
        confidence=citations.confidence,
    )


def _unparsed_annotation(segment: ReviewSegment) -> ReviewAnnotation:
    return ReviewAnnotation(
        segment_index=segment.index,
        start_line=segment.start_line,
        end_line=segment.end_line,
        original_text=segment.content[:_ORIGINAL_TEXT_CHARS],
        severity="info",
        category="ambiguity",
        issue="Review output for this segment could not be parsed",
        suggested_fix=None,
        citations=[],
        confidence="low",
    )


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def summarize(annotations: list[ReviewAnnotation]) -> ReviewSummary:
    counts = {severity: 0 for severity in SEVERITIES}
    for annotation in annotations:
        counts[annotation.severity] += 1

    if counts["error"]:
        compliance = "non-compliant"
    elif counts["warning"]:
        compliance = "partially-compliant"
    else:
        compliance = "compliant"

    top_issues = [
        a.issue for a in annotations if a.severity in ("error", "warning")
    ][:_TOP_ISSUES]
    return ReviewSummary(
        error_count=counts["error"],
        warning_count=counts["warning"],
        info_count=counts["info"],
        pass_count=counts["pass"],
        overall_compliance=compliance,
        top_issues=top_issues,
    )


def overall_confidence(annotations: list[ReviewAnnotation]) -> str:
    """Share of annotations backed by at least one citation."""
    if not annotations:
        return "low"
    ratio = sum(1 for a in annotations if a.citations) / len(annotations)
    if ratio >= 0.6:
        return "high"
    if ratio >= 0.3:
        return "medium"
    return "low"


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def validate_review(
    document: str, title: str, opts: ReviewOptions | None = None,
) -> tuple[str, str]:
    if not isinstance(document, str) or not document.strip():
        raise ValidationError("Document must be a non-empty string")
    if len(document) > settings.max_review_chars:
        raise ValidationError(
            f"Document exceeds {settings.max_review_chars} characters",
            details={"length": len(document), "max": settings.max_review_chars},
        )
    title = (title or "").strip()
    if not title:
        raise ValidationError("Document title is required")
    if len(title) > _MAX_TITLE_CHARS:
        raise ValidationError(f"Document title exceeds {_MAX_TITLE_CHARS} characters")
    if opts is not None:
        if opts.top_k is not None and opts.top_k < 1:
            raise ValidationError("top_k must be at least 1")
        if opts.threshold is not None and not 0.0 <= opts.threshold < 1.0:
            raise ValidationError("threshold must be in [0, 1)")
    return document, title


class _ReviewRun:
    """State for one review: plugin, collaborators, tree, options."""

    def __init__(
        self,
        plugin: PluginProfile,
        retriever: Retriever,
        llm: LLMProvider,
        tree_data: dict | None,
        opts: ReviewOptions,
    ) -> None:
        self.plugin = plugin
        self.retriever = retriever
        self.llm = llm
        self.tree_data = tree_data
        self.opts = opts
        self.system_prompt = f"{plugin.system_prompt}\n\n{REVIEW_SYSTEM_SUFFIX}".strip()

    def decision_context(self, batch: list[ReviewSegment]) -> str:
        if self.tree_data is None:
            return ""
        blocks = []
        for segment in batch:
            result = evaluate_for_plugin(self.tree_data, segment.content, self.plugin.config)
            rendered = format_decision_context(result)
            if rendered:
                blocks.append(rendered.replace(
                    "Decision Tree Analysis:",
                    f"Decision Tree Guidelines (Segment {segment.index}):",
                    1,
                ))
        return "\n\n".join(blocks)

    async def review_batch(self, batch: list[ReviewSegment]) -> list[ReviewAnnotation]:
        embeddings = await self.retriever.embed_many([s.content for s in batch])
        per_segment = await asyncio.gather(*(
            self.retriever.retrieve_by_embedding(
                embedding, self.plugin.id,
                top_k=self.opts.top_k, threshold=self.opts.threshold,
            )
            for embedding in embeddings
        ))
        sources = dedupe_sources([chunk for found in per_segment for chunk in found])
        prompt = build_review_prompt(batch, sources, self.decision_context(batch))

        response = await generate(
            self.llm, [{"role": "user", "content": prompt}], system=self.system_prompt,
        )
        raw_annotations = parse_annotations(response.content)
        if raw_annotations is None:
            logger.warning(
                "Unparseable review output for segments %d-%d (plugin %s)",
                batch[0].index, batch[-1].index, self.plugin.slug,
            )
            return [_unparsed_annotation(segment) for segment in batch]

        logger.debug(
            "Batch %d-%d: %d sources, %d annotations",
            batch[0].index, batch[-1].index, len(sources), len(raw_annotations),
        )
        return [build_annotation(raw, batch, sources) for raw in raw_annotations]


async def _execute(
    plugin: PluginProfile,
    document: str,
    title: str,
    opts: ReviewOptions,
    caller_id: str | None,
    store: PluginStore,
    retriever: Retriever,
    llm: LLMProvider | None,
    stream: EventStream | None = None,
) -> ReviewResult:
    start = time.monotonic()

    async def status(name: str, message: str) -> None:
        if stream is not None:
            await stream.emit("status", {"status": name, "message": message})

    try:
        await status("segmenting", "Segmenting document...")
        segments = segment_document(document)
        await status("segmented", f"Split into {len(segments)} segments")

        tree_data = await store.get_active_tree(plugin.id)
        run = _ReviewRun(plugin, retriever, llm or get_llm_provider(), tree_data, opts)

        size = settings.review_batch_size
        batches = [segments[i:i + size] for i in range(0, len(segments), size)]
        semaphore = asyncio.Semaphore(settings.review_batch_concurrency)
        completed = 0

        await status(
            "reviewing",
            f"Reviewing {len(batches)} batches ({settings.review_batch_concurrency} in parallel)...",
        )

        async def worker(batch_index: int, batch: list[ReviewSegment]) -> list[ReviewAnnotation]:
            nonlocal completed
            async with semaphore:
                annotations = await run.review_batch(batch)
            completed += 1
            if stream is not None:
                for annotation in annotations:
                    await stream.emit("annotation", {
                        "batch_index": batch_index,
                        "annotation": annotation.to_dict(),
                    })
                await stream.emit("batch_complete", {
                    "batch_index": batch_index,
                    "total_batches": len(batches),
                    "completed": completed,
                })
            return annotations

        tasks = [asyncio.create_task(worker(i, batch)) for i, batch in enumerate(batches)]
        try:
            per_batch = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        ordered = sorted(
            (
                (annotation.segment_index, position, annotation)
                for annotations in per_batch
                for position, annotation in enumerate(annotations)
            ),
            key=lambda item: (item[0], item[1]),
        )
        annotations = [item[2] for item in ordered]
        for n, annotation in enumerate(annotations):
            annotation.id = f"ann_{n}"

    except Exception as exc:
        await _record_failure(store, plugin, document, title, caller_id, start, exc)
        raise

    summary = summarize(annotations)
    result = ReviewResult(
        document_title=title,
        total_segments=len(segments),
        annotations=annotations,
        summary=summary,
        confidence=overall_confidence(annotations),
        latency_ms=int((time.monotonic() - start) * 1000),
        plugin_version=plugin.version,
    )
    await store.record_review({
        "plugin_id": plugin.id,
        "caller_id": caller_id,
        "document_title": title,
        "document_text": document,
        "total_segments": result.total_segments,
        "annotations": [a.to_dict() for a in annotations],
        "summary": summary.to_dict(),
        "confidence": result.confidence,
        "latency_ms": result.latency_ms,
        "status": "ok",
    })
    logger.info(
        "Review complete: plugin=%s, segments=%d, annotations=%d, compliance=%s, latency=%dms",
        plugin.slug, result.total_segments, len(annotations),
        summary.overall_compliance, result.latency_ms,
    )
    return result


async def _record_failure(
    store: PluginStore,
    plugin: PluginProfile,
    document: str,
    title: str,
    caller_id: str | None,
    start: float,
    exc: Exception,
) -> None:
    try:
        await store.record_review({
            "plugin_id": plugin.id,
            "caller_id": caller_id,
            "document_title": title,
            "document_text": document,
            "latency_ms": int((time.monotonic() - start) * 1000),
            "status": "error",
            "error": str(exc),
        })
    except Exception:
        logger.exception("Failed to write error review record for plugin %s", plugin.slug)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def run_review(
    plugin_slug: str,
    document: str,
    title: str,
    caller_id: str | None = None,
    options: ReviewOptions | dict | None = None,
    *,
    store: PluginStore | None = None,
    retriever: Retriever | None = None,
    llm: LLMProvider | None = None,
) -> ReviewResult:
    """
    Review `document` with the plugin `plugin_slug`.

    Raises:
        ValidationError / AccessDenied: Before any work.
        RetrievalError / TreeEvaluationError / GenerationError: A batch
            failed; the review is abandoned and an error record written.
    """
    opts = ReviewOptions.coerce(options)
    document, title = validate_review(document, title, opts)
    store = store or get_plugin_store()
    plugin = await resolve_plugin(store, plugin_slug, caller_id)
    return await _execute(
        plugin, document, title, opts, caller_id, store, retriever or Retriever(), llm,
    )


async def stream_review(
    plugin_slug: str,
    document: str,
    title: str,
    caller_id: str | None = None,
    options: ReviewOptions | dict | None = None,
    *,
    store: PluginStore | None = None,
    retriever: Retriever | None = None,
    llm: LLMProvider | None = None,
) -> AsyncIterator[StreamEvent]:
    """Streaming variant of run_review; validation and access raise here."""
    opts = ReviewOptions.coerce(options)
    document, title = validate_review(document, title, opts)
    store = store or get_plugin_store()
    plugin = await resolve_plugin(store, plugin_slug, caller_id)
    retriever = retriever or Retriever()

    async def producer(stream: EventStream) -> None:
        result = await _execute(
            plugin, document, title, opts, caller_id, store, retriever, llm, stream,
        )
        await stream.emit("done", result.to_dict())

    return open_stream(producer)
