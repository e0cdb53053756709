# =============================================================================
# Query Pipeline — Single-Plugin Answer Graph
# =============================================================================
#
# One plugin answers one question. The pipeline is a LangGraph StateGraph:
#
#   START ──▶ retrieve ──▶ decide ──▶ generate ──▶ verify ──▶ finalize ──▶ END
#                                        ▲            │
#                                        └────────────┘  (mandatory citations,
#                                                         at most one retry)
#
# retrieve  — top-K plugin chunks for the question
# decide    — evaluate the plugin's active decision tree (if any) and compose
#             the generation request
# generate  — call the model (streamed on the first attempt when a stream is
#             attached to the state)
# verify    — resolve [Source N] markers and check the citation policy
# finalize  — confidence, flags, serialisable citations and decision path
#
# CITATION MODES:
#   mandatory — an answer with phantom refs, no refs while sources exist, or
#               a bare refusal while sources exist is regenerated exactly once
#               with a corrective instruction. If it still fails it is kept,
#               phantom refs stripped, confidence forced to low and a
#               "citation_gap" flag recorded. Never an error.
#   optional  — cite when sources are used; coverage confidence.
#   none      — citations not required; medium with sources, low without.
#
# DESIGN DECISION: Collaborators travel in the state (llm_override,
# retriever, store, stream) the same way the provider override always has.
# Not JSON-serialisable; safe because the graph has no checkpointer.
#
# DESIGN DECISION: The streaming variant runs the SAME graph. The generate
# node streams deltas when a stream is attached; a citation retry is done
# non-streamed and announced with a `status` event, and the corrected text
# arrives as a single `replace` event before the terminal `done`.
# =============================================================================

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from langgraph.graph import END, START, StateGraph
from typing_extensions import TypedDict

from plugin_engine.agents.citations import (
    CORRECTIVE_INSTRUCTION,
    CitationResult,
    cap_confidence,
    citation_gap,
    format_sources,
    process_citations,
)
from plugin_engine.agents.decision_tree import (
    DecisionResult,
    evaluate_for_plugin,
    format_decision_context,
)
from plugin_engine.agents.streaming import EventStream, StreamEvent, open_stream
from plugin_engine.config import settings
from plugin_engine.errors import ValidationError
from plugin_engine.services.llm import (
    LLMProvider,
    generate,
    get_llm_provider,
    stream_generate,
)
from plugin_engine.services.plugins import (
    PluginProfile,
    PluginStore,
    get_plugin_store,
    resolve_plugin,
)
from plugin_engine.services.retriever import Retriever
from plugin_engine.services.vectorstore import RetrievedChunk

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompt Policy
# ---------------------------------------------------------------------------

CITATION_RULES = {
    "mandatory": """
RULES:
1. Answer from the provided source documents. Cite every claim drawn from them with [Source N].
2. NEVER fabricate source citations. Only use [Source N] for sources listed in the message.
3. If the sources do not cover part of the question, say so explicitly rather than guessing.
4. Lead with the most relevant sources.
""",
    "optional": """
RULES:
1. PRIORITISE the provided source documents. For claims from sources, cite with [Source N].
2. You may supplement with your own knowledge when the sources are insufficient, but clearly
   distinguish sourced claims (cited) from general knowledge.
3. NEVER fabricate source citations. Only use [Source N] for actual provided sources.
4. If no sources are provided or none are relevant, answer from your own knowledge.
   Do NOT refuse to answer.
""",
    "none": """
RULES:
1. Answer from your domain expertise. Source excerpts, when provided, are background material.
2. Citations are not required. If you do cite, only use [Source N] for provided sources.
""",
}

_CLOSING = {
    "mandatory": "Answer the question using the source documents above and cite them with [Source N].",
    "optional": (
        "Answer the question. Prioritise the source documents above and cite them "
        "with [Source N]. You may supplement with your own knowledge if needed."
    ),
    "none": "Answer the question.",
}

_HISTORY_ROLES = ("user", "assistant")


def build_system_prompt(plugin: PluginProfile) -> str:
    rules = CITATION_RULES.get(plugin.citation_mode, CITATION_RULES["mandatory"])
    return f"{plugin.system_prompt}\n\n{rules}".strip()


def build_user_message(
    question: str,
    sources: list[RetrievedChunk],
    decision: DecisionResult | None,
    citation_mode: str = "mandatory",
    instruction: str | None = None,
) -> str:
    """Numbered source excerpts, decision tree analysis, then the question."""
    source_context = format_sources(sources) or "No relevant sources found."
    decision_context = format_decision_context(decision)
    parts = [f"Source Documents:\n{source_context}"]
    if decision_context:
        parts.append(decision_context)
    parts.append(f"User Question: {question}")
    parts.append(instruction or _CLOSING.get(citation_mode, _CLOSING["mandatory"]))
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Options, Validation & Result
# ---------------------------------------------------------------------------


@dataclass
class QueryOptions:
    """Per-request knobs. `history` is prepended to the generation request only."""

    history: list[dict[str, str]] = field(default_factory=list)
    top_k: int | None = None
    threshold: float | None = None

    @classmethod
    def coerce(cls, options: QueryOptions | dict | None) -> QueryOptions:
        if options is None:
            return cls()
        if isinstance(options, cls):
            return options
        return cls(
            history=list(options.get("history") or []),
            top_k=options.get("top_k"),
            threshold=options.get("threshold"),
        )


def validate_query(query: str, options: QueryOptions) -> str:
    """
    Reject malformed input before any pipeline work.

    Raises:
        ValidationError: Empty or oversized query, bad history entry, or an
            out-of-range top_k / threshold.
    """
    if not isinstance(query, str) or not query.strip():
        raise ValidationError("Query must be a non-empty string")
    if len(query) > settings.max_query_chars:
        raise ValidationError(
            f"Query exceeds {settings.max_query_chars} characters",
            details={"length": len(query), "max": settings.max_query_chars},
        )
    for i, message in enumerate(options.history):
        if (
            not isinstance(message, dict)
            or message.get("role") not in _HISTORY_ROLES
            or not isinstance(message.get("content"), str)
        ):
            raise ValidationError(
                "History entries must be {role: user|assistant, content: str}",
                details={"index": i},
            )
    if options.top_k is not None and options.top_k < 1:
        raise ValidationError("top_k must be at least 1")
    if options.threshold is not None and not 0.0 <= options.threshold < 1.0:
        raise ValidationError("threshold must be in [0, 1)")
    return query.strip()


@dataclass
class QueryResult:
    answer: str
    citations: list[dict[str, Any]]
    decision_path: list[dict[str, Any]]
    confidence: str
    latency_ms: int
    flags: list[str] = field(default_factory=list)
    plugin_version: str = "1.0.0"

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "citations": self.citations,
            "decision_path": self.decision_path,
            "confidence": self.confidence,
            "latency_ms": self.latency_ms,
            "flags": self.flags,
            "plugin_version": self.plugin_version,
        }


# ---------------------------------------------------------------------------
# Shared Pipeline Steps
# ---------------------------------------------------------------------------
# Also used by the collaboration orchestrator, which runs each expert
# through the same retrieval, tree and scoring logic with its own prompts.
# ---------------------------------------------------------------------------


async def gather_context(
    plugin: PluginProfile,
    text: str,
    retriever: Retriever,
    store: PluginStore,
    top_k: int | None = None,
    threshold: float | None = None,
) -> tuple[list[RetrievedChunk], DecisionResult | None]:
    """Retrieve sources and evaluate the active tree for `text`."""
    sources = await retriever.retrieve(text, plugin.id, top_k=top_k, threshold=threshold)
    decision = await evaluate_active_tree(plugin, text, store)
    return sources, decision


async def evaluate_active_tree(
    plugin: PluginProfile,
    text: str,
    store: PluginStore,
) -> DecisionResult | None:
    tree_data = await store.get_active_tree(plugin.id)
    if tree_data is None:
        return None
    result = evaluate_for_plugin(tree_data, text, plugin.config)
    logger.info(
        "Decision tree evaluated for plugin %s: %d steps, terminal=%s",
        plugin.slug, len(result.path), result.terminal_reached,
    )
    return result


def score_answer(
    plugin: PluginProfile,
    citation_result: CitationResult,
    sources: list[RetrievedChunk],
    decision: DecisionResult | None,
    gap: str | None = None,
) -> tuple[str, list[str]]:
    """Confidence and flags for a processed answer."""
    flags: list[str] = []

    if plugin.citation_mode == "none":
        confidence = "medium" if sources else "low"
    else:
        confidence = citation_result.confidence

    if not sources:
        flags.append("no_sources")
        confidence = "low"
    if gap is not None:
        flags.append("citation_gap")
        confidence = "low"
    if decision is not None and not decision.terminal_reached:
        flags.append("tree_no_terminal")
        confidence = cap_confidence(confidence, "medium")
    return confidence, flags


# ---------------------------------------------------------------------------
# Graph State Schema
# ---------------------------------------------------------------------------


class QueryState(TypedDict, total=False):
    """
    State that flows through the query graph.

    total=False: nodes return only the keys they update.
    """

    # --- Input (set by caller) ---
    query: str
    plugin: PluginProfile
    history: list[dict[str, str]]
    top_k: int | None
    threshold: float | None

    # --- Collaborators ---
    llm_override: LLMProvider | None
    retriever: Retriever
    store: PluginStore
    stream: EventStream | None

    # --- Intermediate (set by nodes) ---
    sources: list[RetrievedChunk]
    decision: DecisionResult | None
    system_prompt: str
    messages: list[dict[str, str]]
    answer: str
    streamed_text: str
    attempts: int
    citation_result: CitationResult
    gap: str | None

    # --- Output (set by finalize) ---
    final_answer: str
    citations: list[dict[str, Any]]
    decision_path: list[dict[str, Any]]
    confidence: str
    flags: list[str]


async def _status(state: QueryState, status: str, message: str, **extra: Any) -> None:
    stream = state.get("stream")
    if stream is not None:
        await stream.emit("status", {"status": status, "message": message, **extra})


# ---------------------------------------------------------------------------
# Node Functions
# ---------------------------------------------------------------------------


async def retrieve_node(state: QueryState) -> dict:
    plugin = state["plugin"]
    await _status(state, "searching", "Searching knowledge base...")

    sources = await state["retriever"].retrieve(
        state["query"], plugin.id,
        top_k=state.get("top_k"), threshold=state.get("threshold"),
    )
    await _status(
        state, "sources_found",
        f"Found {len(sources)} relevant source{'s' if len(sources) != 1 else ''}",
        source_count=len(sources),
    )
    return {"sources": sources}


async def decide_node(state: QueryState) -> dict:
    """Evaluate the active tree and compose the generation request."""
    plugin = state["plugin"]
    decision = await evaluate_active_tree(plugin, state["query"], state["store"])
    if decision is not None:
        await _status(
            state, "decision_tree",
            f"Evaluated decision tree ({len(decision.path)} steps)",
        )

    user_message = build_user_message(
        state["query"], state["sources"], decision, plugin.citation_mode,
    )
    messages = [*state.get("history", []), {"role": "user", "content": user_message}]
    return {
        "decision": decision,
        "system_prompt": build_system_prompt(plugin),
        "messages": messages,
        "attempts": 0,
    }


async def generate_node(state: QueryState) -> dict:
    llm = state.get("llm_override") or get_llm_provider()
    stream = state.get("stream")
    attempts = state.get("attempts", 0)
    messages = state["messages"]

    if attempts == 0 and stream is not None:
        await _status(state, "generating", "Generating response...")
        pieces: list[str] = []
        async for delta in stream_generate(llm, messages, system=state["system_prompt"]):
            pieces.append(delta)
            await stream.emit("delta", {"text": delta})
        text = "".join(pieces)
        return {"answer": text, "streamed_text": text, "attempts": 1}

    if attempts > 0:
        # Corrective retry: show the model its answer, then the instruction
        await _status(state, "citation_retry", "Regenerating with corrected citations...")
        messages = [
            *messages,
            {"role": "assistant", "content": state["answer"]},
            {"role": "user", "content": CORRECTIVE_INSTRUCTION},
        ]

    response = await generate(llm, messages, system=state["system_prompt"])
    logger.info(
        "Generated answer for plugin %s (attempt %d, model=%s, %d output tokens)",
        state["plugin"].slug, attempts + 1, response.model, response.output_tokens,
    )
    return {"answer": response.content, "attempts": attempts + 1}


async def verify_node(state: QueryState) -> dict:
    sources = state["sources"]
    result = process_citations(state["answer"], sources)
    gap = None
    if state["plugin"].citation_mode == "mandatory":
        gap = citation_gap(result, len(sources))
        if gap:
            logger.warning(
                "Citation gap for plugin %s (attempt %d): %s",
                state["plugin"].slug, state["attempts"], gap,
            )
    return {"citation_result": result, "gap": gap}


def _route_after_verify(state: QueryState) -> str:
    if state.get("gap") and state["attempts"] < 2:
        return "generate"
    return "finalize"


async def finalize_node(state: QueryState) -> dict:
    result = state["citation_result"]
    decision = state.get("decision")
    confidence, flags = score_answer(
        state["plugin"], result, state["sources"], decision, state.get("gap"),
    )
    if state["attempts"] > 1:
        flags.insert(0, "citation_retry")

    stream = state.get("stream")
    if stream is not None and result.cleaned_answer != state.get("streamed_text"):
        await stream.emit("replace", {"text": result.cleaned_answer})

    return {
        "final_answer": result.cleaned_answer,
        "citations": [c.to_dict() for c in result.citations],
        "decision_path": [s.to_dict() for s in decision.path] if decision else [],
        "confidence": confidence,
        "flags": flags,
    }


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------

_builder = StateGraph(QueryState)
_builder.add_node("retrieve", retrieve_node)
_builder.add_node("decide", decide_node)
_builder.add_node("generate", generate_node)
_builder.add_node("verify", verify_node)
_builder.add_node("finalize", finalize_node)

_builder.add_edge(START, "retrieve")
_builder.add_edge("retrieve", "decide")
_builder.add_edge("decide", "generate")
_builder.add_edge("generate", "verify")
_builder.add_conditional_edges(
    "verify", _route_after_verify, {"generate": "generate", "finalize": "finalize"},
)
_builder.add_edge("finalize", END)

graph = _builder.compile()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def _execute(
    plugin: PluginProfile,
    query: str,
    opts: QueryOptions,
    caller_id: str | None,
    store: PluginStore,
    retriever: Retriever,
    llm: LLMProvider | None,
    stream: EventStream | None = None,
) -> QueryResult:
    """Run the graph and write the audit record (ok or error)."""
    start = time.monotonic()
    initial_state: QueryState = {
        "query": query,
        "plugin": plugin,
        "history": opts.history,
        "top_k": opts.top_k,
        "threshold": opts.threshold,
        "retriever": retriever,
        "store": store,
        "stream": stream,
    }
    if llm is not None:
        initial_state["llm_override"] = llm

    logger.info("Invoking query graph: plugin=%s, query='%s'", plugin.slug, query[:80])

    try:
        final = await graph.ainvoke(initial_state)
    except Exception as exc:
        await _record_failure(store, plugin, query, caller_id, start, exc)
        raise

    result = QueryResult(
        answer=final["final_answer"],
        citations=final["citations"],
        decision_path=final["decision_path"],
        confidence=final["confidence"],
        latency_ms=int((time.monotonic() - start) * 1000),
        flags=final["flags"],
        plugin_version=plugin.version,
    )
    await store.record_query({
        "plugin_id": plugin.id,
        "caller_id": caller_id,
        "query_text": query,
        "response_text": result.answer,
        "citations": result.citations,
        "decision_path": result.decision_path,
        "confidence": result.confidence,
        "flags": result.flags,
        "latency_ms": result.latency_ms,
        "status": "ok",
    })
    logger.info(
        "Query complete: plugin=%s, confidence=%s, citations=%d, flags=%s, latency=%dms",
        plugin.slug, result.confidence, len(result.citations), result.flags, result.latency_ms,
    )
    return result


async def _record_failure(
    store: PluginStore,
    plugin: PluginProfile,
    query: str,
    caller_id: str | None,
    start: float,
    exc: Exception,
) -> None:
    try:
        await store.record_query({
            "plugin_id": plugin.id,
            "caller_id": caller_id,
            "query_text": query,
            "latency_ms": int((time.monotonic() - start) * 1000),
            "status": "error",
            "error": str(exc),
        })
    except Exception:
        logger.exception("Failed to write error audit record for plugin %s", plugin.slug)


async def run_query(
    plugin_slug: str,
    query: str,
    caller_id: str | None = None,
    options: QueryOptions | dict | None = None,
    *,
    store: PluginStore | None = None,
    retriever: Retriever | None = None,
    llm: LLMProvider | None = None,
) -> QueryResult:
    """
    Answer `query` with the plugin `plugin_slug`.

    Raises:
        ValidationError: Before any work, for malformed input.
        AccessDenied: Unknown or inaccessible plugin.
        RetrievalError / TreeEvaluationError / GenerationError: Mid-pipeline
            failures (an error audit record is written first).
    """
    opts = QueryOptions.coerce(options)
    query = validate_query(query, opts)
    store = store or get_plugin_store()
    plugin = await resolve_plugin(store, plugin_slug, caller_id)
    return await _execute(plugin, query, opts, caller_id, store, retriever or Retriever(), llm)


async def stream_query(
    plugin_slug: str,
    query: str,
    caller_id: str | None = None,
    options: QueryOptions | dict | None = None,
    *,
    store: PluginStore | None = None,
    retriever: Retriever | None = None,
    llm: LLMProvider | None = None,
) -> AsyncIterator[StreamEvent]:
    """
    Streaming variant of run_query.

    Validation and plugin access are checked before the stream is returned,
    so those errors raise here instead of becoming stream events.
    """
    opts = QueryOptions.coerce(options)
    query = validate_query(query, opts)
    store = store or get_plugin_store()
    plugin = await resolve_plugin(store, plugin_slug, caller_id)
    retriever = retriever or Retriever()

    async def producer(stream: EventStream) -> None:
        result = await _execute(plugin, query, opts, caller_id, store, retriever, llm, stream)
        await stream.emit("citations", {"citations": result.citations})
        await stream.emit("decision_path", {"decision_path": result.decision_path})
        await stream.emit("done", {
            "answer": result.answer,
            "confidence": result.confidence,
            "flags": result.flags,
            "latency_ms": result.latency_ms,
            "plugin_version": result.plugin_version,
        })

    return open_stream(producer)
