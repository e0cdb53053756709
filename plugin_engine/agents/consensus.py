# =============================================================================
# Consensus Synthesis — Stance Grouping, Conflicts, Agreement
# =============================================================================
#
# After the last collaboration round, the experts' final answers are grouped
# into stances and turned into ConsensusData.
#
# STANCE GROUPING:
#   two answers share a stance when
#     Jaccard token overlap  >= settings.stance_similarity_threshold  or
#     embedding cosine       >= settings.stance_embedding_threshold
#   Joined pairs are merged with union-find; each connected component is one
#   stance group. Groups are ordered by their first expert.
#
# DESIGN DECISION: The cosine bar is much higher than the lexical one.
# Embeddings of two answers to the same question sit close together even
# when the answers disagree, so only near-paraphrases join on cosine.
#
# CONFLICTS & AGREEMENT:
#   one group          — no stance conflict
#   strict majority    — conflict resolved=True, resolution names the majority
#   no majority        — conflict resolved=False, resolution "unresolved"
#   excluded experts   — one resolved=False conflict each (added by the
#                        orchestrator, passed in here)
#
#   anchor = majority group, else the largest group (ties: first expert)
#   agreement_level = |anchor| / |all experts, excluded included|
#
#   So agreement_level == 1.0 exactly when every expert responded and all
#   share one stance, which is exactly when conflicts == [].
#
# DESIGN DECISION: Agreement, conflicts and confidence are computed here,
# deterministically. The LLM moderator only writes the answer text (and key
# points); its opinion of the agreement level is never trusted.
# =============================================================================

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any

from plugin_engine.agents.citations import lower_confidence, min_confidence
from plugin_engine.config import settings
from plugin_engine.errors import RetrievalError
from plugin_engine.services.llm import LLMProvider, generate
from plugin_engine.services.retriever import Retriever

logger = logging.getLogger(__name__)

_WORD = re.compile(r"[a-z0-9]+")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")
_STANCE_CHARS = 300
_KEY_POINTS = 3

MODERATOR_PROMPT = """You are a synthesis moderator for a multi-expert collaboration. Your job is to:
1. Identify points of agreement and disagreement between experts.
2. Synthesize a final consensus answer built on the anchor position you are given, incorporating the other expert perspectives where they do not contradict it.
3. Flag unresolved conflicts clearly in the answer.
4. Preserve citations from the original experts, naming the expert they came from.
5. Be thorough but concise.

Respond ONLY with a JSON object in this exact format:
{
  "answer": "The synthesized consensus answer...",
  "expertContributions": [{"expert": "...", "keyPoints": ["...", "..."]}]
}"""


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class ExpertResponse:
    plugin_slug: str
    plugin_name: str
    domain: str
    answer: str
    citations: list[dict[str, Any]] = field(default_factory=list)
    confidence: str = "medium"
    revised: bool = False
    revision_note: str | None = None

    def to_dict(self) -> dict:
        return {
            "plugin_slug": self.plugin_slug,
            "plugin_name": self.plugin_name,
            "domain": self.domain,
            "answer": self.answer,
            "citations": self.citations,
            "confidence": self.confidence,
            "revised": self.revised,
            "revision_note": self.revision_note,
        }


@dataclass
class ConflictEntry:
    topic: str
    positions: list[dict[str, str]]
    resolved: bool
    resolution: str | None = None

    def to_dict(self) -> dict:
        return {
            "topic": self.topic,
            "positions": self.positions,
            "resolved": self.resolved,
            "resolution": self.resolution,
        }


@dataclass
class ConsensusData:
    answer: str
    confidence: str
    agreement_level: float
    citations: list[dict[str, Any]] = field(default_factory=list)
    conflicts: list[ConflictEntry] = field(default_factory=list)
    expert_contributions: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "answer": self.answer,
            "confidence": self.confidence,
            "agreement_level": self.agreement_level,
            "citations": self.citations,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "expert_contributions": self.expert_contributions,
        }


@dataclass
class StanceAnalysis:
    groups: list[list[int]]
    anchor: list[int]
    majority: bool


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


def jaccard_similarity(a: str, b: str) -> float:
    """Case-insensitive token-set overlap; 0.0 if either text is empty."""
    tokens_a = set(_WORD.findall(a.lower()))
    tokens_b = set(_WORD.findall(b.lower()))
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def cosine_similarity(u: list[float], v: list[float]) -> float:
    dot = sum(x * y for x, y in zip(u, v))
    norm = math.sqrt(sum(x * x for x in u)) * math.sqrt(sum(y * y for y in v))
    if norm == 0:
        return 0.0
    return dot / norm


def group_stances(
    answers: list[str],
    embeddings: list[list[float]] | None = None,
    threshold: float | None = None,
    embedding_threshold: float | None = None,
) -> list[list[int]]:
    """Connected components of the "similar enough" graph over answers."""
    _threshold = settings.stance_similarity_threshold if threshold is None else threshold
    _embedding_threshold = (
        settings.stance_embedding_threshold if embedding_threshold is None else embedding_threshold
    )
    parent = list(range(len(answers)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    for i in range(len(answers)):
        for j in range(i + 1, len(answers)):
            similar = jaccard_similarity(answers[i], answers[j]) >= _threshold
            if not similar and embeddings is not None:
                similar = cosine_similarity(embeddings[i], embeddings[j]) >= _embedding_threshold
            if similar:
                root_i, root_j = find(i), find(j)
                if root_i != root_j:
                    parent[max(root_i, root_j)] = min(root_i, root_j)

    groups: dict[int, list[int]] = {}
    for i in range(len(answers)):
        groups.setdefault(find(i), []).append(i)
    return sorted(groups.values(), key=lambda g: g[0])


def analyse_stances(groups: list[list[int]]) -> StanceAnalysis:
    total = sum(len(g) for g in groups)
    largest = max(groups, key=len) if groups else []
    majority = bool(largest) and len(largest) * 2 > total
    # max() keeps the first of equal-sized groups, and groups are ordered
    return StanceAnalysis(groups=groups, anchor=largest, majority=majority)


def agreement_level(anchor_size: int, total_experts: int) -> float:
    if total_experts <= 0:
        return 0.0
    return round(anchor_size / total_experts, 4)


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


def merge_citations(responses: list[ExpertResponse]) -> list[dict[str, Any]]:
    """Citations across responses, first occurrence of each (document, excerpt)."""
    merged: list[dict[str, Any]] = []
    seen: set[tuple[str, str]] = set()
    for response in responses:
        for citation in response.citations:
            key = (citation.get("document", ""), citation.get("excerpt", ""))
            if key not in seen:
                seen.add(key)
                merged.append({**citation, "expert": response.plugin_slug})
    return merged


def _stance(answer: str) -> str:
    return answer if len(answer) <= _STANCE_CHARS else answer[:_STANCE_CHARS] + "..."


def _default_key_points(answer: str) -> list[str]:
    sentences = [s.strip() for s in _SENTENCE_END.split(answer.strip()) if s.strip()]
    return sentences[:_KEY_POINTS]


def stance_conflict(
    query: str,
    responses: list[ExpertResponse],
    analysis: StanceAnalysis,
) -> ConflictEntry | None:
    if len(analysis.groups) <= 1:
        return None
    positions = [
        {"expert": r.plugin_name, "stance": _stance(r.answer)} for r in responses
    ]
    topic = query if len(query) <= 120 else query[:120] + "..."
    if analysis.majority:
        names = ", ".join(responses[i].plugin_name for i in analysis.anchor)
        return ConflictEntry(
            topic=topic,
            positions=positions,
            resolved=True,
            resolution=f"Majority position held by {names}",
        )
    return ConflictEntry(
        topic=topic,
        positions=positions,
        resolved=False,
        resolution="unresolved: no majority stance among experts",
    )


def parse_moderator_output(text: str) -> dict | None:
    match = re.search(r"\{[\s\S]*\}", text)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


async def _stance_embeddings(
    retriever: Retriever | None,
    answers: list[str],
) -> list[list[float]] | None:
    if retriever is None:
        return None
    try:
        return await retriever.embed_many(answers)
    except RetrievalError as exc:
        logger.warning("Stance embedding failed, using lexical similarity only: %s", exc)
        return None


async def synthesize_consensus(
    query: str,
    transcript: str,
    final_responses: list[ExpertResponse],
    all_responses: list[ExpertResponse],
    exclusions: list[ConflictEntry],
    total_experts: int,
    llm: LLMProvider,
    retriever: Retriever | None = None,
) -> ConsensusData:
    """
    Build ConsensusData from the active experts' final responses.

    `exclusions` are the conflict entries recorded for excluded experts;
    `total_experts` counts every expert the session started with.

    Raises:
        GenerationError: The moderator call failed after retry.
    """
    answers = [r.answer for r in final_responses]
    embeddings = await _stance_embeddings(retriever, answers)
    analysis = analyse_stances(group_stances(answers, embeddings))

    conflicts = list(exclusions)
    conflict = stance_conflict(query, final_responses, analysis)
    if conflict is not None:
        conflicts.append(conflict)

    level = agreement_level(len(analysis.anchor), total_experts)
    confidence = min_confidence([r.confidence for r in final_responses])
    if any(not c.resolved for c in conflicts):
        confidence = lower_confidence(confidence)

    anchor_names = ", ".join(final_responses[i].plugin_name for i in analysis.anchor)
    anchor_answer = final_responses[analysis.anchor[0]].answer if analysis.anchor else ""
    stance_note = (
        "majority position" if analysis.majority
        else "largest position (NO majority; the disagreement is unresolved)"
    )
    user_message = (
        f"Original question: {query}\n\n{transcript}\n\n"
        f"Anchor position ({stance_note}, held by {anchor_names}):\n{anchor_answer}\n\n"
        "Synthesize the final consensus from these expert deliberations. "
        "Return ONLY valid JSON."
    )
    response = await generate(
        llm, [{"role": "user", "content": user_message}], system=MODERATOR_PROMPT,
    )
    parsed = parse_moderator_output(response.content)
    if parsed is None or not isinstance(parsed.get("answer"), str) or not parsed["answer"].strip():
        logger.warning("Moderator output was not the expected JSON; using raw text")
        answer = response.content.strip()
        moderator_points: dict[str, list[str]] = {}
    else:
        answer = parsed["answer"].strip()
        moderator_points = {
            str(item.get("expert")): [str(p) for p in item.get("keyPoints", []) if p]
            for item in parsed.get("expertContributions", [])
            if isinstance(item, dict) and isinstance(item.get("keyPoints"), list)
        }

    contributions = [
        {
            "expert": r.plugin_name,
            "domain": r.domain,
            "key_points": (
                moderator_points.get(r.plugin_name)
                or moderator_points.get(r.plugin_slug)
                or _default_key_points(r.answer)
            ),
        }
        for r in final_responses
    ]

    logger.info(
        "Consensus: %d stance group(s), majority=%s, agreement=%.2f, conflicts=%d, confidence=%s",
        len(analysis.groups), analysis.majority, level, len(conflicts), confidence,
    )
    return ConsensusData(
        answer=answer,
        confidence=confidence,
        agreement_level=level,
        citations=merge_citations(all_responses),
        conflicts=conflicts,
        expert_contributions=contributions,
    )
