# =============================================================================
# Collaboration Orchestrator — Multi-Expert Deliberation
# =============================================================================
#
# Several plugins ("experts") answer the same question across rounds, then
# a moderator synthesizes a consensus.
#
# SESSION STATE MACHINE:
#   pending ──▶ deliberating (round 1..max_rounds) ──▶ complete | error
#
# MODES:
#   debate    — round 1: every expert answers independently (concurrently).
#               rounds 2..N: each expert sees the full transcript so far and
#               starts its reply with "POSITION: UNCHANGED" or
#               "POSITION: REVISED — <note>". A round with no revision ends
#               deliberation early.
#   consensus — a single independent round, then synthesis.
#   review    — round 1: the first expert answers, then the others review
#               that answer concurrently. rounds 2..N run as in debate.
#
# FAULT POLICY (per expert, per round):
#   call bounded by settings.expert_timeout_seconds ──▶ one retry ──▶
#   exclusion from this and later rounds, recorded as a ConflictEntry
#   "Expert excluded: <slug>". Fewer than 2 viable experts ends the session
#   in `error` with SessionFailure. A completed session with exclusions
#   carries a PartialCollaborationFailure warning.
#
# DESIGN DECISION: A round is a wait-all over one task per expert, consumed
# with asyncio.as_completed so each response streams as soon as it lands.
# The round record lists responses in expert order regardless of arrival.
#
# DESIGN DECISION: Each expert's retrieval and tree evaluation happen on its
# first call (inside the timeout and retry) and are reused in later rounds.
#
# DESIGN DECISION: The session record is written as deliberation proceeds
# (rounds appended as they complete). A cancelled session's record is
# deleted: no partial audit record survives a client disconnect.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt

from plugin_engine.agents.citations import cap_confidence, format_sources, process_citations
from plugin_engine.agents.consensus import (
    ConflictEntry,
    ConsensusData,
    ExpertResponse,
    synthesize_consensus,
)
from plugin_engine.agents.decision_tree import DecisionResult, format_decision_context
from plugin_engine.agents.query import gather_context
from plugin_engine.agents.streaming import EventStream, StreamEvent, open_stream
from plugin_engine.config import settings
from plugin_engine.db.models import SessionStatus
from plugin_engine.errors import PartialCollaborationFailure, SessionFailure, ValidationError
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

MODES = ("debate", "consensus", "review")

_POSITION = re.compile(
    r"^\s*\**POSITION:?\**\s*(UNCHANGED|REVISED)\b[\s*]*(?:[-—–:]\s*(.*))?$",
    re.IGNORECASE,
)
_REVISION_PHRASES = ("revising", "updating", "i agree with", "correcting")
_DEFAULT_REVISION_NOTE = "Position updated based on other experts' input"

POSITION_INSTRUCTION = """Start your reply with exactly one of these lines:
POSITION: UNCHANGED
POSITION: REVISED — <one line on what changed and why>
Then give your full answer."""


# ---------------------------------------------------------------------------
# Configuration & Results
# ---------------------------------------------------------------------------


@dataclass
class CollaborationConfig:
    expert_slugs: list[str]
    query: str
    mode: str = "debate"
    max_rounds: int = 3

    def validated(self) -> CollaborationConfig:
        """
        Normalised copy of the config.

        Raises:
            ValidationError: Bad expert count, duplicate slugs, unknown mode,
                or an empty / oversized query.
        """
        slugs = [str(s).strip() for s in self.expert_slugs or []]
        if any(not s for s in slugs):
            raise ValidationError("Expert slugs must be non-empty")
        if not settings.min_experts <= len(slugs) <= settings.max_experts:
            raise ValidationError(
                f"Collaboration requires {settings.min_experts}-{settings.max_experts} experts",
                details={"count": len(slugs)},
            )
        if len(set(slugs)) != len(slugs):
            raise ValidationError("Expert slugs must be unique")
        if self.mode not in MODES:
            raise ValidationError(
                f"Unknown collaboration mode: {self.mode}", details={"modes": list(MODES)},
            )
        query = (self.query or "").strip()
        if not query:
            raise ValidationError("Query must be a non-empty string")
        if len(self.query) > settings.max_query_chars:
            raise ValidationError(
                f"Query exceeds {settings.max_query_chars} characters",
                details={"length": len(self.query), "max": settings.max_query_chars},
            )
        rounds = max(1, min(int(self.max_rounds), settings.max_collaboration_rounds))
        return CollaborationConfig(expert_slugs=slugs, query=query, mode=self.mode, max_rounds=rounds)

    @property
    def effective_rounds(self) -> int:
        return 1 if self.mode == "consensus" else self.max_rounds


@dataclass
class CollaborationRound:
    round_number: int
    responses: list[ExpertResponse] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "round_number": self.round_number,
            "responses": [r.to_dict() for r in self.responses],
            "excluded": self.excluded,
        }


@dataclass
class CollaborationResult:
    session_id: int
    rounds: list[CollaborationRound]
    consensus: ConsensusData
    status: str
    excluded_experts: list[str]
    latency_ms: int
    warning: dict[str, Any] | None = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "rounds": [r.to_dict() for r in self.rounds],
            "consensus": self.consensus.to_dict(),
            "status": self.status,
            "excluded_experts": self.excluded_experts,
            "latency_ms": self.latency_ms,
            "warning": self.warning,
        }


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------


def expert_system_prompt(plugin: PluginProfile) -> str:
    return f"""{plugin.system_prompt}

You are participating in a multi-expert collaboration room as the {plugin.domain} expert.
Your name/role: {plugin.name}

RULES:
1. If source documents are provided, PRIORITISE them and cite with [Source N].
2. If no source documents are available, answer using your expert knowledge. Do NOT refuse; you are the domain expert.
3. Be specific and precise; other experts will review your response.
4. If you disagree with another expert's assessment, clearly state why with evidence.
5. If another expert raised a valid point that affects your domain, acknowledge it and revise.
6. NEVER fabricate source citations. Only use [Source N] for actual provided sources.""".strip()


def format_round(round_data: CollaborationRound) -> str:
    blocks = []
    for r in round_data.responses:
        block = f"[{r.plugin_name} ({r.domain})]:\n{r.answer}"
        if r.revised:
            block += "\n(REVISED from previous round)"
        blocks.append(block)
    return f"--- Round {round_data.round_number} Responses ---\n" + "\n\n".join(blocks)


def parse_position(text: str) -> tuple[bool | None, str | None, str]:
    """
    Read a leading POSITION marker.

    Returns (revised, note, answer_without_marker); revised is None when
    no marker is present.
    """
    first, _, rest = text.strip().partition("\n")
    match = _POSITION.match(first)
    if not match:
        return None, None, text.strip()
    revised = match.group(1).upper() == "REVISED"
    note = (match.group(2) or "").strip().strip("*").strip() or None
    return revised, note, rest.strip()


def detect_revision(text: str) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in _REVISION_PHRASES)


# ---------------------------------------------------------------------------
# Experts
# ---------------------------------------------------------------------------


@dataclass
class _Expert:
    plugin: PluginProfile
    order: int
    sources: list[RetrievedChunk] = field(default_factory=list)
    decision: DecisionResult | None = None
    prepared: bool = False
    last_response: ExpertResponse | None = None

    @property
    def slug(self) -> str:
        return self.plugin.slug


class _Session:
    """One collaboration run. `stream` is None for the non-streaming variant."""

    def __init__(
        self,
        config: CollaborationConfig,
        plugins: list[PluginProfile],
        caller_id: str | None,
        store: PluginStore,
        retriever: Retriever,
        llm: LLMProvider,
        stream: EventStream | None = None,
    ) -> None:
        self.config = config
        self.experts = [_Expert(plugin=p, order=i) for i, p in enumerate(plugins)]
        self.caller_id = caller_id
        self.store = store
        self.retriever = retriever
        self.llm = llm
        self.stream = stream
        self.session_id = 0
        self.rounds: list[CollaborationRound] = []
        self.exclusions: list[ConflictEntry] = []
        self.excluded: list[str] = []

    async def emit(self, kind: str, payload: dict[str, Any] | None = None) -> None:
        if self.stream is not None:
            await self.stream.emit(kind, payload)

    @property
    def active(self) -> list[_Expert]:
        return [e for e in self.experts if e.slug not in self.excluded]

    # --- Expert calls ---------------------------------------------------

    async def _prepare(self, expert: _Expert) -> None:
        if expert.prepared:
            return
        expert.sources, expert.decision = await gather_context(
            expert.plugin, self.config.query, self.retriever, self.store,
            top_k=settings.expert_top_k,
            threshold=settings.retrieval_similarity_threshold,
        )
        expert.prepared = True

    async def _call(self, expert: _Expert, transcript: str, ask_position: bool) -> ExpertResponse:
        await self._prepare(expert)

        source_context = format_sources(expert.sources) or "No relevant sources."
        decision_context = format_decision_context(expert.decision)
        parts = [f"Source Documents:\n{source_context}"]
        if decision_context:
            parts.append(decision_context)
        if transcript:
            parts.append(transcript)
        parts.append(f"Question: {self.config.query}")
        if transcript:
            parts.append(
                "Review the other experts' responses above. If you need to revise your "
                "position, clearly state what changed and why. If another expert's point "
                "affects your domain, address it. Cite your sources."
            )
            if ask_position:
                parts.append(POSITION_INSTRUCTION)
        else:
            parts.append(
                "Provide your domain-specific analysis. Be concise but thorough. Cite sources."
            )

        response = await generate(
            self.llm,
            [{"role": "user", "content": "\n\n".join(parts)}],
            system=expert_system_prompt(expert.plugin),
            attempts=1,
        )

        revised, note, body = (None, None, response.content.strip())
        if ask_position:
            revised, note, body = parse_position(response.content)
            if revised is None:
                revised = detect_revision(body)
                note = _DEFAULT_REVISION_NOTE if revised else None
            elif revised and note is None:
                note = _DEFAULT_REVISION_NOTE

        citations = process_citations(body, expert.sources)
        if expert.sources:
            confidence = citations.confidence
        else:
            # No knowledge base: the expert still contributes from its persona
            confidence = "medium"
        if expert.decision is not None and not expert.decision.terminal_reached:
            confidence = cap_confidence(confidence, "medium")

        return ExpertResponse(
            plugin_slug=expert.slug,
            plugin_name=expert.plugin.name,
            domain=expert.plugin.domain,
            answer=citations.cleaned_answer,
            citations=[c.to_dict() for c in citations.citations],
            confidence=confidence,
            revised=bool(revised),
            revision_note=note if revised else None,
        )

    async def _turn(
        self,
        expert: _Expert,
        transcript: str,
        ask_position: bool,
    ) -> tuple[_Expert, ExpertResponse | Exception]:
        """An expert call under the fault policy. Never raises except on cancel."""
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(settings.external_call_attempts),
                retry=retry_if_exception_type(Exception),
                before_sleep=lambda state: logger.warning(
                    "Expert %s failed (attempt %d), retrying: %r",
                    expert.slug, state.attempt_number, state.outcome.exception(),
                ),
                reraise=True,
            ):
                with attempt:
                    response = await asyncio.wait_for(
                        self._call(expert, transcript, ask_position),
                        timeout=settings.expert_timeout_seconds,
                    )
            return expert, response
        except Exception as exc:
            return expert, exc

    # --- Rounds ---------------------------------------------------------

    async def _run_round(
        self,
        round_number: int,
        participants: list[_Expert],
        transcript: str,
        ask_position: bool,
        round_data: CollaborationRound,
        responses: dict[str, ExpertResponse],
    ) -> None:
        tasks = [
            asyncio.create_task(self._turn(expert, transcript, ask_position))
            for expert in participants
        ]
        try:
            for next_done in asyncio.as_completed(tasks):
                expert, outcome = await next_done
                if isinstance(outcome, Exception):
                    await self._exclude(expert, round_number, outcome, round_data)
                    continue
                responses[expert.slug] = outcome
                expert.last_response = outcome
                await self.emit("expert_response", {
                    "round": round_number,
                    "expert": expert.slug,
                    "expert_name": expert.plugin.name,
                    "domain": expert.plugin.domain,
                    "answer": outcome.answer,
                    "citations": outcome.citations,
                    "confidence": outcome.confidence,
                    "revised": outcome.revised,
                    "revision_note": outcome.revision_note,
                })
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _exclude(
        self,
        expert: _Expert,
        round_number: int,
        exc: Exception,
        round_data: CollaborationRound,
    ) -> None:
        reason = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc) or repr(exc)
        logger.warning(
            "Excluding expert %s in round %d after retry: %s", expert.slug, round_number, reason,
        )
        self.excluded.append(expert.slug)
        round_data.excluded.append(expert.slug)
        self.exclusions.append(ConflictEntry(
            topic=f"Expert excluded: {expert.slug}",
            positions=[{"expert": expert.plugin.name, "stance": f"No response ({reason})"}],
            resolved=False,
            resolution=None,
        ))
        await self.emit("expert_excluded", {
            "round": round_number, "expert": expert.slug, "reason": reason,
        })

    async def deliberate(self) -> None:
        total = self.config.effective_rounds
        for round_number in range(1, total + 1):
            await self.emit("round_start", {"round": round_number, "total_rounds": total})
            round_data = CollaborationRound(round_number=round_number)
            responses: dict[str, ExpertResponse] = {}
            transcript = "\n\n".join(format_round(r) for r in self.rounds)
            participants = self.active

            if self.config.mode == "review" and round_number == 1:
                primary, reviewers = participants[0], participants[1:]
                await self._run_round(round_number, [primary], "", False, round_data, responses)
                primary_round = CollaborationRound(
                    round_number=round_number,
                    responses=[responses[primary.slug]] if primary.slug in responses else [],
                )
                review_context = format_round(primary_round) if primary_round.responses else ""
                await self._run_round(
                    round_number, reviewers, review_context, bool(review_context),
                    round_data, responses,
                )
            else:
                await self._run_round(
                    round_number, participants, transcript, round_number > 1,
                    round_data, responses,
                )

            round_data.responses = [
                responses[e.slug] for e in participants if e.slug in responses
            ]
            self.rounds.append(round_data)
            await self.store.append_round(self.session_id, round_data.to_dict())
            await self.emit("round_complete", {
                "round": round_number,
                "responses": len(round_data.responses),
                "excluded": round_data.excluded,
            })
            logger.info(
                "Round %d complete: %d responses, %d excluded (session %d)",
                round_number, len(round_data.responses), len(round_data.excluded), self.session_id,
            )

            if len(self.active) < settings.min_experts:
                raise SessionFailure(
                    f"Only {len(self.active)} viable expert(s) remain",
                    details={"excluded": list(self.excluded), "round": round_number},
                )

            if round_number > 1 and round_number < total and not any(
                r.revised for r in round_data.responses
            ):
                await self.emit("status", {
                    "status": "early_stop",
                    "message": f"No expert revised in round {round_number}; deliberation complete",
                })
                logger.info("Early stop after round %d: no revisions", round_number)
                break

    # --- Session lifecycle ----------------------------------------------

    async def run(self) -> CollaborationResult:
        start = time.monotonic()
        self.session_id = await self.store.create_session(
            self.caller_id,
            self.config.query,
            self.config.mode,
            [e.slug for e in self.experts],
            self.config.max_rounds,
        )
        try:
            await self.store.set_session_status(self.session_id, SessionStatus.DELIBERATING)
            await self.deliberate()

            await self.emit("status", {
                "status": "synthesizing", "message": "Synthesizing consensus from all experts...",
            })
            consensus = await synthesize_consensus(
                query=self.config.query,
                transcript="\n\n".join(format_round(r) for r in self.rounds),
                final_responses=[e.last_response for e in self.active if e.last_response],
                all_responses=[
                    r for rnd in self.rounds for r in rnd.responses
                    if r.plugin_slug not in self.excluded
                ],
                exclusions=self.exclusions,
                total_experts=len(self.experts),
                llm=self.llm,
                retriever=self.retriever,
            )
        except asyncio.CancelledError:
            logger.info("Collaboration session %d cancelled; discarding record", self.session_id)
            await self.store.discard_session(self.session_id)
            raise
        except Exception as exc:
            await self.store.finalize_session(
                self.session_id,
                SessionStatus.ERROR,
                error=str(exc),
                latency_ms=int((time.monotonic() - start) * 1000),
            )
            raise

        latency_ms = int((time.monotonic() - start) * 1000)
        await self.store.finalize_session(
            self.session_id, SessionStatus.COMPLETE,
            consensus=consensus.to_dict(), latency_ms=latency_ms,
        )

        warning = None
        if self.excluded:
            warning = PartialCollaborationFailure(
                f"{len(self.excluded)} expert(s) excluded; session completed without them",
                details={"excluded": list(self.excluded)},
            ).to_dict()
            await self.emit("warning", warning)

        logger.info(
            "Collaboration %d complete: mode=%s, rounds=%d, agreement=%.2f, latency=%dms",
            self.session_id, self.config.mode, len(self.rounds),
            consensus.agreement_level, latency_ms,
        )
        return CollaborationResult(
            session_id=self.session_id,
            rounds=self.rounds,
            consensus=consensus,
            status=SessionStatus.COMPLETE.value,
            excluded_experts=list(self.excluded),
            latency_ms=latency_ms,
            warning=warning,
        )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def _prepare_session(
    config: CollaborationConfig | dict,
    caller_id: str | None,
    store: PluginStore | None,
) -> tuple[CollaborationConfig, list[PluginProfile], PluginStore]:
    if isinstance(config, dict):
        config = CollaborationConfig(
            expert_slugs=list(config.get("expert_slugs") or []),
            query=config.get("query", ""),
            mode=config.get("mode", "debate"),
            max_rounds=config.get("max_rounds", settings.max_collaboration_rounds),
        )
    config = config.validated()
    store = store or get_plugin_store()
    plugins = [await resolve_plugin(store, slug, caller_id) for slug in config.expert_slugs]
    return config, plugins, store


async def run_collaboration(
    config: CollaborationConfig | dict,
    caller_id: str | None = None,
    *,
    store: PluginStore | None = None,
    retriever: Retriever | None = None,
    llm: LLMProvider | None = None,
) -> CollaborationResult:
    """
    Run a collaboration session to completion.

    Raises:
        ValidationError / AccessDenied: Before any work.
        SessionFailure: Fewer than 2 viable experts remained.
        GenerationError: The moderator failed after retry.
    """
    config, plugins, store = await _prepare_session(config, caller_id, store)
    session = _Session(
        config, plugins, caller_id, store,
        retriever or Retriever(), llm or get_llm_provider(),
    )
    return await session.run()


async def stream_collaboration(
    config: CollaborationConfig | dict,
    caller_id: str | None = None,
    *,
    store: PluginStore | None = None,
    retriever: Retriever | None = None,
    llm: LLMProvider | None = None,
) -> AsyncIterator[StreamEvent]:
    """Streaming variant of run_collaboration; validation and access raise here."""
    config, plugins, store = await _prepare_session(config, caller_id, store)
    retriever = retriever or Retriever()
    llm = llm or get_llm_provider()

    async def producer(stream: EventStream) -> None:
        await stream.emit("experts_resolved", {
            "experts": [
                {"slug": p.slug, "name": p.name, "domain": p.domain} for p in plugins
            ],
            "mode": config.mode,
            "max_rounds": config.effective_rounds,
        })
        session = _Session(config, plugins, caller_id, store, retriever, llm, stream)
        result = await session.run()
        await stream.emit("done", result.to_dict())

    return open_stream(producer)
