# =============================================================================
# Unit Tests — Collaboration Orchestrator
# =============================================================================
#
# Multi-expert sessions against scripted experts: round bounds, early stop,
# the per-expert fault policy, session records and the streaming variant.
# =============================================================================

import asyncio
import json
import re

import pytest
from fakes import ScriptedLLM, SlowLLM, make_plugin

from plugin_engine.agents.collaboration import (
    CollaborationConfig,
    parse_position,
    run_collaboration,
    stream_collaboration,
)
from plugin_engine.agents.consensus import MODERATOR_PROMPT
from plugin_engine.config import settings
from plugin_engine.errors import AccessDenied, SessionFailure, ValidationError

COVER = "Use 50 mm concrete cover for the beam."
FIRE = "Protect the steel with insulation for the fire rating."

MODERATOR_REPLY = json.dumps({
    "answer": "Experts agree: 50 mm concrete cover.",
    "expertContributions": [],
})


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _responder(answers: dict[str, str], revise: set[str] = frozenset()):
    """Answer as the expert named in the system prompt."""

    def respond(messages, system):
        if system == MODERATOR_PROMPT:
            return MODERATOR_REPLY
        name = re.search(r"Your name/role: (.+)", system).group(1).strip()
        answer = answers[name]
        if "POSITION: UNCHANGED" in messages[-1]["content"]:
            marker = "POSITION: REVISED — adjusted" if name in revise else "POSITION: UNCHANGED"
            return f"{marker}\n{answer}"
        return answer

    return respond


@pytest.fixture
def experts(plugin_store):
    plugin_store.add_plugin(make_plugin(1, "structural", "Structural"))
    plugin_store.add_plugin(make_plugin(2, "durability", "Durability"))
    plugin_store.add_plugin(make_plugin(3, "fire", "Fire Safety"))
    return plugin_store


def _collaborate(plugin_store, retriever, llm, slugs=("structural", "durability", "fire"), **config):
    return _run(run_collaboration(
        CollaborationConfig(expert_slugs=list(slugs), query="What cover does the beam need?", **config),
        store=plugin_store, retriever=retriever, llm=llm,
    ))


# ---------------------------------------------------------------------------
# Test: Configuration
# ---------------------------------------------------------------------------


class TestCollaborationConfig:
    @pytest.mark.parametrize("slugs", [["a"], ["a", "b", "c", "d", "e", "f"], ["a", "a"], ["a", " "]])
    def test_bad_expert_lists_rejected(self, slugs):
        with pytest.raises(ValidationError):
            CollaborationConfig(expert_slugs=slugs, query="q").validated()

    def test_unknown_mode_rejected(self):
        with pytest.raises(ValidationError):
            CollaborationConfig(expert_slugs=["a", "b"], query="q", mode="vote").validated()

    def test_empty_query_rejected(self):
        with pytest.raises(ValidationError):
            CollaborationConfig(expert_slugs=["a", "b"], query="  ").validated()

    def test_rounds_are_clamped(self):
        config = CollaborationConfig(expert_slugs=["a", "b"], query="q", max_rounds=10).validated()
        assert config.max_rounds == settings.max_collaboration_rounds
        config = CollaborationConfig(expert_slugs=["a", "b"], query="q", max_rounds=0).validated()
        assert config.max_rounds == 1

    def test_only_consensus_is_single_round(self):
        assert CollaborationConfig(["a", "b"], "q", "debate", 3).effective_rounds == 3
        assert CollaborationConfig(["a", "b"], "q", "consensus", 3).effective_rounds == 1
        assert CollaborationConfig(["a", "b"], "q", "review", 3).effective_rounds == 3


class TestParsePosition:
    def test_markers(self):
        assert parse_position("POSITION: UNCHANGED\nBody") == (False, None, "Body")
        assert parse_position("**POSITION: REVISED** — moved to 50 mm\nBody") == (
            True, "moved to 50 mm", "Body",
        )
        assert parse_position("No marker here") == (None, None, "No marker here")


# ---------------------------------------------------------------------------
# Test: Sessions
# ---------------------------------------------------------------------------


class TestRunCollaboration:
    def test_identical_answers_reach_full_agreement(self, experts, retriever):
        llm = ScriptedLLM(responder=_responder({
            "Structural": COVER, "Durability": COVER, "Fire Safety": COVER,
        }))

        result = _collaborate(experts, retriever, llm)

        assert result.status == "complete"
        assert result.consensus.agreement_level == 1.0
        assert result.consensus.conflicts == []
        assert result.consensus.answer == "Experts agree: 50 mm concrete cover."
        assert result.warning is None
        # No expert revised in round 2, so round 3 never runs
        assert len(result.rounds) == 2
        assert all(r.confidence == "medium" for r in result.rounds[0].responses)

    def test_rounds_never_exceed_max(self, experts, retriever):
        llm = ScriptedLLM(responder=_responder(
            {"Structural": COVER, "Durability": COVER, "Fire Safety": FIRE},
            revise={"Fire Safety"},
        ))

        result = _collaborate(experts, retriever, llm, max_rounds=2)

        assert len(result.rounds) == 2
        assert result.rounds[1].responses[2].revised is True
        assert result.rounds[1].responses[2].revision_note == "adjusted"

    def test_revisions_continue_to_last_round(self, experts, retriever):
        llm = ScriptedLLM(responder=_responder(
            {"Structural": COVER, "Durability": COVER, "Fire Safety": FIRE},
            revise={"Fire Safety"},
        ))

        result = _collaborate(experts, retriever, llm, max_rounds=3)

        assert [r.round_number for r in result.rounds] == [1, 2, 3]
        conflict = result.consensus.conflicts[0]
        assert conflict.resolved is True
        assert result.consensus.agreement_level == 0.6667

    def test_responses_listed_in_expert_order(self, experts, retriever):
        llm = ScriptedLLM(responder=_responder({
            "Structural": COVER, "Durability": COVER, "Fire Safety": FIRE,
        }))

        result = _collaborate(experts, retriever, llm, mode="consensus")

        assert len(result.rounds) == 1
        assert [r.plugin_slug for r in result.rounds[0].responses] == [
            "structural", "durability", "fire",
        ]

    def test_review_mode_reviewers_see_primary_answer(self, experts, retriever):
        llm = ScriptedLLM(responder=_responder({
            "Structural": COVER, "Durability": COVER, "Fire Safety": FIRE,
        }))

        result = _collaborate(experts, retriever, llm, mode="review")

        # Nobody revised in round 2, so round 3 never runs
        assert len(result.rounds) == 2
        expert_calls = [c for c in llm.calls if c["system"] != MODERATOR_PROMPT]
        primary_prompt = expert_calls[0]["messages"][-1]["content"]
        assert "Round 1 Responses" not in primary_prompt
        for call in expert_calls[1:3]:
            prompt = call["messages"][-1]["content"]
            assert "--- Round 1 Responses ---" in prompt
            assert COVER in prompt

    def test_review_mode_deliberates_after_first_round(self, experts, retriever):
        llm = ScriptedLLM(responder=_responder(
            {"Structural": COVER, "Durability": COVER, "Fire Safety": FIRE},
            revise={"Fire Safety"},
        ))

        result = _collaborate(experts, retriever, llm, mode="review", max_rounds=3)

        assert [r.round_number for r in result.rounds] == [1, 2, 3]
        assert [r.plugin_slug for r in result.rounds[1].responses] == [
            "structural", "durability", "fire",
        ]
        assert result.rounds[1].responses[2].revised is True
        assert result.rounds[1].responses[0].revised is False

        expert_calls = [c for c in llm.calls if c["system"] != MODERATOR_PROMPT]
        for call in expert_calls[3:6]:
            prompt = call["messages"][-1]["content"]
            assert "--- Round 1 Responses ---" in prompt
            assert "POSITION: UNCHANGED" in prompt

    def test_session_record_follows_state_machine(self, experts, retriever):
        llm = ScriptedLLM(responder=_responder({
            "Structural": COVER, "Durability": COVER, "Fire Safety": COVER,
        }))

        result = _collaborate(experts, retriever, llm)

        record = experts.sessions[result.session_id]
        assert record["statuses"] == ["pending", "deliberating", "complete"]
        assert len(record["rounds"]) == len(result.rounds)
        assert record["consensus"]["agreement_level"] == 1.0

    def test_unknown_expert_denied_before_session(self, experts, retriever):
        with pytest.raises(AccessDenied):
            _collaborate(experts, retriever, ScriptedLLM([]), slugs=("structural", "missing"))
        assert experts.sessions == {}


class TestExpertFaults:
    @pytest.fixture(autouse=True)
    def short_timeout(self, monkeypatch):
        monkeypatch.setattr(settings, "expert_timeout_seconds", 0.05)
        monkeypatch.setattr(settings, "external_call_attempts", 2)

    def test_timed_out_expert_is_excluded_and_session_completes(self, experts, retriever):
        llm = SlowLLM(
            _responder({"Structural": COVER, "Durability": COVER, "Fire Safety": FIRE}),
            slow={"Fire Safety"},
        )

        result = _collaborate(experts, retriever, llm, mode="consensus")

        assert result.status == "complete"
        assert result.excluded_experts == ["fire"]
        assert result.rounds[0].excluded == ["fire"]
        assert [r.plugin_slug for r in result.rounds[0].responses] == ["structural", "durability"]

        topics = [c.topic for c in result.consensus.conflicts]
        assert "Expert excluded: fire" in topics
        assert result.consensus.agreement_level == 0.6667
        assert result.warning["code"] == "partial_collaboration_failure"

    def test_excluded_expert_skipped_in_later_rounds(self, experts, retriever):
        llm = SlowLLM(
            _responder(
                {"Structural": COVER, "Durability": FIRE, "Fire Safety": FIRE},
                revise={"Durability"},
            ),
            slow={"Fire Safety"},
        )

        result = _collaborate(experts, retriever, llm, max_rounds=2)

        assert len(result.rounds) == 2
        assert [r.plugin_slug for r in result.rounds[1].responses] == ["structural", "durability"]
        assert result.rounds[1].excluded == []

    def test_too_few_viable_experts_fails_session(self, experts, retriever):
        llm = SlowLLM(
            _responder({"Structural": COVER, "Fire Safety": FIRE}),
            slow={"Fire Safety"},
        )

        with pytest.raises(SessionFailure):
            _collaborate(experts, retriever, llm, slugs=("structural", "fire"))

        record = next(iter(experts.sessions.values()))
        assert record["status"] == "error"
        assert record["statuses"][-1] == "error"


# ---------------------------------------------------------------------------
# Test: Streaming Variant
# ---------------------------------------------------------------------------


class TestStreamCollaboration:
    def _config(self, mode="consensus"):
        return CollaborationConfig(
            expert_slugs=["structural", "durability", "fire"],
            query="What cover does the beam need?",
            mode=mode,
        )

    def test_event_sequence(self, experts, retriever):
        llm = ScriptedLLM(responder=_responder({
            "Structural": COVER, "Durability": COVER, "Fire Safety": COVER,
        }))

        async def scenario():
            events = await stream_collaboration(
                self._config(), store=experts, retriever=retriever, llm=llm,
            )
            return [e async for e in events]

        events = _run(scenario())
        kinds = [e.kind for e in events]

        assert kinds[0] == "experts_resolved"
        assert kinds[1] == "round_start"
        assert kinds.count("expert_response") == 3
        assert kinds.index("round_complete") > kinds.index("expert_response")
        assert kinds[-1] == "done"
        assert events[-1].payload["consensus"]["agreement_level"] == 1.0

    def test_excluded_expert_emits_exclusion_and_warning(self, experts, retriever, monkeypatch):
        monkeypatch.setattr(settings, "expert_timeout_seconds", 0.05)
        llm = SlowLLM(
            _responder({"Structural": COVER, "Durability": COVER, "Fire Safety": FIRE}),
            slow={"Fire Safety"},
        )

        async def scenario():
            events = await stream_collaboration(
                self._config(), store=experts, retriever=retriever, llm=llm,
            )
            return [e async for e in events]

        events = _run(scenario())
        kinds = [e.kind for e in events]

        excluded = [e for e in events if e.kind == "expert_excluded"]
        assert [e.payload["expert"] for e in excluded] == ["fire"]
        assert kinds.index("warning") < kinds.index("done")
        assert kinds[-1] == "done"

    def test_disconnect_discards_session_record(self, experts, retriever):
        llm = SlowLLM(
            _responder({"Structural": COVER, "Durability": COVER, "Fire Safety": COVER}),
            slow={"Structural", "Durability", "Fire Safety"},
            delay=30.0,
        )

        async def scenario():
            events = await stream_collaboration(
                self._config(), store=experts, retriever=retriever, llm=llm,
            )
            async for event in events:
                if event.kind == "round_start":
                    break
            await events.aclose()

        _run(scenario())

        assert experts.sessions == {}
        assert experts.discarded == [1]
