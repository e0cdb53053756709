# =============================================================================
# Unit Tests — Review Pipeline
# =============================================================================
#
# Segmentation, annotation parsing, ordering and the review summary, run
# against in-memory collaborators with a scripted model.
# =============================================================================

import asyncio
import json
import re

import pytest
from fakes import ScriptedLLM, StallingLLM, make_plugin

from plugin_engine.agents.review import (
    build_annotation,
    dedupe_sources,
    parse_annotations,
    run_review,
    segment_document,
    stream_review,
    summarize,
)
from plugin_engine.agents.streaming import collect
from plugin_engine.config import settings
from plugin_engine.errors import GenerationError, ValidationError
from plugin_engine.services.vectorstore import RetrievedChunk

DOCUMENT = (
    "# Scope\n"
    "This note covers beam design.\n"
    "\n"
    "Beam cover is 25 mm in severe exposure.\n"
    "\n"
    "Fire rating is not stated."
)

FINDINGS = [
    {
        "segmentIndex": 1,
        "originalText": "Beam cover is 25 mm",
        "severity": "error",
        "category": "non-compliance",
        "issue": "Cover below the 50 mm minimum",
        "suggestedFix": "Use 50 mm cover",
        "citations": ["[Source 1]"],
    },
    {
        "segmentIndex": 0,
        "severity": "pass",
        "category": "best-practice",
        "issue": "No issues found",
        "citations": [],
    },
    {
        "segmentIndex": 2,
        "severity": "warning",
        "category": "omission",
        "issue": "Fire rating missing",
        "citations": [],
    },
]


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _pass_for_each_segment(messages, system):
    """Responder: one pass annotation per segment named in the prompt."""
    indices = re.findall(r"--- Segment (\d+) ", messages[-1]["content"])
    return json.dumps([
        {"segmentIndex": int(i), "severity": "pass", "category": "best-practice",
         "issue": "No issues found", "citations": []}
        for i in indices
    ])


@pytest.fixture
def knowledge(vector_store):
    vector_store.add_text(1, 10, "is456.pdf", [
        "Minimum concrete cover for a beam in severe exposure is 50 mm.",
        "Steel members need a fire rating from insulation.",
    ])
    return vector_store


def _review(plugin_store, retriever, llm, document=DOCUMENT, title="Beam note", **kwargs):
    return _run(run_review(
        "structural-codes", document, title,
        store=plugin_store, retriever=retriever, llm=llm, **kwargs,
    ))


# ---------------------------------------------------------------------------
# Test: Segmentation
# ---------------------------------------------------------------------------


class TestSegmentDocument:
    def test_blank_lines_split_segments_with_line_ranges(self):
        segments = segment_document(DOCUMENT)

        assert [(s.start_line, s.end_line) for s in segments] == [(1, 2), (4, 4), (6, 6)]
        assert [s.index for s in segments] == [0, 1, 2]
        assert segments[0].section_title == "Scope"
        assert segments[1].section_title is None

    def test_consecutive_blank_lines_produce_no_empty_segments(self):
        segments = segment_document("a\nb\n\n\n\nc")
        assert [s.content for s in segments] == ["a\nb", "c"]
        assert segments[1].start_line == 6

    def test_long_runs_split_at_char_limit(self):
        segments = segment_document("aaaaaaaaaa\nbbbbbbbbbb\ncccccccccc", max_chars=20)
        assert [s.content for s in segments] == ["aaaaaaaaaa", "bbbbbbbbbb", "cccccccccc"]
        assert [s.start_line for s in segments] == [1, 2, 3]

    def test_all_caps_line_is_section_title(self):
        segments = segment_document("DURABILITY\nCover rules apply.")
        assert segments[0].section_title == "DURABILITY"


# ---------------------------------------------------------------------------
# Test: Parsing & Annotation Building
# ---------------------------------------------------------------------------


class TestParseAnnotations:
    def test_plain_array(self):
        assert parse_annotations('[{"issue": "x"}]') == [{"issue": "x"}]

    def test_fenced_array(self):
        text = 'Here you go:\n```json\n[{"issue": "x"}]\n```\nThanks.'
        assert parse_annotations(text) == [{"issue": "x"}]

    def test_prose_around_array_and_non_objects_dropped(self):
        assert parse_annotations('Result: [{"a": 1}, 2, "b"] done') == [{"a": 1}]

    def test_unrecoverable_output_is_none(self):
        assert parse_annotations("I could not review this.") is None
        assert parse_annotations('{"issue": "not an array"}') is None


class TestBuildAnnotation:
    def _batch(self):
        return segment_document(DOCUMENT)

    def test_unknown_values_fall_back(self):
        annotation = build_annotation(
            {"segmentIndex": 42, "severity": "fatal", "category": "style", "issue": "Odd"},
            self._batch(), [],
        )
        assert annotation.segment_index == 0
        assert annotation.severity == "info"
        assert annotation.category == "best-practice"
        assert annotation.original_text.startswith("# Scope")
        assert annotation.confidence == "low"

    def test_citation_refs_resolve(self):
        source = RetrievedChunk(
            chunk_id=5, document_id=1, document_name="is456.pdf",
            content="Cover is 50 mm.", chunk_index=0, similarity=0.9,
        )
        annotation = build_annotation(FINDINGS[0], self._batch(), [source])
        assert annotation.start_line == 4
        assert [c["id"] for c in annotation.citations] == ["src_1"]
        assert annotation.suggested_fix == "Use 50 mm cover"

    def test_dedupe_keeps_best_similarity_per_chunk(self):
        def chunk(chunk_id, similarity):
            return RetrievedChunk(
                chunk_id=chunk_id, document_id=1, document_name="d.pdf",
                content="c", chunk_index=chunk_id, similarity=similarity,
            )

        deduped = dedupe_sources([chunk(1, 0.5), chunk(2, 0.7), chunk(1, 0.9)])
        assert [(c.chunk_id, c.similarity) for c in deduped] == [(1, 0.9), (2, 0.7)]


class TestSummarize:
    def test_compliance_levels(self):
        batch = segment_document(DOCUMENT)
        error, passed, warning = (build_annotation(f, batch, []) for f in FINDINGS)

        assert summarize([error, warning, passed]).overall_compliance == "non-compliant"
        assert summarize([warning, passed]).overall_compliance == "partially-compliant"
        assert summarize([passed]).overall_compliance == "compliant"
        assert summarize([]).overall_compliance == "compliant"

    def test_top_issues_are_errors_and_warnings(self):
        batch = segment_document(DOCUMENT)
        summary = summarize([build_annotation(f, batch, []) for f in FINDINGS])
        assert summary.top_issues == ["Cover below the 50 mm minimum", "Fire rating missing"]
        assert (summary.error_count, summary.warning_count, summary.pass_count) == (1, 1, 1)


# ---------------------------------------------------------------------------
# Test: Pipeline
# ---------------------------------------------------------------------------


class TestRunReview:
    def test_annotations_ordered_and_numbered(self, plugin_store, retriever, knowledge):
        plugin_store.add_plugin(make_plugin())
        llm = ScriptedLLM([json.dumps(FINDINGS)])

        result = _review(plugin_store, retriever, llm)

        assert result.total_segments == 3
        assert [a.segment_index for a in result.annotations] == [0, 1, 2]
        assert [a.id for a in result.annotations] == ["ann_0", "ann_1", "ann_2"]
        assert result.annotations[1].citations[0]["document"] == "is456.pdf"
        assert result.summary.overall_compliance == "non-compliant"
        assert result.confidence == "medium"
        assert result.plugin_version == "2.1.0"
        assert len(llm.calls) == 1

    def test_batches_respect_batch_size(self, plugin_store, retriever, knowledge, monkeypatch):
        monkeypatch.setattr(settings, "review_batch_size", 2)
        plugin_store.add_plugin(make_plugin())
        llm = ScriptedLLM(responder=_pass_for_each_segment)

        result = _review(plugin_store, retriever, llm)

        assert len(llm.calls) == 2
        assert [a.id for a in result.annotations] == ["ann_0", "ann_1", "ann_2"]
        assert [a.segment_index for a in result.annotations] == [0, 1, 2]
        assert result.summary.pass_count == 3

    def test_unparseable_output_becomes_info_annotations(self, plugin_store, retriever, knowledge):
        plugin_store.add_plugin(make_plugin())
        llm = ScriptedLLM(["Sorry, I could not review this."])

        result = _review(plugin_store, retriever, llm)

        assert len(result.annotations) == 3
        assert {a.severity for a in result.annotations} == {"info"}
        assert all(a.confidence == "low" for a in result.annotations)
        assert result.summary.overall_compliance == "compliant"

    def test_decision_guidelines_reach_prompt(self, plugin_store, retriever, knowledge):
        tree = {
            "rootNodeId": "q",
            "nodes": {
                "q": {
                    "type": "question",
                    "label": "Exposure",
                    "question": {"options": ["severe"]},
                    "childrenByAnswer": {"severe": "a"},
                },
                "a": {"type": "action", "label": "Check cover", "action": {"recommendation": "50 mm"}},
            },
        }
        plugin_store.add_plugin(make_plugin(), tree=tree)
        llm = ScriptedLLM(responder=_pass_for_each_segment)

        _review(plugin_store, retriever, llm)

        prompt = llm.calls[0]["messages"][-1]["content"]
        assert "Decision Tree Guidelines (Segment 1):" in prompt
        assert "- Check cover: 50 mm" in prompt

    def test_success_writes_review_log(self, plugin_store, retriever, knowledge):
        plugin_store.add_plugin(make_plugin())
        _review(plugin_store, retriever, ScriptedLLM([json.dumps(FINDINGS)]), caller_id="c-1")

        entry = plugin_store.review_logs[-1]
        assert entry["status"] == "ok"
        assert entry["caller_id"] == "c-1"
        assert entry["summary"]["overall_compliance"] == "non-compliant"

    def test_batch_failure_fails_review(self, plugin_store, retriever, knowledge):
        plugin_store.add_plugin(make_plugin())
        llm = ScriptedLLM([RuntimeError("provider down"), RuntimeError("provider down")])

        with pytest.raises(GenerationError):
            _review(plugin_store, retriever, llm)

        assert plugin_store.review_logs[-1]["status"] == "error"

    @pytest.mark.parametrize("document,title", [
        ("", "Title"),
        ("   \n", "Title"),
        ("Some text", "  "),
        ("Some text", "t" * 501),
        ("x" * 100001, "Title"),
    ])
    def test_invalid_input_rejected(self, plugin_store, retriever, document, title):
        plugin_store.add_plugin(make_plugin())
        llm = ScriptedLLM([])

        with pytest.raises(ValidationError):
            _review(plugin_store, retriever, llm, document=document, title=title)

        assert llm.calls == []
        assert plugin_store.review_logs == []

    @pytest.mark.parametrize("options", [
        {"top_k": 0},
        {"top_k": -1},
        {"threshold": 1.0},
        {"threshold": -0.1},
        {"top_k": -1, "threshold": 7.0},
    ])
    def test_invalid_options_rejected(self, plugin_store, retriever, knowledge, options):
        plugin_store.add_plugin(make_plugin())
        llm = ScriptedLLM([json.dumps(FINDINGS)])

        with pytest.raises(ValidationError):
            _review(plugin_store, retriever, llm, options=options)

        assert llm.calls == []
        assert plugin_store.review_logs == []

    def test_invalid_options_rejected_before_stream_opens(self, plugin_store, retriever):
        plugin_store.add_plugin(make_plugin())

        with pytest.raises(ValidationError):
            _run(stream_review(
                "structural-codes", DOCUMENT, "Beam note", options={"top_k": 0},
                store=plugin_store, retriever=retriever, llm=ScriptedLLM([]),
            ))


class TestStreamReview:
    def test_annotation_events_then_numbered_done(self, plugin_store, retriever, knowledge):
        plugin_store.add_plugin(make_plugin())
        llm = ScriptedLLM([json.dumps(FINDINGS)])

        async def scenario():
            events = await stream_review(
                "structural-codes", DOCUMENT, "Beam note",
                store=plugin_store, retriever=retriever, llm=llm,
            )
            return await collect(events)

        events = _run(scenario())
        kinds = [e.kind for e in events]

        assert kinds.count("annotation") == 3
        assert kinds.count("batch_complete") == 1
        assert kinds[-1] == "done"
        assert all(
            e.payload["annotation"]["id"] is None for e in events if e.kind == "annotation"
        )
        done = events[-1].payload
        assert [a["id"] for a in done["annotations"]] == ["ann_0", "ann_1", "ann_2"]
        assert done["summary"]["overall_compliance"] == "non-compliant"

    def test_disconnect_cancels_batches_and_writes_no_log(
        self, plugin_store, retriever, knowledge,
    ):
        plugin_store.add_plugin(make_plugin())
        llm = StallingLLM()

        async def scenario():
            events = await stream_review(
                "structural-codes", DOCUMENT, "Beam note",
                store=plugin_store, retriever=retriever, llm=llm,
            )
            async for event in events:
                if event.kind == "status" and event.payload["status"] == "reviewing":
                    break
            await llm.started.wait()
            await events.aclose()

        _run(scenario())

        assert llm.cancelled is True
        assert plugin_store.review_logs == []
