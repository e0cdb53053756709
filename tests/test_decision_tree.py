# =============================================================================
# Unit Tests — Decision Tree Evaluator
# =============================================================================
#
# Tests node parsing, question/condition transitions, the audit path and the
# visit guard that bounds evaluation of cyclic graphs.
# =============================================================================

import pytest

from plugin_engine.agents.decision_tree import (
    DecisionTree,
    QuestionMatchPolicy,
    evaluate_for_plugin,
    evaluate_tree,
    extract_params,
    format_decision_context,
)
from plugin_engine.errors import TreeEvaluationError


def _cover_tree() -> dict:
    """Exposure question → grade condition → cover recommendation."""
    return {
        "id": 3,
        "rootNodeId": "exposure",
        "nodes": {
            "exposure": {
                "type": "question",
                "label": "Exposure class",
                "question": {
                    "text": "What is the exposure class?",
                    "options": ["mild", "moderate", "severe"],
                    "extractFrom": "exposure",
                },
                "childrenByAnswer": {
                    "Mild": "cover_20",
                    "moderate": "grade",
                    "severe": "grade",
                },
            },
            "grade": {
                "type": "condition",
                "label": "Concrete grade above M30",
                "condition": {"field": "grade", "operator": "gt", "value": 30},
                "trueChildId": "cover_40",
                "falseChildId": "cover_50",
            },
            "cover_20": {
                "type": "action",
                "label": "Cover 20mm",
                "action": {"recommendation": "Use 20 mm nominal cover", "severity": "info"},
            },
            "cover_40": {
                "type": "action",
                "label": "Cover 40mm",
                "action": {
                    "recommendation": "Use 40 mm nominal cover",
                    "sourceHint": "Table 16",
                    "severity": "warning",
                },
            },
            "cover_50": {
                "type": "action",
                "label": "Cover 50mm",
                "action": {"recommendation": "Use 50 mm nominal cover", "severity": "critical"},
            },
        },
    }


class TestExtractParams:
    def test_default_patterns(self):
        params = extract_params("Beam in severe exposure, grade M35, wind load")
        assert params["member_type"] == "Beam"
        assert params["exposure"] == "severe"
        assert params["grade"] == "35"
        assert params["load_type"] == "wind load"

    def test_custom_patterns_replace_defaults(self):
        params = extract_params("Occupancy: assembly", {"occupancy": r"occupancy:\s*(\w+)"})
        assert params == {"occupancy": "assembly"}

    def test_invalid_pattern_raises(self):
        with pytest.raises(TreeEvaluationError):
            extract_params("text", {"bad": "("})


class TestTreeParsing:
    def test_unknown_root_raises(self):
        data = _cover_tree()
        data["rootNodeId"] = "missing"
        with pytest.raises(TreeEvaluationError, match="Root node"):
            DecisionTree.from_dict(data)

    def test_unknown_node_type_raises(self):
        data = _cover_tree()
        data["nodes"]["grade"]["type"] = "loop"
        with pytest.raises(TreeEvaluationError, match="unknown type"):
            DecisionTree.from_dict(data)

    def test_unknown_operator_raises(self):
        data = _cover_tree()
        data["nodes"]["grade"]["condition"]["operator"] = "between"
        with pytest.raises(TreeEvaluationError, match="unknown operator"):
            DecisionTree.from_dict(data)

    def test_duplicate_answer_keys_after_normalisation_raise(self):
        data = _cover_tree()
        data["nodes"]["exposure"]["childrenByAnswer"]["MILD "] = "cover_40"
        with pytest.raises(TreeEvaluationError, match="duplicate answer key"):
            DecisionTree.from_dict(data)

    def test_node_list_form_is_accepted(self):
        data = _cover_tree()
        data["nodes"] = [{"id": k, **v} for k, v in data["nodes"].items()]
        tree = DecisionTree.from_dict(data)
        assert set(tree.nodes) == {"exposure", "grade", "cover_20", "cover_40", "cover_50"}


class TestEvaluateTree:
    def test_reaches_terminal_through_question_and_condition(self):
        tree = DecisionTree.from_dict(_cover_tree())
        result = evaluate_tree(tree, "Beam in severe exposure with M35 concrete")

        assert result.terminal_reached is True
        assert result.recommendation == {
            "recommendation": "Use 40 mm nominal cover",
            "source_hint": "Table 16",
            "severity": "warning",
        }
        assert [s.node for s in result.path] == ["exposure", "grade", "cover_40"]
        assert [s.step for s in result.path] == [1, 2, 3]
        assert result.path[1].value == "35"
        assert result.path[1].result == "true"

    def test_answer_keys_are_case_insensitive(self):
        tree = DecisionTree.from_dict(_cover_tree())
        result = evaluate_tree(tree, "Slab in mild exposure")
        assert result.path[-1].node == "cover_20"

    def test_missing_condition_input_takes_false_branch(self):
        tree = DecisionTree.from_dict(_cover_tree())
        result = evaluate_tree(tree, "Column in moderate exposure")
        assert result.path[1].result == "false"
        assert result.path[-1].node == "cover_50"

    def test_unmatched_question_halts_without_terminal(self):
        tree = DecisionTree.from_dict(_cover_tree())
        result = evaluate_tree(tree, "What about the foundation?")

        assert result.terminal_reached is False
        assert result.recommendation is None
        assert len(result.path) == 1
        assert result.path[0].result == "no match"

    def test_default_child_taken_when_nothing_matches(self):
        data = _cover_tree()
        data["nodes"]["exposure"]["defaultChildId"] = "cover_50"
        result = evaluate_tree(DecisionTree.from_dict(data), "What about the foundation?")
        assert result.terminal_reached is True
        assert result.path[0].result == "default"

    def test_keyword_scan_can_be_disabled(self):
        tree = DecisionTree.from_dict(_cover_tree())
        result = evaluate_tree(
            tree, "severe", params={}, policy=QuestionMatchPolicy(keyword_scan=False),
        )
        assert result.terminal_reached is False

    def test_non_numeric_comparison_raises(self):
        data = _cover_tree()
        data["nodes"]["grade"]["condition"]["value"] = "thirty"
        with pytest.raises(TreeEvaluationError, match="numeric"):
            evaluate_tree(DecisionTree.from_dict(data), "severe exposure M35")

    def test_transition_to_unknown_node_raises(self):
        data = _cover_tree()
        data["nodes"]["grade"]["trueChildId"] = "nowhere"
        with pytest.raises(TreeEvaluationError, match="unknown node"):
            evaluate_tree(DecisionTree.from_dict(data), "severe exposure M35")

    def test_operators(self):
        def tree_with(operator, value):
            return DecisionTree.from_dict({
                "rootNodeId": "c",
                "nodes": {
                    "c": {
                        "type": "condition",
                        "condition": {"field": "f", "operator": operator, "value": value},
                        "trueChildId": "yes",
                        "falseChildId": "no",
                    },
                    "yes": {"type": "action", "action": {"recommendation": "yes"}},
                    "no": {"type": "action", "action": {"recommendation": "no"}},
                },
            })

        def outcome(operator, value, param):
            result = evaluate_tree(tree_with(operator, value), "", params={"f": param})
            return result.recommendation["recommendation"]

        assert outcome("eq", "Severe", "severe") == "yes"
        assert outcome("contains", "sev", "very severe") == "yes"
        assert outcome("in", ["mild", "severe"], "Severe") == "yes"
        assert outcome("in", "mild,moderate", "severe") == "no"
        assert outcome("lt", 30, "25") == "yes"
        assert outcome("gt", 30, "25") == "no"


class TestCycleGuard:
    """Any finite graph halts within len(nodes) + 1 steps."""

    def _cyclic(self) -> DecisionTree:
        return DecisionTree.from_dict({
            "rootNodeId": "a",
            "nodes": {
                "a": {
                    "type": "condition",
                    "condition": {"field": "x", "operator": "eq", "value": "1"},
                    "trueChildId": "b",
                    "falseChildId": "b",
                },
                "b": {
                    "type": "question",
                    "question": {"options": ["again"]},
                    "childrenByAnswer": {"again": "a"},
                    "defaultChildId": "a",
                },
                "c": {"type": "action", "action": {"recommendation": "unreachable"}},
            },
        })

    def test_cycle_raises_tree_evaluation_error(self):
        with pytest.raises(TreeEvaluationError) as exc_info:
            evaluate_tree(self._cyclic(), "go again")
        # The path recorded at the trip point is exactly len(nodes) long
        assert len(exc_info.value.details["path"]) == 3

    def test_self_loop_raises(self):
        tree = DecisionTree.from_dict({
            "rootNodeId": "a",
            "nodes": {
                "a": {
                    "type": "condition",
                    "condition": {"field": "x", "operator": "eq", "value": "1"},
                    "trueChildId": "a",
                    "falseChildId": "a",
                },
            },
        })
        with pytest.raises(TreeEvaluationError, match="visited more than 1"):
            evaluate_tree(tree, "")


class TestEvaluateForPlugin:
    def test_plugin_patterns_and_policy_apply(self):
        tree = {
            "rootNodeId": "q",
            "nodes": {
                "q": {
                    "type": "question",
                    "question": {"options": ["assembly", "residential"], "extractFrom": "occupancy"},
                    "childrenByAnswer": {"assembly": "a", "residential": "r"},
                },
                "a": {"type": "action", "action": {"recommendation": "Two exits"}},
                "r": {"type": "action", "action": {"recommendation": "One exit"}},
            },
        }
        config = {
            "extraction_patterns": {"occupancy": r"occupancy\s+(\w+)"},
            "question_match": {"keyword_scan": False},
        }
        result = evaluate_for_plugin(tree, "Occupancy residential, not assembly", config)
        assert result.recommendation["recommendation"] == "One exit"

    def test_format_decision_context(self):
        result = evaluate_for_plugin(_cover_tree(), "severe exposure M35")
        rendered = format_decision_context(result)
        assert rendered.startswith("Decision Tree Analysis:")
        assert "- Cover 40mm: Use 40 mm nominal cover" in rendered

    def test_format_notes_missing_terminal(self):
        result = evaluate_for_plugin(_cover_tree(), "nothing relevant")
        assert "(no terminal recommendation reached)" in format_decision_context(result)

    def test_format_empty_for_none(self):
        assert format_decision_context(None) == ""
