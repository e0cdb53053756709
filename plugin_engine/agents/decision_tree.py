# =============================================================================
# Decision Tree Evaluator — Rule-Graph State Machine
# =============================================================================
#
# Interprets a plugin's decision tree against free-form text (a query or a
# review segment) and returns the terminal recommendation, if any, plus an
# ordered audit path with one step per visited node.
#
# STATE MACHINE:
#   state   = a node id, starting at root_node_id
#   terminal = any "action" node
#   question  → answer matched against options → children_by_answer[key]
#               (no match → default child, else halt: "no terminal reached")
#   condition → field/operator/value on extracted params → true/false child
#
# DESIGN DECISION: The node graph is an id-keyed dict and nodes are a single
# tagged dataclass dispatched with an explicit if/elif per type. No node
# holds a reference to another node, so a malformed graph cannot create
# reference cycles; traversal is by id lookup.
#
# DESIGN DECISION: Visit guard. Evaluation raises TreeEvaluationError on the
# visit after the len(nodes)-th, so any graph (including cyclic ones)
# terminates within len(nodes) + 1 steps.
#
# DESIGN DECISION: Question matching is a configurable keyword match, not an
# NLP matcher (QuestionMatchPolicy, overridable per plugin via
# config["question_match"]):
#   1. the value extracted under the node's `extractFrom` key, if any
#      (regex patterns, overridable via config["extraction_patterns"])
#   2. otherwise, the first declared option that occurs in the text as a
#      whole word/phrase (case-insensitive)
#   3. otherwise the node's default child ("defaultChildId", or a legacy
#      "default" / "__default__" answer key)
#   4. otherwise evaluation halts without a terminal.
# =============================================================================

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from plugin_engine.errors import TreeEvaluationError

logger = logging.getLogger(__name__)

NODE_TYPES = ("question", "condition", "action")
OPERATORS = ("eq", "gt", "lt", "contains", "in")
ACTION_SEVERITIES = ("info", "warning", "critical")
_DEFAULT_ANSWER_KEYS = ("default", "__default__")


# ---------------------------------------------------------------------------
# Parameter Extraction
# ---------------------------------------------------------------------------
# Field name → regex. The first capture group (or the whole match) is the
# extracted value. These defaults cover structural-engineering vocabulary;
# plugins in other domains supply their own via config["extraction_patterns"].
# ---------------------------------------------------------------------------

DEFAULT_EXTRACTION_PATTERNS: dict[str, str] = {
    "load_type": r"(?:dead|live|wind|seismic|impact)\s*load",
    "member_type": r"\b(beam|column|slab|footing|wall|foundation)\b",
    "exposure": r"\b(mild|moderate|severe|very severe|extreme)\b",
    "grade": r"\b[mM]\s*(\d+)\b",
    "diameter": r"(\d+)\s*(?:mm|cm|m)\s*(?:diameter|dia)",
}


def extract_params(text: str, patterns: dict[str, str] | None = None) -> dict[str, str]:
    """Apply field patterns to `text`; fields without a match are omitted."""
    params: dict[str, str] = {}
    for key, pattern in (patterns or DEFAULT_EXTRACTION_PATTERNS).items():
        try:
            match = re.search(pattern, text, re.IGNORECASE)
        except re.error as exc:
            raise TreeEvaluationError(
                f"Invalid extraction pattern for '{key}': {exc}"
            ) from exc
        if match:
            value = match.group(1) if match.groups() and match.group(1) else match.group(0)
            params[key] = value.strip()
    return params


def answer_key(answer: Any) -> str:
    """Normalise an answer label: trimmed, lower-cased."""
    return str(answer).strip().lower()


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class QuestionMatchPolicy:
    keyword_scan: bool = True
    # Only scan for options when the extractFrom keyword itself occurs in the text
    require_keyword: bool = False

    @classmethod
    def from_config(cls, config: dict | None) -> QuestionMatchPolicy:
        raw = (config or {}).get("question_match") or {}
        return cls(
            keyword_scan=bool(raw.get("keyword_scan", True)),
            require_keyword=bool(raw.get("require_keyword", False)),
        )


@dataclass
class DecisionNode:
    """A tree node; which fields are meaningful depends on `type`."""

    id: str
    type: str
    label: str
    # question
    question_text: str = ""
    options: list[str] = field(default_factory=list)
    extract_from: str | None = None
    children_by_answer: dict[str, str] = field(default_factory=dict)
    default_child_id: str | None = None
    # condition
    field_name: str | None = None
    operator: str | None = None
    value: Any = None
    true_child_id: str | None = None
    false_child_id: str | None = None
    # action
    recommendation: str = ""
    source_hint: str | None = None
    severity: str = "info"

    @classmethod
    def from_dict(cls, node_id: str, data: dict) -> DecisionNode:
        node_type = data.get("type")
        if node_type not in NODE_TYPES:
            raise TreeEvaluationError(
                f"Node '{node_id}' has unknown type {node_type!r}",
                details={"node": node_id},
            )
        label = str(data.get("label") or node_id)

        if node_type == "question":
            question = data.get("question") or {}
            children: dict[str, str] = {}
            for raw_key, child_id in (data.get("childrenByAnswer") or {}).items():
                key = answer_key(raw_key)
                if key in children:
                    raise TreeEvaluationError(
                        f"Node '{node_id}' has duplicate answer key {key!r}",
                        details={"node": node_id},
                    )
                children[key] = child_id
            return cls(
                id=node_id,
                type=node_type,
                label=label,
                question_text=str(question.get("text") or ""),
                options=_unique_options(question.get("options") or []),
                extract_from=question.get("extractFrom") or None,
                children_by_answer=children,
                default_child_id=data.get("defaultChildId") or None,
            )

        if node_type == "condition":
            condition = data.get("condition") or {}
            operator = condition.get("operator")
            if operator not in OPERATORS:
                raise TreeEvaluationError(
                    f"Node '{node_id}' has unknown operator {operator!r}",
                    details={"node": node_id},
                )
            return cls(
                id=node_id,
                type=node_type,
                label=label,
                field_name=condition.get("field"),
                operator=operator,
                value=condition.get("value"),
                true_child_id=data.get("trueChildId") or None,
                false_child_id=data.get("falseChildId") or None,
            )

        action = data.get("action") or {}
        severity = action.get("severity", "info")
        return cls(
            id=node_id,
            type=node_type,
            label=label,
            recommendation=str(action.get("recommendation") or ""),
            source_hint=action.get("sourceHint"),
            severity=severity if severity in ACTION_SEVERITIES else "info",
        )


@dataclass
class DecisionTree:
    root_node_id: str
    nodes: dict[str, DecisionNode]
    id: int | str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> DecisionTree:
        """
        Build a tree from its stored JSON shape.

        Raises:
            TreeEvaluationError: Root does not key a node, or a node is malformed.
        """
        raw_nodes = data.get("nodes") or {}
        if isinstance(raw_nodes, list):
            raw_nodes = {str(n.get("id")): n for n in raw_nodes}

        nodes = {
            str(node_id): DecisionNode.from_dict(str(node_id), node_data)
            for node_id, node_data in raw_nodes.items()
        }
        root = data.get("rootNodeId")
        if root not in nodes:
            raise TreeEvaluationError(
                f"Root node {root!r} does not exist in tree",
                details={"tree": data.get("id")},
            )
        return cls(root_node_id=root, nodes=nodes, id=data.get("id"))


@dataclass
class DecisionStep:
    """One visited node in the audit path."""

    step: int
    node: str
    label: str
    value: str | None = None
    result: str | None = None

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "node": self.node,
            "label": self.label,
            "value": self.value,
            "result": self.result,
        }


@dataclass
class DecisionResult:
    path: list[DecisionStep]
    recommendation: dict | None = None  # {recommendation, source_hint, severity}
    terminal_reached: bool = False


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def evaluate_tree(
    tree: DecisionTree,
    text: str,
    params: dict[str, str] | None = None,
    policy: QuestionMatchPolicy | None = None,
) -> DecisionResult:
    """
    Run the state machine from the root.

    Raises:
        TreeEvaluationError: Cycle/depth guard tripped, a child id does not
            key a node, or a numeric comparison got a non-numeric operand.
    """
    params = extract_params(text) if params is None else params
    policy = policy or QuestionMatchPolicy()
    path: list[DecisionStep] = []
    current_id: str | None = tree.root_node_id

    while current_id is not None:
        if len(path) >= len(tree.nodes):
            raise TreeEvaluationError(
                f"Decision tree visited more than {len(tree.nodes)} nodes "
                "(cycle or runaway path)",
                details={"tree": tree.id, "path": [s.node for s in path]},
            )

        node = tree.nodes.get(current_id)
        if node is None:
            raise TreeEvaluationError(
                f"Transition to unknown node {current_id!r}",
                details={"tree": tree.id},
            )
        step_no = len(path) + 1

        if node.type == "action":
            path.append(DecisionStep(step_no, node.id, node.label, result=node.recommendation))
            return DecisionResult(
                path=path,
                recommendation={
                    "recommendation": node.recommendation,
                    "source_hint": node.source_hint,
                    "severity": node.severity,
                },
                terminal_reached=True,
            )

        elif node.type == "condition":
            value = params.get(node.field_name) if node.field_name else None
            outcome = _evaluate_condition(node, value)
            path.append(DecisionStep(
                step_no, node.id, node.label,
                value=value, result="true" if outcome else "false",
            ))
            current_id = node.true_child_id if outcome else node.false_child_id

        elif node.type == "question":
            answer, child_id, via = _resolve_question(node, text, params, policy)
            path.append(DecisionStep(
                step_no, node.id, node.label,
                value=answer or "unresolved",
                result=via,
            ))
            current_id = child_id

    logger.debug(
        "Decision tree %s halted without a terminal after %d steps", tree.id, len(path),
    )
    return DecisionResult(path=path, recommendation=None, terminal_reached=False)


def evaluate_for_plugin(
    tree_data: dict,
    text: str,
    plugin_config: dict | None = None,
) -> DecisionResult:
    """Parse a stored tree and evaluate it with the plugin's extraction settings."""
    config = plugin_config or {}
    tree = DecisionTree.from_dict(tree_data)
    params = extract_params(text, config.get("extraction_patterns"))
    return evaluate_tree(tree, text, params, QuestionMatchPolicy.from_config(config))


def format_decision_context(result: DecisionResult | None) -> str:
    """Render a decision path for inclusion in a generation prompt."""
    if result is None or not result.path:
        return ""
    lines = ["Decision Tree Analysis:"]
    for step in result.path:
        lines.append(f"- {step.label}: {step.result or step.value or ''}".rstrip())
    if not result.terminal_reached:
        lines.append("- (no terminal recommendation reached)")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _unique_options(options: list) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for option in options:
        label = str(option).strip()
        key = answer_key(label)
        if label and key not in seen:
            seen.add(key)
            unique.append(label)
    return unique


def _contains_phrase(text: str, phrase: str) -> bool:
    if not phrase:
        return False
    pattern = r"(?<!\w)" + re.escape(phrase.strip()) + r"(?!\w)"
    return re.search(pattern, text, re.IGNORECASE) is not None


def _match_answer(node: DecisionNode, candidate: str) -> str | None:
    """Map a candidate value to a declared option (or, legacy, an answer key)."""
    key = answer_key(candidate)
    if not key:
        return None
    if node.options:
        for option in node.options:
            if answer_key(option) == key:
                return option
        return None
    return candidate if key in node.children_by_answer else None


def _default_child(node: DecisionNode) -> str | None:
    if node.default_child_id:
        return node.default_child_id
    for key in _DEFAULT_ANSWER_KEYS:
        if key in node.children_by_answer:
            return node.children_by_answer[key]
    # Legacy trees without options and a single branch
    if not node.options and len(node.children_by_answer) == 1:
        return next(iter(node.children_by_answer.values()))
    return None


def _resolve_question(
    node: DecisionNode,
    text: str,
    params: dict[str, str],
    policy: QuestionMatchPolicy,
) -> tuple[str | None, str | None, str | None]:
    """
    Return (answer, next node id, how it was reached).

    `how` is None for a direct answer match, "default" when the default
    child was taken and "no match" when evaluation must halt.
    """
    answer: str | None = None

    extracted = params.get(node.extract_from) if node.extract_from else None
    if extracted:
        answer = _match_answer(node, extracted)

    if answer is None and policy.keyword_scan:
        keyword = (node.extract_from or "").replace("_", " ")
        if not policy.require_keyword or _contains_phrase(text, keyword):
            candidates = node.options or [
                k for k in node.children_by_answer if k not in _DEFAULT_ANSWER_KEYS
            ]
            answer = next((c for c in candidates if _contains_phrase(text, c)), None)

    if answer is not None:
        child_id = node.children_by_answer.get(answer_key(answer))
        if child_id:
            return answer, child_id, None

    default_id = _default_child(node)
    return answer or extracted, default_id, "default" if default_id else "no match"


def _to_number(raw: Any, node: DecisionNode, role: str) -> float:
    try:
        number = float(str(raw).strip())
    except (TypeError, ValueError) as exc:
        raise TreeEvaluationError(
            f"Condition '{node.label}' needs a numeric {role}, got {raw!r}",
            details={"node": node.id, "operator": node.operator},
        ) from exc
    if number != number:  # NaN
        raise TreeEvaluationError(
            f"Condition '{node.label}' needs a numeric {role}, got {raw!r}",
            details={"node": node.id, "operator": node.operator},
        )
    return number


def _evaluate_condition(node: DecisionNode, value: str | None) -> bool:
    # Missing input takes the false branch
    if value is None:
        return False
    normalised = answer_key(value)

    if node.operator == "eq":
        return normalised == answer_key(node.value)
    elif node.operator == "contains":
        return answer_key(node.value) in normalised
    elif node.operator == "in":
        members = node.value if isinstance(node.value, list) else str(node.value).split(",")
        return normalised in {answer_key(m) for m in members}
    elif node.operator == "gt":
        return _to_number(value, node, "input") > _to_number(node.value, node, "operand")
    elif node.operator == "lt":
        return _to_number(value, node, "input") < _to_number(node.value, node, "operand")
    raise TreeEvaluationError(f"Unknown operator {node.operator!r}", details={"node": node.id})
