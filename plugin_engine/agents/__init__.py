# =============================================================================
# Agents Package — Reasoning Pipelines
# =============================================================================
#   - decision_tree.py: Rule-graph state machine with audit path
#   - citations.py: [Source N] resolution, phantom stripping, confidence
#   - query.py: LangGraph query pipeline (retrieve → decide → generate →
#     verify) plus its streaming variant
#   - review.py: Segment-by-segment document review with batched generation
#   - collaboration.py: Multi-expert rounds (debate / consensus / review)
#   - consensus.py: Stance grouping, conflicts, agreement level
#   - streaming.py: Bounded, ordered event stream with a single terminal event
# =============================================================================
