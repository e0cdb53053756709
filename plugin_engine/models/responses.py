# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data coming OUT of the API. Built from the engine's result
# dataclasses (via their to_dict()) so embeddings and internal columns never
# reach the wire.
# =============================================================================

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    service: str


class ErrorResponse(BaseModel):
    """Structured error result shared by every endpoint."""

    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Query
# ---------------------------------------------------------------------------


class Citation(BaseModel):
    id: str
    document: str
    document_id: int
    chunk_id: int | str
    chunk_index: int
    page: int | None = None
    section: str | None = None
    excerpt: str
    similarity: float
    rank: int
    expert: str | None = None


class DecisionStepModel(BaseModel):
    step: int
    node: str
    label: str
    value: str | None = None
    result: str | None = None


class QueryResponse(BaseModel):
    answer: str
    citations: list[Citation]
    decision_path: list[DecisionStepModel]
    confidence: str
    latency_ms: int
    flags: list[str] = Field(
        default_factory=list,
        description="Recorded gaps, e.g. citation_gap, no_sources, tree_no_terminal",
    )
    plugin_version: str


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


class Annotation(BaseModel):
    id: str | None
    segment_index: int
    start_line: int
    end_line: int
    original_text: str
    severity: str
    category: str
    issue: str
    suggested_fix: str | None = None
    citations: list[Citation]
    confidence: str


class ReviewSummaryModel(BaseModel):
    error_count: int
    warning_count: int
    info_count: int
    pass_count: int
    overall_compliance: str
    top_issues: list[str]


class ReviewResponse(BaseModel):
    document_title: str
    total_segments: int
    annotations: list[Annotation]
    summary: ReviewSummaryModel
    confidence: str
    latency_ms: int
    plugin_version: str


# ---------------------------------------------------------------------------
# Collaboration
# ---------------------------------------------------------------------------


class ExpertResponseModel(BaseModel):
    plugin_slug: str
    plugin_name: str
    domain: str
    answer: str
    citations: list[Citation]
    confidence: str
    revised: bool
    revision_note: str | None = None


class RoundModel(BaseModel):
    round_number: int
    responses: list[ExpertResponseModel]
    excluded: list[str]


class ConflictModel(BaseModel):
    topic: str
    positions: list[dict[str, str]]
    resolved: bool
    resolution: str | None = None


class ConsensusModel(BaseModel):
    answer: str
    confidence: str
    agreement_level: float = Field(ge=0.0, le=1.0)
    citations: list[Citation]
    conflicts: list[ConflictModel]
    expert_contributions: list[dict[str, Any]]


class CollaborationResponse(BaseModel):
    session_id: int
    rounds: list[RoundModel]
    consensus: ConsensusModel
    status: str
    excluded_experts: list[str]
    latency_ms: int
    warning: ErrorResponse | None = None


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class DocumentResponse(BaseModel):
    id: int
    plugin_id: int
    file_name: str
    file_type: str | None
    char_count: int
    status: str
    error_message: str | None = None
    chunk_count: int | None = None
    celery_task_id: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class IngestResponse(BaseModel):
    """
    Response for POST /plugins/{plugin_id}/documents.

    The document is not searchable until its status is "completed".
    """

    document_id: int
    task_id: str
    status: str = "pending"
    message: str = "Document queued for ingestion"
