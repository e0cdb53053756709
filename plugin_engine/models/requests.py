# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# Shapes of data coming INTO the API. FastAPI validates bodies against them
# (422 on malformed JSON or types) and publishes them in the OpenAPI docs.
#
# DESIGN DECISION: Hard input limits are checked twice. Pydantic rejects
# obviously oversized bodies at the HTTP edge, and the engine re-checks
# (ValidationError, 400) so Python callers get the same guarantees.
# max_rounds is NOT capped here: the engine clamps it to 3.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class QueryRequest(BaseModel):
    """
    Request body for POST /v1/query.

    Example:
        {
            "plugin": "structural-codes",
            "query": "Minimum cover for a beam in severe exposure?",
            "stream": false
        }
    """

    plugin: str = Field(..., min_length=1, max_length=100, description="Plugin slug")
    query: str = Field(..., min_length=1, max_length=4000)
    history: list[HistoryMessage] = Field(
        default_factory=list,
        description="Prior conversation turns, prepended to the generation request only",
    )
    top_k: int | None = Field(default=None, ge=1, le=50)
    threshold: float | None = Field(default=None, ge=0.0, lt=1.0)
    stream: bool = Field(default=False, description="Return a text/event-stream")

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "plugin": "structural-codes",
                    "query": "What is the minimum cover for a beam in severe exposure?",
                },
            ]
        }
    )


class ReviewRequest(BaseModel):
    """Request body for POST /v1/review."""

    plugin: str = Field(..., min_length=1, max_length=100)
    document: str = Field(..., min_length=1, max_length=100_000)
    title: str = Field(..., min_length=1, max_length=500)
    top_k: int | None = Field(default=None, ge=1, le=50)
    threshold: float | None = Field(default=None, ge=0.0, lt=1.0)
    stream: bool = False


class CollaborateRequest(BaseModel):
    """
    Request body for POST /v1/collaborate.

    Example:
        {
            "experts": ["structural-codes", "fire-safety"],
            "query": "Can this transfer beam be exposed steel?",
            "mode": "debate",
            "max_rounds": 3
        }
    """

    experts: list[str] = Field(..., min_length=2, max_length=5)
    query: str = Field(..., min_length=1, max_length=4000)
    mode: Literal["debate", "consensus", "review"] = "debate"
    max_rounds: int = Field(default=3, ge=1, description="Clamped to at most 3")
    stream: bool = False


class DocumentIngestRequest(BaseModel):
    """
    Request body for POST /plugins/{plugin_id}/documents.

    Text is sent already extracted; file parsing happens before this API.
    """

    file_name: str = Field(..., min_length=1, max_length=500)
    file_type: str | None = Field(default=None, max_length=50, examples=["md", "txt", "pdf"])
    text: str = Field(..., min_length=1)
    chunk_size: int | None = Field(default=None, ge=64, le=2048)
    chunk_overlap: int | None = Field(default=None, ge=0, le=512)
