# =============================================================================
# Engine Error Taxonomy
# =============================================================================
#
# Every failure the engine surfaces is one of the classes below. Each carries
# a stable machine `code` and the HTTP status the API layer maps it to, so
# the same error reads identically as a JSON error body, a terminal stream
# event, or an exception caught by a Python caller.
#
# DESIGN DECISION: Validation and access errors are raised BEFORE any
# pipeline work (and before a stream is opened). Everything else is raised
# mid-pipeline and, in streaming mode, becomes the single terminal `error`
# event.
#
#   EngineError
#   ├── ValidationError            400  malformed / oversized input
#   ├── AccessDenied               403  plugin unresolved or not permitted
#   ├── RetrievalError             502  embedding / vector search failed
#   ├── TreeEvaluationError        422  malformed or cyclic decision tree
#   ├── GenerationError            502  text generation failed after retry
#   ├── PartialCollaborationFailure 200 experts excluded, session completed
#   └── SessionFailure             502  too few viable experts
# =============================================================================

from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for all engine errors."""

    code = "engine_error"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Structured error result shared by HTTP responses and stream events."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(EngineError):
    code = "validation_error"
    status_code = 400


class AccessDenied(EngineError):
    code = "access_denied"
    status_code = 403


class RetrievalError(EngineError):
    code = "retrieval_error"
    status_code = 502


class TreeEvaluationError(EngineError):
    code = "tree_evaluation_error"
    status_code = 422


class GenerationError(EngineError):
    code = "generation_error"
    status_code = 502


class PartialCollaborationFailure(EngineError):
    """
    One or more experts were excluded but the session still completed.

    Never raised out of a completed session; it is attached to the result
    (and emitted as a `warning` stream event) so the degradation is explicit.
    """

    code = "partial_collaboration_failure"
    status_code = 200


class SessionFailure(EngineError):
    code = "session_failure"
    status_code = 502
