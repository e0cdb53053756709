# =============================================================================
# Review API — Document Compliance Review
# =============================================================================
#
# ENDPOINT:
#   POST /v1/review — segment a document and annotate each segment against
#                     one plugin's knowledge base; JSON or SSE
#
# Large documents take several generation calls; streaming callers see
# `annotation` and `batch_complete` events as each batch finishes.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from plugin_engine.agents.review import ReviewOptions, run_review, stream_review
from plugin_engine.api.deps import (
    get_caller_id,
    get_llm,
    get_retriever,
    get_store,
    wants_stream,
)
from plugin_engine.api.sse import event_stream_response
from plugin_engine.models.requests import ReviewRequest
from plugin_engine.models.responses import ErrorResponse, ReviewResponse
from plugin_engine.services.llm import LLMProvider
from plugin_engine.services.plugins import PluginStore
from plugin_engine.services.retriever import Retriever

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Review"])


@router.post(
    "/review",
    response_model=ReviewResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
    summary="Review a document against a plugin",
)
async def review_endpoint(
    http_request: Request,
    request: ReviewRequest,
    caller_id: str | None = Depends(get_caller_id),
    store: PluginStore = Depends(get_store),
    retriever: Retriever = Depends(get_retriever),
    llm: LLMProvider | None = Depends(get_llm),
):
    """Annotations are ordered by segment, then by position within it."""
    options = ReviewOptions(top_k=request.top_k, threshold=request.threshold)

    if wants_stream(http_request, request.stream):
        events = await stream_review(
            request.plugin, request.document, request.title, caller_id, options,
            store=store, retriever=retriever, llm=llm,
        )
        return event_stream_response(events)

    result = await run_review(
        request.plugin, request.document, request.title, caller_id, options,
        store=store, retriever=retriever, llm=llm,
    )
    logger.info(
        "Review complete: plugin=%s, segments=%d, annotations=%d, %dms",
        request.plugin, result.total_segments, len(result.annotations), result.latency_ms,
    )
    return result.to_dict()
