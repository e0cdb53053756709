# =============================================================================
# Query API — Single-Plugin Grounded Q&A
# =============================================================================
#
# ENDPOINT:
#   POST /v1/query — answer a question with one plugin's knowledge base and
#                    decision tree; JSON by default, SSE when streaming
#
# The endpoint only validates the request, wires dependencies
# and maps the response. Engine errors propagate to the EngineError handler
# registered in main.py, which maps them to their HTTP status.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from plugin_engine.agents.query import QueryOptions, run_query, stream_query
from plugin_engine.api.deps import (
    get_caller_id,
    get_llm,
    get_retriever,
    get_store,
    wants_stream,
)
from plugin_engine.api.sse import event_stream_response
from plugin_engine.models.requests import QueryRequest
from plugin_engine.models.responses import ErrorResponse, QueryResponse
from plugin_engine.services.llm import LLMProvider
from plugin_engine.services.plugins import PluginStore
from plugin_engine.services.retriever import Retriever

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Query"])


@router.post(
    "/query",
    response_model=QueryResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
    summary="Ask a plugin a question",
    description=(
        "Retrieves knowledge-base excerpts, walks the plugin's active decision "
        "tree and generates a cited answer. Set `stream: true` (or send "
        "`Accept: text/event-stream`) to receive Server-Sent Events."
    ),
)
async def query_endpoint(
    http_request: Request,
    request: QueryRequest,
    caller_id: str | None = Depends(get_caller_id),
    store: PluginStore = Depends(get_store),
    retriever: Retriever = Depends(get_retriever),
    llm: LLMProvider | None = Depends(get_llm),
):
    options = QueryOptions(
        history=[m.model_dump() for m in request.history],
        top_k=request.top_k,
        threshold=request.threshold,
    )

    if wants_stream(http_request, request.stream):
        events = await stream_query(
            request.plugin, request.query, caller_id, options,
            store=store, retriever=retriever, llm=llm,
        )
        return event_stream_response(events)

    result = await run_query(
        request.plugin, request.query, caller_id, options,
        store=store, retriever=retriever, llm=llm,
    )
    logger.info(
        "Query answered: plugin=%s, confidence=%s, citations=%d, %dms",
        request.plugin, result.confidence, len(result.citations), result.latency_ms,
    )
    return result.to_dict()
