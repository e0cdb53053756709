# =============================================================================
# Collaboration API — Multi-Expert Deliberation
# =============================================================================
#
# ENDPOINT:
#   POST /v1/collaborate — 2 to 5 plugins deliberate over a query in
#                          debate, consensus or review mode; JSON or SSE
#
# A session that loses experts but keeps at least two still returns 200,
# with `warning` set to a partial_collaboration_failure error object.
# =============================================================================

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from plugin_engine.agents.collaboration import (
    CollaborationConfig,
    run_collaboration,
    stream_collaboration,
)
from plugin_engine.api.deps import (
    get_caller_id,
    get_llm,
    get_retriever,
    get_store,
    wants_stream,
)
from plugin_engine.api.sse import event_stream_response
from plugin_engine.models.requests import CollaborateRequest
from plugin_engine.models.responses import CollaborationResponse, ErrorResponse
from plugin_engine.services.llm import LLMProvider
from plugin_engine.services.plugins import PluginStore
from plugin_engine.services.retriever import Retriever

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Collaboration"])


@router.post(
    "/collaborate",
    response_model=CollaborationResponse,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
    summary="Run a multi-expert collaboration session",
)
async def collaborate_endpoint(
    http_request: Request,
    request: CollaborateRequest,
    caller_id: str | None = Depends(get_caller_id),
    store: PluginStore = Depends(get_store),
    retriever: Retriever = Depends(get_retriever),
    llm: LLMProvider | None = Depends(get_llm),
):
    config = CollaborationConfig(
        expert_slugs=list(request.experts),
        query=request.query,
        mode=request.mode,
        max_rounds=request.max_rounds,
    )

    if wants_stream(http_request, request.stream):
        events = await stream_collaboration(
            config, caller_id, store=store, retriever=retriever, llm=llm,
        )
        return event_stream_response(events)

    result = await run_collaboration(
        config, caller_id, store=store, retriever=retriever, llm=llm,
    )
    logger.info(
        "Collaboration %d: %d round(s), agreement=%.2f, excluded=%s",
        result.session_id, len(result.rounds),
        result.consensus.agreement_level, result.excluded_experts,
    )
    return result.to_dict()
