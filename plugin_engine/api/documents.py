# =============================================================================
# Documents API — Plugin Knowledge Base Management
# =============================================================================
#
# ENDPOINTS:
#   POST   /plugins/{plugin_id}/documents       — queue text for ingestion
#   GET    /plugins/{plugin_id}/documents/{id}  — poll ingestion status
#   DELETE /plugins/{plugin_id}/documents/{id}  — remove document + chunks
#
# DESIGN DECISION: 202 Accepted for POST. Chunking and embedding run in a
# Celery worker; the document is not retrievable until its status is
# "completed". Clients poll the GET endpoint.
#
# DESIGN DECISION: When auth is enabled, only the plugin's creator may
# manage its knowledge base. With auth disabled the endpoints are open
# (local development).
# =============================================================================

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.ext.asyncio import AsyncSession

from plugin_engine.api.deps import get_caller_id, get_vectorstore
from plugin_engine.config import settings
from plugin_engine.db.engine import get_async_session
from plugin_engine.db.models import DocumentStatus, KnowledgeDocument, Plugin
from plugin_engine.models.requests import DocumentIngestRequest
from plugin_engine.models.responses import DocumentResponse, IngestResponse
from plugin_engine.services.vectorstore import VectorStore
from plugin_engine.workers.tasks import ingest_document

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plugins", tags=["Documents"])


async def _owned_plugin(session: AsyncSession, plugin_id: int, caller_id: str | None) -> Plugin:
    plugin = await session.get(Plugin, plugin_id)
    if plugin is None:
        raise HTTPException(status_code=404, detail=f"Plugin {plugin_id} not found.")
    if settings.auth_enabled and plugin.creator_id != caller_id:
        raise HTTPException(
            status_code=403,
            detail="Only the plugin's creator may manage its documents.",
        )
    return plugin


async def _plugin_document(
    session: AsyncSession, plugin_id: int, document_id: int,
) -> KnowledgeDocument:
    doc = await session.get(KnowledgeDocument, document_id)
    if doc is None or doc.plugin_id != plugin_id:
        raise HTTPException(
            status_code=404,
            detail=f"Document {document_id} not found for plugin {plugin_id}.",
        )
    return doc


@router.post(
    "/{plugin_id}/documents",
    response_model=IngestResponse,
    status_code=202,
    summary="Add a document to a plugin's knowledge base",
    description=(
        "Queues already-extracted text for chunking and embedding. Returns "
        "immediately; poll the document endpoint until status is 'completed'."
    ),
)
async def create_document(
    plugin_id: int,
    request: DocumentIngestRequest,
    caller_id: str | None = Depends(get_caller_id),
    session: AsyncSession = Depends(get_async_session),
) -> IngestResponse:
    await _owned_plugin(session, plugin_id, caller_id)

    if not request.text.strip():
        raise HTTPException(status_code=400, detail="Document text is empty.")

    doc = KnowledgeDocument(
        plugin_id=plugin_id,
        file_name=request.file_name,
        file_type=request.file_type,
        char_count=len(request.text),
        status=DocumentStatus.PENDING,
    )
    session.add(doc)
    await session.flush()  # Assigns doc.id without committing

    task = ingest_document.delay(
        document_id=doc.id,
        plugin_id=plugin_id,
        text=request.text,
        file_name=request.file_name,
        file_type=request.file_type,
        chunk_size=request.chunk_size,
        chunk_overlap=request.chunk_overlap,
    )
    doc.celery_task_id = task.id

    # The session commits automatically via get_async_session dependency
    logger.info(
        "Dispatched ingestion task: plugin_id=%d, document_id=%d, task_id=%s",
        plugin_id, doc.id, task.id,
    )
    return IngestResponse(
        document_id=doc.id,
        task_id=task.id,
        message=f"Document '{request.file_name}' queued for ingestion.",
    )


@router.get(
    "/{plugin_id}/documents/{document_id}",
    response_model=DocumentResponse,
    summary="Get a knowledge document's ingestion status",
)
async def get_document(
    plugin_id: int,
    document_id: int,
    caller_id: str | None = Depends(get_caller_id),
    session: AsyncSession = Depends(get_async_session),
) -> DocumentResponse:
    await _owned_plugin(session, plugin_id, caller_id)
    doc = await _plugin_document(session, plugin_id, document_id)
    return DocumentResponse.model_validate(doc)


@router.delete(
    "/{plugin_id}/documents/{document_id}",
    status_code=204,
    summary="Delete a knowledge document and its chunks",
)
async def delete_document(
    plugin_id: int,
    document_id: int,
    caller_id: str | None = Depends(get_caller_id),
    session: AsyncSession = Depends(get_async_session),
    vector_store: VectorStore = Depends(get_vectorstore),
) -> Response:
    await _owned_plugin(session, plugin_id, caller_id)
    doc = await _plugin_document(session, plugin_id, document_id)

    # Vector store writes are synchronous (shared with the Celery worker)
    removed = await asyncio.to_thread(vector_store.delete_document, document_id)
    await session.delete(doc)

    logger.info(
        "Deleted document %d from plugin %d (%d chunk(s))", document_id, plugin_id, removed,
    )
    return Response(status_code=204)
