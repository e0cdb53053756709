# =============================================================================
# Celery Task Definitions — Knowledge Document Ingestion
# =============================================================================
#
# INGESTION PIPELINE:
#   1. Document status → PROCESSING
#   2. Chunk text with tiktoken (paragraph / section / page aware)
#   3. Embed every chunk (atomic: all vectors or an error)
#   4. Replace the document's chunks in the vector store (one write)
#   5. Document status → COMPLETED (chunk count) or FAILED (error message)
#
# Celery workers are synchronous: sync SQLAlchemy engine, sync embedder,
# no async/await here.
#
# RETRY STRATEGY: Transient failures (embedding API, database) retry with
# backoff, up to 3 times. A document that yields zero chunks is not
# transient: it is marked FAILED once and not retried.
#
# DESIGN DECISION: Existing chunks for the document are deleted before the
# new ones are written, so a retry after a partially completed attempt can
# never duplicate chunk indices.
# =============================================================================

import logging

from sqlalchemy import update

from plugin_engine.config import settings
from plugin_engine.db.engine import get_sync_session
from plugin_engine.db.models import DocumentStatus, KnowledgeDocument
from plugin_engine.services.chunker import chunk_text
from plugin_engine.services.embedder import embed_batch
from plugin_engine.services.vectorstore import get_vector_store
from plugin_engine.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def _update_document_status(
    document_id: int,
    status: DocumentStatus,
    error_message: str | None = None,
    chunk_count: int | None = None,
) -> None:
    """Own session so the status commits even if the pipeline fails."""
    with get_sync_session() as session:
        values: dict = {"status": status, "error_message": error_message}
        if chunk_count is not None:
            values["chunk_count"] = chunk_count
        session.execute(
            update(KnowledgeDocument)
            .where(KnowledgeDocument.id == document_id)
            .values(**values)
        )


@celery_app.task(
    bind=True,
    name="ingest_document",
    max_retries=3,
    default_retry_delay=60,
)
def ingest_document(
    self,
    document_id: int,
    plugin_id: int,
    text: str,
    file_name: str,
    file_type: str | None = None,
    chunk_size: int | None = None,
    chunk_overlap: int | None = None,
) -> dict:
    """
    Chunk, embed and store one knowledge document.

    Returns:
        dict summary (document_id, status, chunk_count, vectorstore).
    """
    task_id = self.request.id
    _chunk_size = chunk_size or settings.chunk_size
    _chunk_overlap = settings.chunk_overlap if chunk_overlap is None else chunk_overlap

    logger.info(
        "Starting ingestion: document_id=%d, plugin_id=%d, file=%s, task_id=%s, "
        "chunk_size=%d, chunk_overlap=%d, vectorstore=%s",
        document_id, plugin_id, file_name, task_id,
        _chunk_size, _chunk_overlap, settings.vectorstore_type,
    )

    _update_document_status(document_id, DocumentStatus.PROCESSING)

    chunks = chunk_text(
        text,
        file_name=file_name,
        file_type=file_type,
        chunk_size=_chunk_size,
        chunk_overlap=_chunk_overlap,
    )
    logger.info("[%s] Created %d chunks", task_id, len(chunks))

    if not chunks:
        _update_document_status(
            document_id,
            DocumentStatus.FAILED,
            error_message="No chunks produced: document is empty",
            chunk_count=0,
        )
        return {"document_id": document_id, "status": "failed", "chunk_count": 0}

    try:
        embeddings = embed_batch([c.content for c in chunks])
        logger.info("[%s] Generated %d embeddings", task_id, len(embeddings))

        vector_store = get_vector_store()
        removed = vector_store.delete_document(document_id)
        if removed:
            logger.info("[%s] Replaced %d existing chunks", task_id, removed)
        vector_store.add_chunks(
            plugin_id=plugin_id,
            document_id=document_id,
            document_name=file_name,
            chunks=chunks,
            embeddings=embeddings,
        )

        _update_document_status(
            document_id, DocumentStatus.COMPLETED, chunk_count=len(chunks),
        )

    except Exception as exc:
        logger.exception(
            "[%s] Ingestion failed for document_id=%d: %s", task_id, document_id, exc,
        )
        _update_document_status(
            document_id, DocumentStatus.FAILED, error_message=str(exc)[:1000],
        )
        raise self.retry(exc=exc)

    summary = {
        "document_id": document_id,
        "status": "completed",
        "chunk_count": len(chunks),
        "vectorstore": settings.vectorstore_type,
    }
    logger.info("[%s] Ingestion complete: %s", task_id, summary)
    return summary
