# =============================================================================
# Vector Store Abstraction — Plugin-Scoped Pluggable Backend
# =============================================================================
#
# Common interface for storing chunk vectors and running nearest-neighbour
# search over ONE plugin's chunk set, with implementations for pgvector
# (PostgreSQL) and ChromaDB.
#
# DESIGN DECISION: Protocol (structural typing) over ABC. Tests substitute an
# in-memory store that matches the protocol without inheriting from it.
#
# DESIGN DECISION: plugin_id is a required argument of search(), not an
# optional filter. There is no code path that searches across plugins.
#
# DESIGN DECISION: One ranking rule, shared by every backend (rank_chunks):
#   similarity = 1 - cosine_distance, clamped to [0, 1]
#   keep similarity > threshold
#   order by similarity desc, chunk_index asc, document_id asc
#   take top_k
# pgvector applies the same ordering in SQL; Chroma returns candidates and
# ranks them here. Either way results are deterministic for equal scores.
#
# DESIGN DECISION: Mixed sync/async interface.
# - add_chunks(), delete_document() are sync → Celery workers
# - search() is async → request path
#
# ARCHITECTURE:
#   VectorStore (Protocol)
#   ├── PgVectorStore     — PostgreSQL + pgvector extension
#   └── ChromaVectorStore — ChromaDB (in-process or client/server)
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol

import chromadb
from sqlalchemy import delete, select

from plugin_engine.config import settings
from plugin_engine.db.engine import async_session_factory, get_sync_session
from plugin_engine.db.models import KnowledgeChunk, KnowledgeDocument
from plugin_engine.services.chunker import ChunkResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class RetrievedChunk:
    """A stored chunk plus its similarity to the query (request-scoped)."""

    chunk_id: int | str
    document_id: int
    document_name: str
    content: str
    chunk_index: int
    similarity: float  # 0.0–1.0, higher = more relevant
    page_number: int | None = None
    section_title: str | None = None
    metadata: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Ranking Rule
# ---------------------------------------------------------------------------


def similarity_from_distance(distance: float) -> float:
    """Convert cosine distance ([0, 2]) to similarity clamped to [0, 1]."""
    return round(min(1.0, max(0.0, 1.0 - float(distance))), 6)


def rank_chunks(
    candidates: Iterable[RetrievedChunk],
    top_k: int,
    threshold: float,
) -> list[RetrievedChunk]:
    """
    Apply the retrieval rule to scored candidates.

    Raising `threshold` can only remove results, never add them.
    """
    kept = [c for c in candidates if c.similarity > threshold]
    kept.sort(key=lambda c: (-c.similarity, c.chunk_index, c.document_id))
    return kept[:top_k]


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class VectorStore(Protocol):
    """Vector store interface implemented by every backend."""

    def add_chunks(
        self,
        plugin_id: int,
        document_id: int,
        document_name: str,
        chunks: list[ChunkResult],
        embeddings: list[list[float]],
    ) -> list[int | str]:
        """Store all chunks of one document in a single write. Sync (Celery)."""
        ...

    async def search(
        self,
        query_embedding: list[float],
        plugin_id: int,
        top_k: int,
        threshold: float,
    ) -> list[RetrievedChunk]:
        """Ranked chunks of `plugin_id` above `threshold`. Async (request path)."""
        ...

    def delete_document(self, document_id: int) -> int:
        """Remove every chunk of a document. Returns the number removed."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: pgvector (PostgreSQL)
# ---------------------------------------------------------------------------


class PgVectorStore:
    """
    pgvector-backed vector store.

    Writes go through the sync engine in one transaction per document;
    search goes through the async engine's bounded pool.
    """

    def add_chunks(
        self,
        plugin_id: int,
        document_id: int,
        document_name: str,
        chunks: list[ChunkResult],
        embeddings: list[list[float]],
    ) -> list[int | str]:
        with get_sync_session() as session:
            rows = [
                KnowledgeChunk(
                    plugin_id=plugin_id,
                    document_id=document_id,
                    content=chunk.content,
                    chunk_index=chunk.chunk_index,
                    page_number=chunk.page_number,
                    section_title=chunk.section_title,
                    token_count=chunk.token_count,
                    embedding=embedding,
                    metadata_=chunk.metadata,
                )
                for chunk, embedding in zip(chunks, embeddings, strict=True)
            ]
            session.add_all(rows)
            # Flush assigns IDs; the context manager commits once on exit
            session.flush()
            chunk_ids: list[int | str] = [row.id for row in rows]

        logger.info(
            "Stored %d chunks for document_id=%d (plugin_id=%d) in pgvector",
            len(chunk_ids), document_id, plugin_id,
        )
        return chunk_ids

    async def search(
        self,
        query_embedding: list[float],
        plugin_id: int,
        top_k: int,
        threshold: float,
    ) -> list[RetrievedChunk]:
        distance = KnowledgeChunk.embedding.cosine_distance(query_embedding)

        stmt = (
            select(KnowledgeChunk, KnowledgeDocument.file_name, distance.label("distance"))
            .join(KnowledgeDocument, KnowledgeDocument.id == KnowledgeChunk.document_id)
            .where(KnowledgeChunk.plugin_id == plugin_id)
            .where(distance < 1.0 - threshold)
            .order_by(distance, KnowledgeChunk.chunk_index, KnowledgeChunk.document_id)
            .limit(top_k)
        )

        async with async_session_factory() as session:
            result = await session.execute(stmt)
            rows = result.all()

        logger.debug(
            "pgvector search returned %d rows (plugin_id=%d, top_k=%d, threshold=%.2f)",
            len(rows), plugin_id, top_k, threshold,
        )

        candidates = [
            RetrievedChunk(
                chunk_id=chunk.id,
                document_id=chunk.document_id,
                document_name=file_name,
                content=chunk.content,
                chunk_index=chunk.chunk_index,
                similarity=similarity_from_distance(dist),
                page_number=chunk.page_number,
                section_title=chunk.section_title,
                metadata=chunk.metadata_ or {},
            )
            for chunk, file_name, dist in rows
        ]
        return rank_chunks(candidates, top_k, threshold)

    def delete_document(self, document_id: int) -> int:
        with get_sync_session() as session:
            result = session.execute(
                delete(KnowledgeChunk).where(KnowledgeChunk.document_id == document_id)
            )
            removed = result.rowcount or 0
        logger.info("Deleted %d pgvector chunks for document_id=%d", removed, document_id)
        return removed


# ---------------------------------------------------------------------------
# Implementation 2: ChromaDB
# ---------------------------------------------------------------------------


class ChromaVectorStore:
    """
    ChromaDB-backed vector store.

    Single collection; plugin and document scoping use metadata `where`
    clauses. Search asks Chroma for every chunk of the plugin (n_results =
    the plugin's chunk count) and ranks them with rank_chunks().
    """

    def __init__(self, collection_name: str | None = None) -> None:
        if settings.chroma_url:
            self._client = chromadb.HttpClient(host=settings.chroma_url)
        else:
            self._client = chromadb.Client()

        # Cosine space so distances match pgvector's cosine_distance
        self._collection = self._client.get_or_create_collection(
            name=collection_name or settings.chroma_collection,
            metadata={"hnsw:space": "cosine"},
        )

    def add_chunks(
        self,
        plugin_id: int,
        document_id: int,
        document_name: str,
        chunks: list[ChunkResult],
        embeddings: list[list[float]],
    ) -> list[int | str]:
        ids = [f"doc{document_id}_chunk{chunk.chunk_index}" for chunk in chunks]
        metadatas = [
            _sanitise_chroma_metadata({
                "plugin_id": plugin_id,
                "document_id": document_id,
                "document_name": document_name,
                "chunk_index": chunk.chunk_index,
                "page_number": chunk.page_number,
                "section_title": chunk.section_title,
                "token_count": chunk.token_count,
            })
            for chunk in chunks
        ]

        self._collection.add(
            ids=ids,
            documents=[chunk.content for chunk in chunks],
            embeddings=embeddings,
            metadatas=metadatas,
        )

        logger.info(
            "Stored %d chunks for document_id=%d (plugin_id=%d) in ChromaDB",
            len(ids), document_id, plugin_id,
        )
        return list(ids)

    async def search(
        self,
        query_embedding: list[float],
        plugin_id: int,
        top_k: int,
        threshold: float,
    ) -> list[RetrievedChunk]:
        # The Chroma client is synchronous; keep it off the event loop.
        def _sync_search() -> list[RetrievedChunk]:
            where = {"plugin_id": plugin_id}
            plugin_count = len(self._collection.get(where=where, include=[])["ids"])
            if plugin_count == 0:
                return []

            results = self._collection.query(
                query_embeddings=[query_embedding],
                n_results=plugin_count,
                where=where,
                include=["documents", "metadatas", "distances"],
            )

            candidates: list[RetrievedChunk] = []
            if results and results["ids"] and results["ids"][0]:
                for i, chroma_id in enumerate(results["ids"][0]):
                    metadata = results["metadatas"][0][i] or {}
                    candidates.append(RetrievedChunk(
                        chunk_id=chroma_id,
                        document_id=int(metadata["document_id"]),
                        document_name=str(metadata.get("document_name", "")),
                        content=results["documents"][0][i] or "",
                        chunk_index=int(metadata.get("chunk_index", 0)),
                        similarity=similarity_from_distance(results["distances"][0][i]),
                        page_number=metadata.get("page_number"),
                        section_title=metadata.get("section_title"),
                        metadata=dict(metadata),
                    ))
            return rank_chunks(candidates, top_k, threshold)

        return await asyncio.to_thread(_sync_search)

    def delete_document(self, document_id: int) -> int:
        where = {"document_id": document_id}
        existing = self._collection.get(where=where, include=[])["ids"]
        if existing:
            self._collection.delete(ids=existing)
        logger.info("Deleted %d Chroma chunks for document_id=%d", len(existing), document_id)
        return len(existing)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_store: PgVectorStore | ChromaVectorStore | None = None


def get_vector_store() -> PgVectorStore | ChromaVectorStore:
    """
    Return the configured vector store backend (lazy singleton).

    - "pgvector" → PgVectorStore (default)
    - "chroma" → ChromaVectorStore
    """
    global _store
    if _store is None:
        if settings.vectorstore_type == "chroma":
            logger.info("Using ChromaDB vector store")
            _store = ChromaVectorStore()
        else:
            logger.info("Using pgvector vector store")
            _store = PgVectorStore()
    return _store


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _sanitise_chroma_metadata(metadata: dict) -> dict:
    """
    Chroma metadata values must be str, int, float or bool.

    None values are dropped (read back as missing → None); lists become
    comma-separated strings.
    """
    sanitised = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, list):
            sanitised[key] = ",".join(str(v) for v in value)
        elif isinstance(value, (str, int, float, bool)):
            sanitised[key] = value
        else:
            sanitised[key] = str(value)
    return sanitised
