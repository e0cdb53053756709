# =============================================================================
# Vector Retriever — Query → Ranked Plugin Chunks
# =============================================================================
#
# Embeds a query and searches the configured vector store, always scoped to
# a single plugin. Both the embedder and the store are injectable so the
# pipelines can be exercised without network or database access.
#
# Failures from either collaborator surface as RetrievalError (the embedder
# already retried once; a vector search failure is wrapped here).
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence

from plugin_engine.config import settings
from plugin_engine.errors import RetrievalError
from plugin_engine.services.embedder import aembed_batch, embed_query
from plugin_engine.services.vectorstore import RetrievedChunk, VectorStore, get_vector_store

logger = logging.getLogger(__name__)

EmbedFn = Callable[[str], Awaitable[list[float]]]
EmbedManyFn = Callable[[Sequence[str]], Awaitable[list[list[float]]]]


class Retriever:
    """Thresholded top-K retrieval over one plugin's chunks."""

    def __init__(
        self,
        store: VectorStore | None = None,
        embed: EmbedFn | None = None,
        embed_many: EmbedManyFn | None = None,
    ) -> None:
        self._store = store
        self._embed = embed or embed_query
        self._embed_many = embed_many or aembed_batch

    @property
    def store(self) -> VectorStore:
        if self._store is None:
            self._store = get_vector_store()
        return self._store

    async def embed(self, text: str) -> list[float]:
        try:
            return await self._embed(text)
        except RetrievalError:
            raise
        except Exception as exc:
            raise RetrievalError(f"Query embedding failed: {exc}") from exc

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        """One atomic embedding call for several texts (review segments, stances)."""
        try:
            vectors = await self._embed_many(list(texts))
        except RetrievalError:
            raise
        except Exception as exc:
            raise RetrievalError(f"Batch embedding failed: {exc}") from exc
        if len(vectors) != len(texts):
            raise RetrievalError(
                f"Embedding returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return vectors

    async def retrieve(
        self,
        query: str,
        plugin_id: int,
        top_k: int | None = None,
        threshold: float | None = None,
    ) -> list[RetrievedChunk]:
        """Embed `query` and return the plugin's best-matching chunks."""
        embedding = await self.embed(query)
        return await self.retrieve_by_embedding(embedding, plugin_id, top_k, threshold)

    async def retrieve_by_embedding(
        self,
        embedding: list[float],
        plugin_id: int,
        top_k: int | None = None,
        threshold: float | None = None,
    ) -> list[RetrievedChunk]:
        _top_k = settings.retrieval_top_k if top_k is None else top_k
        _threshold = (
            settings.retrieval_similarity_threshold if threshold is None else threshold
        )

        try:
            results = await self.store.search(
                query_embedding=embedding,
                plugin_id=plugin_id,
                top_k=_top_k,
                threshold=_threshold,
            )
        except RetrievalError:
            raise
        except Exception as exc:
            raise RetrievalError(f"Vector search failed: {exc}") from exc

        logger.info(
            "Retrieved %d chunks (plugin_id=%d, top_k=%d, threshold=%.2f%s)",
            len(results), plugin_id, _top_k, _threshold,
            f", top similarity={results[0].similarity:.3f}" if results else "",
        )
        return results
