# =============================================================================
# Embedding Service — Batched, Atomic Vector Generation
# =============================================================================
#
# Generates vector embeddings using any OpenAI-compatible embedding API.
#
# DESIGN DECISION: Two entry points over one request shape.
# - embed_batch()  — sync, used by Celery ingestion workers
# - aembed_batch() / embed_query() — async, used on the request path
#   (query embedding, review segment embedding, stance comparison)
#
# DESIGN DECISION: Atomic batches. Texts are sent in sub-batches of
# settings.embedding_batch_size, but the caller only ever receives the full,
# order-preserving list of vectors. A failure in any sub-batch raises
# RetrievalError and nothing is returned, so a partially embedded chunk set
# can never reach the vector store.
#
# DESIGN DECISION: Exactly one retry, owned by this module. The SDK clients
# are created with max_retries=0 and a per-request timeout; tenacity retries
# a failed sub-batch once on transient errors (API errors, timeouts). Dimension
# mismatches are not transient and fail immediately.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

import openai
from openai import AsyncOpenAI, OpenAI
from tenacity import (
    AsyncRetrying,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
)

from plugin_engine.config import settings
from plugin_engine.errors import RetrievalError

logger = logging.getLogger(__name__)

_TRANSIENT = (openai.APIError, asyncio.TimeoutError, TimeoutError)


# ---------------------------------------------------------------------------
# Embedding Clients — Lazy Singletons
# ---------------------------------------------------------------------------
# API key resolution order:
#   1. OPENAI_API_KEY (explicit embedding key)
#   2. LLM_API_KEY (shared key for an OpenAI-compatible gateway)
# ---------------------------------------------------------------------------

_client: OpenAI | None = None
_async_client: AsyncOpenAI | None = None


def _client_kwargs() -> dict:
    resolved_key = settings.openai_api_key or settings.llm_api_key
    if not resolved_key:
        raise RetrievalError(
            "No API key configured for embeddings. "
            "Set OPENAI_API_KEY or LLM_API_KEY in .env"
        )

    kwargs: dict = {
        "api_key": resolved_key,
        "max_retries": 0,
        "timeout": settings.embedding_timeout_seconds,
    }
    if settings.embedding_base_url:
        kwargs["base_url"] = settings.embedding_base_url
    return kwargs


def _get_client() -> OpenAI:
    """Lazily initialize and cache the sync embedding client."""
    global _client
    if _client is None:
        _client = OpenAI(**_client_kwargs())
        logger.info(
            "Initialized embedding client (model=%s, base_url=%s)",
            settings.embedding_model,
            settings.embedding_base_url or "https://api.openai.com/v1",
        )
    return _client


def _get_async_client() -> AsyncOpenAI:
    """Lazily initialize and cache the async embedding client."""
    global _async_client
    if _async_client is None:
        _async_client = AsyncOpenAI(**_client_kwargs())
    return _async_client


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _create_kwargs(batch: list[str]) -> dict:
    kwargs: dict = {"model": settings.embedding_model, "input": batch}
    if settings.embedding_dimensions:
        kwargs["dimensions"] = settings.embedding_dimensions
    return kwargs


def _collect(response, batch: list[str]) -> list[list[float]]:
    """Order vectors by response index and validate count and dimensionality."""
    items = sorted(response.data, key=lambda x: x.index)
    if len(items) != len(batch):
        raise RetrievalError(
            f"Embedding API returned {len(items)} vectors for {len(batch)} inputs"
        )

    vectors = [list(item.embedding) for item in items]
    for vector in vectors:
        if len(vector) != settings.embedding_dimensions:
            raise RetrievalError(
                f"Embedding has {len(vector)} dimensions, "
                f"expected {settings.embedding_dimensions}",
                details={"model": settings.embedding_model},
            )
    return vectors


def _batches(texts: Sequence[str], batch_size: int) -> list[list[str]]:
    return [list(texts[i : i + batch_size]) for i in range(0, len(texts), batch_size)]


def _log_retry(retry_state) -> None:
    logger.warning(
        "Embedding call failed (attempt %d), retrying: %s",
        retry_state.attempt_number,
        retry_state.outcome.exception(),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def embed_batch(
    texts: Sequence[str],
    batch_size: int | None = None,
) -> list[list[float]]:
    """
    Embed texts synchronously, preserving input order.

    Raises:
        RetrievalError: Any sub-batch failed after its retry, or returned
            vectors of the wrong shape. No partial result is returned.

    Pipeline position: Step 2 of ingestion (chunk → embed → store).
    """
    if not texts:
        return []

    client = _get_client()
    _batch_size = batch_size or settings.embedding_batch_size
    embeddings: list[list[float]] = []

    try:
        for batch in _batches(texts, _batch_size):
            for attempt in Retrying(
                stop=stop_after_attempt(settings.external_call_attempts),
                retry=retry_if_exception_type(_TRANSIENT),
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    response = client.embeddings.create(**_create_kwargs(batch))
            embeddings.extend(_collect(response, batch))
    except RetrievalError:
        raise
    except _TRANSIENT as exc:
        raise RetrievalError(f"Embedding failed after retry: {exc}") from exc

    logger.info(
        "Generated %d embeddings (model=%s, dimensions=%d)",
        len(embeddings), settings.embedding_model, settings.embedding_dimensions,
    )
    return embeddings


async def aembed_batch(
    texts: Sequence[str],
    batch_size: int | None = None,
) -> list[list[float]]:
    """
    Async counterpart of embed_batch().

    Each sub-batch call is bounded by settings.embedding_timeout_seconds.
    Cancellation of the caller propagates into the in-flight request.
    """
    if not texts:
        return []

    client = _get_async_client()
    _batch_size = batch_size or settings.embedding_batch_size
    embeddings: list[list[float]] = []

    try:
        for batch in _batches(texts, _batch_size):
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(settings.external_call_attempts),
                retry=retry_if_exception_type(_TRANSIENT),
                before_sleep=_log_retry,
                reraise=True,
            ):
                with attempt:
                    response = await asyncio.wait_for(
                        client.embeddings.create(**_create_kwargs(batch)),
                        timeout=settings.embedding_timeout_seconds,
                    )
            embeddings.extend(_collect(response, batch))
    except RetrievalError:
        raise
    except _TRANSIENT as exc:
        raise RetrievalError(f"Embedding failed after retry: {exc}") from exc

    logger.debug("Generated %d embeddings (async)", len(embeddings))
    return embeddings


async def embed_query(text: str) -> list[float]:
    """Embed a single query string."""
    result = await aembed_batch([text], batch_size=1)
    return result[0]
