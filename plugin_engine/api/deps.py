# =============================================================================
# API Dependencies — Caller Identity & Engine Collaborators
# =============================================================================
#
# FastAPI dependencies shared by every router:
#
# 1. get_caller_id()   — resolve the Bearer API key to its owner id
# 2. get_store()       — plugin store (plugins, trees, audit, sessions)
# 3. get_retriever()   — embedding + vector search
# 4. get_llm()         — generation provider (None = configured default)
# 5. get_vectorstore() — raw vector store, for document deletion
#
# DESIGN DECISION: Every engine collaborator is a dependency, so tests swap
# in fakes through app.dependency_overrides without touching the engine.
#
# DESIGN DECISION: HTTPBearer(auto_error=False) so that when auth is
# disabled, a missing header is not an error. Anonymous callers (None) may
# only use published plugins; that rule lives in the engine.
# =============================================================================

from __future__ import annotations

import logging
from datetime import UTC, datetime

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from plugin_engine.config import settings
from plugin_engine.db.engine import get_async_session
from plugin_engine.db.models import ApiKey
from plugin_engine.services.auth import hash_api_key
from plugin_engine.services.llm import LLMProvider
from plugin_engine.services.plugins import PluginStore, get_plugin_store
from plugin_engine.services.retriever import Retriever
from plugin_engine.services.vectorstore import VectorStore, get_vector_store

logger = logging.getLogger(__name__)

# Security scheme for OpenAPI docs (shows "Authorize" button in Swagger UI)
_bearer_scheme = HTTPBearer(auto_error=False)


async def get_caller_id(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    session: AsyncSession = Depends(get_async_session),
) -> str | None:
    """
    Resolve the caller from the Authorization header.

    When auth_enabled=False: returns None (anonymous access).
    When auth_enabled=True:
    - SHA-256 hashes the Bearer token and looks it up in api_keys
    - Validates: is_active, not expired
    - Updates last_used_at

    Raises:
        HTTPException 401: Missing or unknown API key
        HTTPException 403: Key is inactive or expired
    """
    if not settings.auth_enabled:
        return None

    if credentials is None:
        raise HTTPException(
            status_code=401,
            detail="Missing API key. Provide 'Authorization: Bearer <key>' header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    result = await session.execute(
        select(ApiKey).where(ApiKey.key_hash == hash_api_key(credentials.credentials))
    )
    api_key = result.scalar_one_or_none()

    if api_key is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid API key.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not api_key.is_active:
        raise HTTPException(status_code=403, detail="API key has been deactivated.")

    if api_key.expires_at and api_key.expires_at < datetime.now(UTC):
        raise HTTPException(status_code=403, detail="API key has expired.")

    api_key.last_used_at = datetime.now(UTC)
    request.state.caller_id = api_key.owner_id
    return api_key.owner_id


def get_store() -> PluginStore:
    return get_plugin_store()


def get_retriever() -> Retriever:
    return Retriever()


def get_llm() -> LLMProvider | None:
    """None lets each pipeline build the configured provider lazily."""
    return None


def get_vectorstore() -> VectorStore:
    return get_vector_store()


def wants_stream(request: Request, stream_flag: bool) -> bool:
    """Stream when the body asks for it or the client accepts only SSE."""
    return stream_flag or "text/event-stream" in request.headers.get("accept", "")
