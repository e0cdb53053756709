# =============================================================================
# Plugin Store — Plugin Resolution, Trees, and Audit Records
# =============================================================================
#
# The pipelines need a small slice of persistence: look up a plugin by slug,
# fetch its active decision tree, and write audit records (query logs,
# review logs, collaboration sessions). This module is that slice.
#
# DESIGN DECISION: PluginStore is a Protocol. The pipelines receive a store
# instance (defaulting to SqlPluginStore) so tests can pass an in-memory
# fake and assert on what was written.
#
# DESIGN DECISION: The engine returns plain PluginProfile dataclasses, never
# ORM objects. Pipelines run across many awaits and concurrent tasks; a
# detached immutable snapshot cannot trigger lazy loads or be mutated.
#
# Access rule (the only authorisation the engine applies): a caller may use
# a plugin if it is published or the caller created it.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import delete, select, update

from plugin_engine.db.engine import async_session_factory
from plugin_engine.db.models import (
    CollaborationSession,
    DecisionTree,
    Plugin,
    QueryLog,
    ReviewLog,
    SessionStatus,
)
from plugin_engine.errors import AccessDenied

logger = logging.getLogger(__name__)

CITATION_MODES = ("mandatory", "optional", "none")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PluginProfile:
    """Immutable snapshot of the plugin fields the engine uses."""

    id: int
    slug: str
    name: str
    domain: str
    system_prompt: str = ""
    citation_mode: str = "mandatory"
    version: str = "1.0.0"
    is_published: bool = False
    creator_id: str | None = None
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, plugin: Plugin) -> PluginProfile:
        mode = plugin.citation_mode if plugin.citation_mode in CITATION_MODES else "mandatory"
        return cls(
            id=plugin.id,
            slug=plugin.slug,
            name=plugin.name,
            domain=plugin.domain,
            system_prompt=plugin.system_prompt or "",
            citation_mode=mode,
            version=plugin.version,
            is_published=plugin.is_published,
            creator_id=plugin.creator_id,
            config=dict(plugin.config or {}),
        )


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class PluginStore(Protocol):
    async def get_plugin(self, slug: str) -> PluginProfile | None: ...

    async def get_active_tree(self, plugin_id: int) -> dict | None: ...

    async def record_query(self, entry: dict[str, Any]) -> None: ...

    async def record_review(self, entry: dict[str, Any]) -> None: ...

    async def create_session(
        self,
        caller_id: str | None,
        query: str,
        mode: str,
        expert_slugs: list[str],
        max_rounds: int,
    ) -> int: ...

    async def set_session_status(self, session_id: int, status: SessionStatus) -> None: ...

    async def append_round(self, session_id: int, round_data: dict[str, Any]) -> None: ...

    async def finalize_session(
        self,
        session_id: int,
        status: SessionStatus,
        consensus: dict[str, Any] | None = None,
        error: str | None = None,
        latency_ms: int | None = None,
    ) -> None: ...

    async def discard_session(self, session_id: int) -> None: ...


# ---------------------------------------------------------------------------
# Access Check
# ---------------------------------------------------------------------------


async def resolve_plugin(
    store: PluginStore,
    slug: str,
    caller_id: str | None = None,
) -> PluginProfile:
    """
    Look up a plugin and check the caller may use it.

    Raises:
        AccessDenied: Unknown slug, or unpublished and not owned by the caller.
    """
    plugin = await store.get_plugin(slug)
    if plugin is None:
        raise AccessDenied(f"Plugin not found: {slug}", details={"plugin": slug})

    if not plugin.is_published and (caller_id is None or plugin.creator_id != caller_id):
        raise AccessDenied(
            f"Plugin is not published: {slug}", details={"plugin": slug},
        )
    return plugin


# ---------------------------------------------------------------------------
# SQL Implementation
# ---------------------------------------------------------------------------


class SqlPluginStore:
    """
    PluginStore over the async engine.

    Every method opens and commits its own short-lived session, so audit
    writes are independent of any request-scoped session.
    """

    async def get_plugin(self, slug: str) -> PluginProfile | None:
        async with async_session_factory() as session:
            result = await session.execute(select(Plugin).where(Plugin.slug == slug))
            plugin = result.scalar_one_or_none()
        return PluginProfile.from_model(plugin) if plugin else None

    async def get_active_tree(self, plugin_id: int) -> dict | None:
        async with async_session_factory() as session:
            result = await session.execute(
                select(DecisionTree.id, DecisionTree.tree_data)
                .where(DecisionTree.plugin_id == plugin_id)
                .where(DecisionTree.is_active.is_(True))
                .limit(1)
            )
            row = result.first()
        if row is None:
            return None
        tree_id, tree_data = row
        return {"id": tree_id, **(tree_data or {})}

    async def record_query(self, entry: dict[str, Any]) -> None:
        async with async_session_factory() as session:
            session.add(QueryLog(**entry))
            await session.commit()

    async def record_review(self, entry: dict[str, Any]) -> None:
        async with async_session_factory() as session:
            session.add(ReviewLog(**entry))
            await session.commit()

    async def create_session(
        self,
        caller_id: str | None,
        query: str,
        mode: str,
        expert_slugs: list[str],
        max_rounds: int,
    ) -> int:
        async with async_session_factory() as session:
            record = CollaborationSession(
                caller_id=caller_id,
                query=query,
                mode=mode,
                expert_slugs=list(expert_slugs),
                max_rounds=max_rounds,
                status=SessionStatus.PENDING,
                rounds=[],
            )
            session.add(record)
            await session.commit()
            return record.id

    async def set_session_status(self, session_id: int, status: SessionStatus) -> None:
        async with async_session_factory() as session:
            await session.execute(
                update(CollaborationSession)
                .where(CollaborationSession.id == session_id)
                .values(status=status)
            )
            await session.commit()

    async def append_round(self, session_id: int, round_data: dict[str, Any]) -> None:
        async with async_session_factory() as session:
            record = await session.get(CollaborationSession, session_id)
            if record is None:
                logger.warning("Collaboration session %d vanished before round append", session_id)
                return
            # Reassign so SQLAlchemy sees the JSONB change
            record.rounds = [*(record.rounds or []), round_data]
            await session.commit()

    async def finalize_session(
        self,
        session_id: int,
        status: SessionStatus,
        consensus: dict[str, Any] | None = None,
        error: str | None = None,
        latency_ms: int | None = None,
    ) -> None:
        async with async_session_factory() as session:
            await session.execute(
                update(CollaborationSession)
                .where(CollaborationSession.id == session_id)
                .values(status=status, consensus=consensus, error=error, latency_ms=latency_ms)
            )
            await session.commit()

    async def discard_session(self, session_id: int) -> None:
        async with async_session_factory() as session:
            await session.execute(
                delete(CollaborationSession).where(CollaborationSession.id == session_id)
            )
            await session.commit()


_store: SqlPluginStore | None = None


def get_plugin_store() -> SqlPluginStore:
    global _store
    if _store is None:
        _store = SqlPluginStore()
    return _store
