# =============================================================================
# Database Models — SQLAlchemy ORM
# =============================================================================
#
# SCHEMA OVERVIEW:
#
# ┌──────────────┐      ┌──────────────────────┐      ┌──────────────────────┐
# │  plugins     │──1:N▶│ knowledge_documents  │──1:N▶│ knowledge_chunks     │
# ├──────────────┤      ├──────────────────────┤      ├──────────────────────┤
# │ id (PK)      │      │ id (PK)              │      │ id (PK)              │
# │ slug (uniq)  │      │ plugin_id (FK)       │      │ plugin_id (FK)       │
# │ name, domain │      │ file_name, file_type │      │ document_id (FK)     │
# │ system_prompt│      │ status               │      │ content, chunk_index │
# │ citation_mode│      └──────────────────────┘      │ page_number          │
# │ version      │                                    │ section_title        │
# │ is_published │      ┌──────────────────────┐      │ embedding vec(1536)  │
# │ creator_id   │──1:N▶│ decision_trees       │      │ metadata_ (jsonb)    │
# │ config(jsonb)│      │ tree_data (jsonb)    │      └──────────────────────┘
# └──────────────┘      │ is_active            │
#                       └──────────────────────┘
#
# Audit records: query_logs, review_logs, collaboration_sessions.
#
# DESIGN DECISIONS:
#
# 1. knowledge_chunks carries plugin_id directly (denormalised from the
#    document). Every vector search filters on it, so cross-plugin leakage
#    would require a missing WHERE clause rather than a missed join.
#
# 2. The decision tree node graph is stored as an id-keyed JSONB mapping,
#    not as rows with parent pointers. Traversal is by id lookup.
#
# 3. A partial unique index enforces at most one active tree per plugin.
#
# 4. collaboration_sessions is append-only from the engine's perspective:
#    rounds are appended as they complete and the row is finalised once.
# =============================================================================

import enum
from datetime import datetime

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from plugin_engine.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy declarative base class."""

    pass


class DocumentStatus(str, enum.Enum):
    """
    Ingestion pipeline state for a knowledge document.

    State machine:
        PENDING → PROCESSING → COMPLETED
                             → FAILED
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionStatus(str, enum.Enum):
    """
    Collaboration session lifecycle.

        PENDING → DELIBERATING → COMPLETE
                               → ERROR
    """

    PENDING = "pending"
    DELIBERATING = "deliberating"
    COMPLETE = "complete"
    ERROR = "error"


# =============================================================================
# Plugins & Knowledge Base
# =============================================================================


class Plugin(Base):
    """
    A domain-scoped reasoning agent.

    `citation_mode` is one of "mandatory", "optional", "none". `config` holds
    per-plugin engine overrides (extraction patterns, question matching).
    """

    __tablename__ = "plugins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    domain: Mapped[str] = mapped_column(String(200), nullable=False)
    system_prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    citation_mode: Mapped[str] = mapped_column(
        String(20), nullable=False, default="mandatory",
    )
    version: Mapped[str] = mapped_column(String(50), nullable=False, default="1.0.0")
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Owning user id from the external user store (opaque to the engine)
    creator_id: Mapped[str | None] = mapped_column(String(200), nullable=True)

    config: Mapped[dict | None] = mapped_column(JSONB, nullable=True, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    documents: Mapped[list["KnowledgeDocument"]] = relationship(
        "KnowledgeDocument", back_populates="plugin", cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Plugin(id={self.id}, slug='{self.slug}', published={self.is_published})>"


class KnowledgeDocument(Base):
    """A source document in a plugin's knowledge base."""

    __tablename__ = "knowledge_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plugin_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("plugins.id", ondelete="CASCADE"), nullable=False,
    )
    file_name: Mapped[str] = mapped_column(String(500), nullable=False)
    file_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    char_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    status: Mapped[DocumentStatus] = mapped_column(
        Enum(DocumentStatus), nullable=False, default=DocumentStatus.PENDING,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    chunk_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    celery_task_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    plugin: Mapped["Plugin"] = relationship("Plugin", back_populates="documents")

    # Chunks are owned by their document: deleting the document deletes them.
    chunks: Mapped[list["KnowledgeChunk"]] = relationship(
        "KnowledgeChunk",
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"<KnowledgeDocument(id={self.id}, plugin_id={self.plugin_id}, "
            f"file='{self.file_name}', status={self.status})>"
        )


class KnowledgeChunk(Base):
    """An indexed, embedded segment of a knowledge document."""

    __tablename__ = "knowledge_chunks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plugin_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("plugins.id", ondelete="CASCADE"), nullable=False,
    )
    document_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("knowledge_documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)

    # Strictly increasing within a document, 0-indexed
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    page_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    section_title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    embedding: Mapped[list[float]] = mapped_column(
        Vector(settings.embedding_dimensions), nullable=False,
    )

    # Named `metadata_` to avoid collision with DeclarativeBase.metadata
    metadata_: Mapped[dict | None] = mapped_column(JSONB, nullable=True, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )

    document: Mapped["KnowledgeDocument"] = relationship(
        "KnowledgeDocument", back_populates="chunks",
    )

    def __repr__(self) -> str:
        return (
            f"<KnowledgeChunk(id={self.id}, doc_id={self.document_id}, "
            f"index={self.chunk_index}, tokens={self.token_count})>"
        )


class DecisionTree(Base):
    """
    A rule graph attached to a plugin.

    tree_data shape:
        {"rootNodeId": "q1", "nodes": {"q1": {...}, "a1": {...}}}
    """

    __tablename__ = "decision_trees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plugin_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("plugins.id", ondelete="CASCADE"), nullable=False,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    tree_data: Mapped[dict] = mapped_column(JSONB, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# =============================================================================
# Indexes — Knowledge Base
# =============================================================================
# HNSW with vector_cosine_ops matches the `1 - cosine_distance` similarity
# used by the retriever. The plugin index backs the mandatory plugin filter.
# =============================================================================

chunk_embedding_idx = Index(
    "idx_knowledge_chunk_embedding_hnsw",
    KnowledgeChunk.embedding,
    postgresql_using="hnsw",
    postgresql_with={"m": 16, "ef_construction": 64},
    postgresql_ops={"embedding": "vector_cosine_ops"},
)

chunk_plugin_idx = Index("idx_knowledge_chunk_plugin_id", KnowledgeChunk.plugin_id)

chunk_document_order_idx = Index(
    "idx_knowledge_chunk_document_order",
    KnowledgeChunk.document_id,
    KnowledgeChunk.chunk_index,
    unique=True,
)

document_plugin_idx = Index("idx_knowledge_document_plugin_id", KnowledgeDocument.plugin_id)

# At most one active tree per plugin
decision_tree_active_idx = Index(
    "idx_decision_tree_one_active",
    DecisionTree.plugin_id,
    unique=True,
    postgresql_where=text("is_active"),
)


# =============================================================================
# Authorisation
# =============================================================================
# API keys are SHA-256 hashed; the key resolves to the owning user id, which
# is the caller id the engine uses for the "published or owned" check.
# =============================================================================


class ApiKey(Base):
    """An API key for authenticating requests."""

    __tablename__ = "api_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    key_prefix: Mapped[str] = mapped_column(String(20), nullable=False)
    key_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    owner_id: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_used_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<ApiKey(id={self.id}, name='{self.name}', "
            f"prefix='{self.key_prefix}', active={self.is_active})>"
        )


# =============================================================================
# Audit Records
# =============================================================================
# Written by the pipelines themselves (not by HTTP middleware) so that
# non-HTTP callers are audited too. `status` is "ok" or "error"; a cancelled
# request writes nothing.
# =============================================================================


class QueryLog(Base):
    """One row per single-agent query."""

    __tablename__ = "query_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plugin_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("plugins.id", ondelete="CASCADE"), nullable=False,
    )
    caller_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    query_text: Mapped[str] = mapped_column(Text, nullable=False)
    response_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    citations: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    decision_path: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    confidence: Mapped[str | None] = mapped_column(String(10), nullable=True)
    flags: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="ok")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )


class ReviewLog(Base):
    """One row per document review."""

    __tablename__ = "review_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plugin_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("plugins.id", ondelete="CASCADE"), nullable=False,
    )
    caller_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    document_title: Mapped[str] = mapped_column(String(500), nullable=False)
    document_text: Mapped[str] = mapped_column(Text, nullable=False)
    total_segments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    annotations: Mapped[list | None] = mapped_column(JSONB, nullable=True)
    summary: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    confidence: Mapped[str | None] = mapped_column(String(10), nullable=True)
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="ok")
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )


class CollaborationSession(Base):
    """
    Append-only audit record of a multi-expert deliberation.

    rounds: [{"round_number": 1, "responses": [...], "excluded": [...]}, ...]
    consensus: ConsensusData as a dict, set once on completion.
    """

    __tablename__ = "collaboration_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    caller_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    query: Mapped[str] = mapped_column(Text, nullable=False)
    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    expert_slugs: Mapped[list] = mapped_column(JSONB, nullable=False)
    max_rounds: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus), nullable=False, default=SessionStatus.PENDING,
    )
    rounds: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    consensus: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    latency_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


query_log_plugin_idx = Index(
    "idx_query_log_plugin_created", QueryLog.plugin_id, QueryLog.created_at,
)
review_log_plugin_idx = Index(
    "idx_review_log_plugin_created", ReviewLog.plugin_id, ReviewLog.created_at,
)
