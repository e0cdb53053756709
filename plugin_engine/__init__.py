# =============================================================================
# Plugin Reasoning Engine
# =============================================================================
# Domain-scoped reasoning agents ("plugins") backed by a knowledge base, an
# optional decision tree and a citation policy. Callers can query a plugin,
# have it review a document, or have several plugins deliberate together.
#
# Package structure:
#   plugin_engine/
#   ├── api/          → FastAPI route handlers (query, review, collaborate,
#   │                    document ingestion) and the SSE adapter
#   ├── agents/       → Orchestration: decision tree evaluator, citation
#   │                    processing, query/review pipelines, collaboration,
#   │                    streaming transport
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── services/     → Chunking, embedding, vector retrieval, LLM providers,
#   │                    plugin store
#   └── workers/      → Celery task definitions and configuration
# =============================================================================
