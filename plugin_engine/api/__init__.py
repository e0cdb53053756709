# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
# Thin adapters over the engine: request validation, auth, and mapping of
# engine results (or stream events) to HTTP responses.
#   - query.py: single-plugin Q&A (POST /v1/query)
#   - review.py: document review (POST /v1/review)
#   - collaborate.py: multi-expert sessions (POST /v1/collaborate)
#   - documents.py: knowledge base ingestion and deletion
#   - health.py: liveness probe
#   - deps.py / sse.py: shared dependencies and SSE encoding
# =============================================================================
