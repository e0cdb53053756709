# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
# Document ingestion (chunk → embed → store) runs outside the request path.
# Start a worker with:
#   celery -A plugin_engine.workers.celery_app worker --loglevel=info
# =============================================================================
