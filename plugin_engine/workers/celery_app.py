# =============================================================================
# Celery Application Configuration
# =============================================================================
#
# Celery runs knowledge-base ingestion in the background:
#   text ──▶ chunk ──▶ embed (atomic) ──▶ store ──▶ document COMPLETED
#
# Ingestion is slow (one embedding call per 100 chunks) and must survive
# API restarts, so it runs in a worker rather than a FastAPI background task.
#
#   FastAPI (producer) ──▶ Redis db 0 (broker) ──▶ worker ──▶ Redis db 1 (results)
# =============================================================================

from celery import Celery

from plugin_engine.config import settings

celery_app = Celery(
    "plugin_engine.workers",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    # JSON only: pickle can execute code during deserialisation
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Acknowledge after completion so a crashed worker's task is re-queued
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,

    # Soft limit lets the task mark the document FAILED before the hard kill
    task_soft_time_limit=300,
    task_time_limit=600,

    result_expires=3600,
    include=["plugin_engine.workers.tasks"],
)
