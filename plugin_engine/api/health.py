# =============================================================================
# Health API — Liveness Probe
# =============================================================================

from fastapi import APIRouter

from plugin_engine.config import settings
from plugin_engine.models.responses import HealthResponse

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse, summary="Liveness check")
async def health() -> HealthResponse:
    return HealthResponse(version=settings.app_version, service=settings.app_name)
