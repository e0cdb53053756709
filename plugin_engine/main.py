# =============================================================================
# FastAPI Application — Entry Point
# =============================================================================
#
# Run locally:
#   uvicorn plugin_engine.main:app --reload
#
# DESIGN DECISION: Engine errors are mapped to HTTP in ONE place. Every
# EngineError carries its own status code and a structured body
# ({code, message, details}); the routers never catch them.
# =============================================================================

import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from plugin_engine.api.collaborate import router as collaborate_router
from plugin_engine.api.documents import router as documents_router
from plugin_engine.api.health import router as health_router
from plugin_engine.api.query import router as query_router
from plugin_engine.api.review import router as review_router
from plugin_engine.config import settings
from plugin_engine.errors import EngineError

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    logger.warning(
        "%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application with all routers.

    Returns:
        FastAPI: Configured application instance
    """
    app = FastAPI(
        title=settings.app_name,
        description=(
            "Plugin reasoning engine: grounded Q&A, document review and "
            "multi-expert collaboration over plugin knowledge bases"
        ),
        version=settings.app_version,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(EngineError, engine_error_handler)

    app.include_router(health_router)
    app.include_router(query_router)
    app.include_router(review_router)
    app.include_router(collaborate_router)
    app.include_router(documents_router)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("plugin_engine.main:app", host="0.0.0.0", port=8000)
