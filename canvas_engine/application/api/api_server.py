from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
import uvicorn

from canvas_engine.application.api.route.canvas import router as canvas_router
from canvas_engine.config import get_settings
from canvas_engine.domain.errors import StructuralError
from canvas_engine.domain.orchestration.canvas_engine import CanvasEngine
from canvas_engine.infrastructure.observability.logging import metrics, setup_logging

logger = structlog.get_logger(__name__)


def create_app(engine: Optional[CanvasEngine] = None) -> FastAPI:
    """Build the HTTP app around one canvas engine"""

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)

    app = FastAPI(title="Canvas Engine API")

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.engine = engine or CanvasEngine(settings)
    app.include_router(canvas_router, prefix="/api/v1/canvas", tags=["canvas"])

    @app.exception_handler(StructuralError)
    async def structural_error_handler(request: Request, exc: StructuralError):
        logger.warning("Structural error", path=request.url.path, error=str(exc), card_ids=exc.card_ids)
        return JSONResponse(status_code=409, content={"detail": str(exc), "card_ids": exc.card_ids})

    @app.on_event("startup")
    async def startup_event():
        """Start the index worker and debounce timers"""
        await app.state.engine.start()
        if app.state.engine.generator is None:
            logger.info("No chat model configured; regeneration only flags cards")
        logger.info("Canvas API started")

    @app.on_event("shutdown")
    async def shutdown_event():
        await app.state.engine.stop()
        logger.info("Canvas API shutdown")

    @app.get("/health")
    async def health():
        engine = app.state.engine
        return {
            "status": "healthy",
            "cards": len(engine.store),
            "stale": engine.stale_count(),
            "regeneration": engine.get_regeneration_progress().status.value,
            "metrics": metrics.get_metrics_summary(),
        }

    return app


def main() -> None:
    uvicorn.run(
        "canvas_engine.application.api.api_server:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
    )


if __name__ == "__main__":
    main()
