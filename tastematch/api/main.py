"""FastAPI application main module.

This module defines the FastAPI application for the TasteMatch service: health
and status endpoints, the metrics endpoint, the exception handler that renders
TasteMatch errors and the wiring of the taste routes.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from tastematch import __version__
from tastematch.api.logging_config import RequestLoggingMiddleware, setup_logging
from tastematch.api.metrics import metrics_service
from tastematch.api.routes import taste
from tastematch.api.routes.taste import get_service
from tastematch.config import get_settings
from tastematch.exceptions import TasteMatchException
from tastematch.recommender.service import TasteService

# Configure module logger
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Stop debounce timers and collaborator workers of a lazily built service
    service = getattr(app.state, "service", None)
    if service is not None:
        service.shutdown()


# Create FastAPI application instance
app = FastAPI(
    title=get_settings().app_name,
    description="Music taste embeddings, compatibility and recommendations",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.include_router(taste.router)

_started_at = datetime.now(timezone.utc)


@app.exception_handler(TasteMatchException)
async def tastematch_exception_handler(request: Request, exc: TasteMatchException) -> JSONResponse:
    """Render TasteMatch errors as ``{"error", "details"}`` with their status code."""
    logger.warning(
        f"Request failed with {type(exc).__name__}: {exc.message}",
        extra={"path": str(request.url.path), "status_code": exc.status_code},
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "details": exc.details},
    )


@app.get("/ping")
def ping() -> Dict[str, str]:
    """Health check endpoint.

    Returns:
        Dictionary with status key set to "ok".

    Example:
        >>> response = client.get("/ping")
        >>> assert response.json() == {"status": "ok"}
    """
    return {"status": "ok"}


@app.get("/status")
def status(service: TasteService = Depends(get_service)) -> Dict[str, Any]:
    """Service status: version, uptime, store sizes and cache statistics."""
    return {
        "version": __version__,
        "started_at": _started_at.isoformat(),
        **service.status(),
    }


@app.get("/metrics")
def metrics() -> Dict[str, Any]:
    """Per-operation call counts, latencies and outcome breakdowns."""
    return metrics_service.get_metrics()


if __name__ == "__main__":
    import uvicorn

    setup_logging(get_settings().log_level)

    uvicorn.run(
        "tastematch.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
