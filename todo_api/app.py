from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from todo_api.api.error_handling import register_exception_handlers
from todo_api.api.schemas import Envelope
from todo_api.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    from todo_api.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info(
        "app_started",
        store_type=type(runtime.store).__name__,
        cache_type=type(runtime.cache).__name__,
    )

    yield

    # Shutdown
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app() -> FastAPI:
    app = FastAPI(title="Todo API", version=__version__, lifespan=lifespan)
    register_exception_handlers(app)

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag every log line of the request with a correlation id.

        Taken from ``X-Request-ID`` when the client sends one, generated
        otherwise, and echoed back in the response header.
        """
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.get("/healthz")
    async def healthz() -> dict:
        return Envelope(status="ok", data={"status": "healthy"}).model_dump()

    return app


app = create_app()
