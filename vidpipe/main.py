"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Response

from vidpipe.core.config import settings
from vidpipe.core.exceptions import QueueUnavailable
from vidpipe.core.logging import log_warning, setup_logging
from vidpipe.core.metrics import get_content_type, get_metrics, set_app_info
from vidpipe.core.middleware import CorrelationIdMiddleware, TracingMiddleware
from vidpipe.core.tracing import setup_tracing, shutdown_tracing
from vidpipe.modules.job.router import router as video_router
from vidpipe.modules.queue import create_queue, setup_queue

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the queue and declare the stream and consumer group."""
    queue = create_queue()
    app.state.queue = queue
    try:
        await setup_queue(queue)
    except QueueUnavailable as e:
        # Requests answer 503 until the broker is reachable
        log_warning(logger, f"Broker unavailable at startup: {e.message}")
    try:
        yield
    finally:
        await queue.close()
        shutdown_tracing()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="Asynchronous video transcoding pipeline: job submission and queue monitoring.",
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "health", "description": "Health check endpoints"},
        {"name": "videos", "description": "Transcoding job submission and dead-letter management"},
    ],
)

setup_logging(
    level=settings.LOG_LEVEL if not settings.DEBUG else "DEBUG",
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

setup_tracing(
    service_name=settings.PROJECT_NAME,
    service_version=settings.VERSION,
    environment=settings.ENVIRONMENT,
    otlp_endpoint=settings.OTLP_ENDPOINT,
    enable_console_export=settings.DEBUG,
)

set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

app.add_middleware(TracingMiddleware)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(video_router, prefix=settings.API_V1_PREFIX)


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Liveness of the API process."""
    return {"status": "healthy"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus scrape endpoint."""
    return Response(content=get_metrics(), media_type=get_content_type())
