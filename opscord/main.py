from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from opscord.api.router import api_router
from opscord.core.config import get_settings
from opscord.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from opscord.services.repository import get_repository
from opscord.services.tasks import get_task_runner

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    if not settings.database_url:
        logger.warning("OPSCORD_DATABASE_URL not set; using in-memory repository")
    try:
        yield
    finally:
        # Let in-flight correlation passes finish before the pool goes away.
        await get_task_runner().drain(timeout=10.0)
        shutdown_telemetry(tracer_provider, app)
        await get_repository().close()


configure_logging()
app = FastAPI(title=settings.app_name, lifespan=lifespan)
tracer_provider = setup_telemetry(settings, service_name=settings.otel_service_name, app=app)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
