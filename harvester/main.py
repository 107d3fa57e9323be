from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from harvester.api.router import api_router
from harvester.core.config import get_settings
from harvester.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from harvester.services.container import Services, build_services
from harvester.services.repository import get_repository

logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    settings = get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.services = services or build_services(settings)
        await app.state.services.start()
        try:
            yield
        finally:
            await app.state.services.stop()
            shutdown_telemetry(telemetry_runtime, app)
            if services is None:
                get_repository.cache_clear()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    telemetry_runtime = setup_telemetry(settings, app)

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
    return app


app = create_app()
