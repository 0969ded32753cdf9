"""FastAPI application for the user service.

``create_app`` builds the app; the module-level ``app`` is what uvicorn
serves (``uvicorn api.main:app``). Service objects are created in the
lifespan from environment settings unless a pre-built container is passed
(tests do this).
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Annotated, Any

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from api.deps import ServiceContainer, build_container, get_container
from api.routes.users import router as users_router
from core.logging_setup import configure_logging
from core.settings import ServiceSettings
from core.users.errors import FailureCategory, UserServiceError, classify_failure
from infrastructure.errors import CallTimeoutError, CircuitOpenError, OperationError
from infrastructure.metrics import get_metrics_response, record_http_request

logger = logging.getLogger(__name__)


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """Build the FastAPI app.

    Args:
        container: Pre-wired services. When omitted, settings are read from
            the environment (and ``.env``) at startup and the container is
            built and closed by the lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = container is None
        if owned:
            load_dotenv()
            settings = ServiceSettings.from_env()
            configure_logging(settings.log_level)
            app.state.container = build_container(settings)
        else:
            app.state.container = container
        logger.info("User service started")
        try:
            yield
        finally:
            if owned:
                app.state.container.close()
            logger.info("User service stopped")

    app = FastAPI(title="User Service", lifespan=lifespan)

    @app.middleware("http")
    async def count_requests(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        response = await call_next(request)
        route = request.scope.get("route")
        path = getattr(route, "path", "unmatched")
        record_http_request(method=request.method, path=path, status=response.status_code)
        return response

    @app.exception_handler(UserServiceError)
    @app.exception_handler(CircuitOpenError)
    @app.exception_handler(CallTimeoutError)
    @app.exception_handler(OperationError)
    async def handle_service_failure(request: Request, exc: Exception) -> JSONResponse:
        category = classify_failure(exc)
        if category is FailureCategory.INTERNAL:
            logger.error("%s %s failed", request.method, request.url.path, exc_info=exc)
            detail = "Internal server error"
        else:
            logger.warning("%s %s: %s (%s)", request.method, request.url.path, exc, category.value)
            detail = str(exc)
        return JSONResponse(
            status_code=category.status_code,
            content={"detail": detail, "category": category.value},
        )

    # Literal paths are registered before the users router's /{user_id} route.

    @app.get("/test", response_class=PlainTextResponse)
    def test_endpoint() -> str:
        """Return a liveness string."""
        return "User service is running"

    @app.get("/health")
    def health(
        container: Annotated[ServiceContainer, Depends(get_container)],
    ) -> JSONResponse:
        """Check the database (through the breaker) and the cache."""
        body: dict[str, Any] = {
            "status": "OK",
            "uptime": round(time.monotonic() - container.started_at, 3),
            "timestamp": int(time.time() * 1000),
            "cache": "connected" if container.cache.ping() else "disconnected",
        }
        status_code = 200
        try:
            container.users.check_database()
            body["database"] = "connected"
        except (CircuitOpenError, CallTimeoutError, OperationError) as exc:
            logger.warning("Health check: database unavailable (%s)", exc)
            body["status"] = str(exc)
            body["database"] = "disconnected"
            status_code = 503
        body["breaker"] = container.guard.breaker.state.value
        return JSONResponse(status_code=status_code, content=body)

    @app.get("/metrics")
    def metrics() -> Response:
        """Prometheus metrics endpoint."""
        payload, content_type = get_metrics_response()
        return Response(content=payload, media_type=content_type)

    app.include_router(users_router)
    return app


app = create_app()
