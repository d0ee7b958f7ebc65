import math
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mancy.app.api.messages import router as messages_router
from mancy.app.core.config import Settings, settings as default_settings
from mancy.app.core.logging import get_logger, setup_logging
from mancy.app.exceptions import AdmissionDenied, MancyException
from mancy.app.middleware.request_id import RequestIdMiddleware, get_request_id
from mancy.app.services.factory import ServiceContainer, build_container


def create_app(
    container: Optional[ServiceContainer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        container: Prebuilt service container (tests); built from
            settings during startup when omitted
        settings: Settings to build the container from

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or (container.settings if container else default_settings)

    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Build services on startup and release them on shutdown."""
        if app.state.container is None:
            app.state.container = build_container(settings)
        services: ServiceContainer = app.state.container

        await services.startup()
        logger.info(
            f"{settings.bot_name} {settings.bot_version} started",
            extra={
                "model": settings.groq_model,
                "durable_store": type(services.durable).__name__ if services.durable else None,
                "debug_mode": settings.debug,
            },
        )

        yield

        await services.shutdown()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title=settings.bot_name,
        description="Rate-limited, cached, self-validating conversation layer over Groq",
        version=settings.bot_version,
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(RequestIdMiddleware)
    app.include_router(messages_router)

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Component status: database and completion service."""
        services: ServiceContainer = request.app.state.container
        health_status: dict[str, Any] = {"status": "ok", "version": settings.bot_version}
        try:
            components = await services.health()
        except Exception as e:
            logger.warning(f"Health check failed: {e}")
            return {"status": "degraded", "components": {"error": str(e)[:100]}}

        health_status["components"] = components
        if "unhealthy" in components.values():
            health_status["status"] = "degraded"
        return health_status

    @app.exception_handler(AdmissionDenied)
    async def admission_denied_handler(request: Request, exc: AdmissionDenied) -> JSONResponse:
        """Handle AdmissionDenied and return HTTP 429 response."""
        retry_after = max(1, math.ceil(exc.wait_time))
        return JSONResponse(
            status_code=429,
            headers={"Retry-After": str(retry_after)},
            content={
                "kind": "rate_limited",
                "text": exc.text or exc.message,
                "reason": exc.reason,
                "wait_time": round(exc.wait_time, 3),
            },
        )

    @app.exception_handler(MancyException)
    async def mancy_exception_handler(request: Request, exc: MancyException) -> JSONResponse:
        """Handle any other domain error with its own status code."""
        logger.warning(
            f"{type(exc).__name__}: {exc.message}",
            extra={"request_id": get_request_id(request)},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": type(exc).__name__, "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; full details go to the log.
        """
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )

        if settings.debug:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": str(exc),
                    "exception_type": type(exc).__name__,
                    "request_id": request_id,
                },
            )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "Internal server error",
                "request_id": request_id,
            },
        )

    return app


# Create the application instance
app = create_app()
