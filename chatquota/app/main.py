import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from chatquota.app.api.rate_limit import router as rate_limit_router
from chatquota.app.core.config import Settings, settings as default_settings
from chatquota.app.core.logging import get_logger, setup_logging
from chatquota.app.exceptions import InvalidCostError, RateLimitExceededError, StoreError
from chatquota.app.middleware.rate_limit import RateLimitMiddleware
from chatquota.app.middleware.request_id import RequestIdMiddleware, get_request_id
from chatquota.app.services.rate_limit import (
    RateLimiter,
    UsageAccountant,
    WindowCounterStore,
    init_window_store,
    load_policies,
)


def create_app(
    app_settings: Optional[Settings] = None,
    store: Optional[WindowCounterStore] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Create and configure the FastAPI application.

    This is the composition root: the window store, rate limiter and usage
    accountant are built here and shared through ``app.state``.

    Args:
        app_settings: Settings to use (defaults to the environment)
        store: Pre-built window store; when omitted one is created from
            settings for the lifespan of the app and closed on shutdown
        clock: Time source in epoch seconds

    Returns:
        Configured FastAPI application instance
    """
    app_settings = app_settings or default_settings

    setup_logging()
    logger = get_logger(__name__)

    # Invalid limits fail here, at startup, never per request
    policies = load_policies(app_settings)

    def _wire(app: FastAPI, window_store: WindowCounterStore) -> None:
        limiter = RateLimiter(
            window_store,
            clock=clock,
            timeout=app_settings.rate_limit_store_timeout,
        )
        app.state.window_store = window_store
        app.state.rate_limiter = limiter
        app.state.usage_accountant = UsageAccountant(
            limiter,
            model_multipliers=app_settings.model_token_multipliers,
            timeout=app_settings.rate_limit_store_timeout,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Creates the window store on startup and closes it on shutdown.
        """
        if store is not None:
            _wire(app, store)
            yield
        else:
            async with init_window_store(app_settings, clock) as window_store:
                _wire(app, window_store)
                logger.info(
                    "Application startup complete",
                    extra={
                        "store": type(window_store).__name__,
                        "rate_limiting_disabled": app_settings.rate_limiting_disabled,
                    },
                )
                yield
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="ChatQuota",
        description="Token budget and request rate limiting for an LLM chat service",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.policies = policies

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(RateLimitMiddleware, path_prefixes=app_settings.rate_limit_paths)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=600,
    )

    app.include_router(rate_limit_router)

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Health check with window store connectivity."""
        window_store = getattr(request.app.state, "window_store", None)
        status: dict[str, Any] = {"status": "ok", "components": {}}
        if window_store is None:
            status["status"] = "degraded"
            status["components"]["store"] = {"status": "error", "error": "not initialized"}
            return status
        try:
            await window_store.ping()
            status["components"]["store"] = {
                "status": "ok",
                "type": type(window_store).__name__,
            }
        except StoreError as e:
            # Rate limiting keeps working in fail-open mode
            status["status"] = "degraded"
            status["components"]["store"] = {"status": "error", "error": str(e)[:100]}
        return status

    @app.exception_handler(RateLimitExceededError)
    async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        """Handle RateLimitExceededError and return HTTP 429 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers=exc.result.to_headers(),
        )

    @app.exception_handler(InvalidCostError)
    async def invalid_cost_handler(request: Request, exc: InvalidCostError) -> JSONResponse:
        """Handle InvalidCostError and return HTTP 400 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "invalid_cost", "message": exc.message},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; full details are logged.
        """
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
            },
        )
        content = {
            "error": "internal_error",
            "message": str(exc) if app_settings.debug else "Internal server error",
            "request_id": request_id,
        }
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
