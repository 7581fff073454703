"""
FastAPI Application Factory

Creates and configures the main API application.
"""

from typing import Any, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import structlog

from src.common.errors import CheckoutError
from src.config import Settings, get_settings
from src.serving.api.dependencies import ServiceContainer
from src.serving.api.middleware import (
    RequestLoggingMiddleware,
    RateLimitMiddleware,
    SecurityHeadersMiddleware,
)
from src.serving.api.routes import (
    cart_router,
    health_router,
    inventory_router,
    orders_router,
    webhooks_router,
)

logger = structlog.get_logger(__name__)


async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "request_rejected",
        error_type=type(exc).__name__,
        status_code=exc.status_code,
        reason=exc.message,
        path=request.url.path,
        **{k: v for k, v in exc.context.items() if v is not None},
    )
    return JSONResponse(status_code=exc.status_code, content={"message": exc.message})


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())[1:]), "error": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"message": "invalid request", "errors": errors})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", path=request.url.path, error_type=type(exc).__name__)
    return JSONResponse(status_code=500, content={"message": "internal error"})


def create_api_app(
    container: Optional[ServiceContainer] = None,
    settings: Optional[Settings] = None,
    lifespan: Optional[Callable[[FastAPI], Any]] = None,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        container: Pre-built services (tests); otherwise the lifespan sets
            ``app.state.container`` on startup
        settings: Settings override
        lifespan: Startup/shutdown context manager

    Returns:
        Configured FastAPI app instance
    """
    settings = settings or (container.settings if container else get_settings())

    app = FastAPI(
        title="Checkout Inventory Core",
        description="Inventory reservation, checkout and payment webhook API",
        version=settings.version,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    app.add_exception_handler(CheckoutError, checkout_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.security.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.security.rate_limit_requests,
        window_seconds=settings.security.rate_limit_window_seconds,
    )
    # Added last so it runs first and binds the request id for the rest
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health_router, tags=["Health"])
    app.include_router(cart_router, prefix="/cart", tags=["Cart"])
    app.include_router(orders_router, prefix="/orders", tags=["Orders"])
    app.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])
    app.include_router(inventory_router, prefix="/inventory", tags=["Inventory"])

    return app
