"""FastAPI application for the Marketplace Service."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from libs.common.config import get_settings
from libs.common.error_handler import add_exception_handlers
from libs.common.logging import get_logger
from libs.common.middleware import add_observability_middleware, client_ip
from libs.common.rate_limit import (
    ReferenceRateLimiter,
    limiter,
    rate_limit_exceeded_handler,
)
from services.marketplace_service.errors import MarketplaceError
from services.marketplace_service.models import AuditEventType
from services.marketplace_service.routers import (
    audit_router,
    checkout_router,
    orders_router,
    stores_router,
    webhooks_router,
)
from services.marketplace_service.services.audit_logger import AuditLogger
from slowapi.errors import RateLimitExceeded

logger = get_logger(__name__)


async def marketplace_error_handler(
    request: Request, exc: MarketplaceError
) -> JSONResponse:
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "%s: %s",
        exc.code,
        exc.message,
        extra={"extra_fields": {"status_code": exc.status_code, **exc.detail}},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def audited_rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """slowapi 429 response, plus a rate_limit_hit audit record."""
    user = getattr(request.state, "user", None)
    request.app.state.audit_logger.log(
        request.query_params.get("reference") or f"path:{request.url.path}",
        AuditEventType.RATE_LIMIT_HIT,
        user_id=user.user_id if user is not None else None,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
        metadata={"path": request.url.path, "limit": str(exc.detail)},
    )
    return rate_limit_exceeded_handler(request, exc)


def create_app(audit_logger: Optional[AuditLogger] = None) -> FastAPI:
    """Create and configure the Marketplace Service FastAPI app."""
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.audit_logger.start()
        yield
        await app.state.audit_logger.stop()

    app = FastAPI(
        title="Marketplace Settlement Service",
        version="0.1.0",
        description="Checkout pricing, Paystack settlement, inventory and plan enforcement.",
        lifespan=lifespan,
    )

    app.state.audit_logger = audit_logger or AuditLogger()
    app.state.reference_limiter = ReferenceRateLimiter(
        storage_uri=settings.RATE_LIMIT_STORAGE_URI
    )

    # Add rate limiter state to app
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, audited_rate_limit_handler)

    # Add observability (structured logging + request tracing)
    add_observability_middleware(app)

    # Add global exception handlers for consistent error responses
    add_exception_handlers(app)
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)

    @app.get("/health", tags=["system"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok", "service": "marketplace"}

    app.include_router(checkout_router)
    app.include_router(webhooks_router)
    app.include_router(orders_router)
    app.include_router(stores_router)
    app.include_router(audit_router)

    return app


app = create_app()
