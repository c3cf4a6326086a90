"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from settlement_engine import __version__
from settlement_engine.api.routes import (
    audit_router,
    disputes_router,
    escrow_router,
    health_router,
    invoices_router,
    payments_router,
    referrals_router,
    savings_router,
    webhooks_router,
)
from settlement_engine.config import Settings, configure_logging, get_settings
from settlement_engine.database import dispose_db, init_db
from settlement_engine.errors import SettlementError
from settlement_engine.integrations import (
    EmailSender,
    IdentityProvider,
    LoggingEmailSender,
    NotificationDispatcher,
    PayoutRail,
    StaticTokenIdentityProvider,
    StubPayoutRail,
    WebhookDispatcher,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    if app.state.session_factory is None:
        _, factory = init_db()
        app.state.session_factory = factory
    if app.state.dispatcher is None:
        app.state.dispatcher = WebhookDispatcher(
            app.state.session_factory,
            timeout_seconds=app.state.settings.external_call_timeout_seconds,
            max_attempts=app.state.settings.webhook_max_attempts,
        )
    yield
    # Shutdown
    if isinstance(app.state.dispatcher, WebhookDispatcher):
        await app.state.dispatcher.drain()
    await dispose_db()


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    identity_provider: IdentityProvider | None = None,
    payout_rail: PayoutRail | None = None,
    dispatcher: NotificationDispatcher | None = None,
    email_sender: EmailSender | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators default to the stub adapters; the session factory and
    webhook dispatcher are created at startup when not supplied.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="Settlement Engine API",
        description="Invoice settlement with escrow, disputes, savings and referrals",
        version=__version__,
        lifespan=lifespan,
        debug=settings.debug,
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.identity_provider = identity_provider or StaticTokenIdentityProvider()
    app.state.payout_rail = payout_rail or StubPayoutRail()
    app.state.dispatcher = dispatcher
    app.state.email_sender = email_sender or LoggingEmailSender()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
        """Map domain errors onto their HTTP status."""
        if exc.http_status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.http_status,
            content={"detail": exc.message, "code": exc.code},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Report malformed input as a 400 with the first problem."""
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "detail": f"{location}: {message}" if location else message,
                "code": "VALIDATION_FAILED",
            },
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(invoices_router, prefix="/api/v1")
    app.include_router(escrow_router, prefix="/api/v1")
    app.include_router(disputes_router, prefix="/api/v1")
    app.include_router(savings_router, prefix="/api/v1")
    app.include_router(referrals_router, prefix="/api/v1")
    app.include_router(audit_router, prefix="/api/v1")
    app.include_router(webhooks_router, prefix="/api/v1")

    return app
