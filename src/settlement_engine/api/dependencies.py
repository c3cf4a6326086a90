"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.config import Settings
from settlement_engine.errors import UnauthenticatedError
from settlement_engine.integrations import (
    EmailSender,
    IdentityProvider,
    NotificationDispatcher,
    PayoutRail,
)
from settlement_engine.models import User
from settlement_engine.services import (
    AuditLogger,
    Caller,
    DisputeService,
    EscrowService,
    InvoiceService,
    SettlementOrchestrator,
)


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with request.app.state.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


DbSession = Annotated[AsyncSession, Depends(get_db_session)]
AppSettings = Annotated[Settings, Depends(get_settings)]


async def get_caller(
    request: Request,
    db: DbSession,
    settings: AppSettings,
    authorization: Annotated[str | None, Header()] = None,
) -> Caller:
    """Resolve the bearer token to a local user, creating it on first sight."""
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthenticatedError("Unauthorized")
    token = authorization.removeprefix("Bearer ").strip()

    identity_provider: IdentityProvider = request.app.state.identity_provider
    identity = await identity_provider.verify(token)
    if identity is None:
        raise UnauthenticatedError("Invalid token")

    user = await db.scalar(select(User).where(User.external_id == identity.subject))
    if user is None:
        user = User(
            external_id=identity.subject,
            email=identity.email.strip().lower(),
            name=identity.name,
        )
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            # Created by a concurrent first request
            await db.rollback()
            user = await db.scalar(select(User).where(User.external_id == identity.subject))
            if user is None:
                raise

    return Caller(
        user_id=user.id,
        email=identity.email,
        is_admin=settings.is_admin(identity.email),
    )


CurrentCaller = Annotated[Caller, Depends(get_caller)]


def _audit(request: Request, db: AsyncSession) -> AuditLogger:
    return AuditLogger(db, secret=request.app.state.settings.audit_secret)


def get_orchestrator(request: Request, db: DbSession) -> SettlementOrchestrator:
    state = request.app.state
    payout_rail: PayoutRail | None = state.payout_rail
    dispatcher: NotificationDispatcher | None = state.dispatcher
    return SettlementOrchestrator(
        db,
        payout_rail=payout_rail,
        dispatcher=dispatcher,
        audit=_audit(request, db),
        step_timeout=state.settings.external_call_timeout_seconds,
    )


def get_invoice_service(request: Request, db: DbSession) -> InvoiceService:
    return InvoiceService(db, dispatcher=request.app.state.dispatcher, audit=_audit(request, db))


def get_escrow_service(request: Request, db: DbSession) -> EscrowService:
    email_sender: EmailSender | None = request.app.state.email_sender
    return EscrowService(db, email_sender=email_sender, audit=_audit(request, db))


def get_dispute_service(request: Request, db: DbSession) -> DisputeService:
    return DisputeService(
        db,
        email_sender=request.app.state.email_sender,
        dispatcher=request.app.state.dispatcher,
        audit=_audit(request, db),
    )


# Type aliases for cleaner dependency injection
Orchestrator = Annotated[SettlementOrchestrator, Depends(get_orchestrator)]
Invoices = Annotated[InvoiceService, Depends(get_invoice_service)]
Escrow = Annotated[EscrowService, Depends(get_escrow_service)]
Disputes = Annotated[DisputeService, Depends(get_dispute_service)]
