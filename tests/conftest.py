"""Pytest fixtures for settlement engine tests."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any, AsyncGenerator
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from settlement_engine.config import get_settings
from settlement_engine.database import create_schema, get_engine, make_session_factory
from settlement_engine.integrations import DispatchReceipt, LoggingEmailSender, StubPayoutRail
from settlement_engine.models import Invoice, User
from settlement_engine.services import AuditLogger, Caller, SettlementOrchestrator

TEST_AUDIT_SECRET = "test-audit-secret"
ADMIN_EMAIL = "admin@example.com"
FREELANCER_EMAIL = "freelancer@example.com"
CLIENT_EMAIL = "client@example.com"


@pytest.fixture(autouse=True)
def pinned_settings(monkeypatch):
    """Pin configuration for every test."""
    monkeypatch.setenv("AUDIT_SECRET", TEST_AUDIT_SECRET)
    monkeypatch.setenv("ADMIN_EMAILS", ADMIN_EMAIL)
    monkeypatch.setenv("PLATFORM_FEE_RATE", "0.01")
    monkeypatch.setenv("REFERRAL_COMMISSION_RATE", "0.10")
    monkeypatch.setenv("SAVINGS_MAX_TOTAL_PERCENTAGE", "50")
    monkeypatch.setenv("EXTERNAL_CALL_TIMEOUT_SECONDS", "1")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


# File-backed SQLite so that separate sessions use separate connections
@pytest.fixture
async def engine(tmp_path):
    """Create test database engine."""
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# =============================================================================
# Fake collaborators
# =============================================================================


class RecordingDispatcher:
    """Notification dispatcher that records events instead of delivering them."""

    def __init__(self, fail: bool = False, delay: float = 0.0):
        self.fail = fail
        self.delay = delay
        self.events: list[tuple[UUID, str, dict[str, Any]]] = []

    async def dispatch(self, user_id: UUID, event_type: str, payload: dict[str, Any]) -> DispatchReceipt:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ConnectionError("dispatcher unavailable")
        self.events.append((user_id, event_type, payload))
        return DispatchReceipt(event_type=event_type, subscriber_count=1)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [payload for _, et, payload in self.events if et == event_type]


class FailingPayoutRail:
    provider_name = "failing_rail"

    def __init__(self) -> None:
        self.calls = 0

    async def initiate_payout(self, user_id, amount, email, name):
        self.calls += 1
        raise ConnectionError("payout rail unavailable")


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def payout_rail() -> StubPayoutRail:
    return StubPayoutRail()


@pytest.fixture
def email_sender() -> LoggingEmailSender:
    return LoggingEmailSender()


@pytest.fixture
def audit(session) -> AuditLogger:
    return AuditLogger(session, secret=TEST_AUDIT_SECRET)


@pytest.fixture
def orchestrator(session, payout_rail, dispatcher, audit) -> SettlementOrchestrator:
    return SettlementOrchestrator(
        session,
        payout_rail=payout_rail,
        dispatcher=dispatcher,
        audit=audit,
        step_timeout=1.0,
    )


# =============================================================================
# Data helpers
# =============================================================================


async def make_user(
    session: AsyncSession,
    email: str,
    name: str | None = None,
    referred_by: User | None = None,
) -> User:
    user = User(
        external_id=f"idp|{email}",
        email=email,
        name=name,
        referred_by_id=referred_by.id if referred_by else None,
    )
    session.add(user)
    await session.flush()
    return user


async def make_invoice(
    session: AsyncSession,
    owner: User,
    client_email: str = CLIENT_EMAIL,
    amount: Decimal = Decimal("1000.00"),
    escrow_enabled: bool = False,
    number: str | None = None,
) -> Invoice:
    invoice = Invoice(
        invoice_number=number or f"INV-{uuid4().hex[:10].upper()}",
        user_id=owner.id,
        client_email=client_email,
        client_name="Acme Corp",
        description="Website redesign",
        amount=amount,
        currency="USD",
        status="pending",
        escrow_enabled=escrow_enabled,
        escrow_release_conditions="Deliver final designs" if escrow_enabled else None,
        escrow_status="none",
    )
    session.add(invoice)
    await session.flush()
    return invoice


def caller_for(user: User, is_admin: bool = False) -> Caller:
    return Caller(user_id=user.id, email=user.email, is_admin=is_admin)


@pytest.fixture
async def freelancer(session) -> User:
    return await make_user(session, FREELANCER_EMAIL, "Fran Lancer")


@pytest.fixture
async def client_user(session) -> User:
    return await make_user(session, CLIENT_EMAIL, "Cli Ent")


@pytest.fixture
async def admin_user(session) -> User:
    return await make_user(session, ADMIN_EMAIL, "Ad Min")


@pytest.fixture
async def stranger(session) -> User:
    return await make_user(session, "stranger@example.com", "Str Anger")


@pytest.fixture
def owner_caller(freelancer) -> Caller:
    return caller_for(freelancer)


@pytest.fixture
def client_caller(client_user) -> Caller:
    return caller_for(client_user)


@pytest.fixture
def admin_caller(admin_user) -> Caller:
    return caller_for(admin_user, is_admin=True)


@pytest.fixture
def stranger_caller(stranger) -> Caller:
    return caller_for(stranger)


@pytest.fixture
async def invoice(session, freelancer) -> Invoice:
    invoice = await make_invoice(session, freelancer, number="INV-0000000001")
    await session.commit()
    return invoice


@pytest.fixture
async def escrow_invoice(session, freelancer) -> Invoice:
    invoice = await make_invoice(session, freelancer, escrow_enabled=True, number="INV-0000000002")
    await session.commit()
    return invoice
