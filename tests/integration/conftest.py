"""Integration test fixtures: the FastAPI app over a real database."""

from collections.abc import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

from settlement_engine.api.app import create_app
from settlement_engine.integrations import Identity, StaticTokenIdentityProvider

from ..conftest import ADMIN_EMAIL, CLIENT_EMAIL, FREELANCER_EMAIL

STRANGER_EMAIL = "stranger@example.com"

TOKENS = {
    "freelancer-token": Identity(subject=f"idp|{FREELANCER_EMAIL}", email=FREELANCER_EMAIL, name="Fran Lancer"),
    "client-token": Identity(subject=f"idp|{CLIENT_EMAIL}", email=CLIENT_EMAIL, name="Cli Ent"),
    "admin-token": Identity(subject=f"idp|{ADMIN_EMAIL}", email=ADMIN_EMAIL, name="Ad Min"),
    "stranger-token": Identity(subject=f"idp|{STRANGER_EMAIL}", email=STRANGER_EMAIL, name="Str Anger"),
}


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


FREELANCER = bearer("freelancer-token")
CLIENT = bearer("client-token")
ADMIN = bearer("admin-token")
STRANGER = bearer("stranger-token")


@pytest.fixture
def app(pinned_settings, session_factory, payout_rail, dispatcher, email_sender):
    return create_app(
        pinned_settings,
        session_factory=session_factory,
        identity_provider=StaticTokenIdentityProvider(TOKENS),
        payout_rail=payout_rail,
        dispatcher=dispatcher,
        email_sender=email_sender,
    )


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def create_invoice(client: AsyncClient, amount: str = "1000.00", **fields) -> dict:
    payload = {
        "client_email": CLIENT_EMAIL,
        "client_name": "Acme Corp",
        "description": "Website redesign",
        "amount": amount,
        **fields,
    }
    response = await client.post("/api/v1/invoices", headers=FREELANCER, json=payload)
    assert response.status_code == 201, response.text
    return response.json()


async def pay(client: AsyncClient, invoice: dict) -> dict:
    response = await client.post(f"/api/v1/pay/{invoice['invoice_number']}")
    assert response.status_code == 200, response.text
    return response.json()
