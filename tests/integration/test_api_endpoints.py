"""API endpoint integration tests.

Drives the FastAPI endpoints end to end against a SQLite database.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from httpx import AsyncClient

from ..conftest import CLIENT_EMAIL, FREELANCER_EMAIL
from .conftest import ADMIN, CLIENT, FREELANCER, STRANGER, create_invoice, pay

pytestmark = pytest.mark.asyncio


class TestHealthEndpoints:
    """Test health check endpoints."""

    async def test_health_check(self, client: AsyncClient):
        """Health endpoint should return 200."""
        response = await client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"
        assert data["failed_settlement_steps"] == 0
        assert "timestamp" in data

    async def test_health_reports_failed_steps(self, client: AsyncClient, dispatcher):
        dispatcher.fail = True
        await pay(client, await create_invoice(client))

        response = await client.get("/health")

        assert response.json()["failed_settlement_steps"] == 1

    async def test_liveness_check(self, client: AsyncClient):
        response = await client.get("/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"


class TestAuthentication:
    async def test_missing_token(self, client: AsyncClient):
        response = await client.get("/api/v1/invoices")

        assert response.status_code == 401
        assert response.json() == {"detail": "Unauthorized", "code": "UNAUTHENTICATED"}

    async def test_unknown_token(self, client: AsyncClient):
        response = await client.get("/api/v1/invoices", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid token"


class TestInvoiceEndpoints:
    async def test_create_and_get_invoice(self, client: AsyncClient):
        invoice = await create_invoice(client)

        assert invoice["status"] == "pending"
        assert invoice["client_email"] == CLIENT_EMAIL
        assert Decimal(invoice["amount"]) == Decimal("1000.00")

        response = await client.get(f"/api/v1/invoices/{invoice['id']}", headers=FREELANCER)
        assert response.status_code == 200
        assert response.json()["invoice_number"] == invoice["invoice_number"]

    async def test_invalid_payload_is_400(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/invoices",
            headers=FREELANCER,
            json={"client_email": "not-an-email", "amount": "10.00"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_FAILED"

    async def test_other_users_invoice_is_404(self, client: AsyncClient):
        invoice = await create_invoice(client)

        response = await client.get(f"/api/v1/invoices/{invoice['id']}", headers=STRANGER)

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    async def test_list_and_cancel(self, client: AsyncClient):
        invoice = await create_invoice(client)

        response = await client.post(f"/api/v1/invoices/{invoice['id']}/cancel", headers=FREELANCER)
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        listed = (await client.get("/api/v1/invoices?status=cancelled", headers=FREELANCER)).json()
        assert listed["total"] == 1

        response = await client.post(f"/api/v1/pay/{invoice['invoice_number']}")
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_STATE"
        assert "cancelled" in response.json()["detail"]


class TestPaymentEndpoints:
    async def test_public_view_records_event(self, client: AsyncClient, dispatcher):
        invoice = await create_invoice(client)

        response = await client.get(f"/api/v1/pay/{invoice['invoice_number']}")

        assert response.status_code == 200
        data = response.json()
        assert data["freelancer_name"] == "Fran Lancer"
        assert data["status"] == "pending"
        assert len(dispatcher.of_type("invoice.viewed")) == 1

    async def test_pay_settles_once(self, client: AsyncClient, dispatcher, payout_rail):
        invoice = await create_invoice(client)

        settled = await pay(client, invoice)

        assert settled["success"] is True
        assert settled["escrow_held"] is False
        assert [s["status"] for s in settled["steps"]] == ["completed"] * 5
        assert len(payout_rail.initiated) == 1
        assert len(dispatcher.of_type("invoice.paid")) == 1

        response = await client.post(f"/api/v1/pay/{invoice['invoice_number']}")
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_STATE"
        assert "paid" in response.json()["detail"]
        assert len(payout_rail.initiated) == 1

    async def test_pay_unknown_invoice(self, client: AsyncClient):
        response = await client.post("/api/v1/pay/INV-0000000000")

        assert response.status_code == 404

    async def test_failed_step_still_reports_success(self, client: AsyncClient, dispatcher):
        dispatcher.fail = True
        invoice = await create_invoice(client)

        settled = await pay(client, invoice)

        notify = next(s for s in settled["steps"] if s["name"] == "notify")
        assert notify["status"] == "failed"

        dispatcher.fail = False
        response = await client.post(f"/api/v1/invoices/{invoice['id']}/redrive", headers=FREELANCER)
        assert response.status_code == 200
        steps = {s["name"]: s["status"] for s in response.json()["steps"]}
        assert steps["notify"] == "completed"
        assert steps["payout"] == "skipped"

    async def test_redrive_pending_invoice_rejected(self, client: AsyncClient):
        invoice = await create_invoice(client)

        response = await client.post(f"/api/v1/invoices/{invoice['id']}/redrive", headers=FREELANCER)

        assert response.status_code == 400


class TestEscrowEndpoints:
    async def test_escrow_release_flow(self, client: AsyncClient, email_sender):
        invoice = await create_invoice(client)

        response = await client.post(
            "/api/v1/escrow/enable",
            headers=FREELANCER,
            json={"invoice_id": invoice["id"], "release_conditions": "Final files delivered"},
        )
        assert response.status_code == 200
        assert response.json()["escrow_enabled"] is True

        settled = await pay(client, invoice)
        assert settled["escrow_held"] is True

        release = {"invoice_id": invoice["id"], "client_email": CLIENT_EMAIL, "approval_notes": "Thanks"}
        response = await client.post("/api/v1/escrow/release", headers=CLIENT, json=release)
        assert response.status_code == 200
        assert response.json()["escrow_status"] == "released"
        assert email_sender.sent[-1][0] == FREELANCER_EMAIL

        response = await client.post("/api/v1/escrow/release", headers=CLIENT, json=release)
        assert response.status_code == 400
        assert "released" in response.json()["detail"]

        status = (await client.get(f"/api/v1/escrow/{invoice['id']}", headers=CLIENT)).json()
        assert [e["event_type"] for e in status["events"]] == ["created", "held", "released"]

    async def test_spoofed_client_email_is_403(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/escrow/release",
            headers=STRANGER,
            json={"invoice_id": str(uuid4()), "client_email": CLIENT_EMAIL},
        )

        assert response.status_code == 403
        assert response.json()["detail"] == "clientEmail must match authenticated user email"

    async def test_escrow_dispute_requires_known_action(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/escrow/dispute",
            headers=CLIENT,
            json={
                "invoice_id": str(uuid4()),
                "client_email": CLIENT_EMAIL,
                "reason": "Work not delivered",
                "requested_action": "chargeback",
            },
        )

        assert response.status_code == 400

    async def test_stranger_cannot_read_escrow(self, client: AsyncClient):
        invoice = await create_invoice(client)

        response = await client.get(f"/api/v1/escrow/{invoice['id']}", headers=STRANGER)

        assert response.status_code == 403


class TestDisputeEndpoints:
    async def test_dispute_lifecycle(self, client: AsyncClient):
        invoice = await create_invoice(client)
        await pay(client, invoice)

        response = await client.post(
            "/api/v1/disputes",
            headers=CLIENT,
            json={
                "invoice_id": invoice["id"],
                "initiator_email": CLIENT_EMAIL,
                "reason": "Deliverables incomplete",
                "requested_action": "partial_refund",
                "evidence": ["https://files.example.com/diff.png"],
            },
        )
        assert response.status_code == 201, response.text
        dispute = response.json()
        assert dispute["status"] == "open"
        assert dispute["initiated_by"] == "client"
        assert len(dispute["messages"]) == 1

        response = await client.post(
            "/api/v1/disputes",
            headers=CLIENT,
            json={
                "invoice_id": invoice["id"],
                "initiator_email": CLIENT_EMAIL,
                "reason": "Deliverables incomplete",
                "requested_action": "refund",
            },
        )
        assert response.status_code == 409

        response = await client.post(
            f"/api/v1/disputes/{dispute['id']}/messages",
            headers=FREELANCER,
            json={"sender_email": FREELANCER_EMAIL, "message": "Uploading the missing pages"},
        )
        assert response.status_code == 201
        assert response.json()["sender_type"] == "freelancer"

        resolve = {
            "resolution": "Half the pages were missing",
            "action": "refund_partial",
            "refund_amount": "400.00",
            "resolved_by": "admin",
        }
        response = await client.post(f"/api/v1/disputes/{dispute['id']}/resolve", headers=FREELANCER, json=resolve)
        assert response.status_code == 403

        response = await client.post(f"/api/v1/disputes/{dispute['id']}/resolve", headers=ADMIN, json=resolve)
        assert response.status_code == 200, response.text
        resolved = response.json()
        assert resolved["status"] == "resolved"
        assert resolved["resolved_by"] == "admin"
        assert len(resolved["messages"]) == 3

        invoice_now = (await client.get(f"/api/v1/invoices/{invoice['id']}", headers=FREELANCER)).json()
        assert invoice_now["status"] == "disputed"

    async def test_dispute_on_pending_invoice_rejected(self, client: AsyncClient):
        invoice = await create_invoice(client)

        response = await client.post(
            "/api/v1/disputes",
            headers=CLIENT,
            json={
                "invoice_id": invoice["id"],
                "initiator_email": CLIENT_EMAIL,
                "reason": "Deliverables incomplete",
                "requested_action": "refund",
            },
        )

        assert response.status_code == 400
        assert "pending" in response.json()["detail"]

    async def test_list_is_scoped(self, client: AsyncClient):
        invoice = await create_invoice(client)
        await pay(client, invoice)
        await client.post(
            "/api/v1/disputes",
            headers=FREELANCER,
            json={
                "invoice_id": invoice["id"],
                "initiator_email": FREELANCER_EMAIL,
                "reason": "Client requested rework twice",
                "requested_action": "revision",
            },
        )

        assert len((await client.get("/api/v1/disputes", headers=CLIENT)).json()["items"]) == 1
        assert (await client.get("/api/v1/disputes", headers=STRANGER)).json()["items"] == []


class TestSavingsEndpoints:
    async def test_goal_lifecycle(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/savings/goals",
            headers=FREELANCER,
            json={"title": "Taxes", "target_amount": "5000", "savings_percentage": 30},
        )
        assert response.status_code == 201
        goal = response.json()

        response = await client.post(
            "/api/v1/savings/goals",
            headers=FREELANCER,
            json={"title": "Holiday", "target_amount": "2000", "savings_percentage": 25},
        )
        assert response.status_code == 400
        assert "Available: 20%" in response.json()["detail"]

        await pay(client, await create_invoice(client))

        listed = (await client.get("/api/v1/savings/goals", headers=FREELANCER)).json()
        assert listed["summary"]["total_active_percentage"] == 30
        assert listed["summary"]["remaining_percentage"] == 20
        assert Decimal(listed["goals"][0]["current_amount"]) == Decimal("300")
        assert Decimal(listed["goals"][0]["progress"]) == Decimal("6")

        response = await client.patch(
            f"/api/v1/savings/goals/{goal['id']}", headers=FREELANCER, json={"is_active": False}
        )
        assert response.json()["is_active"] is False

        response = await client.delete(f"/api/v1/savings/goals/{goal['id']}", headers=FREELANCER)
        assert response.status_code == 400

        response = await client.post(f"/api/v1/savings/goals/{goal['id']}/release", headers=FREELANCER)
        assert response.status_code == 200
        assert Decimal(response.json()["released_amount"]) == Decimal("300")

        response = await client.delete(f"/api/v1/savings/goals/{goal['id']}", headers=FREELANCER)
        assert response.status_code == 204

    async def test_percentage_over_50_rejected_by_schema(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/savings/goals",
            headers=FREELANCER,
            json={"title": "Everything", "target_amount": "100", "savings_percentage": 60},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_FAILED"


class TestReferralEndpoints:
    async def test_referral_commission_flow(self, client: AsyncClient):
        stats = (await client.get("/api/v1/referrals/stats", headers=STRANGER)).json()
        code = stats["referral_code"]
        assert code.startswith("REF-")

        response = await client.post("/api/v1/referrals/apply", headers=FREELANCER, json={"code": code})
        assert response.status_code == 204

        response = await client.post("/api/v1/referrals/apply", headers=FREELANCER, json={"code": code})
        assert response.status_code == 409

        await pay(client, await create_invoice(client, amount="2000.00"))

        stats = (await client.get("/api/v1/referrals/stats", headers=STRANGER)).json()
        assert stats["referral_code"] == code
        assert stats["total_referred"] == 1
        assert Decimal(stats["total_earned"]) == Decimal("2")
        [entry] = stats["recent_history"]
        assert entry["user"] == "f***@example.com"

    async def test_own_code_rejected(self, client: AsyncClient):
        code = (await client.get("/api/v1/referrals/stats", headers=FREELANCER)).json()["referral_code"]

        response = await client.post("/api/v1/referrals/apply", headers=FREELANCER, json={"code": code})

        assert response.status_code == 400


class TestAuditEndpoints:
    async def test_audit_trail_visibility(self, client: AsyncClient):
        invoice = await create_invoice(client)
        await client.get(f"/api/v1/pay/{invoice['invoice_number']}")
        await pay(client, invoice)

        owner_view = (await client.get(f"/api/v1/audit/invoices/{invoice['id']}", headers=FREELANCER)).json()
        assert [e["event_type"] for e in owner_view["events"]] == ["invoice.viewed", "invoice.paid"]
        assert all(e["is_valid"] for e in owner_view["events"])
        assert owner_view["events"][1]["metadata"]["clientEmail"] == CLIENT_EMAIL

        client_view = (await client.get(f"/api/v1/audit/invoices/{invoice['id']}", headers=CLIENT)).json()
        assert client_view["events"][1]["metadata"]["clientEmail"] == "c***@example.com"

        response = await client.get(f"/api/v1/audit/invoices/{invoice['id']}", headers=STRANGER)
        assert response.status_code == 403


class TestWebhookEndpoints:
    async def test_subscription_crud(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/webhooks",
            headers=FREELANCER,
            json={"target_url": "https://hooks.example.com/in", "events": ["invoice.paid"]},
        )
        assert response.status_code == 201
        created = response.json()
        assert created["signing_secret"].startswith("whsec_")

        listed = (await client.get("/api/v1/webhooks", headers=FREELANCER)).json()
        assert [w["id"] for w in listed] == [created["id"]]
        assert "signing_secret" not in listed[0]

        response = await client.delete(f"/api/v1/webhooks/{created['id']}", headers=STRANGER)
        assert response.status_code == 404

        response = await client.delete(f"/api/v1/webhooks/{created['id']}", headers=FREELANCER)
        assert response.status_code == 204

    async def test_unknown_event_rejected(self, client: AsyncClient):
        response = await client.post(
            "/api/v1/webhooks",
            headers=FREELANCER,
            json={"target_url": "https://hooks.example.com/in", "events": ["invoice.exploded"]},
        )

        assert response.status_code == 400
