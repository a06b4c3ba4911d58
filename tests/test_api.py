"""
Tests for the HTTP layer.

The whole app is built by the orchestrator around an in-memory ledger,
the fake gateway and the fake identity provider.
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from taxledger.errors import GatewayError
from taxledger.models.billing import PaymentPurpose
from taxledger.models.ledger import EntryType, NewLedgerEntry
from taxledger.orchestrator import create_app_components


USER_TOKEN = "user-token"
ADMIN_TOKEN = "admin-token"


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def components(settings, database, gateway, identity, audit_logger):
    return create_app_components(
        settings,
        database=database,
        gateway=gateway,
        identity=identity,
        audit_logger=audit_logger,
    )


@pytest.fixture
def client(components, identity, user_id):
    identity.add_user(USER_TOKEN, user_id)
    with TestClient(create_app(components)) as test_client:
        yield test_client


class TestAuth:
    """Tests for credentials and the error envelope."""

    def test_missing_bearer(self, client):
        """Test requests without a credential get a 401 envelope."""
        response = client.post("/paystack-initialize", json={"amount": 5000})

        assert response.status_code == 401
        assert response.json() == {"success": False, "error": "Unauthorized"}

    def test_unknown_token(self, client):
        """Test an unrecognised token is unauthorized."""
        response = client.post("/paystack-verify", json={"reference": "x"}, headers=bearer("nope"))
        assert response.status_code == 401

    @pytest.mark.parametrize("path", ["/calculate-interest", "/reset-withdrawal-flags", "/process-recurring"])
    def test_batch_endpoints_need_service_key(self, client, path):
        """Test that users can't trigger scheduled jobs."""
        response = client.post(path, headers=bearer(USER_TOKEN))

        assert response.status_code == 403
        assert response.json()["success"] is False

    def test_cors_preflight(self, client):
        """Test browsers may call the API from any configured origin."""
        response = client.options(
            "/paystack-initialize",
            headers={
                "Origin": "https://app.example.com",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "authorization, content-type",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"


class TestDepositEndpoints:
    """Tests for the deposit checkout and verify routes."""

    def test_below_minimum(self, client, gateway):
        """Test a small deposit is a 400 with the formatted minimum."""
        response = client.post("/paystack-initialize", json={"amount": 500}, headers=bearer(USER_TOKEN))

        assert response.status_code == 400
        assert "1,000.00" in response.json()["error"]
        assert gateway.initialized == []

    def test_malformed_body(self, client):
        """Test request validation failures use the error envelope."""
        response = client.post("/paystack-initialize", json={"amount": "lots"}, headers=bearer(USER_TOKEN))

        assert response.status_code == 400
        assert response.json()["success"] is False
        assert "amount" in response.json()["error"]

    def test_initialize_then_verify(self, client, gateway, user_id):
        """Test a full deposit round trip credits once and reports the balance."""
        response = client.post(
            "/paystack-initialize",
            json={"amount": 5000, "email": "saver@example.com"},
            headers=bearer(USER_TOKEN),
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["authorization_url"].startswith("https://checkout.example/")
        reference = data["reference"]

        call = gateway.initialized[0]
        gateway.add(reference, call["amount_minor"], call["metadata"])

        verified = client.post("/paystack-verify", json={"reference": reference}, headers=bearer(USER_TOKEN))
        assert verified.status_code == 200
        assert verified.json()["data"]["amount"] == 5000.0
        assert verified.json()["data"]["new_balance"] == 5000.0

        again = client.post("/paystack-verify", json={"reference": reference}, headers=bearer(USER_TOKEN))
        assert again.status_code == 200
        assert again.json()["message"] == "Payment already processed"
        assert again.json()["data"]["already_processed"] is True

    def test_failed_payment_is_402(self, client, gateway, user_id):
        """Test an abandoned payment is reported as not successful."""
        gateway.add(
            "TAX_SAV_dead",
            500000,
            {"user_id": str(user_id), "type": PaymentPurpose.DEPOSIT.value},
            status="abandoned",
        )

        response = client.post("/paystack-verify", json={"reference": "TAX_SAV_dead"}, headers=bearer(USER_TOKEN))

        assert response.status_code == 402

    def test_gateway_down_is_502(self, client, gateway):
        """Test gateway failures surface as 502 and can be retried."""
        gateway.error = GatewayError("Paystack timed out")

        response = client.post("/paystack-verify", json={"reference": "TAX_SAV_x"}, headers=bearer(USER_TOKEN))

        assert response.status_code == 502
        assert response.json() == {"success": False, "error": "Paystack timed out"}


class TestSubscriptionEndpoints:
    """Tests for subscription checkout and activation."""

    def test_subscribe_and_verify(self, client, gateway):
        """Test checkout then verification activates the plan."""
        response = client.post("/subscribe", json={"plan": "monthly"}, headers=bearer(USER_TOKEN))
        assert response.status_code == 200
        assert response.json()["data"]["amount"] == 500.0

        call = gateway.initialized[0]
        gateway.add(call["reference"], call["amount_minor"], call["metadata"])

        verified = client.post(
            "/verify-subscription", json={"reference": call["reference"]}, headers=bearer(USER_TOKEN)
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["plan"] == "monthly"

    def test_invalid_plan(self, client):
        """Test that the free plan can't be bought."""
        response = client.post("/subscribe", json={"plan": "free"}, headers=bearer(USER_TOKEN))
        assert response.status_code == 400


class TestJobEndpoints:
    """Tests for the scheduler-facing routes."""

    def test_calculate_interest(self, client, service_token):
        """Test the service key can run the accrual job."""
        response = client.post("/calculate-interest", headers=bearer(service_token))

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Interest calculated for 0 accounts"
        assert body["data"]["processed"] == 0

    def test_reset_flags(self, client, service_token):
        """Test the quarterly flag reset reports a count."""
        response = client.post("/reset-withdrawal-flags", headers=bearer(service_token))
        assert response.json()["data"] == {"reset": 0}

    def test_recurring_rule_flow(self, client, service_token):
        """Test creating, processing and pausing a rule over HTTP."""
        created = client.post(
            "/recurring-rules/create",
            json={
                "description": "Tax set-aside",
                "amount": "15000",
                "type": "expense",
                "frequency": "monthly",
                "start_date": "2020-01-15",
            },
            headers=bearer(USER_TOKEN),
        )
        assert created.status_code == 200
        rule_id = created.json()["data"]["id"]

        updated = client.post(
            "/recurring-rules/update",
            json={"rule_id": rule_id, "changes": {"notes": "from salary"}},
            headers=bearer(USER_TOKEN),
        )
        assert updated.json()["data"]["notes"] == "from salary"

        batch = client.post("/process-recurring", json={}, headers=bearer(service_token))
        assert batch.status_code == 200
        assert batch.json()["message"].startswith("Processed ")

        paused = client.post(
            "/recurring-rules/set-active",
            json={"rule_id": rule_id, "is_active": False},
            headers=bearer(USER_TOKEN),
        )
        assert paused.json()["data"]["is_active"] is False

        deleted = client.post("/recurring-rules/delete", json={"rule_id": rule_id}, headers=bearer(USER_TOKEN))
        assert deleted.json()["data"] == {"rule_id": rule_id, "deleted": True}

    def test_single_rule_for_stranger(self, client):
        """Test a user can't process someone else's rule."""
        response = client.post(
            "/process-recurring", json={"rule_id": str(uuid4())}, headers=bearer(USER_TOKEN)
        )
        assert response.status_code == 404


class TestWithdrawalEndpoints:
    """Tests for requesting and deciding withdrawals."""

    async def test_request_and_approve(self, client, ledger_storage, identity, user_id):
        """Test a user request approved by an admin debits the account."""
        ledger = ledger_storage
        account = await ledger.get_or_create_account(user_id)
        await ledger.apply_entry(account.id, NewLedgerEntry(
            type=EntryType.DEPOSIT, amount=Decimal("10000"), gateway_reference="TAX_SAV_seed",
        ))
        admin_id = uuid4()
        await ledger.grant_role(admin_id, "admin")
        identity.add_user(ADMIN_TOKEN, admin_id, "admin@example.com")

        requested = client.post(
            "/request-withdrawal",
            json={"amount": "2500", "withdrawal_type": "tax_payment"},
            headers=bearer(USER_TOKEN),
        )
        assert requested.status_code == 200
        withdrawal_id = requested.json()["data"]["id"]

        forbidden = client.post(
            "/process-withdrawal",
            json={"withdrawal_id": withdrawal_id, "action": "approve"},
            headers=bearer(USER_TOKEN),
        )
        assert forbidden.status_code == 403

        approved = client.post(
            "/process-withdrawal",
            json={"withdrawal_id": withdrawal_id, "action": "approve"},
            headers=bearer(ADMIN_TOKEN),
        )
        assert approved.status_code == 200
        assert approved.json()["message"] == "Withdrawal approved and processed"
        assert approved.json()["data"]["status"] == "completed"
        assert (await ledger.get_account(account.id)).balance == Decimal("7500.00")
