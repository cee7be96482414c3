"""
HTTP API tests.

Verifies:
- Unauthenticated requests return 401
- Register/login/logout lifecycle
- Completion endpoint returns the full result and refuses a second call
- Cross-tenant ids return 403, unknown ids 404
- Proposal send throttling surfaces as 429 + Retry-After
- PIX webhook idempotency and signature check
"""

import hashlib
import hmac
import json
from decimal import Decimal

import pytest


# =============================================================================
# UNAUTHENTICATED ACCESS (401)
# =============================================================================


class TestUnauthenticatedAccess:
    """All protected endpoints return 401 without a token."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/auth/me"),
            ("GET", "/api/customers"),
            ("GET", "/api/appointments"),
            ("POST", "/api/appointments/1/complete"),
            ("GET", "/api/proposals"),
            ("POST", "/api/proposals/1/send"),
            ("GET", "/api/inventory/items"),
            ("GET", "/api/inventory/low-stock"),
            ("GET", "/api/loyalty/cards"),
            ("GET", "/api/subscriptions"),
            ("GET", "/api/pix/charges"),
            ("GET", "/api/notifications"),
            ("GET", "/api/tasks"),
            ("GET", "/api/ledger/events"),
            ("POST", "/api/ledger/transactions"),
            ("GET", "/api/ledger/daily-closing"),
        ],
    )
    def test_requires_auth(self, client, db_session, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"

    def test_garbage_token(self, client, db_session):
        resp = client.get("/api/auth/me", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_health_is_public(self, client, db_session):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.json["status"] == "healthy"


# =============================================================================
# AUTH LIFECYCLE
# =============================================================================


class TestAuth:
    def test_register_then_me(self, client, db_session):
        resp = client.post("/api/auth/register", json={
            "business_name": "Studio Nova",
            "email": "Owner@Nova.com",
            "password": "secret123",
        })
        assert resp.status_code == 201
        assert resp.json["user"]["email"] == "owner@nova.com"
        assert resp.json["expires_at"].endswith("Z")

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {resp.json['token']}"})
        assert me.status_code == 200
        assert me.json["business"]["name"] == "Studio Nova"

    def test_register_duplicate_email(self, client, db_session, user_a):
        resp = client.post("/api/auth/register", json={
            "business_name": "Copycat",
            "email": user_a.email,
            "password": "secret123",
        })
        assert resp.status_code == 409

    def test_register_weak_password(self, client, db_session):
        resp = client.post("/api/auth/register", json={
            "business_name": "Weak",
            "email": "weak@example.com",
            "password": "short",
        })
        assert resp.status_code == 400

    def test_login_wrong_password(self, client, db_session, user_a):
        resp = client.post("/api/auth/login", json={"email": user_a.email, "password": "wrong-pass1"})
        assert resp.status_code == 401

    def test_login_missing_fields(self, client, db_session):
        resp = client.post("/api/auth/login", json={"email": "x@example.com"})
        assert resp.status_code == 400

    def test_logout_revokes_token(self, client, db_session, headers_a):
        assert client.post("/api/auth/logout", headers=headers_a).status_code == 200
        assert client.get("/api/auth/me", headers=headers_a).status_code == 401


# =============================================================================
# APPOINTMENT COMPLETION
# =============================================================================


class TestCompletionEndpoint:
    def test_complete_returns_result(self, client, headers_a, appointment_a, item_a, fake_delivery):
        resp = client.post(
            f"/api/appointments/{appointment_a.id}/complete",
            json={"payment_method": "pix", "stock_usages": [{"item_id": item_a.id, "quantity": 2}]},
            headers=headers_a,
        )

        assert resp.status_code == 200
        body = resp.json
        assert body["appointment"]["status"] == "completed"
        assert Decimal(body["transaction"]["amount"]) == Decimal("150.00")
        assert len(body["movements"]) == 1
        assert body["loyalty_after"]["current_stamps"] == 1
        assert body["reward_earned"] is False
        assert body["degraded"] == []

    def test_second_complete_conflicts(self, client, headers_a, appointment_a, fake_delivery):
        url = f"/api/appointments/{appointment_a.id}/complete"
        assert client.post(url, json={}, headers=headers_a).status_code == 200
        assert client.post(url, json={}, headers=headers_a).status_code == 409

    def test_degraded_stock_still_200(self, client, headers_a, appointment_a, fake_delivery):
        resp = client.post(
            f"/api/appointments/{appointment_a.id}/complete",
            json={"stock_usages": [{"item_id": 99999, "quantity": 1}]},
            headers=headers_a,
        )

        assert resp.status_code == 200
        assert resp.json["degraded"][0]["step"] == "stock"

    def test_invalid_payment_method(self, client, headers_a, appointment_a):
        resp = client.post(
            f"/api/appointments/{appointment_a.id}/complete",
            json={"payment_method": "cheque"},
            headers=headers_a,
        )
        assert resp.status_code == 400


# =============================================================================
# TENANT ISOLATION
# =============================================================================


class TestTenantIsolation:
    def test_foreign_appointment_forbidden(self, client, headers_b, appointment_a):
        assert client.get(f"/api/appointments/{appointment_a.id}", headers=headers_b).status_code == 403

    def test_foreign_completion_forbidden(self, client, db_session, headers_b, appointment_a):
        resp = client.post(f"/api/appointments/{appointment_a.id}/complete", json={}, headers=headers_b)

        assert resp.status_code == 403
        db_session.refresh(appointment_a)
        assert appointment_a.status == "scheduled"

    def test_unknown_appointment_not_found(self, client, headers_a):
        assert client.get("/api/appointments/99999", headers=headers_a).status_code == 404

    def test_customer_lists_are_scoped(self, client, headers_a, headers_b, customer_a, customer_b):
        names_a = [c["name"] for c in client.get("/api/customers", headers=headers_a).json["customers"]]
        names_b = [c["name"] for c in client.get("/api/customers", headers=headers_b).json["customers"]]

        assert names_a == ["Maria Silva"]
        assert names_b == ["Joao Souza"]

    def test_foreign_item_movement_forbidden(self, client, headers_b, item_a):
        resp = client.post(
            f"/api/inventory/items/{item_a.id}/movements",
            json={"type": "in", "quantity": 5},
            headers=headers_b,
        )
        assert resp.status_code == 403


# =============================================================================
# INVENTORY / PROPOSALS / NOTIFICATIONS
# =============================================================================


class TestInventoryEndpoints:
    def test_movement_created(self, client, headers_a, item_a):
        resp = client.post(
            f"/api/inventory/items/{item_a.id}/movements",
            json={"type": "out", "quantity": "2.5"},
            headers=headers_a,
        )

        assert resp.status_code == 201
        assert Decimal(resp.json["item"]["current_stock"]) == Decimal("7.5")
        assert Decimal(resp.json["movement"]["previous_stock"]) == Decimal("10")

    def test_movement_requires_fields(self, client, headers_a, item_a):
        resp = client.post(f"/api/inventory/items/{item_a.id}/movements", json={"type": "in"}, headers=headers_a)
        assert resp.status_code == 400

    def test_zero_quantity_rejected(self, client, headers_a, item_a):
        resp = client.post(
            f"/api/inventory/items/{item_a.id}/movements",
            json={"type": "in", "quantity": 0},
            headers=headers_a,
        )
        assert resp.status_code == 400


class TestProposalEndpoints:
    def _create(self, client, headers, customer_id):
        resp = client.post("/api/proposals", json={
            "customer_id": customer_id,
            "title": "Bridal package",
            "services": [{"description": "Makeup", "quantity": 2, "unit_price": 100}],
            "discount_percentage": 10,
            "deposit_percentage": 50,
        }, headers=headers)
        assert resp.status_code == 201
        return resp.json["proposal"]

    def test_amounts_in_response(self, client, headers_a, customer_a):
        proposal = self._create(client, headers_a, customer_a.id)

        assert Decimal(proposal["final_amount"]) == Decimal("180.00")
        assert Decimal(proposal["deposit_amount"]) == Decimal("90.00")

    def test_resend_throttled(self, client, headers_a, customer_a, fake_delivery):
        proposal = self._create(client, headers_a, customer_a.id)
        url = f"/api/proposals/{proposal['id']}/send"

        assert client.post(url, json={}, headers=headers_a).status_code == 200
        resp = client.post(url, json={}, headers=headers_a)

        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) > 0
        assert resp.json["retry_after_seconds"] == int(resp.headers["Retry-After"])

    def test_schedule_twice_same_appointment(self, client, headers_a, customer_a):
        proposal = self._create(client, headers_a, customer_a.id)
        assert client.post(f"/api/proposals/{proposal['id']}/confirm", headers=headers_a).status_code == 200

        body = {"start_time": "2030-01-10T14:00:00Z", "end_time": "2030-01-10T15:00:00Z"}
        first = client.post(f"/api/proposals/{proposal['id']}/schedule", json=body, headers=headers_a)
        second = client.post(f"/api/proposals/{proposal['id']}/schedule", json=body, headers=headers_a)

        assert first.status_code == 200
        assert second.status_code == 200
        assert first.json["appointment"]["id"] == second.json["appointment"]["id"]

    def test_unknown_action(self, client, headers_a, customer_a):
        proposal = self._create(client, headers_a, customer_a.id)
        assert client.post(f"/api/proposals/{proposal['id']}/archive", headers=headers_a).status_code == 404


class TestNotificationEndpoints:
    def test_unseen_then_mark(self, client, headers_a, business_a):
        from opsdesk.services import task_service
        from opsdesk.time_utils import utcnow

        task = task_service.create_task(business_a.id, title="Call supplier", due_date=utcnow())

        unseen = client.get("/api/notifications", headers=headers_a)
        assert unseen.status_code == 200
        assert f"task-{task.id}" in [i["key"] for i in unseen.json["items"]]

        marked = client.post("/api/notifications/seen", json={"items": [f"task-{task.id}"]}, headers=headers_a)
        assert marked.json == {"marked": 1}

        again = client.get("/api/notifications", headers=headers_a)
        assert f"task-{task.id}" not in [i["key"] for i in again.json["items"]]


# =============================================================================
# PIX WEBHOOK
# =============================================================================


class TestPixWebhook:
    def _charge(self, client, headers):
        resp = client.post("/api/pix/charges", json={
            "amount": "75.00",
            "customer_name": "Maria Silva",
            "customer_phone": "+5511999990000",
        }, headers=headers)
        assert resp.status_code == 201
        return resp.json["charge"]

    def test_paid_then_duplicate(self, client, headers_a, fake_charges):
        charge = self._charge(client, headers_a)

        first = client.post("/api/pix/webhook", json={"txid": charge["txid"], "status": "paid"})
        second = client.post("/api/pix/webhook", json={"txid": charge["txid"], "status": "paid"})

        assert first.status_code == 200
        assert first.json == {"success": True, "changed": True, "status": "paid"}
        assert second.json["changed"] is False

    def test_unknown_txid(self, client, db_session):
        resp = client.post("/api/pix/webhook", json={"txid": "nope", "status": "paid"})
        assert resp.status_code == 404

    def test_signature_required_when_secret_set(self, app, client, headers_a, fake_charges):
        charge = self._charge(client, headers_a)
        raw = json.dumps({"txid": charge["txid"], "status": "paid"}).encode("utf-8")
        app.config["PAYMENT_WEBHOOK_SECRET"] = "whsec"
        try:
            unsigned = client.post("/api/pix/webhook", data=raw, content_type="application/json")
            assert unsigned.status_code == 403

            signature = hmac.new(b"whsec", raw, hashlib.sha256).hexdigest()
            signed = client.post(
                "/api/pix/webhook",
                data=raw,
                content_type="application/json",
                headers={"X-Signature": signature},
            )
            assert signed.status_code == 200
            assert signed.json["status"] == "paid"
        finally:
            app.config["PAYMENT_WEBHOOK_SECRET"] = None


# =============================================================================
# LEDGER: MANUAL ENTRIES AND DAILY CLOSING
# =============================================================================


class TestLedgerEndpoints:
    def _post(self, client, headers, **body):
        return client.post("/api/ledger/transactions", json=body, headers=headers)

    def test_manual_expense_created(self, client, headers_a):
        resp = self._post(
            client, headers_a,
            type="expense", amount="45.90", description="Shampoo refill",
            payment_method="pix", category="supplies",
            transaction_date="2024-05-01T10:00:00Z",
        )

        assert resp.status_code == 201
        tx = resp.json["transaction"]
        assert tx["type"] == "expense"
        assert Decimal(tx["amount"]) == Decimal("45.90")
        assert tx["category"] == "supplies"
        assert tx["transaction_date"] == "2024-05-01T10:00:00Z"

    @pytest.mark.parametrize("body", [
        {"type": "expense", "amount": 0, "description": "Nothing"},
        {"type": "expense", "amount": "-5", "description": "Negative"},
        {"type": "transfer", "amount": "5", "description": "Bad type"},
        {"amount": "5", "description": "No type"},
        {"type": "income", "description": "No amount"},
    ])
    def test_invalid_entries_rejected(self, client, headers_a, body):
        resp = self._post(client, headers_a, **body)
        assert resp.status_code == 400

    def test_daily_closing(self, client, headers_a):
        self._post(client, headers_a, type="income", amount="80.00", description="Cut",
                   payment_method="dinheiro", transaction_date="2024-05-01T11:00:00Z")
        self._post(client, headers_a, type="expense", amount="30.00", description="Towels",
                   transaction_date="2024-05-01T12:00:00Z")

        resp = client.get("/api/ledger/daily-closing?day=2024-05-01", headers=headers_a)

        assert resp.status_code == 200
        assert Decimal(resp.json["payments"]["cash"]) == Decimal("80.00")
        assert Decimal(resp.json["payments"]["total"]) == Decimal("80.00")
        assert Decimal(resp.json["balance"]) == Decimal("50.00")
        assert resp.json["expenses"][0]["description"] == "Towels"

    def test_daily_closing_scoped_to_business(self, client, headers_a, headers_b):
        self._post(client, headers_a, type="income", amount="80.00", description="Cut",
                   transaction_date="2024-05-01T11:00:00Z")

        resp = client.get("/api/ledger/daily-closing?day=2024-05-01", headers=headers_b)

        assert Decimal(resp.json["payments"]["total"]) == Decimal("0")

    def test_daily_closing_bad_day(self, client, headers_a):
        resp = client.get("/api/ledger/daily-closing?day=yesterday", headers=headers_a)
        assert resp.status_code == 400

    def test_send_daily_closing(self, client, headers_a, user_a, fake_delivery):
        resp = client.post("/api/ledger/daily-closing/send", json={"day": "2024-05-01"}, headers=headers_a)

        assert resp.status_code == 200
        assert resp.json["sent"] is True
        assert fake_delivery.sent[0]["recipient"] == user_a.email

    def test_send_daily_closing_failure(self, client, headers_a, fake_delivery):
        fake_delivery.fail = True

        resp = client.post("/api/ledger/daily-closing/send", json={}, headers=headers_a)

        assert resp.status_code == 502
