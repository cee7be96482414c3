# Overview: Pytest coverage for PIX charge behavior.

"""
PIX Charge Tests

Verifies:
- provider is called before anything is persisted
- webhooks are idempotent and paid is terminal
- late payments after expiry are still honored
- signature verification and payment reminders
"""

import hashlib
import hmac
from datetime import timedelta
from decimal import Decimal

import pytest

from opsdesk.errors import (
    ForbiddenError,
    InvalidQuantityError,
    InvalidStateError,
    NotFoundError,
    UpstreamServiceError,
    ValidationError,
)
from opsdesk.models import Appointment, FinancialTransaction, PixCharge
from opsdesk.services import ledger_service, pix_service
from opsdesk.time_utils import utcnow


@pytest.fixture
def charge_a(db_session, business_a, customer_a, appointment_a, fake_charges):
    return pix_service.create_pix_charge(
        business_a.id,
        amount="150.00",
        customer_name=customer_a.name,
        customer_phone=customer_a.phone,
        customer_id=customer_a.id,
        appointment_id=appointment_a.id,
        description="Coloring",
    )


def _transactions(db_session, charge):
    return (
        db_session.query(FinancialTransaction)
        .filter_by(pix_charge_id=charge.id)
        .order_by(FinancialTransaction.id.asc())
        .all()
    )


class TestCreateCharge:
    def test_charge_and_pending_transaction_linked(self, db_session, charge_a, fake_charges):
        assert charge_a.status == "pending"
        assert charge_a.txid == "fake-1"
        assert charge_a.amount == Decimal("150.00")
        assert charge_a.qr_code == "qr-fake-1"

        tx = db_session.get(FinancialTransaction, charge_a.transaction_id)
        assert tx.status == "pending"
        assert tx.payment_method == "pix"
        assert tx.pix_charge_id == charge_a.id
        assert len(fake_charges.calls) == 1

    def test_default_expiry(self, db_session, charge_a):
        assert charge_a.expires_at - charge_a.created_at == timedelta(hours=24)

    def test_non_positive_amount_rejected(self, db_session, business_a, fake_charges):
        with pytest.raises(InvalidQuantityError):
            pix_service.create_pix_charge(business_a.id, amount=0, customer_name="Maria")

        assert fake_charges.calls == []

    def test_provider_failure_persists_nothing(self, db_session, business_a, fake_charges):
        fake_charges.fail = True

        with pytest.raises(UpstreamServiceError):
            pix_service.create_pix_charge(business_a.id, amount=10, customer_name="Maria")

        assert db_session.query(PixCharge).count() == 0
        assert db_session.query(FinancialTransaction).count() == 0

    def test_cross_tenant_charge_forbidden(self, db_session, business_b, charge_a):
        with pytest.raises(ForbiddenError):
            pix_service.get_charge(business_b.id, charge_a.id)


class TestWebhook:
    def test_paid_settles_transaction_and_appointment(self, db_session, business_a, charge_a, appointment_a):
        charge, changed = pix_service.apply_webhook(charge_a.txid, "paid")

        assert changed is True
        assert charge.status == "paid"
        assert charge.paid_at is not None
        tx = db_session.get(FinancialTransaction, charge.transaction_id)
        assert tx.status == "completed"
        assert db_session.get(Appointment, appointment_a.id).payment_status == "paid"

    def test_duplicate_paid_is_noop(self, db_session, business_a, charge_a):
        pix_service.apply_webhook(charge_a.txid, "paid")
        charge, changed = pix_service.apply_webhook(charge_a.txid, "paid")

        assert changed is False
        assert charge.status == "paid"
        assert len(_transactions(db_session, charge_a)) == 1
        events = ledger_service.list_ledger_events(business_a.id, event_type="pix.charge_paid")
        assert len(events) == 1

    def test_paid_is_terminal(self, db_session, charge_a):
        pix_service.apply_webhook(charge_a.txid, "approved")

        for status in ("expired", "cancelled", "pending"):
            charge, changed = pix_service.apply_webhook(charge_a.txid, status)
            assert changed is False
            assert charge.status == "paid"

    def test_expired_then_late_payment(self, db_session, charge_a):
        pix_service.apply_webhook(charge_a.txid, "expired")
        charge, changed = pix_service.apply_webhook(charge_a.txid, "paid", "2024-05-01T12:00:00Z")

        assert changed is True
        assert charge.status == "paid"
        statuses = [t.status for t in _transactions(db_session, charge_a)]
        assert statuses == ["cancelled", "completed"]

    def test_expired_does_not_flip_to_cancelled(self, db_session, charge_a):
        pix_service.apply_webhook(charge_a.txid, "expired")
        charge, changed = pix_service.apply_webhook(charge_a.txid, "canceled")

        assert changed is False
        assert charge.status == "expired"

    def test_unknown_txid(self, db_session):
        with pytest.raises(NotFoundError):
            pix_service.apply_webhook("missing", "paid")

    def test_unknown_status(self, db_session, charge_a):
        with pytest.raises(ValidationError):
            pix_service.apply_webhook(charge_a.txid, "refunded")


class TestSignature:
    def test_valid_signature(self, app):
        body = b'{"txid": "abc", "status": "paid"}'
        signature = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

        pix_service.verify_signature(body, signature, secret="s3cret")

    def test_invalid_signature(self, app):
        with pytest.raises(ForbiddenError):
            pix_service.verify_signature(b"{}", "deadbeef", secret="s3cret")

    def test_missing_signature(self, app):
        with pytest.raises(ForbiddenError):
            pix_service.verify_signature(b"{}", None, secret="s3cret")

    def test_no_secret_configured(self, app):
        pix_service.verify_signature(b"{}", None)


class TestCancelAndReminders:
    def test_cancel_pending(self, db_session, business_a, charge_a):
        charge = pix_service.cancel_charge(business_a.id, charge_a.id)

        assert charge.status == "cancelled"
        assert _transactions(db_session, charge_a)[0].status == "cancelled"

        with pytest.raises(InvalidStateError):
            pix_service.cancel_charge(business_a.id, charge_a.id)

    def test_reminders_respect_interval(self, db_session, charge_a, fake_delivery):
        now = utcnow()

        assert pix_service.send_payment_reminders(now + timedelta(hours=1)) == []

        first = pix_service.send_payment_reminders(now + timedelta(hours=5))
        repeat = pix_service.send_payment_reminders(now + timedelta(hours=6))
        later = pix_service.send_payment_reminders(now + timedelta(hours=10))

        assert len(first) == 1
        assert repeat == []
        assert len(later) == 1
        db_session.refresh(charge_a)
        assert charge_a.reminders_sent == 2
        assert fake_delivery.sent[0]["channel"] == "whatsapp"
        assert fake_delivery.sent[0]["payload"]["qr_code"] == "qr-fake-1"

    def test_no_reminder_for_paid_charge(self, db_session, charge_a, fake_delivery):
        pix_service.apply_webhook(charge_a.txid, "paid")

        assert pix_service.send_payment_reminders(utcnow() + timedelta(hours=5)) == []
        assert fake_delivery.sent == []

    def test_no_reminder_without_phone(self, db_session, business_a, fake_charges, fake_delivery):
        pix_service.create_pix_charge(business_a.id, amount=20, customer_name="No phone")

        assert pix_service.send_payment_reminders(utcnow() + timedelta(hours=5)) == []
