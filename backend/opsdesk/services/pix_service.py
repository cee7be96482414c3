# Overview: Service-layer operations for PIX charges; encapsulates business logic and database work.

"""
PIX Charge Service

LIFECYCLE: pending -> paid | expired | cancelled

- Creating a charge calls the payment provider FIRST; only a successful
  provider response is persisted, together with a pending income
  FinancialTransaction linked both ways (charge.transaction_id,
  transaction.pix_charge_id).
- Webhooks are idempotent. paid is terminal: any later webhook for a paid
  charge is a no-op. A late "paid" for an expired/cancelled charge is still
  honored (the money arrived); since its pending transaction was already
  cancelled, a new completed transaction is recorded.
- Payment side effects: transaction completed, appointment payment_status
  paid, subscription failures reset and subscription re-activated.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import timedelta

from flask import current_app

from ..clients.delivery import CHANNEL_WHATSAPP, send_safely
from ..clients.payment_gateway import get_charge_client
from ..extensions import db
from ..errors import ForbiddenError, InvalidQuantityError, InvalidStateError, NotFoundError, ValidationError
from ..models import Appointment, Customer, FinancialTransaction, PixCharge, Subscription
from ..models.finance import (
    CHARGE_PENDING,
    CHARGE_PAID,
    CHARGE_EXPIRED,
    CHARGE_CANCELLED,
    TRANSACTION_INCOME,
    TRANSACTION_PENDING,
    TRANSACTION_COMPLETED,
    TRANSACTION_CANCELLED,
)
from ..models.scheduling import PAYMENT_PAID
from ..models.subscriptions import (
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_PAYMENT_FAILED,
    SUBSCRIPTION_SUSPENDED,
)
from ..money import quantize_money
from opsdesk.time_utils import utcnow, normalize_datetime
from . import messaging_service
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_ledger_event, record_transaction
from .tenant_service import require_owned, scoped_query

logger = logging.getLogger(__name__)

# Provider vocabularies differ; map them onto ours
_WEBHOOK_STATUS_MAP = {
    "paid": CHARGE_PAID,
    "completed": CHARGE_PAID,
    "approved": CHARGE_PAID,
    "expired": CHARGE_EXPIRED,
    "cancelled": CHARGE_CANCELLED,
    "canceled": CHARGE_CANCELLED,
    "pending": CHARGE_PENDING,
}


def create_pix_charge(
    business_id: int,
    *,
    amount,
    customer_name: str,
    customer_phone: str | None = None,
    customer_id: int | None = None,
    appointment_id: int | None = None,
    subscription_id: int | None = None,
    description: str | None = None,
    expires_in_hours: int | None = None,
    create_transaction: bool = True,
    retry_attempt: int = 0,
    original_charge_id: int | None = None,
    actor_user_id: int | None = None,
    commit: bool = True,
) -> PixCharge:
    """
    Create a charge through the provider and persist it.

    Raises:
        InvalidQuantityError: amount <= 0
        ValidationError: missing customer name
        UpstreamServiceError: provider failed or timed out (nothing persisted)
    """
    amount = quantize_money(amount)
    if amount <= 0:
        raise InvalidQuantityError("amount must be > 0")
    customer_name = (customer_name or "").strip()
    if not customer_name:
        raise ValidationError("customer_name is required")
    if customer_id is not None:
        require_owned(Customer, customer_id, business_id)
    if appointment_id is not None:
        require_owned(Appointment, appointment_id, business_id)
    if subscription_id is not None:
        require_owned(Subscription, subscription_id, business_id)

    if expires_in_hours is None:
        expires_in_hours = int(current_app.config.get("PIX_CHARGE_TTL_HOURS", 24))

    result = get_charge_client().create_charge(
        amount,
        {"name": customer_name, "phone": customer_phone},
        {
            "business_id": business_id,
            "appointment_id": appointment_id,
            "subscription_id": subscription_id,
        },
        expires_in_hours=expires_in_hours,
    )

    now = utcnow()
    charge = PixCharge(
        business_id=business_id,
        txid=result.charge_id,
        amount=amount,
        description=description,
        customer_id=customer_id,
        customer_name=customer_name[:255],
        customer_phone=customer_phone,
        qr_code=result.qr_payload,
        redirect_url=result.redirect_url,
        status=CHARGE_PENDING,
        expires_at=now + timedelta(hours=expires_in_hours),
        appointment_id=appointment_id,
        subscription_id=subscription_id,
        reminders_sent=0,
        retry_attempt=retry_attempt,
        original_charge_id=original_charge_id,
        created_at=now,
    )
    db.session.add(charge)
    db.session.flush()

    if create_transaction:
        tx = record_transaction(
            business_id=business_id,
            type=TRANSACTION_INCOME,
            amount=amount,
            description=description or f"PIX charge: {customer_name}",
            payment_method="pix",
            status=TRANSACTION_PENDING,
            transaction_date=now,
            appointment_id=appointment_id,
            subscription_id=subscription_id,
            pix_charge_id=charge.id,
            created_by_user_id=actor_user_id,
        )
        charge.transaction_id = tx.id

    append_ledger_event(
        business_id=business_id,
        event_type="pix.charge_created",
        entity_type="pix_charge",
        entity_id=charge.id,
        actor_user_id=actor_user_id,
        occurred_at=now,
        payload={"txid": charge.txid, "amount": str(amount), "retry_attempt": retry_attempt},
    )

    if commit:
        db.session.commit()
    return charge


def get_charge(business_id: int, charge_id: int) -> PixCharge:
    return require_owned(PixCharge, charge_id, business_id, label="PIX charge")


def list_charges(business_id: int, *, status: str | None = None, limit: int = 100) -> list[PixCharge]:
    q = scoped_query(PixCharge, business_id)
    if status:
        q = q.filter(PixCharge.status == status)
    return q.order_by(PixCharge.id.desc()).limit(limit).all()


def verify_signature(body: bytes, signature: str | None, secret: str | None = None) -> None:
    """
    Check the X-Signature header (hex HMAC-SHA256 of the raw body).

    No-op when no webhook secret is configured.
    """
    if secret is None:
        secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET")
    if not secret:
        return
    if not signature:
        raise ForbiddenError("missing webhook signature")
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise ForbiddenError("invalid webhook signature")


def _pending_transaction(charge: PixCharge) -> FinancialTransaction | None:
    if charge.transaction_id is None:
        return None
    tx = db.session.get(FinancialTransaction, charge.transaction_id)
    if tx is None or tx.status != TRANSACTION_PENDING:
        return None
    return tx


def _apply_paid(charge: PixCharge, paid_at) -> None:
    charge.status = CHARGE_PAID
    charge.paid_at = paid_at

    tx = _pending_transaction(charge)
    if tx is not None:
        tx.status = TRANSACTION_COMPLETED
        tx.transaction_date = paid_at
    else:
        tx = record_transaction(
            business_id=charge.business_id,
            type=TRANSACTION_INCOME,
            amount=charge.amount,
            description=charge.description or f"PIX charge: {charge.customer_name}",
            payment_method="pix",
            status=TRANSACTION_COMPLETED,
            transaction_date=paid_at,
            appointment_id=charge.appointment_id,
            subscription_id=charge.subscription_id,
            pix_charge_id=charge.id,
        )
        charge.transaction_id = tx.id

    if charge.appointment_id is not None:
        appointment = db.session.get(Appointment, charge.appointment_id)
        if appointment is not None:
            appointment.payment_status = PAYMENT_PAID

    if charge.subscription_id is not None:
        subscription = lock_for_update(
            db.session.query(Subscription).filter_by(id=charge.subscription_id)
        ).first()
        if subscription is not None:
            subscription.failed_payments_count = 0
            subscription.last_billing_date = paid_at
            if subscription.status in (SUBSCRIPTION_PAYMENT_FAILED, SUBSCRIPTION_SUSPENDED):
                subscription.status = SUBSCRIPTION_ACTIVE
                logger.info("Subscription %s re-activated by payment of charge %s", subscription.id, charge.txid)


def _apply_closed(charge: PixCharge, status: str) -> None:
    charge.status = status
    tx = _pending_transaction(charge)
    if tx is not None:
        tx.status = TRANSACTION_CANCELLED


def apply_webhook(txid: str, status: str, paid_at=None) -> tuple[PixCharge, bool]:
    """
    Apply a provider status notification.

    Returns (charge, changed). Duplicate or out-of-order notifications return
    changed=False and write nothing.
    """
    if not txid:
        raise ValidationError("txid is required")
    new_status = _WEBHOOK_STATUS_MAP.get((status or "").strip().lower())
    if new_status is None:
        raise ValidationError(f"unknown charge status: {status}")
    try:
        paid_at = normalize_datetime(paid_at)
    except ValueError:
        raise ValidationError("paid_at must be an ISO-8601 datetime")

    def _op():
        charge = lock_for_update(db.session.query(PixCharge).filter_by(txid=txid)).first()
        if charge is None:
            raise NotFoundError("PIX charge not found")

        if charge.status == CHARGE_PAID or charge.status == new_status or new_status == CHARGE_PENDING:
            db.session.rollback()
            return charge, False
        if new_status != CHARGE_PAID and charge.status != CHARGE_PENDING:
            # expired <-> cancelled flips are ignored
            db.session.rollback()
            return charge, False

        previous = charge.status
        now = utcnow()
        if new_status == CHARGE_PAID:
            _apply_paid(charge, paid_at or now)
        else:
            _apply_closed(charge, new_status)

        append_ledger_event(
            business_id=charge.business_id,
            event_type=f"pix.charge_{new_status}",
            entity_type="pix_charge",
            entity_id=charge.id,
            occurred_at=charge.paid_at if new_status == CHARGE_PAID else now,
            payload={"txid": txid, "from": previous},
        )
        db.session.commit()
        return charge, True

    return run_with_retry(_op)


def cancel_charge(business_id: int, charge_id: int, *, actor_user_id: int | None = None) -> PixCharge:
    """pending -> cancelled (owner-initiated)."""

    def _op():
        charge = require_owned(PixCharge, charge_id, business_id, lock=True, label="PIX charge")
        if charge.status != CHARGE_PENDING:
            raise InvalidStateError(f"cannot cancel a {charge.status} charge")
        _apply_closed(charge, CHARGE_CANCELLED)
        append_ledger_event(
            business_id=business_id,
            event_type="pix.charge_cancelled",
            entity_type="pix_charge",
            entity_id=charge.id,
            actor_user_id=actor_user_id,
        )
        db.session.commit()
        return charge

    return run_with_retry(_op)


def expire_charge(charge: PixCharge, now) -> None:
    """Mark a pending charge expired and cancel its pending transaction. Caller commits."""
    _apply_closed(charge, CHARGE_EXPIRED)
    append_ledger_event(
        business_id=charge.business_id,
        event_type="pix.charge_expired",
        entity_type="pix_charge",
        entity_id=charge.id,
        occurred_at=now,
        payload={"txid": charge.txid},
    )


def send_payment_reminders(now=None, *, business_id: int | None = None) -> list[PixCharge]:
    """
    WhatsApp reminder for pending, unexpired charges older than
    PIX_REMINDER_INTERVAL_HOURS whose last reminder (if any) is at least that old.
    """
    now = normalize_datetime(now) or utcnow()
    interval = timedelta(hours=int(current_app.config.get("PIX_REMINDER_INTERVAL_HOURS", 4)))
    cutoff = now - interval

    q = db.session.query(PixCharge).filter(
        PixCharge.status == CHARGE_PENDING,
        PixCharge.expires_at > now,
        PixCharge.created_at <= cutoff,
        PixCharge.customer_phone.isnot(None),
        db.or_(PixCharge.last_reminder_at.is_(None), PixCharge.last_reminder_at <= cutoff),
    )
    if business_id is not None:
        q = q.filter(PixCharge.business_id == business_id)

    reminded = []
    for charge in q.order_by(PixCharge.id.asc()).all():
        result = send_safely(CHANNEL_WHATSAPP, charge.customer_phone, messaging_service.payment_reminder_payload(charge))
        if not result.success:
            logger.warning("Payment reminder for charge %s failed: %s", charge.txid, result.error)
            continue
        charge.reminders_sent = (charge.reminders_sent or 0) + 1
        charge.last_reminder_at = now
        reminded.append(charge)

    db.session.commit()
    logger.info("Sent %s payment reminder(s)", len(reminded))
    return reminded
