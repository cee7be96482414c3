# Overview: Service-layer operations for subscriptions; encapsulates business logic and database work.

"""
Subscription Billing Cycle

STATE MACHINE:
    active --(failures >= PAYMENT_FAILED_THRESHOLD)--> payment_failed
    payment_failed --(failures >= SUSPEND_THRESHOLD)--> suspended
    payment_failed | suspended --(successful payment / renewal)--> active
    any non-cancelled --(cancel)--> cancelled (terminal)

RENEWAL IS OPTIMISTIC: renew_subscription re-activates and advances
next_billing_date immediately. For async methods (pix) the money is still in
flight: a pending transaction + PixCharge are created, and if that charge
later expires handle_expired_charges records the failure.

Periods: weekly = 7 days, biweekly = 14 days, monthly = same day next month
(clamped to month end by relativedelta).
"""

from __future__ import annotations

import logging
from datetime import timedelta

from dateutil.relativedelta import relativedelta
from flask import current_app

from ..extensions import db
from ..errors import InvalidStateError, UpstreamServiceError, ValidationError, InvalidQuantityError
from ..models import Customer, FinancialTransaction, PixCharge, Subscription, SubscriptionPlan
from ..models.finance import CHARGE_PENDING, TRANSACTION_INCOME, TRANSACTION_COMPLETED
from ..models.subscriptions import (
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_PAYMENT_FAILED,
    SUBSCRIPTION_SUSPENDED,
    SUBSCRIPTION_CANCELLED,
    FREQUENCY_WEEKLY,
    FREQUENCY_BIWEEKLY,
    FREQUENCY_MONTHLY,
    VALID_FREQUENCIES,
)
from ..money import quantize_money
from opsdesk.time_utils import utcnow, normalize_datetime
from . import pix_service
from .appointment_service import validate_payment_method
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_ledger_event, record_transaction
from .tenant_service import require_owned, scoped_query

logger = logging.getLogger(__name__)

ASYNC_PAYMENT_METHODS = ("pix",)


def add_period(dt, frequency: str):
    if frequency == FREQUENCY_WEEKLY:
        return dt + timedelta(days=7)
    if frequency == FREQUENCY_BIWEEKLY:
        return dt + timedelta(days=14)
    if frequency == FREQUENCY_MONTHLY:
        return dt + relativedelta(months=1)
    raise ValidationError(f"invalid billing_frequency: {frequency}")


def _thresholds() -> tuple[int, int]:
    cfg = current_app.config
    return (
        int(cfg.get("SUBSCRIPTION_PAYMENT_FAILED_THRESHOLD", 3)),
        int(cfg.get("SUBSCRIPTION_SUSPEND_THRESHOLD", 5)),
    )


def create_plan(
    business_id: int,
    *,
    name: str,
    price,
    billing_frequency: str = FREQUENCY_MONTHLY,
    description: str | None = None,
) -> SubscriptionPlan:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    if billing_frequency not in VALID_FREQUENCIES:
        raise ValidationError(f"invalid billing_frequency: {billing_frequency}")
    price = quantize_money(price)
    if price <= 0:
        raise InvalidQuantityError("price must be > 0")

    plan = SubscriptionPlan(
        business_id=business_id,
        name=name[:255],
        description=description,
        price=price,
        billing_frequency=billing_frequency,
        is_active=True,
    )
    db.session.add(plan)
    db.session.commit()
    return plan


def list_plans(business_id: int, *, include_inactive: bool = False) -> list[SubscriptionPlan]:
    q = scoped_query(SubscriptionPlan, business_id)
    if not include_inactive:
        q = q.filter(SubscriptionPlan.is_active.is_(True))
    return q.order_by(SubscriptionPlan.name.asc()).all()


def create_subscription(
    business_id: int,
    *,
    customer_id: int,
    plan_id: int,
    start_date=None,
    actor_user_id: int | None = None,
) -> Subscription:
    """Enroll a customer. The first charge is due on start_date."""
    require_owned(Customer, customer_id, business_id)
    plan = require_owned(SubscriptionPlan, plan_id, business_id, label="Subscription plan")
    if not plan.is_active:
        raise InvalidStateError("plan is not active")
    try:
        start = normalize_datetime(start_date) or utcnow()
    except ValueError:
        raise ValidationError("start_date must be an ISO-8601 datetime")

    subscription = Subscription(
        business_id=business_id,
        customer_id=customer_id,
        plan_id=plan.id,
        status=SUBSCRIPTION_ACTIVE,
        start_date=start,
        next_billing_date=start,
        failed_payments_count=0,
    )
    db.session.add(subscription)
    db.session.flush()
    append_ledger_event(
        business_id=business_id,
        event_type="subscription.created",
        entity_type="subscription",
        entity_id=subscription.id,
        actor_user_id=actor_user_id,
        payload={"plan_id": plan.id, "customer_id": customer_id},
    )
    db.session.commit()
    return subscription


def get_subscription(business_id: int, subscription_id: int) -> Subscription:
    return require_owned(Subscription, subscription_id, business_id)


def list_subscriptions(business_id: int, *, status: str | None = None) -> list[Subscription]:
    q = scoped_query(Subscription, business_id)
    if status:
        q = q.filter(Subscription.status == status)
    return q.order_by(Subscription.next_billing_date.asc(), Subscription.id.asc()).all()


def renew_subscription(
    business_id: int,
    subscription_id: int,
    payment_method: str,
    *,
    now=None,
    actor_user_id: int | None = None,
) -> dict:
    """
    Manually renew (pay) a subscription.

    Returns {"subscription", "transaction", "charge"}; charge is set only for
    async methods.

    Raises:
        InvalidStateError: subscription is cancelled
        UpstreamServiceError: pix provider failed (nothing written)
    """
    if not payment_method:
        raise ValidationError("payment_method is required")
    validate_payment_method(payment_method)
    now = normalize_datetime(now) or utcnow()

    def _op():
        subscription = require_owned(Subscription, subscription_id, business_id, lock=True)
        if subscription.status == SUBSCRIPTION_CANCELLED:
            raise InvalidStateError("cancelled subscriptions cannot be renewed")
        plan = db.session.get(SubscriptionPlan, subscription.plan_id)
        customer = db.session.get(Customer, subscription.customer_id)
        description = f"Subscription renewal: {plan.name}"

        charge = None
        if payment_method in ASYNC_PAYMENT_METHODS:
            charge = pix_service.create_pix_charge(
                business_id,
                amount=plan.price,
                customer_name=customer.name,
                customer_phone=customer.phone,
                customer_id=customer.id,
                subscription_id=subscription.id,
                description=description,
                actor_user_id=actor_user_id,
                commit=False,
            )
            transaction = db.session.get(FinancialTransaction, charge.transaction_id)
        else:
            transaction = record_transaction(
                business_id=business_id,
                type=TRANSACTION_INCOME,
                amount=plan.price,
                description=description,
                payment_method=payment_method,
                status=TRANSACTION_COMPLETED,
                transaction_date=now,
                subscription_id=subscription.id,
                created_by_user_id=actor_user_id,
            )

        subscription.status = SUBSCRIPTION_ACTIVE
        subscription.failed_payments_count = 0
        subscription.last_billing_date = now
        subscription.last_payment_attempt = now
        subscription.next_billing_date = add_period(now, plan.billing_frequency)

        append_ledger_event(
            business_id=business_id,
            event_type="subscription.renewed",
            entity_type="subscription",
            entity_id=subscription.id,
            actor_user_id=actor_user_id,
            occurred_at=now,
            payload={"payment_method": payment_method, "transaction_id": transaction.id if transaction else None},
        )
        db.session.commit()
        return {"subscription": subscription, "transaction": transaction, "charge": charge}

    try:
        return run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise


def cancel_subscription(business_id: int, subscription_id: int, *, actor_user_id: int | None = None) -> Subscription:
    def _op():
        subscription = require_owned(Subscription, subscription_id, business_id, lock=True)
        if subscription.status == SUBSCRIPTION_CANCELLED:
            raise InvalidStateError("subscription is already cancelled")
        now = utcnow()
        subscription.status = SUBSCRIPTION_CANCELLED
        subscription.cancelled_at = now
        append_ledger_event(
            business_id=business_id,
            event_type="subscription.cancelled",
            entity_type="subscription",
            entity_id=subscription.id,
            actor_user_id=actor_user_id,
            occurred_at=now,
        )
        db.session.commit()
        return subscription

    return run_with_retry(_op)


def _register_failure(subscription: Subscription, now) -> None:
    failed_threshold, suspend_threshold = _thresholds()
    subscription.failed_payments_count = (subscription.failed_payments_count or 0) + 1
    subscription.last_payment_attempt = now
    previous = subscription.status
    if subscription.failed_payments_count >= suspend_threshold:
        subscription.status = SUBSCRIPTION_SUSPENDED
    elif subscription.failed_payments_count >= failed_threshold:
        subscription.status = SUBSCRIPTION_PAYMENT_FAILED
    append_ledger_event(
        business_id=subscription.business_id,
        event_type="subscription.payment_failed",
        entity_type="subscription",
        entity_id=subscription.id,
        occurred_at=now,
        payload={
            "failed_payments_count": subscription.failed_payments_count,
            "from": previous,
            "to": subscription.status,
        },
    )
    if subscription.status != previous:
        logger.info("Subscription %s moved %s -> %s", subscription.id, previous, subscription.status)


def record_failed_payment(
    business_id: int,
    subscription_id: int,
    *,
    now=None,
) -> Subscription:
    """failed_payments_count += 1 and apply the payment_failed / suspended thresholds."""
    now = normalize_datetime(now) or utcnow()

    def _op():
        subscription = require_owned(Subscription, subscription_id, business_id, lock=True)
        if subscription.status == SUBSCRIPTION_CANCELLED:
            raise InvalidStateError("subscription is cancelled")
        _register_failure(subscription, now)
        db.session.commit()
        return subscription

    return run_with_retry(_op)


def process_due_subscriptions(now=None, *, business_id: int | None = None) -> dict:
    """
    Bill every active subscription whose next_billing_date <= now.

    Each due subscription gets a PIX charge and its next_billing_date advanced
    one period from the previous due date. A provider failure records a failed
    payment and leaves the due date, so the next run tries again.
    """
    now = normalize_datetime(now) or utcnow()
    q = db.session.query(Subscription.id).filter(
        Subscription.status == SUBSCRIPTION_ACTIVE,
        Subscription.next_billing_date <= now,
    )
    if business_id is not None:
        q = q.filter(Subscription.business_id == business_id)
    due_ids = [row.id for row in q.order_by(Subscription.next_billing_date.asc()).all()]

    summary = {"billed": 0, "failed": 0}
    for sub_id in due_ids:
        subscription = lock_for_update(db.session.query(Subscription).filter_by(id=sub_id)).first()
        if subscription is None or subscription.status != SUBSCRIPTION_ACTIVE or subscription.next_billing_date > now:
            db.session.rollback()
            continue
        plan = db.session.get(SubscriptionPlan, subscription.plan_id)
        customer = db.session.get(Customer, subscription.customer_id)
        try:
            pix_service.create_pix_charge(
                subscription.business_id,
                amount=plan.price,
                customer_name=customer.name,
                customer_phone=customer.phone,
                customer_id=customer.id,
                subscription_id=subscription.id,
                description=f"Subscription: {plan.name}",
                commit=False,
            )
        except UpstreamServiceError as e:
            db.session.rollback()
            logger.warning("Billing subscription %s failed: %s", sub_id, e.message)
            subscription = db.session.get(Subscription, sub_id)
            _register_failure(subscription, now)
            db.session.commit()
            summary["failed"] += 1
            continue

        subscription.last_payment_attempt = now
        subscription.next_billing_date = add_period(subscription.next_billing_date, plan.billing_frequency)
        db.session.commit()
        summary["billed"] += 1

    logger.info("Recurring billing: %s billed, %s failed", summary["billed"], summary["failed"])
    return summary


def handle_expired_charges(now=None, *, business_id: int | None = None) -> dict:
    """
    Expire pending charges past expires_at.

    For subscription charges the miss counts as a failed payment; while the
    subscription is still below the payment_failed threshold a retry charge
    (PIX_RETRY_TTL_HOURS expiry) is issued.
    """
    now = normalize_datetime(now) or utcnow()
    failed_threshold, _ = _thresholds()
    retry_ttl = int(current_app.config.get("PIX_RETRY_TTL_HOURS", 48))

    q = db.session.query(PixCharge.id).filter(
        PixCharge.status == CHARGE_PENDING,
        PixCharge.expires_at <= now,
    )
    if business_id is not None:
        q = q.filter(PixCharge.business_id == business_id)
    expired_ids = [row.id for row in q.order_by(PixCharge.id.asc()).all()]

    summary = {"expired": 0, "retries": 0}
    for charge_id in expired_ids:
        charge = lock_for_update(db.session.query(PixCharge).filter_by(id=charge_id)).first()
        if charge is None or charge.status != CHARGE_PENDING:
            db.session.rollback()
            continue

        pix_service.expire_charge(charge, now)
        summary["expired"] += 1

        subscription = None
        if charge.subscription_id is not None:
            subscription = lock_for_update(
                db.session.query(Subscription).filter_by(id=charge.subscription_id)
            ).first()
            if subscription is not None and subscription.status != SUBSCRIPTION_CANCELLED:
                _register_failure(subscription, now)
            else:
                subscription = None
        db.session.commit()

        if subscription is not None and subscription.failed_payments_count < failed_threshold:
            try:
                pix_service.create_pix_charge(
                    charge.business_id,
                    amount=charge.amount,
                    customer_name=charge.customer_name,
                    customer_phone=charge.customer_phone,
                    customer_id=charge.customer_id,
                    subscription_id=charge.subscription_id,
                    description=charge.description,
                    expires_in_hours=retry_ttl,
                    retry_attempt=(charge.retry_attempt or 0) + 1,
                    original_charge_id=charge.original_charge_id or charge.id,
                )
                summary["retries"] += 1
            except UpstreamServiceError as e:
                db.session.rollback()
                logger.warning("Retry charge for subscription %s failed: %s", charge.subscription_id, e.message)

    logger.info("Expired %s charge(s), issued %s retry charge(s)", summary["expired"], summary["retries"])
    return summary
