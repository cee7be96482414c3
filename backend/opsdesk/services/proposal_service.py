# Overview: Service-layer operations for proposals; encapsulates business logic and database work.

"""
Proposal (quotation) Pipeline

STATE MACHINE:
    pending  -> sent | paused | confirmed | canceled | expired
    sent     -> sent (re-send) | viewed | accepted | rejected | confirmed
                | paused | canceled | expired
    viewed   -> accepted | rejected | confirmed | canceled | expired
    accepted -> confirmed | canceled
    paused   -> pending
    confirmed, rejected, canceled, expired: terminal
    (confirmed may still be scheduled once, see schedule_from_proposal)

Every transition runs under the proposal row lock plus version_id, so two
concurrent requests can never both move a proposal out of the same state.

AMOUNTS (compute_amounts, half-up to cents):
    total_amount   = sum(quantity * unit_price)
    final_amount   = total_amount * (1 - discount_percentage / 100)
    deposit_amount = final_amount * deposit_percentage / 100   (0.00 when 0%)

New proposals default to a 50% deposit.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import (
    InvalidQuantityError,
    InvalidStateError,
    SendThrottledError,
    UpstreamServiceError,
    ValidationError,
)
from ..models import Appointment, Customer, Proposal
from ..money import quantize_money, to_decimal
from opsdesk.time_utils import utcnow, normalize_datetime
from ..clients.delivery import send_safely
from . import messaging_service
from .appointment_service import create_appointment
from .concurrency import run_with_retry
from .ledger_service import append_ledger_event
from .tenant_service import require_owned, scoped_query

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_VIEWED = "viewed"
STATUS_ACCEPTED = "accepted"
STATUS_CONFIRMED = "confirmed"
STATUS_REJECTED = "rejected"
STATUS_CANCELED = "canceled"
STATUS_EXPIRED = "expired"
STATUS_PAUSED = "paused"

TERMINAL_STATUSES = (STATUS_CONFIRMED, STATUS_REJECTED, STATUS_CANCELED, STATUS_EXPIRED)
SENDABLE_STATUSES = (STATUS_PENDING, STATUS_SENT)
EXPIRABLE_STATUSES = (STATUS_PENDING, STATUS_SENT, STATUS_VIEWED)
SCHEDULABLE_STATUSES = (STATUS_ACCEPTED, STATUS_CONFIRMED)

HUNDRED = Decimal("100")
DEFAULT_DEPOSIT_PERCENTAGE = Decimal("50")


def _percentage(value, field: str) -> Decimal:
    pct = to_decimal(value if value is not None else 0, field=field)
    if pct < 0 or pct > HUNDRED:
        raise ValidationError(f"{field} must be between 0 and 100")
    return pct


def compute_amounts(services, discount_percentage=0, deposit_percentage=0) -> dict:
    """
    Pure derivation of proposal amounts from line items and percentages.

    Returns {"services", "total_amount", "final_amount", "deposit_amount"}
    where services are normalized to {"description", "quantity", "unit_price"}
    with numbers as strings.
    """
    if not isinstance(services, (list, tuple)) or not services:
        raise ValidationError("services must be a non-empty list")

    discount = _percentage(discount_percentage, "discount_percentage")
    deposit_pct = _percentage(deposit_percentage, "deposit_percentage")

    normalized = []
    subtotal = Decimal("0")
    for line in services:
        if not isinstance(line, dict):
            raise ValidationError("each service must be an object")
        description = (line.get("description") or "").strip()
        if not description:
            raise ValidationError("each service needs a description")
        quantity = to_decimal(line.get("quantity", 1), field="quantity")
        unit_price = quantize_money(to_decimal(line.get("unit_price"), field="unit_price"))
        if quantity <= 0:
            raise InvalidQuantityError("service quantity must be > 0")
        if unit_price < 0:
            raise InvalidQuantityError("unit_price must be >= 0")
        subtotal += quantity * unit_price
        normalized.append({
            "description": description,
            "quantity": str(quantity),
            "unit_price": str(unit_price),
        })

    total = quantize_money(subtotal)
    final = quantize_money(total * (HUNDRED - discount) / HUNDRED)
    deposit = quantize_money(final * deposit_pct / HUNDRED)

    return {
        "services": normalized,
        "total_amount": total,
        "final_amount": final,
        "deposit_amount": deposit,
        "discount_percentage": discount,
        "deposit_percentage": deposit_pct,
    }


def create_proposal(
    business_id: int,
    *,
    customer_id: int,
    title: str,
    services,
    description: str | None = None,
    discount_percentage=0,
    deposit_percentage=DEFAULT_DEPOSIT_PERCENTAGE,
    valid_until=None,
    actor_user_id: int | None = None,
) -> Proposal:
    title = (title or "").strip()
    if not title:
        raise ValidationError("title is required")
    require_owned(Customer, customer_id, business_id)
    amounts = compute_amounts(services, discount_percentage, deposit_percentage)
    try:
        valid_until = normalize_datetime(valid_until)
    except ValueError:
        raise ValidationError("valid_until must be an ISO-8601 datetime")

    proposal = Proposal(
        business_id=business_id,
        customer_id=customer_id,
        title=title[:255],
        description=description,
        services=amounts["services"],
        total_amount=amounts["total_amount"],
        discount_percentage=amounts["discount_percentage"],
        final_amount=amounts["final_amount"],
        deposit_percentage=amounts["deposit_percentage"],
        deposit_amount=amounts["deposit_amount"],
        status=STATUS_PENDING,
        valid_until=valid_until,
    )
    db.session.add(proposal)
    db.session.flush()
    append_ledger_event(
        business_id=business_id,
        event_type="proposal.created",
        entity_type="proposal",
        entity_id=proposal.id,
        actor_user_id=actor_user_id,
        payload={"final_amount": str(proposal.final_amount)},
    )
    db.session.commit()
    return proposal


def get_proposal(business_id: int, proposal_id: int) -> Proposal:
    return require_owned(Proposal, proposal_id, business_id)


def list_proposals(business_id: int, *, status: str | None = None) -> list[Proposal]:
    q = scoped_query(Proposal, business_id)
    if status:
        q = q.filter(Proposal.status == status)
    return q.order_by(Proposal.id.desc()).all()


def _transition(
    business_id: int,
    proposal_id: int,
    *,
    allowed_from: tuple,
    to_status: str,
    stamp_field: str | None = None,
    actor_user_id: int | None = None,
) -> Proposal:
    """Locked status change shared by the simple transitions."""

    def _op():
        proposal = require_owned(Proposal, proposal_id, business_id, lock=True)
        if proposal.status not in allowed_from:
            raise InvalidStateError(f"cannot move proposal from {proposal.status} to {to_status}")
        now = utcnow()
        from_status = proposal.status
        proposal.status = to_status
        if stamp_field and getattr(proposal, stamp_field) is None:
            setattr(proposal, stamp_field, now)
        append_ledger_event(
            business_id=business_id,
            event_type=f"proposal.{to_status}",
            entity_type="proposal",
            entity_id=proposal.id,
            actor_user_id=actor_user_id,
            occurred_at=now,
            payload={"from": from_status},
        )
        db.session.commit()
        return proposal

    return run_with_retry(_op)


def send_proposal(
    business_id: int,
    proposal_id: int,
    *,
    channel: str | None = None,
    now=None,
    actor_user_id: int | None = None,
) -> Proposal:
    """
    Deliver the proposal to the customer and mark it sent.

    At most one send per PROPOSAL_SEND_COOLDOWN_MINUTES per proposal. The
    send slot is claimed by writing sent_at under the row lock and committing;
    delivery then runs without holding the lock, and a concurrent send sees
    the claim and is throttled. A failed delivery gives the slot back.

    Raises:
        SendThrottledError: inside the cooldown window (HTTP 429)
        InvalidStateError: status is not pending/sent
        ValidationError: customer has no contact for the channel
        UpstreamServiceError: delivery failed (proposal left unchanged)
    """
    now = normalize_datetime(now) or utcnow()
    cooldown = timedelta(minutes=int(current_app.config.get("PROPOSAL_SEND_COOLDOWN_MINUTES", 10)))

    proposal = require_owned(Proposal, proposal_id, business_id, lock=True)
    if proposal.status not in SENDABLE_STATUSES:
        db.session.rollback()
        raise InvalidStateError(f"cannot send a {proposal.status} proposal")
    if proposal.sent_at is not None and now - proposal.sent_at < cooldown:
        retry_after = int((proposal.sent_at + cooldown - now).total_seconds()) + 1
        db.session.rollback()
        raise SendThrottledError("proposal was sent recently, try again later", retry_after)

    customer = db.session.get(Customer, proposal.customer_id)
    chosen, recipient = messaging_service.preferred_channel(customer, channel)
    if recipient is None:
        db.session.rollback()
        raise ValidationError("customer has no contact for the requested channel")

    payload = messaging_service.proposal_payload(proposal, customer)
    previous_sent_at = proposal.sent_at
    proposal.sent_at = now
    db.session.commit()

    result = send_safely(chosen, recipient, payload)

    proposal = require_owned(Proposal, proposal_id, business_id, lock=True)
    if not result.success:
        if proposal.sent_at == now:
            proposal.sent_at = previous_sent_at
            db.session.commit()
        else:
            db.session.rollback()
        raise UpstreamServiceError(f"proposal delivery failed: {result.error}")

    if proposal.status in SENDABLE_STATUSES:
        proposal.status = STATUS_SENT
    else:
        logger.info("Proposal %s moved to %s while being sent", proposal.id, proposal.status)
    append_ledger_event(
        business_id=business_id,
        event_type="proposal.sent",
        entity_type="proposal",
        entity_id=proposal.id,
        actor_user_id=actor_user_id,
        occurred_at=now,
        payload={"channel": chosen, "simulated": result.simulated},
    )
    db.session.commit()
    return proposal


def mark_viewed(business_id: int, proposal_id: int) -> Proposal:
    """sent -> viewed. Viewing an already viewed proposal is a no-op."""
    proposal = get_proposal(business_id, proposal_id)
    if proposal.status == STATUS_VIEWED:
        return proposal
    return _transition(business_id, proposal_id, allowed_from=(STATUS_SENT,), to_status=STATUS_VIEWED,
                       stamp_field="viewed_at")


def accept_proposal(business_id: int, proposal_id: int, *, actor_user_id: int | None = None) -> Proposal:
    return _transition(business_id, proposal_id, allowed_from=(STATUS_SENT, STATUS_VIEWED),
                       to_status=STATUS_ACCEPTED, stamp_field="accepted_at", actor_user_id=actor_user_id)


def reject_proposal(business_id: int, proposal_id: int, *, actor_user_id: int | None = None) -> Proposal:
    return _transition(business_id, proposal_id, allowed_from=(STATUS_SENT, STATUS_VIEWED),
                       to_status=STATUS_REJECTED, stamp_field="rejected_at", actor_user_id=actor_user_id)


def confirm_proposal(business_id: int, proposal_id: int, *, actor_user_id: int | None = None) -> Proposal:
    """Manual confirmation by the owner (e.g. the customer agreed by phone)."""
    return _transition(
        business_id, proposal_id,
        allowed_from=(STATUS_PENDING, STATUS_SENT, STATUS_VIEWED, STATUS_ACCEPTED),
        to_status=STATUS_CONFIRMED, stamp_field="accepted_at", actor_user_id=actor_user_id,
    )


def cancel_proposal(business_id: int, proposal_id: int, *, actor_user_id: int | None = None) -> Proposal:
    return _transition(
        business_id, proposal_id,
        allowed_from=(STATUS_PENDING, STATUS_SENT, STATUS_VIEWED, STATUS_ACCEPTED),
        to_status=STATUS_CANCELED, stamp_field="canceled_at", actor_user_id=actor_user_id,
    )


def pause_proposal(business_id: int, proposal_id: int, *, actor_user_id: int | None = None) -> Proposal:
    return _transition(business_id, proposal_id, allowed_from=(STATUS_PENDING, STATUS_SENT),
                       to_status=STATUS_PAUSED, actor_user_id=actor_user_id)


def resume_proposal(business_id: int, proposal_id: int, *, actor_user_id: int | None = None) -> Proposal:
    return _transition(business_id, proposal_id, allowed_from=(STATUS_PAUSED,),
                       to_status=STATUS_PENDING, actor_user_id=actor_user_id)


def schedule_from_proposal(
    business_id: int,
    proposal_id: int,
    *,
    start_time,
    end_time,
    title: str | None = None,
    actor_user_id: int | None = None,
) -> Appointment:
    """
    Create the appointment for an accepted/confirmed proposal.

    Idempotent: when the proposal already has an appointment, that
    appointment is returned and nothing is written. A concurrent second
    request loses on the unique appointments.proposal_id constraint and also
    gets the existing appointment back.
    """
    proposal = require_owned(Proposal, proposal_id, business_id, lock=True)
    if proposal.appointment_id is not None:
        existing = db.session.get(Appointment, proposal.appointment_id)
        db.session.rollback()
        return existing
    if proposal.status not in SCHEDULABLE_STATUSES:
        db.session.rollback()
        raise InvalidStateError(f"cannot schedule a {proposal.status} proposal")

    try:
        appointment = create_appointment(
            business_id,
            customer_id=proposal.customer_id,
            title=title or proposal.title,
            description=proposal.description,
            start_time=start_time,
            end_time=end_time,
            price=proposal.final_amount,
            deposit_amount=proposal.deposit_amount,
            proposal_id=proposal.id,
            actor_user_id=actor_user_id,
            commit=False,
        )
        now = utcnow()
        proposal.appointment_id = appointment.id
        proposal.status = STATUS_CONFIRMED
        if proposal.accepted_at is None:
            proposal.accepted_at = now
        append_ledger_event(
            business_id=business_id,
            event_type="proposal.scheduled",
            entity_type="proposal",
            entity_id=proposal.id,
            actor_user_id=actor_user_id,
            occurred_at=now,
            payload={"appointment_id": appointment.id},
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = db.session.query(Appointment).filter_by(proposal_id=proposal_id).first()
        if existing is None:
            raise
        logger.info("Proposal %s was scheduled concurrently; returning appointment %s", proposal_id, existing.id)
        return existing
    except Exception:
        db.session.rollback()
        raise

    return appointment


def delete_proposal(business_id: int, proposal_id: int) -> None:
    """Hard delete. Blocked once an appointment exists for the proposal."""
    proposal = require_owned(Proposal, proposal_id, business_id, lock=True)
    linked = proposal.appointment_id is not None or (
        db.session.query(Appointment.id).filter_by(proposal_id=proposal.id).first() is not None
    )
    if linked:
        db.session.rollback()
        raise InvalidStateError("proposal has an appointment and cannot be deleted")
    db.session.delete(proposal)
    db.session.commit()


def expire_stale_proposals(now=None, *, business_id: int | None = None) -> list[Proposal]:
    """pending/sent/viewed proposals whose valid_until has passed -> expired."""
    now = normalize_datetime(now) or utcnow()
    q = db.session.query(Proposal).filter(
        Proposal.status.in_(EXPIRABLE_STATUSES),
        Proposal.valid_until.isnot(None),
        Proposal.valid_until < now,
    )
    if business_id is not None:
        q = q.filter(Proposal.business_id == business_id)

    expired = []
    for proposal in q.all():
        proposal.status = STATUS_EXPIRED
        append_ledger_event(
            business_id=proposal.business_id,
            event_type="proposal.expired",
            entity_type="proposal",
            entity_id=proposal.id,
            occurred_at=now,
        )
        expired.append(proposal)
    db.session.commit()
    logger.info("Expired %s stale proposal(s)", len(expired))
    return expired


def send_follow_ups(now=None, *, business_id: int | None = None, limit: int = 50) -> list[Proposal]:
    """
    One reminder for proposals still 'sent' PROPOSAL_FOLLOW_UP_AFTER_HOURS
    after sending. follow_up_sent_at is set only when delivery succeeds, so a
    failed delivery is retried on the next run and a sent reminder never
    repeats.
    """
    now = normalize_datetime(now) or utcnow()
    hours = int(current_app.config.get("PROPOSAL_FOLLOW_UP_AFTER_HOURS", 48))
    cutoff = now - timedelta(hours=hours)

    q = db.session.query(Proposal).filter(
        Proposal.status == STATUS_SENT,
        Proposal.sent_at < cutoff,
        Proposal.follow_up_sent_at.is_(None),
    )
    if business_id is not None:
        q = q.filter(Proposal.business_id == business_id)

    followed = []
    for proposal in q.order_by(Proposal.sent_at.asc()).limit(limit).all():
        customer = db.session.get(Customer, proposal.customer_id)
        channel, recipient = messaging_service.preferred_channel(customer)
        if recipient is None:
            logger.info("Proposal %s follow-up skipped: customer has no contact", proposal.id)
            continue
        result = send_safely(channel, recipient, messaging_service.proposal_follow_up_payload(proposal, customer))
        if not result.success:
            logger.warning("Proposal %s follow-up failed: %s", proposal.id, result.error)
            continue
        proposal.follow_up_sent_at = now
        followed.append(proposal)

    db.session.commit()
    logger.info("Sent %s proposal follow-up(s)", len(followed))
    return followed
