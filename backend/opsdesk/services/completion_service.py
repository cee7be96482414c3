# Overview: Appointment completion orchestrator; coordinates payment, stock, loyalty and follow-ups.

"""
Appointment Completion

complete_appointment() is the single entry point that turns a scheduled
appointment into a completed one. As ONE database transaction it:

1. locks the appointment (scheduled only; anything else -> InvalidStateError)
2. marks it completed/paid and sets price + payment method when value > 0
3. records the income FinancialTransaction (value > 0 only)
4. applies one `out` StockMovement per consumed item
5. adds a loyalty stamp (folding a full card into a reward)
6. appends appointment.completed to the ledger

The loyalty before/after pair comes from the stamp itself, read and written
under the card lock, so a concurrent completion for the same customer cannot
leak into this result. After the commit it dispatches the follow-ups
(post-service task, post-service message).

FAILURE POLICY:
- Stock problems (unknown item, bad quantity) are recovered locally and
  reported in `degraded`, unless COMPLETION_STRICT_STOCK is set, in which case
  the whole completion is rolled back and the error propagates.
- Loyalty failures abort the completion.
- Follow-up dispatch happens after commit; its failures are only reported in
  `degraded`, never raised.

Re-invoking on a completed appointment fails fast, so a double submit can
never produce a second transaction, stamp, or movement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..errors import DomainError, InvalidQuantityError, InvalidStateError, ValidationError
from ..models import Appointment, Customer, FinancialTransaction, Proposal, StockMovement
from ..models.finance import TRANSACTION_INCOME, TRANSACTION_COMPLETED
from ..models.inventory import MOVEMENT_OUT
from ..models.scheduling import APPOINTMENT_SCHEDULED, APPOINTMENT_COMPLETED, PAYMENT_PAID
from ..money import quantize_money, to_decimal
from opsdesk.time_utils import utcnow, to_utc_z
from . import inventory_service, loyalty_service, messaging_service, task_service
from .appointment_service import validate_payment_method
from .concurrency import run_with_retry
from .ledger_service import append_ledger_event, record_transaction
from .loyalty_service import LoyaltySnapshot
from .tenant_service import require_owned

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    appointment: Appointment
    transaction: FinancialTransaction | None
    movements: list[StockMovement]
    loyalty_before: LoyaltySnapshot
    loyalty_after: LoyaltySnapshot
    reward_earned: bool
    degraded: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "appointment": self.appointment.to_dict(),
            "transaction": self.transaction.to_dict() if self.transaction else None,
            "movements": [m.to_dict() for m in self.movements],
            "loyalty_before": self.loyalty_before.to_dict(),
            "loyalty_after": self.loyalty_after.to_dict(),
            "reward_earned": self.reward_earned,
            "degraded": list(self.degraded),
        }


def _normalize_usages(stock_usages) -> list[tuple[int, object]]:
    """Accept [{"item_id", "quantity"}] or [(item_id, quantity)]."""
    usages = []
    for usage in stock_usages or ():
        if isinstance(usage, dict):
            if "item_id" not in usage or "quantity" not in usage:
                raise ValidationError("each stock usage needs item_id and quantity")
            usages.append((usage["item_id"], usage["quantity"]))
        else:
            item_id, quantity = usage
            usages.append((item_id, quantity))
    return usages


def _default_value(appointment: Appointment) -> Decimal | None:
    if appointment.proposal_id is not None:
        proposal = db.session.get(Proposal, appointment.proposal_id)
        if proposal is not None and proposal.final_amount is not None:
            return proposal.final_amount
    return appointment.price


def complete_appointment(
    business_id: int,
    appointment_id: int,
    value=None,
    payment_method: str | None = None,
    stock_usages=(),
    actor_user_id: int | None = None,
) -> CompletionResult:
    """
    Complete an appointment and apply every side effect as one unit.

    Raises:
        NotFoundError / ForbiddenError: appointment missing or not ours
        InvalidStateError: appointment is not scheduled
        ValidationError / InvalidQuantityError: bad value or payment method
        any stock DomainError when COMPLETION_STRICT_STOCK is set
    """
    usages = _normalize_usages(stock_usages)
    payment_method = validate_payment_method(payment_method)
    if value is not None:
        value = quantize_money(to_decimal(value, field="value"))
        if value < 0:
            raise InvalidQuantityError("value must be >= 0")
    strict_stock = bool(current_app.config.get("COMPLETION_STRICT_STOCK", False))

    def _op():
        degraded = []
        appointment = require_owned(Appointment, appointment_id, business_id, lock=True)
        if appointment.status != APPOINTMENT_SCHEDULED:
            raise InvalidStateError(f"appointment is already {appointment.status}")

        amount = value if value is not None else _default_value(appointment)
        now = utcnow()
        appointment.status = APPOINTMENT_COMPLETED
        appointment.payment_status = PAYMENT_PAID
        appointment.completed_at = now

        transaction = None
        if amount is not None and amount > 0:
            appointment.price = amount
            if payment_method:
                appointment.payment_method = payment_method
            transaction = record_transaction(
                business_id=business_id,
                type=TRANSACTION_INCOME,
                amount=amount,
                description=f"Appointment: {appointment.title}",
                payment_method=appointment.payment_method,
                status=TRANSACTION_COMPLETED,
                transaction_date=now,
                appointment_id=appointment.id,
                created_by_user_id=actor_user_id,
            )

        movements = []
        for item_id, quantity in usages:
            try:
                movement = inventory_service.apply_movement(
                    business_id,
                    item_id,
                    quantity,
                    MOVEMENT_OUT,
                    reason=f"Used in appointment: {appointment.title}"[:255],
                    reference_type="appointment",
                    reference_id=appointment.id,
                    actor_user_id=actor_user_id,
                    commit=False,
                )
            except DomainError as e:
                if strict_stock:
                    raise
                logger.warning("Stock usage skipped for appointment %s item %s: %s", appointment.id, item_id, e.message)
                degraded.append({"step": "stock", "item_id": item_id, "error": e.message})
                continue
            movements.append(movement)

        visit = loyalty_service.register_completed_visit(
            business_id,
            appointment.customer_id,
            appointment.id,
            actor_user_id=actor_user_id,
            commit=False,
        )

        append_ledger_event(
            business_id=business_id,
            event_type="appointment.completed",
            entity_type="appointment",
            entity_id=appointment.id,
            actor_user_id=actor_user_id,
            occurred_at=now,
            payload={
                "customer_id": appointment.customer_id,
                "value": str(amount) if amount is not None else None,
                "transaction_id": transaction.id if transaction else None,
                "movement_ids": [m.id for m in movements],
            },
        )

        db.session.commit()
        return appointment, transaction, movements, visit, degraded

    try:
        appointment, transaction, movements, visit, degraded = run_with_retry(
            _op, retry_on=(IntegrityError,)
        )
    except DomainError:
        db.session.rollback()
        raise

    result = CompletionResult(
        appointment=appointment,
        transaction=transaction,
        movements=movements,
        loyalty_before=visit.before,
        loyalty_after=visit.after,
        reward_earned=visit.reward_earned,
        degraded=degraded,
    )

    _dispatch_follow_ups(result)
    return result


def _dispatch_follow_ups(result: CompletionResult) -> None:
    """Post-commit fan-out. Never raises; problems land in result.degraded."""
    appointment = result.appointment
    customer = db.session.get(Customer, appointment.customer_id)
    event = {
        "business_id": appointment.business_id,
        "appointment_id": appointment.id,
        "customer_id": appointment.customer_id,
        "customer_name": customer.name if customer else None,
        "title": appointment.title,
        "completed_at": to_utc_z(appointment.completed_at),
        "reward_earned": result.reward_earned,
    }

    try:
        task_service.handle_appointment_completed(event)
    except Exception as e:
        db.session.rollback()
        logger.exception("Follow-up task for appointment %s failed", appointment.id)
        result.degraded.append({"step": "follow_up_task", "error": str(e)})

    try:
        delivery = messaging_service.send_post_service_message(appointment.business_id, appointment.id)
    except Exception as e:
        db.session.rollback()
        logger.exception("Post-service message for appointment %s failed", appointment.id)
        result.degraded.append({"step": "post_service_message", "error": str(e)})
    else:
        if not delivery.success:
            result.degraded.append({"step": "post_service_message", "error": delivery.error})
