# Overview: Service-layer operations for loyalty; encapsulates business logic and database work.

"""
Loyalty Stamp Card Service

RULE: every completed appointment adds one stamp. When the card reaches
stamps_required, the reward is granted immediately:
    rewards_redeemed += 1, current_stamps = 0

So after N completed visits on a fresh card:
    rewards_redeemed == N // stamps_required
    current_stamps   == N %  stamps_required

CONCURRENCY: one card per (business, customer). Updates run under the card
row lock plus version_id; a concurrent lazy creation loses on the unique
constraint (IntegrityError) and the caller's retry re-reads the card.

The card is advanced synchronously inside the completion transaction.
register_completed_visit reads "before" and writes "after" while holding the
card lock, so the returned pair describes exactly this visit even when other
completions for the same customer run concurrently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Customer, LoyaltyCard, LoyaltyStampEvent
from opsdesk.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_ledger_event
from .tenant_service import require_owned, scoped_query

logger = logging.getLogger(__name__)

EVENT_STAMP = "stamp"
EVENT_REWARD = "reward"


@dataclass(frozen=True)
class LoyaltySnapshot:
    """Immutable view of a card at one instant. exists=False for a card not yet created."""
    customer_id: int
    exists: bool
    current_stamps: int
    stamps_required: int
    total_visits: int
    rewards_redeemed: int

    def to_dict(self) -> dict:
        return {
            "customer_id": self.customer_id,
            "exists": self.exists,
            "current_stamps": self.current_stamps,
            "stamps_required": self.stamps_required,
            "total_visits": self.total_visits,
            "rewards_redeemed": self.rewards_redeemed,
        }


def default_stamps_required() -> int:
    return int(current_app.config.get("LOYALTY_STAMPS_REQUIRED", 5))


def _find_card(business_id: int, customer_id: int, *, lock: bool = False) -> LoyaltyCard | None:
    q = db.session.query(LoyaltyCard).filter_by(business_id=business_id, customer_id=customer_id)
    if lock:
        # Overwrite any identity-map copy with the row as of the lock
        q = lock_for_update(q).populate_existing()
    return q.first()


def _empty_snapshot(customer_id: int) -> LoyaltySnapshot:
    return LoyaltySnapshot(
        customer_id=customer_id,
        exists=False,
        current_stamps=0,
        stamps_required=default_stamps_required(),
        total_visits=0,
        rewards_redeemed=0,
    )


def snapshot_card(business_id: int, customer_id: int) -> LoyaltySnapshot:
    card = _find_card(business_id, customer_id)
    if card is None:
        return _empty_snapshot(customer_id)
    # Pick up changes committed by other sessions since the card was loaded
    db.session.refresh(card)
    return _card_snapshot(card)


def reward_detected(before: LoyaltySnapshot, after: LoyaltySnapshot) -> bool:
    """True when the visit between the two snapshots filled the card."""
    if before.current_stamps + 1 >= before.stamps_required:
        return True
    return after.rewards_redeemed > before.rewards_redeemed


@dataclass(frozen=True)
class VisitOutcome:
    """Result of one stamp: the card plus its state just before and after it."""
    card: LoyaltyCard
    before: LoyaltySnapshot
    after: LoyaltySnapshot

    @property
    def reward_earned(self) -> bool:
        return reward_detected(self.before, self.after)


def _card_snapshot(card: LoyaltyCard) -> LoyaltySnapshot:
    return LoyaltySnapshot(
        customer_id=card.customer_id,
        exists=True,
        current_stamps=card.current_stamps,
        stamps_required=card.stamps_required,
        total_visits=card.total_visits,
        rewards_redeemed=card.rewards_redeemed,
    )


def register_completed_visit(
    business_id: int,
    customer_id: int,
    appointment_id: int | None = None,
    *,
    actor_user_id: int | None = None,
    commit: bool = True,
) -> VisitOutcome:
    """
    Add one stamp (and fold a full card into a reward).

    Returns the card with the before/after snapshots taken under the card lock.

    With commit=False the update joins the caller's transaction; a lost race
    on lazy card creation then surfaces as IntegrityError for the caller's
    retry loop.
    """

    def _op():
        require_owned(Customer, customer_id, business_id)
        now = utcnow()

        card = _find_card(business_id, customer_id, lock=True)
        before = _empty_snapshot(customer_id) if card is None else _card_snapshot(card)
        if card is None:
            card = LoyaltyCard(
                business_id=business_id,
                customer_id=customer_id,
                current_stamps=0,
                stamps_required=default_stamps_required(),
                total_visits=0,
                rewards_redeemed=0,
            )
            db.session.add(card)
            db.session.flush()

        card.current_stamps += 1
        card.total_visits += 1
        card.last_visit_at = now

        db.session.add(LoyaltyStampEvent(
            business_id=business_id,
            loyalty_card_id=card.id,
            event_type=EVENT_STAMP,
            stamps_after=card.current_stamps,
            appointment_id=appointment_id,
            occurred_at=now,
        ))

        if card.current_stamps >= card.stamps_required:
            card.rewards_redeemed += 1
            card.current_stamps = 0
            db.session.add(LoyaltyStampEvent(
                business_id=business_id,
                loyalty_card_id=card.id,
                event_type=EVENT_REWARD,
                stamps_after=0,
                appointment_id=appointment_id,
                occurred_at=now,
            ))
            append_ledger_event(
                business_id=business_id,
                event_type="loyalty.reward_earned",
                entity_type="loyalty_card",
                entity_id=card.id,
                actor_user_id=actor_user_id,
                occurred_at=now,
                payload={
                    "customer_id": customer_id,
                    "appointment_id": appointment_id,
                    "rewards_redeemed": card.rewards_redeemed,
                },
            )
            logger.info("Customer %s earned loyalty reward #%s", customer_id, card.rewards_redeemed)

        db.session.flush()
        outcome = VisitOutcome(card=card, before=before, after=_card_snapshot(card))
        if commit:
            db.session.commit()
        return outcome

    if not commit:
        return _op()
    return run_with_retry(_op, retry_on=(IntegrityError,))


def get_card(business_id: int, customer_id: int) -> LoyaltyCard | None:
    require_owned(Customer, customer_id, business_id)
    return _find_card(business_id, customer_id)


def list_cards(business_id: int) -> list[LoyaltyCard]:
    return scoped_query(LoyaltyCard, business_id).order_by(LoyaltyCard.id.asc()).all()


def list_card_events(business_id: int, customer_id: int) -> list[LoyaltyStampEvent]:
    card = get_card(business_id, customer_id)
    if card is None:
        return []
    return (
        db.session.query(LoyaltyStampEvent)
        .filter_by(loyalty_card_id=card.id)
        .order_by(LoyaltyStampEvent.id.asc())
        .all()
    )
