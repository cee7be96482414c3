# Overview: Pytest coverage for loyalty service behavior.

import pytest

from opsdesk.errors import ForbiddenError
from opsdesk.models import LoyaltyCard
from opsdesk.services import ledger_service, loyalty_service
from opsdesk.services.loyalty_service import LoyaltySnapshot


def _snapshot(current, required=5, rewards=0):
    return LoyaltySnapshot(
        customer_id=1,
        exists=True,
        current_stamps=current,
        stamps_required=required,
        total_visits=current,
        rewards_redeemed=rewards,
    )


class TestRegisterCompletedVisit:
    def test_card_created_lazily(self, db_session, business_a, customer_a):
        assert loyalty_service.get_card(business_a.id, customer_a.id) is None

        card = loyalty_service.register_completed_visit(business_a.id, customer_a.id).card

        assert card.current_stamps == 1
        assert card.total_visits == 1
        assert card.stamps_required == 5
        assert db_session.query(LoyaltyCard).count() == 1

    @pytest.mark.parametrize("visits", [1, 4, 5, 6, 11])
    def test_stamps_fold_into_rewards(self, db_session, business_a, customer_a, visits):
        for _ in range(visits):
            card = loyalty_service.register_completed_visit(business_a.id, customer_a.id).card

        assert card.rewards_redeemed == visits // 5
        assert card.current_stamps == visits % 5
        assert card.total_visits == visits
        assert 0 <= card.current_stamps < card.stamps_required

    def test_reward_events_and_ledger(self, db_session, business_a, customer_a):
        for _ in range(5):
            loyalty_service.register_completed_visit(business_a.id, customer_a.id)

        events = loyalty_service.list_card_events(business_a.id, customer_a.id)
        assert [e.event_type for e in events].count("stamp") == 5
        assert [e.event_type for e in events].count("reward") == 1
        assert events[-1].event_type == "reward"
        assert events[-1].stamps_after == 0

        rewards = ledger_service.list_ledger_events(business_a.id, event_type="loyalty.reward_earned")
        assert len(rewards) == 1

    def test_cross_tenant_customer_forbidden(self, db_session, business_b, customer_a):
        with pytest.raises(ForbiddenError):
            loyalty_service.register_completed_visit(business_b.id, customer_a.id)

    def test_outcome_carries_locked_transition(self, db_session, business_a, customer_a):
        for _ in range(4):
            loyalty_service.register_completed_visit(business_a.id, customer_a.id)

        outcome = loyalty_service.register_completed_visit(business_a.id, customer_a.id)

        assert outcome.before.current_stamps == 4
        assert outcome.after.current_stamps == 0
        assert outcome.after.rewards_redeemed == 1
        assert outcome.reward_earned is True
        assert outcome.card.rewards_redeemed == 1

    def test_first_visit_outcome_starts_from_missing_card(self, db_session, business_a, customer_a):
        outcome = loyalty_service.register_completed_visit(business_a.id, customer_a.id)

        assert outcome.before.exists is False
        assert outcome.after.exists is True
        assert outcome.after.current_stamps == 1
        assert outcome.reward_earned is False


class TestSnapshots:
    def test_missing_card_snapshot(self, db_session, business_a, customer_a):
        snap = loyalty_service.snapshot_card(business_a.id, customer_a.id)

        assert snap.exists is False
        assert snap.current_stamps == 0
        assert snap.stamps_required == 5

    def test_reward_detected_when_card_fills(self):
        assert loyalty_service.reward_detected(_snapshot(4), _snapshot(0, rewards=1)) is True

    def test_reward_detected_from_counter(self):
        assert loyalty_service.reward_detected(_snapshot(2), _snapshot(0, rewards=1)) is True

    def test_no_reward_mid_card(self):
        assert loyalty_service.reward_detected(_snapshot(2), _snapshot(3)) is False
