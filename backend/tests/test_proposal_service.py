# Overview: Pytest coverage for proposal service behavior.

"""
Proposal Pipeline Tests

Verifies:
- amount derivation (total, discount, deposit)
- send cooldown and delivery failure handling
- the state machine never moves backwards out of a terminal status
- scheduling is idempotent (double-click safe)
- expiry and follow-up jobs
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from opsdesk.errors import (
    InvalidQuantityError,
    InvalidStateError,
    SendThrottledError,
    UpstreamServiceError,
    ValidationError,
)
from opsdesk.models import Appointment, Customer, Proposal
from opsdesk.services import proposal_service
from opsdesk.time_utils import utcnow


SERVICES = [{"description": "Coloring", "quantity": 2, "unit_price": 100}]


@pytest.fixture
def proposal_a(db_session, business_a, customer_a):
    return proposal_service.create_proposal(
        business_a.id,
        customer_id=customer_a.id,
        title="Coloring package",
        services=SERVICES,
        discount_percentage=10,
        deposit_percentage=50,
    )


def _schedule_window():
    start = utcnow() + timedelta(days=2)
    return start, start + timedelta(hours=1)


class TestComputeAmounts:
    def test_discount_and_deposit(self):
        amounts = proposal_service.compute_amounts(SERVICES, discount_percentage=10, deposit_percentage=50)

        assert amounts["total_amount"] == Decimal("200.00")
        assert amounts["final_amount"] == Decimal("180.00")
        assert amounts["deposit_amount"] == Decimal("90.00")

    def test_zero_deposit_is_zero_amount(self):
        amounts = proposal_service.compute_amounts(SERVICES, discount_percentage=10, deposit_percentage=0)

        assert amounts["final_amount"] == Decimal("180.00")
        assert amounts["deposit_amount"] == Decimal("0.00")

    def test_rounds_half_up_to_cents(self):
        services = [{"description": "Trim", "quantity": 1, "unit_price": "33.33"}]
        amounts = proposal_service.compute_amounts(services, discount_percentage="12.5", deposit_percentage=30)

        # 33.33 * 0.875 = 29.16375 -> 29.16 ; 29.16 * 0.3 = 8.748 -> 8.75
        assert amounts["final_amount"] == Decimal("29.16")
        assert amounts["deposit_amount"] == Decimal("8.75")

    def test_services_normalized_to_strings(self):
        amounts = proposal_service.compute_amounts(SERVICES)

        assert amounts["services"] == [{"description": "Coloring", "quantity": "2", "unit_price": "100.00"}]

    @pytest.mark.parametrize("discount", [-1, 101])
    def test_percentage_bounds(self, discount):
        with pytest.raises(ValidationError):
            proposal_service.compute_amounts(SERVICES, discount_percentage=discount)

    def test_empty_services_rejected(self):
        with pytest.raises(ValidationError):
            proposal_service.compute_amounts([])

    def test_non_positive_quantity_rejected(self):
        with pytest.raises(InvalidQuantityError):
            proposal_service.compute_amounts([{"description": "x", "quantity": 0, "unit_price": 10}])


class TestCreateProposal:
    def test_amounts_persisted(self, db_session, proposal_a):
        db_session.refresh(proposal_a)

        assert proposal_a.status == "pending"
        assert proposal_a.total_amount == Decimal("200.00")
        assert proposal_a.final_amount == Decimal("180.00")
        assert proposal_a.deposit_amount == Decimal("90.00")

    def test_deposit_defaults_to_half(self, db_session, business_a, customer_a):
        proposal = proposal_service.create_proposal(
            business_a.id, customer_id=customer_a.id, title="Cut", services=SERVICES,
        )

        assert proposal.deposit_percentage == Decimal("50")
        assert proposal.deposit_amount == Decimal("100.00")

    def test_explicit_zero_deposit_stored(self, db_session, business_a, customer_a):
        proposal = proposal_service.create_proposal(
            business_a.id, customer_id=customer_a.id, title="Cut", services=SERVICES, deposit_percentage=0,
        )
        db_session.refresh(proposal)

        assert proposal.deposit_amount == Decimal("0.00")


class TestSendProposal:
    def test_send_marks_sent_and_delivers(self, db_session, business_a, proposal_a, fake_delivery):
        proposal = proposal_service.send_proposal(business_a.id, proposal_a.id)

        assert proposal.status == "sent"
        assert proposal.sent_at is not None
        assert len(fake_delivery.sent) == 1
        assert fake_delivery.sent[0]["channel"] == "whatsapp"
        assert "180.00" in fake_delivery.sent[0]["payload"]["message"]

    def test_explicit_email_channel(self, db_session, business_a, proposal_a, fake_delivery):
        proposal_service.send_proposal(business_a.id, proposal_a.id, channel="email")

        assert fake_delivery.sent[0]["recipient"] == "maria@example.com"

    def test_resend_inside_cooldown_throttled(self, db_session, business_a, proposal_a, fake_delivery):
        t0 = utcnow()
        proposal_service.send_proposal(business_a.id, proposal_a.id, now=t0)

        with pytest.raises(SendThrottledError) as exc:
            proposal_service.send_proposal(business_a.id, proposal_a.id, now=t0 + timedelta(minutes=5))

        assert exc.value.http_status == 429
        assert exc.value.retry_after_seconds == 301
        assert len(fake_delivery.sent) == 1

    def test_resend_after_cooldown(self, db_session, business_a, proposal_a, fake_delivery):
        t0 = utcnow()
        proposal_service.send_proposal(business_a.id, proposal_a.id, now=t0)
        proposal = proposal_service.send_proposal(business_a.id, proposal_a.id, now=t0 + timedelta(minutes=11))

        assert proposal.status == "sent"
        assert len(fake_delivery.sent) == 2

    def test_delivery_failure_leaves_proposal_pending(self, db_session, business_a, proposal_a, fake_delivery):
        fake_delivery.fail = True

        with pytest.raises(UpstreamServiceError):
            proposal_service.send_proposal(business_a.id, proposal_a.id)

        db_session.refresh(proposal_a)
        assert proposal_a.status == "pending"
        assert proposal_a.sent_at is None

    def test_send_slot_committed_before_delivery(self, db_session, monkeypatch, business_a, proposal_a, fake_delivery):
        """A second send issued while the first is still delivering is throttled."""
        t0 = utcnow()
        overlapping = []
        real_send = fake_delivery.send

        def send_with_overlap(channel, recipient, payload):
            try:
                proposal_service.send_proposal(business_a.id, proposal_a.id, now=t0 + timedelta(seconds=1))
            except SendThrottledError as e:
                overlapping.append(e)
            return real_send(channel, recipient, payload)

        monkeypatch.setattr(fake_delivery, "send", send_with_overlap)

        proposal = proposal_service.send_proposal(business_a.id, proposal_a.id, now=t0)

        assert len(overlapping) == 1
        assert proposal.status == "sent"
        assert proposal.sent_at == t0
        assert len(fake_delivery.sent) == 1

    def test_failed_resend_restores_previous_send(self, db_session, business_a, proposal_a, fake_delivery):
        t0 = utcnow()
        proposal_service.send_proposal(business_a.id, proposal_a.id, now=t0)
        fake_delivery.fail = True

        with pytest.raises(UpstreamServiceError):
            proposal_service.send_proposal(business_a.id, proposal_a.id, now=t0 + timedelta(minutes=11))

        db_session.refresh(proposal_a)
        assert proposal_a.status == "sent"
        assert proposal_a.sent_at == t0

    def test_customer_without_contact(self, db_session, business_a, fake_delivery):
        customer = Customer(business_id=business_a.id, name="No Contact")
        db_session.add(customer)
        db_session.commit()
        proposal = proposal_service.create_proposal(
            business_a.id, customer_id=customer.id, title="Quote", services=SERVICES
        )

        with pytest.raises(ValidationError):
            proposal_service.send_proposal(business_a.id, proposal.id)
        assert fake_delivery.sent == []


class TestStateMachine:
    def test_view_requires_sent(self, db_session, business_a, proposal_a):
        with pytest.raises(InvalidStateError):
            proposal_service.mark_viewed(business_a.id, proposal_a.id)

    def test_view_is_idempotent(self, db_session, business_a, proposal_a, fake_delivery):
        proposal_service.send_proposal(business_a.id, proposal_a.id)
        first = proposal_service.mark_viewed(business_a.id, proposal_a.id)
        viewed_at = first.viewed_at
        second = proposal_service.mark_viewed(business_a.id, proposal_a.id)

        assert second.status == "viewed"
        assert second.viewed_at == viewed_at

    def test_terminal_status_is_final(self, db_session, business_a, proposal_a, fake_delivery):
        proposal_service.send_proposal(business_a.id, proposal_a.id)
        proposal_service.reject_proposal(business_a.id, proposal_a.id)

        for action in (
            proposal_service.accept_proposal,
            proposal_service.confirm_proposal,
            proposal_service.cancel_proposal,
            proposal_service.pause_proposal,
        ):
            with pytest.raises(InvalidStateError):
                action(business_a.id, proposal_a.id)

        db_session.refresh(proposal_a)
        assert proposal_a.status == "rejected"

    def test_accepted_cannot_go_back_to_sent(self, db_session, business_a, proposal_a, fake_delivery):
        proposal_service.send_proposal(business_a.id, proposal_a.id)
        proposal_service.accept_proposal(business_a.id, proposal_a.id)

        with pytest.raises(InvalidStateError):
            proposal_service.send_proposal(business_a.id, proposal_a.id, now=utcnow() + timedelta(hours=1))

    def test_pause_and_resume(self, db_session, business_a, proposal_a):
        paused = proposal_service.pause_proposal(business_a.id, proposal_a.id)
        assert paused.status == "paused"

        resumed = proposal_service.resume_proposal(business_a.id, proposal_a.id)
        assert resumed.status == "pending"


class TestScheduleFromProposal:
    def test_double_schedule_creates_one_appointment(self, db_session, business_a, proposal_a, fake_delivery):
        proposal_service.send_proposal(business_a.id, proposal_a.id)
        proposal_service.accept_proposal(business_a.id, proposal_a.id)
        start, end = _schedule_window()

        first = proposal_service.schedule_from_proposal(business_a.id, proposal_a.id, start_time=start, end_time=end)
        second = proposal_service.schedule_from_proposal(business_a.id, proposal_a.id, start_time=start, end_time=end)

        assert first.id == second.id
        assert db_session.query(Appointment).filter_by(proposal_id=proposal_a.id).count() == 1

        db_session.refresh(proposal_a)
        assert proposal_a.appointment_id == first.id
        assert proposal_a.status == "confirmed"
        assert first.price == Decimal("180.00")
        assert first.deposit_amount == Decimal("90.00")

    def test_pending_proposal_cannot_be_scheduled(self, db_session, business_a, proposal_a):
        start, end = _schedule_window()

        with pytest.raises(InvalidStateError):
            proposal_service.schedule_from_proposal(business_a.id, proposal_a.id, start_time=start, end_time=end)

    def test_delete_blocked_once_scheduled(self, db_session, business_a, proposal_a):
        proposal_service.confirm_proposal(business_a.id, proposal_a.id)
        start, end = _schedule_window()
        proposal_service.schedule_from_proposal(business_a.id, proposal_a.id, start_time=start, end_time=end)

        with pytest.raises(InvalidStateError):
            proposal_service.delete_proposal(business_a.id, proposal_a.id)

    def test_delete_unscheduled(self, db_session, business_a, proposal_a):
        proposal_service.delete_proposal(business_a.id, proposal_a.id)

        assert db_session.query(Proposal).count() == 0


class TestJobs:
    def test_expire_stale(self, db_session, business_a, customer_a, proposal_a):
        now = utcnow()
        stale = proposal_service.create_proposal(
            business_a.id, customer_id=customer_a.id, title="Old quote",
            services=SERVICES, valid_until=now - timedelta(days=1),
        )

        expired = proposal_service.expire_stale_proposals(now)

        assert [p.id for p in expired] == [stale.id]
        db_session.refresh(proposal_a)
        assert proposal_a.status == "pending"

    def test_confirmed_never_expires(self, db_session, business_a, customer_a):
        now = utcnow()
        proposal = proposal_service.create_proposal(
            business_a.id, customer_id=customer_a.id, title="Quote",
            services=SERVICES, valid_until=now - timedelta(days=1),
        )
        proposal_service.confirm_proposal(business_a.id, proposal.id)

        assert proposal_service.expire_stale_proposals(now) == []

    def test_follow_up_sent_once(self, db_session, business_a, proposal_a, fake_delivery):
        now = utcnow()
        proposal_service.send_proposal(business_a.id, proposal_a.id, now=now - timedelta(hours=49))

        followed = proposal_service.send_follow_ups(now)
        again = proposal_service.send_follow_ups(now + timedelta(hours=1))

        assert [p.id for p in followed] == [proposal_a.id]
        assert again == []
        assert len(fake_delivery.sent) == 2

    def test_follow_up_retried_after_failed_delivery(self, db_session, business_a, proposal_a, fake_delivery):
        now = utcnow()
        proposal_service.send_proposal(business_a.id, proposal_a.id, now=now - timedelta(hours=49))
        fake_delivery.fail = True

        assert proposal_service.send_follow_ups(now) == []
        db_session.refresh(proposal_a)
        assert proposal_a.follow_up_sent_at is None

        fake_delivery.fail = False
        assert len(proposal_service.send_follow_ups(now)) == 1

    def test_recent_send_not_followed_up(self, db_session, business_a, proposal_a, fake_delivery):
        now = utcnow()
        proposal_service.send_proposal(business_a.id, proposal_a.id, now=now - timedelta(hours=10))

        assert proposal_service.send_follow_ups(now) == []
