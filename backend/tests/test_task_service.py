# Overview: Pytest coverage for task generator behavior.

from datetime import datetime, timedelta

import pytest

from opsdesk.errors import InvalidStateError, ValidationError
from opsdesk.models import Customer, Task
from opsdesk.services import appointment_service, task_service
from opsdesk.time_utils import utcnow


def _old_visit(business_id, customer_id, days_ago):
    start = utcnow() - timedelta(days=days_ago)
    return appointment_service.create_appointment(
        business_id, customer_id=customer_id, title="Old visit",
        start_time=start, end_time=start + timedelta(hours=1),
    )


class TestManualTasks:
    def test_create_and_complete(self, db_session, business_a):
        task = task_service.create_task(business_a.id, title="Order towels", priority="high")

        assert task.status == "pending"
        done = task_service.complete_task(business_a.id, task.id)
        assert done.status == "completed"
        assert done.completed_at is not None

        with pytest.raises(InvalidStateError):
            task_service.complete_task(business_a.id, task.id)

    def test_invalid_priority(self, db_session, business_a):
        with pytest.raises(ValidationError):
            task_service.create_task(business_a.id, title="x", priority="urgent")

    def test_list_filters(self, db_session, business_a, business_b):
        task_service.create_task(business_a.id, title="A1")
        task_service.create_task(business_b.id, title="B1")

        tasks = task_service.list_tasks(business_a.id, status="pending")
        assert [t.title for t in tasks] == ["A1"]


class TestPostServiceTask:
    def test_one_task_per_appointment(self, db_session, business_a, customer_a, appointment_a):
        event = {
            "business_id": business_a.id,
            "appointment_id": appointment_a.id,
            "customer_id": customer_a.id,
            "customer_name": customer_a.name,
            "title": appointment_a.title,
            "completed_at": "2024-05-01T15:00:00Z",
        }

        first = task_service.handle_appointment_completed(event)
        second = task_service.handle_appointment_completed(event)

        assert first is not None
        assert second is None
        assert first.task_type == "post_service"
        assert first.due_date == datetime(2024, 5, 2, 15, 0)
        assert db_session.query(Task).filter_by(appointment_id=appointment_a.id).count() == 1


class TestInactiveCustomers:
    def test_customer_without_visits_gets_task(self, db_session, business_a, customer_a):
        created = task_service.generate_inactive_customer_tasks(business_id=business_a.id)

        assert [t.customer_id for t in created] == [customer_a.id]
        assert created[0].task_type == "reactivation"
        assert created[0].title == "Reactivate customer: Maria Silva"

    def test_recent_visit_skipped(self, db_session, business_a, customer_a, appointment_a):
        assert task_service.generate_inactive_customer_tasks(business_id=business_a.id) == []

    def test_old_visit_flagged(self, db_session, business_a, customer_a):
        _old_visit(business_a.id, customer_a.id, days_ago=90)

        created = task_service.generate_inactive_customer_tasks(inactive_days=60, business_id=business_a.id)

        assert len(created) == 1

    def test_cancelled_visit_does_not_count(self, db_session, business_a, customer_a):
        recent = _old_visit(business_a.id, customer_a.id, days_ago=2)
        appointment_service.cancel_appointment(business_a.id, recent.id)

        assert len(task_service.generate_inactive_customer_tasks(business_id=business_a.id)) == 1

    def test_no_duplicate_pending_task(self, db_session, business_a, customer_a):
        first = task_service.generate_inactive_customer_tasks(business_id=business_a.id)
        second = task_service.generate_inactive_customer_tasks(business_id=business_a.id)

        assert len(first) == 1
        assert second == []

    def test_new_task_after_previous_completed(self, db_session, business_a, customer_a):
        first = task_service.generate_inactive_customer_tasks(business_id=business_a.id)
        task_service.complete_task(business_a.id, first[0].id)

        assert len(task_service.generate_inactive_customer_tasks(business_id=business_a.id)) == 1

    def test_scan_scoped_to_business(self, db_session, business_a, business_b, customer_a):
        db_session.add(Customer(business_id=business_b.id, name="Other"))
        db_session.commit()

        created = task_service.generate_inactive_customer_tasks(business_id=business_a.id)

        assert {t.business_id for t in created} == {business_a.id}
