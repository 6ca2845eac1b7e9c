"""
Clearance Workflow Tests

Tests for:
1. Transition table
2. Requesting clearance (who, when, duplicates)
3. Resolving clearance (chief only, pending only, one terminal state)
4. Rollup onto the task without touching task status
"""

import pytest

from atelier.clearance_workflow import VALID_TRANSITIONS, can_transition
from atelier.errors import AuthorizationError, ConflictError, InvalidStateError, ValidationError
from atelier.models import ClearanceStatus

from tests.conftest import CHIEF, CHIEF_ID, INTERN, INTERN_ID, JUNIOR, OTHER_INTERN


@pytest.fixture
def task(services):
    task = services.tasks.create_task(CHIEF, {"title": "Elevation drawings", "assigned_to": INTERN_ID})
    return services.tasks.set_status(INTERN, task.id, "in_progress")


class TestTransitions:
    """pending -> approved | rejected; terminal states go nowhere."""

    def test_pending_targets(self):
        assert set(VALID_TRANSITIONS[ClearanceStatus.PENDING]) == {
            ClearanceStatus.APPROVED,
            ClearanceStatus.REJECTED,
        }

    def test_terminal_states(self):
        assert VALID_TRANSITIONS[ClearanceStatus.APPROVED] == []
        assert VALID_TRANSITIONS[ClearanceStatus.REJECTED] == []
        allowed, message = can_transition(ClearanceStatus.APPROVED, ClearanceStatus.REJECTED)
        assert allowed is False
        assert "Invalid transition" in message


class TestRequestClearance:
    """Opening a pending clearance."""

    def test_assignee_requests(self, services, task):
        clearance = services.clearances.request_clearance(INTERN, task.id, "Ready for review")
        assert clearance.status == "pending"
        assert clearance.requested_by == INTERN_ID
        assert clearance.notes == "Ready for review"
        assert clearance.cleared_at is None
        assert services.tasks.get_task(task.id).clearance_status == "pending"

    def test_chief_cannot_request(self, services):
        own = services.tasks.create_task(CHIEF, {"title": "x", "assigned_to": CHIEF_ID})
        with pytest.raises(AuthorizationError):
            services.clearances.request_clearance(CHIEF, own.id)

    def test_unrelated_user_cannot_request(self, services, task):
        with pytest.raises(AuthorizationError):
            services.clearances.request_clearance(OTHER_INTERN, task.id)

    def test_second_pending_request_conflicts(self, services, task):
        services.clearances.request_clearance(INTERN, task.id)
        with pytest.raises(ConflictError):
            services.clearances.request_clearance(INTERN, task.id)
        assert len(services.clearances.list_for_task(task.id)) == 1

    def test_completed_task_cannot_be_cleared(self, services, task):
        services.tasks.mark_complete(INTERN, task.id)
        with pytest.raises(InvalidStateError):
            services.clearances.request_clearance(INTERN, task.id)

    def test_rerequest_after_rejection(self, services, task):
        first = services.clearances.request_clearance(INTERN, task.id)
        services.clearances.resolve_clearance(CHIEF, first.id, "reject")
        second = services.clearances.request_clearance(INTERN, task.id, "Fixed the scale")
        assert second.id != first.id
        assert second.status == "pending"
        assert services.clearances.get_clearance(first.id).status == "rejected"


class TestResolveClearance:
    """Chief resolves pending clearances."""

    def test_reject_leaves_task_status_unchanged(self, services, task):
        clearance = services.clearances.request_clearance(INTERN, task.id)
        resolved = services.clearances.resolve_clearance(CHIEF, clearance.id, "reject", "Missing sections")

        assert resolved.status == "rejected"
        assert resolved.cleared_at is not None
        assert resolved.cleared_by == CHIEF_ID
        assert resolved.notes == "Missing sections"

        after = services.tasks.get_task(task.id)
        assert after.status == "in_progress"
        assert after.clearance_status == "rejected"
        assert after.cleared_at is None

    def test_approve_does_not_complete_task(self, services, task):
        clearance = services.clearances.request_clearance(INTERN, task.id)
        resolved = services.clearances.resolve_clearance(CHIEF, clearance.id, "approve")

        assert resolved.status == "approved"
        after = services.tasks.get_task(task.id)
        assert after.status == "in_progress"
        assert after.completed_at is None
        assert after.clearance_status == "approved"
        assert after.cleared_by == CHIEF_ID
        assert after.cleared_at == resolved.cleared_at

    def test_non_chief_cannot_resolve(self, services, task):
        clearance = services.clearances.request_clearance(INTERN, task.id)
        for actor in (JUNIOR, INTERN):
            with pytest.raises(AuthorizationError):
                services.clearances.resolve_clearance(actor, clearance.id, "approve")

        unchanged = services.clearances.get_clearance(clearance.id)
        assert unchanged.status == "pending"
        assert unchanged.cleared_by is None
        assert unchanged.cleared_at is None

    def test_resolving_twice_is_invalid_state(self, services, task):
        clearance = services.clearances.request_clearance(INTERN, task.id)
        services.clearances.resolve_clearance(CHIEF, clearance.id, "approve")
        with pytest.raises(InvalidStateError):
            services.clearances.resolve_clearance(CHIEF, clearance.id, "reject")
        assert services.clearances.get_clearance(clearance.id).status == "approved"

    def test_unknown_decision_rejected(self, services, task):
        clearance = services.clearances.request_clearance(INTERN, task.id)
        with pytest.raises(ValidationError):
            services.clearances.resolve_clearance(CHIEF, clearance.id, "maybe")

    def test_requester_notified_of_outcome(self, services, task):
        clearance = services.clearances.request_clearance(INTERN, task.id)
        services.clearances.resolve_clearance(CHIEF, clearance.id, "approve")

        outcome = [n for n in services.dispatcher.list_notifications(INTERN) if n.type == "status_update"]
        assert len(outcome) == 1
        assert "approved" in outcome[0].message

    def test_pending_queue(self, services, task):
        other = services.tasks.create_task(CHIEF, {"title": "Sections", "assigned_to": INTERN_ID})
        a = services.clearances.request_clearance(INTERN, task.id)
        services.clearances.request_clearance(INTERN, other.id)
        services.clearances.resolve_clearance(CHIEF, a.id, "approve")

        pending = services.clearances.list_pending(CHIEF)
        assert [c.task_id for c in pending] == [other.id]

    def test_pending_queue_scoped_to_requester(self, services, task):
        junior_task = services.tasks.create_task(JUNIOR, {"title": "Site plan", "assigned_to": JUNIOR.user_id})
        services.clearances.request_clearance(JUNIOR, junior_task.id)
        services.clearances.request_clearance(INTERN, task.id)

        assert len(services.clearances.list_pending(CHIEF)) == 2
        assert [c.task_id for c in services.clearances.list_pending(INTERN)] == [task.id]
        assert [c.task_id for c in services.clearances.list_pending(JUNIOR)] == [junior_task.id]
        assert services.clearances.list_pending(OTHER_INTERN) == []
