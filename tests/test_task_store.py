"""
Task Entity Store Tests

Tests for:
1. Creation rules per role (create, assign, self-assign)
2. completed_at / status invariant
3. self_assigned invariant on reassignment
4. Update and delete authorization
5. Status history and overdue sweep
"""

from datetime import date

import pytest

from atelier.errors import AuthorizationError, NotFoundError, ValidationError
from atelier.models import TaskStatus

from tests.conftest import CHIEF, CHIEF_ID, INTERN, INTERN_ID, JUNIOR, JUNIOR_ID, OTHER_INTERN, OTHER_INTERN_ID


class TestCreateTask:
    """Task creation and assignment rules."""

    def test_chief_creates_and_assigns_anyone(self, services):
        task = services.tasks.create_task(CHIEF, {"title": "Site survey", "assigned_to": JUNIOR_ID})
        assert task.created_by == CHIEF_ID
        assert task.assigned_to == JUNIOR_ID
        assert task.status == "pending"
        assert task.priority == "medium"
        assert task.self_assigned is False
        assert task.completed_at is None

    def test_junior_cannot_assign_to_chief(self, services):
        with pytest.raises(AuthorizationError):
            services.tasks.create_task(JUNIOR, {"title": "Review", "assigned_to": CHIEF_ID})

    def test_junior_assigns_intern(self, services):
        task = services.tasks.create_task(JUNIOR, {"title": "Draft plans", "assigned_to": INTERN_ID})
        assert task.assigned_to == INTERN_ID

    def test_intern_self_assigns(self, services):
        task = services.tasks.create_task(INTERN, {"title": "Model facade", "assigned_to": INTERN_ID})
        assert task.self_assigned is True
        assert task.assigned_to == task.created_by == INTERN_ID

    def test_intern_cannot_assign_others(self, services):
        with pytest.raises(AuthorizationError):
            services.tasks.create_task(INTERN, {"title": "x", "assigned_to": OTHER_INTERN_ID})

    def test_intern_cannot_create_unassigned(self, services):
        with pytest.raises(AuthorizationError):
            services.tasks.create_task(INTERN, {"title": "x"})

    def test_chief_self_assignment_is_not_flagged(self, services):
        task = services.tasks.create_task(CHIEF, {"title": "Client call", "assigned_to": CHIEF_ID})
        assert task.self_assigned is False

    def test_title_required(self, services):
        with pytest.raises(ValidationError) as exc:
            services.tasks.create_task(CHIEF, {"title": "   "})
        assert "title is required" in exc.value.details["errors"]

    def test_invalid_enums_and_dates_rejected(self, services):
        with pytest.raises(ValidationError) as exc:
            services.tasks.create_task(CHIEF, {
                "title": "x",
                "status": "done",
                "priority": "critical",
                "due_date": "next week",
            })
        assert len(exc.value.details["errors"]) == 3

    def test_created_completed_task_has_completed_at(self, services):
        task = services.tasks.create_task(CHIEF, {"title": "Archived", "status": "completed"})
        assert task.completed_at is not None

    def test_unknown_assignee_is_not_found(self, services):
        with pytest.raises(NotFoundError):
            services.tasks.create_task(CHIEF, {"title": "x", "assigned_to": "ghost"})

    def test_assignee_receives_in_app_notification(self, services):
        task = services.tasks.create_task(CHIEF, {"title": "Survey", "assigned_to": INTERN_ID})
        notes = services.dispatcher.list_notifications(INTERN)
        assert len(notes) == 1
        assert notes[0].type == "task_assigned"
        assert notes[0].task_id == task.id
        assert notes[0].sent_at is None


class TestStatusInvariant:
    """status == completed <=> completed_at set."""

    def test_mark_complete_stamps_completed_at(self, services):
        task = services.tasks.create_task(CHIEF, {"title": "x", "assigned_to": INTERN_ID})
        done = services.tasks.mark_complete(INTERN, task.id)
        assert done.status == "completed"
        assert done.completed_at is not None

    def test_reopening_clears_completed_at(self, services):
        task = services.tasks.create_task(CHIEF, {"title": "x", "assigned_to": INTERN_ID})
        services.tasks.mark_complete(INTERN, task.id)
        reopened = services.tasks.set_status(INTERN, task.id, "in_progress")
        assert reopened.status == "in_progress"
        assert reopened.completed_at is None

    def test_update_with_status_keeps_invariant(self, services):
        task = services.tasks.create_task(CHIEF, {"title": "x"})
        updated = services.tasks.update_task(CHIEF, task.id, {"status": "completed"})
        assert updated.completed_at is not None
        updated = services.tasks.update_task(CHIEF, task.id, {"status": "pending"})
        assert updated.completed_at is None

    def test_invariant_holds_across_all_tasks(self, services):
        a = services.tasks.create_task(CHIEF, {"title": "a", "assigned_to": INTERN_ID})
        b = services.tasks.create_task(CHIEF, {"title": "b", "assigned_to": INTERN_ID})
        services.tasks.mark_complete(INTERN, a.id)
        services.tasks.set_status(INTERN, b.id, "in_progress")
        for task in services.tasks.list_tasks(CHIEF):
            assert (task.status == TaskStatus.COMPLETED.value) == (task.completed_at is not None)

    def test_invalid_status_rejected(self, services):
        task = services.tasks.create_task(CHIEF, {"title": "x"})
        with pytest.raises(ValidationError):
            services.tasks.set_status(CHIEF, task.id, "finished")

    @pytest.mark.parametrize("field", ["status", "priority", "title"])
    def test_update_rejects_explicit_null(self, services, field):
        task = services.tasks.create_task(CHIEF, {"title": "x", "priority": "high"})
        with pytest.raises(ValidationError):
            services.tasks.update_task(CHIEF, task.id, {field: None})

        unchanged = services.tasks.get_task(task.id)
        assert unchanged.status == "pending"
        assert unchanged.priority == "high"
        assert unchanged.title == "x"

    def test_create_with_null_enums_uses_defaults(self, services):
        task = services.tasks.create_task(CHIEF, {"title": "x", "status": None, "priority": None})
        assert task.status == "pending"
        assert task.priority == "medium"


class TestUpdateAuthorization:
    """Only assignee, creator or chief modify a task."""

    def test_unrelated_user_cannot_update(self, services):
        task = services.tasks.create_task(CHIEF, {"title": "x", "assigned_to": INTERN_ID})
        with pytest.raises(AuthorizationError):
            services.tasks.set_status(OTHER_INTERN, task.id, "in_progress")

    def test_assignee_updates_status(self, services):
        task = services.tasks.create_task(JUNIOR, {"title": "x", "assigned_to": INTERN_ID})
        updated = services.tasks.set_status(INTERN, task.id, "in_progress")
        assert updated.status == "in_progress"

    def test_intern_cannot_reassign_to_someone_else(self, services):
        task = services.tasks.create_task(JUNIOR, {"title": "x", "assigned_to": INTERN_ID})
        with pytest.raises(AuthorizationError):
            services.tasks.update_task(INTERN, task.id, {"assigned_to": OTHER_INTERN_ID})

    def test_reassigning_self_assigned_task_clears_flag(self, services):
        task = services.tasks.create_task(JUNIOR, {"title": "x", "assigned_to": JUNIOR_ID})
        assert task.self_assigned is True
        updated = services.tasks.update_task(JUNIOR, task.id, {"assigned_to": INTERN_ID})
        assert updated.self_assigned is False
        assert updated.assigned_to == INTERN_ID

    def test_delete_is_chief_only(self, services):
        task = services.tasks.create_task(JUNIOR, {"title": "x", "assigned_to": INTERN_ID})
        with pytest.raises(AuthorizationError):
            services.tasks.delete_task(JUNIOR, task.id)
        assert services.tasks.delete_task(CHIEF, task.id) is True
        with pytest.raises(NotFoundError):
            services.tasks.get_task(task.id)

    def test_unknown_fields_rejected(self, services):
        task = services.tasks.create_task(CHIEF, {"title": "x"})
        with pytest.raises(ValidationError):
            services.tasks.update_task(CHIEF, task.id, {"created_by": INTERN_ID})


class TestVisibility:
    """Non-chief users see only their own tasks."""

    def test_list_tasks_scoped(self, services):
        services.tasks.create_task(CHIEF, {"title": "mine", "assigned_to": INTERN_ID})
        services.tasks.create_task(CHIEF, {"title": "theirs", "assigned_to": OTHER_INTERN_ID})
        titles = [t.title for t in services.tasks.list_tasks(INTERN)]
        assert titles == ["mine"]
        assert len(services.tasks.list_tasks(CHIEF)) == 2


class TestHistoryAndOverdue:
    """Status history rows and the overdue sweep."""

    def test_every_status_change_is_recorded(self, services):
        task = services.tasks.create_task(CHIEF, {"title": "x", "assigned_to": INTERN_ID})
        services.tasks.set_status(INTERN, task.id, "in_progress", notes="started")
        services.tasks.mark_complete(INTERN, task.id)

        history = services.tasks.get_status_history(task.id)
        transitions = [(h.old_status, h.new_status) for h in history]
        assert transitions == [
            (None, "pending"),
            ("pending", "in_progress"),
            ("in_progress", "completed"),
        ]
        assert history[1].notes == "started"
        assert history[2].user_id == INTERN_ID

    def test_same_status_is_not_recorded(self, services):
        task = services.tasks.create_task(CHIEF, {"title": "x"})
        services.tasks.set_status(CHIEF, task.id, "pending")
        assert len(services.tasks.get_status_history(task.id)) == 1

    def test_mark_overdue(self, services):
        late = services.tasks.create_task(CHIEF, {"title": "late", "due_date": "2026-01-05"})
        on_time = services.tasks.create_task(CHIEF, {"title": "ok", "due_date": "2026-01-20"})
        done = services.tasks.create_task(CHIEF, {"title": "done", "due_date": "2026-01-01", "status": "completed"})

        changed = services.tasks.mark_overdue(today=date(2026, 1, 10))

        assert changed == [late.id]
        assert services.tasks.get_task(late.id).status == "overdue"
        assert services.tasks.get_task(on_time.id).status == "pending"
        assert services.tasks.get_task(done.id).status == "completed"
