"""
Notification Dispatch Tests

Tests for:
1. Deadline scan partitioning (upcoming / overdue)
2. Partial email failure in bulk dispatch
3. Custom alerts
4. Templates and the inbox
5. Bounded concurrency
"""

import asyncio
from datetime import date
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from atelier.errors import AuthorizationError, NotFoundError, StoreError, ValidationError
from atelier.models import Task
from atelier.notification_dispatch import (
    NotificationDispatcher,
    NotificationTemplates,
    urgency_text,
)

from tests.conftest import (
    CHIEF,
    CHIEF_ID,
    INTERN,
    INTERN_ID,
    JUNIOR,
    JUNIOR_ID,
    OTHER_INTERN,
    OTHER_INTERN_ID,
    RecordingEmailSender,
)

TODAY = date(2026, 3, 10)


def seed_deadlines(services):
    """Three eligible tasks plus several that the scan must skip."""
    tasks = services.tasks
    eligible = {
        "upcoming": tasks.create_task(CHIEF, {"title": "Facade", "assigned_to": INTERN_ID, "due_date": "2026-03-12"}),
        "today": tasks.create_task(CHIEF, {"title": "Sections", "assigned_to": OTHER_INTERN_ID, "due_date": "2026-03-10"}),
        "overdue": tasks.create_task(CHIEF, {"title": "Survey", "assigned_to": JUNIOR_ID, "due_date": "2026-03-01"}),
    }
    tasks.create_task(CHIEF, {"title": "Too far", "assigned_to": INTERN_ID, "due_date": "2026-03-20"})
    tasks.create_task(CHIEF, {"title": "Nobody", "due_date": "2026-03-11"})
    tasks.create_task(CHIEF, {"title": "No date", "assigned_to": INTERN_ID})
    tasks.create_task(CHIEF, {
        "title": "Done", "assigned_to": INTERN_ID, "due_date": "2026-03-11", "status": "completed",
    })
    return eligible


def deadline_notifications(services, actor):
    return [n for n in services.dispatcher.list_notifications(actor) if n.type == "deadline_reminder"]


def all_deadline_notifications(services):
    return [n for actor in (INTERN, OTHER_INTERN, JUNIOR) for n in deadline_notifications(services, actor)]


class TestDeadlineScan:
    """Eligibility and partitioning."""

    def test_partition(self, services):
        eligible = seed_deadlines(services)
        upcoming, overdue = services.dispatcher.find_deadline_tasks(TODAY, within_days=2)

        assert {t.id for t in upcoming} == {eligible["upcoming"].id, eligible["today"].id}
        assert [t.id for t in overdue] == [eligible["overdue"].id]

    def test_in_progress_tasks_are_included(self, services):
        task = services.tasks.create_task(CHIEF, {"title": "x", "assigned_to": INTERN_ID, "due_date": "2026-03-11"})
        services.tasks.set_status(INTERN, task.id, "in_progress")
        upcoming, _ = services.dispatcher.find_deadline_tasks(TODAY, within_days=2)
        assert [t.id for t in upcoming] == [task.id]

    @pytest.mark.asyncio
    async def test_one_failed_email_is_partial_success(self, services, email_sender):
        email_sender.fail_for = {"intern2@studio.test"}
        seed_deadlines(services)

        report = await services.dispatcher.send_deadline_reminders(CHIEF, today=TODAY)

        assert report.attempted == 3
        assert report.succeeded == 2
        assert report.failed == 1
        assert report.message == "Sent 2 of 3 deadline notifications"
        assert report.upcoming == 2
        assert report.overdue == 1
        assert len(email_sender.sent) == 2

        sent = {n.user_id: n.sent_at for n in all_deadline_notifications(services)}
        assert sent[INTERN_ID] is not None
        assert sent[JUNIOR_ID] is not None
        assert sent[OTHER_INTERN_ID] is None

        failed = [r for r in report.results if not r.sent]
        assert failed[0].user_id == OTHER_INTERN_ID
        assert "provider rejected" in failed[0].error

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_soft_failure(self, services, email_sender):
        email_sender.fail_for = {"intern1@studio.test"}
        email_sender.error = RuntimeError("connection reset")
        services.tasks.create_task(CHIEF, {"title": "x", "assigned_to": INTERN_ID, "due_date": "2026-03-11"})

        report = await services.dispatcher.run_deadline_scan(today=TODAY)

        assert report.attempted == 1
        assert report.succeeded == 0
        assert report.results[0].error == "connection reset"
        assert deadline_notifications(services, INTERN)[0].sent_at is None

    @pytest.mark.asyncio
    async def test_sent_at_written_only_after_send(self, services, email_sender):
        services.tasks.create_task(CHIEF, {"title": "x", "assigned_to": INTERN_ID, "due_date": "2026-03-11"})

        with patch.object(email_sender, "send", AsyncMock(side_effect=TimeoutError("slow provider"))) as send:
            report = await services.dispatcher.run_deadline_scan(today=TODAY)

        send.assert_awaited_once()
        assert send.await_args.args[0].to == "intern1@studio.test"
        assert report.results[0].sent is False
        assert report.results[0].notification_id is not None
        assert deadline_notifications(services, INTERN)[0].sent_at is None

    @pytest.mark.asyncio
    async def test_delivered_email_survives_sent_at_write_failure(self, services, email_sender):
        services.tasks.create_task(CHIEF, {"title": "x", "assigned_to": INTERN_ID, "due_date": "2026-03-11"})

        failing = MagicMock(side_effect=StoreError("Failed to save table notifications"))
        with patch.object(services.store, "update", failing):
            report = await services.dispatcher.run_deadline_scan(today=TODAY)

        failing.assert_called_once()
        assert len(email_sender.sent) == 1
        result = report.results[0]
        assert result.sent is True
        assert result.notification_id is not None
        assert "sent_at was not recorded" in result.error
        assert report.succeeded == 1

    @pytest.mark.asyncio
    async def test_overdue_subject(self, services, email_sender):
        services.tasks.create_task(CHIEF, {"title": "Survey", "assigned_to": INTERN_ID, "due_date": "2026-03-01"})
        await services.dispatcher.run_deadline_scan(today=TODAY)

        assert email_sender.sent[0].subject == "OVERDUE: Survey"
        note = deadline_notifications(services, INTERN)[0]
        assert note.title == "Task due OVERDUE: Survey"

    @pytest.mark.asyncio
    async def test_missing_email_address(self, services, email_sender):
        services.profiles.register_profile("intern-3", "No Mail", None, "intern")
        services.tasks.create_task(CHIEF, {"title": "x", "assigned_to": "intern-3", "due_date": "2026-03-11"})

        report = await services.dispatcher.run_deadline_scan(today=TODAY)

        assert report.results[0].error == "Recipient has no email address"
        assert email_sender.sent == []

    @pytest.mark.asyncio
    async def test_only_chief_triggers_scan(self, services):
        with pytest.raises(AuthorizationError):
            await services.dispatcher.send_deadline_reminders(JUNIOR, today=TODAY)

    @pytest.mark.asyncio
    async def test_empty_scan(self, services):
        report = await services.dispatcher.run_deadline_scan(today=TODAY)
        assert report.attempted == 0
        assert report.to_dict()["message"] == "Sent 0 of 0 deadline notifications"


class TestCustomAlert:
    """Chief-composed single-recipient alerts."""

    @pytest.mark.asyncio
    async def test_alert_for_existing_task(self, services, email_sender):
        project = services.projects.create_project(CHIEF, {"name": "Harbour Hall"})
        task = services.tasks.create_task(CHIEF, {
            "title": "Roof details", "assigned_to": INTERN_ID, "project_id": project.id,
        })

        result = await services.dispatcher.send_custom_alert(CHIEF, INTERN_ID, "2026-03-15", task_id=task.id)

        assert result.sent is True
        assert email_sender.sent[0].subject == "🚨 Deadline Alert - Action Required"
        note = deadline_notifications(services, INTERN)[0]
        assert note.message == "🚨 Deadline Reminder: Roof details is due on 2026-03-15 for project Harbour Hall"
        assert note.sent_at is not None

    @pytest.mark.asyncio
    async def test_custom_task_name_and_message(self, services):
        result = await services.dispatcher.send_custom_alert(
            CHIEF, JUNIOR_ID, "2026-03-15", message="Please wrap up", custom_task_name="Tender pack",
        )
        assert result.sent is True
        assert deadline_notifications(services, JUNIOR)[0].message == "Please wrap up"

    @pytest.mark.asyncio
    async def test_failed_email_keeps_record(self, services, email_sender):
        email_sender.fail_for = {"intern1@studio.test"}
        result = await services.dispatcher.send_custom_alert(
            CHIEF, INTERN_ID, "2026-03-15", custom_task_name="Model",
        )
        assert result.sent is False
        assert result.notification_id is not None
        assert deadline_notifications(services, INTERN)[0].sent_at is None

    @pytest.mark.asyncio
    async def test_validation(self, services):
        with pytest.raises(ValidationError):
            await services.dispatcher.send_custom_alert(CHIEF, INTERN_ID, "15/03/2026", custom_task_name="x")
        with pytest.raises(ValidationError):
            await services.dispatcher.send_custom_alert(CHIEF, INTERN_ID, "2026-03-15")
        with pytest.raises(NotFoundError):
            await services.dispatcher.send_custom_alert(CHIEF, "ghost", "2026-03-15", custom_task_name="x")

    @pytest.mark.asyncio
    async def test_chief_only(self, services):
        with pytest.raises(AuthorizationError):
            await services.dispatcher.send_custom_alert(JUNIOR, INTERN_ID, "2026-03-15", custom_task_name="x")


class TestTemplates:
    """Rendered content."""

    def test_urgency(self):
        assert urgency_text(0) == "OVERDUE"
        assert urgency_text(-3) == "OVERDUE"
        assert urgency_text(2) == "2 day(s) remaining"

    def test_html_escapes_user_fields(self):
        task = Task(id="t1", title="<script>x</script>", created_by=CHIEF_ID, due_date="2026-03-11")
        rendered = NotificationTemplates.deadline_reminder(task, "A & B", 1)
        assert "<script>" not in rendered.html
        assert "&lt;script&gt;" in rendered.html
        assert "A &amp; B" in rendered.html
        assert rendered.subject == "1 day(s) remaining: <script>x</script>"

    def test_meeting_invitation(self):
        rendered = NotificationTemplates.meeting_invitation("Design review", "2026-03-12T10:00:00", "Facade")
        assert rendered.title == "Meeting Invitation"
        assert rendered.subject == "You've been added to a meeting: Design review"
        assert "Agenda: Facade" in rendered.text


class TestInbox:
    """Recipient-only reads."""

    def test_mark_read(self, services):
        note = services.dispatcher.record(INTERN_ID, "project_update", "Hello", "World")
        assert services.dispatcher.list_notifications(INTERN, unread_only=True)[0].id == note.id

        with pytest.raises(AuthorizationError):
            services.dispatcher.mark_read(OTHER_INTERN, note.id)

        read = services.dispatcher.mark_read(INTERN, note.id)
        assert read.is_read is True
        assert services.dispatcher.list_notifications(INTERN, unread_only=True) == []

    def test_unknown_type_rejected(self, services):
        with pytest.raises(ValueError):
            services.dispatcher.record(INTERN_ID, "sms", "x", "y")


class TestConcurrency:
    """Fan-out never exceeds max_concurrency."""

    @pytest.mark.asyncio
    async def test_semaphore_bound(self, services):
        class SlowSender(RecordingEmailSender):
            def __init__(self):
                super().__init__()
                self.active = 0
                self.peak = 0

            async def send(self, message):
                self.active += 1
                self.peak = max(self.peak, self.active)
                await asyncio.sleep(0.01)
                self.active -= 1
                return await super().send(message)

        sender = SlowSender()
        dispatcher = NotificationDispatcher(services.store, services.profiles, sender, max_concurrency=2)
        for i in range(6):
            services.tasks.create_task(CHIEF, {"title": f"T{i}", "assigned_to": INTERN_ID, "due_date": "2026-03-11"})

        report = await dispatcher.run_deadline_scan(today=TODAY)

        assert report.succeeded == 6
        assert sender.peak <= 2
