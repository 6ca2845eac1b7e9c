"""
Notification Dispatch

Writes in-app notification records and delivers the matching email.

Delivery rules:
- The notification row is written first; the email follows
- sent_at is set only after the email provider accepts the message
- An email failure never fails the notification: the row stays with
  sent_at = None and the failure is reported per recipient
- Bulk fan-out is bounded by NOTIFY_MAX_CONCURRENCY

Trigger paths:
1. Deadline scan: open tasks due within N days or already overdue
2. Custom alert: single recipient, composed by the chief architect
3. Workflow events (assignment, clearance outcome, meeting invitation)
"""

import asyncio
import html
import logging
import os
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from .email_sender import EmailMessage, EmailSender
from .errors import AuthorizationError, NotFoundError, ValidationError, WorkflowError
from .models import (
    OPEN_TASK_STATUSES,
    Notification,
    NotificationType,
    Task,
    new_id,
    parse_date,
    utc_now_iso,
)
from .profiles import ProfileDirectory
from .role_policy import Actor, Capability, require
from .store import DataStore

logger = logging.getLogger("notification_dispatch")

# Configuration
NOTIFY_MAX_CONCURRENCY = int(os.getenv("NOTIFY_MAX_CONCURRENCY", "5"))
DEADLINE_WINDOW_DAYS = int(os.getenv("DEADLINE_WINDOW_DAYS", "2"))

TABLE = "notifications"


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------
@dataclass
class DispatchResult:
    """Outcome for one recipient."""
    user_id: str
    notification_id: Optional[str]
    sent: bool
    task_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "notification_id": self.notification_id,
            "task_id": self.task_id,
            "sent": self.sent,
            "error": self.error,
        }


@dataclass
class DispatchReport:
    """Aggregate of a bulk dispatch. Partial success is normal."""
    upcoming: int = 0
    overdue: int = 0
    results: List[DispatchResult] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.sent)

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded

    @property
    def message(self) -> str:
        return f"Sent {self.succeeded} of {self.attempted} deadline notifications"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "upcoming": self.upcoming,
            "overdue": self.overdue,
            "results": [r.to_dict() for r in self.results],
        }


# -----------------------------------------------------------------------------
# Templates
# -----------------------------------------------------------------------------
@dataclass
class RenderedNotification:
    title: str
    message: str
    subject: str
    html: str
    text: str


def _e(value: Any) -> str:
    return html.escape(str(value)) if value is not None else ""


def urgency_text(days_until_due: int) -> str:
    if days_until_due <= 0:
        return "OVERDUE"
    return f"{days_until_due} day(s) remaining"


class NotificationTemplates:
    """Pre-defined notification templates. User-provided fields are escaped in HTML."""

    @staticmethod
    def deadline_reminder(task: Task, project_name: Optional[str], days_until_due: int) -> RenderedNotification:
        urgency = urgency_text(days_until_due)
        overdue = days_until_due <= 0
        call_to_action = (
            "This task is overdue! Please update your progress immediately."
            if overdue else
            "This task is due soon. Please ensure you're on track to complete it."
        )
        description = (
            f'<h4 style="color: #374151;">Description:</h4><p>{_e(task.description)}</p>'
            if task.description else ""
        )
        return RenderedNotification(
            title=f"Task due {urgency}: {task.title}",
            message=f'Your task "{task.title}" is due on {task.due_date}',
            subject=f"{urgency}: {task.title}",
            html=(
                '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
                '<h2>Task Deadline Reminder</h2>'
                f'<h3 style="color: #2563eb;">{_e(task.title)}</h3>'
                f'<p><strong>Project:</strong> {_e(project_name or "No Project")}</p>'
                f'<p><strong>Due Date:</strong> {_e(task.due_date)}</p>'
                f'<p><strong>Priority:</strong> {_e(task.priority.upper())}</p>'
                f'<p><strong>Status:</strong> {urgency}</p>'
                f'{description}'
                f'<p style="font-weight: bold; color: {"#dc2626" if overdue else "#d97706"};">{call_to_action}</p>'
                '</div>'
            ),
            text=(
                f"Task Deadline Reminder\n\n"
                f"Task: {task.title}\n"
                f"Project: {project_name or 'No Project'}\n"
                f"Due Date: {task.due_date}\n"
                f"Priority: {task.priority.upper()}\n"
                f"Status: {urgency}\n\n"
                f"{call_to_action}"
            ),
        )

    @staticmethod
    def custom_alert(
        task_name: str,
        due_date: str,
        project_name: Optional[str],
        message: Optional[str],
    ) -> RenderedNotification:
        body = message or (
            f"🚨 Deadline Reminder: {task_name} is due on {due_date}"
            + (f" for project {project_name}" if project_name else "")
        )
        project_line = f"<p><strong>Project:</strong> {_e(project_name)}</p>" if project_name else ""
        return RenderedNotification(
            title="Deadline Alert",
            message=body,
            subject="🚨 Deadline Alert - Action Required",
            html=(
                '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
                '<h2 style="color: #dc2626;">Deadline Alert!</h2>'
                f'<p><strong>Task:</strong> {_e(task_name)}</p>'
                f'<p><strong>Due Date:</strong> {_e(due_date)}</p>'
                f'{project_line}'
                f'<p><strong>Message:</strong><br>{_e(body)}</p>'
                '<p><strong>This task is approaching its deadline!</strong></p>'
                '</div>'
            ),
            text=(
                f"Deadline Alert!\n\n"
                f"Task: {task_name}\n"
                f"Due Date: {due_date}\n"
                f"Project: {project_name or 'N/A'}\n"
                f"Message: {body}\n\n"
                f"This task is approaching its deadline!"
            ),
        )

    @staticmethod
    def meeting_invitation(description: str, meeting_date: str, agenda: Optional[str]) -> RenderedNotification:
        agenda_line = f"<p><strong>Agenda:</strong> {_e(agenda)}</p>" if agenda else ""
        return RenderedNotification(
            title="Meeting Invitation",
            message=f"You have been added to meeting: {description}",
            subject=f"You've been added to a meeting: {description}",
            html=(
                '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
                '<h2>Meeting Invitation</h2>'
                f'<p><strong>Meeting:</strong> {_e(description)}</p>'
                f'<p><strong>Date:</strong> {_e(meeting_date)}</p>'
                f'{agenda_line}'
                '</div>'
            ),
            text=(
                f"Meeting Invitation\n\n"
                f"Meeting: {description}\n"
                f"Date: {meeting_date}\n"
                + (f"Agenda: {agenda}\n" if agenda else "")
            ),
        )


# -----------------------------------------------------------------------------
# Dispatcher
# -----------------------------------------------------------------------------
class NotificationDispatcher:
    """
    Notification records plus email delivery.

    Provides:
    - record(): in-app only, synchronous
    - notify(): record + email for one recipient
    - deadline scan and custom alerts
    - inbox reads for the recipient
    """

    def __init__(
        self,
        store: DataStore,
        profiles: ProfileDirectory,
        email_sender: EmailSender,
        max_concurrency: int = NOTIFY_MAX_CONCURRENCY,
    ):
        self._store = store
        self._profiles = profiles
        self._email = email_sender
        self._max_concurrency = max(1, max_concurrency)

    # -------------------------------------------------------------------------
    # Single recipient
    # -------------------------------------------------------------------------

    def record(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        task_id: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> Notification:
        """Write an in-app notification without email."""
        notification = Notification(
            id=new_id(),
            user_id=user_id,
            type=NotificationType(type).value,
            title=title,
            message=message,
            task_id=task_id,
            project_id=project_id,
        )
        self._store.insert(TABLE, notification.to_dict())
        logger.debug(f"Notification {notification.id} ({type}) recorded for {user_id}")
        return notification

    async def notify(
        self,
        user_id: str,
        type: str,
        title: str,
        message: str,
        task_id: Optional[str] = None,
        project_id: Optional[str] = None,
        email: Optional[RenderedNotification] = None,
    ) -> DispatchResult:
        """
        Record a notification, then email it.

        The row survives an email failure with sent_at left empty. Store
        calls run in a worker thread so a remote backend does not stall
        the other sends in a fan-out.
        """
        notification = await asyncio.to_thread(
            self.record, user_id, type, title, message, task_id, project_id
        )
        result = DispatchResult(
            user_id=user_id,
            notification_id=notification.id,
            task_id=task_id,
            sent=False,
        )
        if email is None:
            return result

        profile = await asyncio.to_thread(self._profiles.find_profile, user_id)
        if profile is None or not profile.email:
            result.error = "Recipient has no email address"
            logger.warning(f"Notification {notification.id}: no email address for {user_id}")
            return result

        try:
            await self._email.send(EmailMessage(
                to=profile.email,
                to_name=profile.full_name,
                subject=email.subject,
                html=email.html,
                text=email.text,
            ))
        except Exception as e:
            result.error = str(e)
            logger.warning(f"Notification {notification.id}: email to {profile.email} failed: {e}")
            return result

        result.sent = True
        try:
            await asyncio.to_thread(self._store.update, TABLE, notification.id, {"sent_at": utc_now_iso()})
        except WorkflowError as e:
            result.error = f"Email sent but sent_at was not recorded: {e.message}"
            logger.error(f"Notification {notification.id}: {result.error}")
        return result

    # -------------------------------------------------------------------------
    # Bounded fan-out
    # -------------------------------------------------------------------------

    async def dispatch_many(self, jobs: List[Dict[str, Any]]) -> List[DispatchResult]:
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def run(job: Dict[str, Any]) -> DispatchResult:
            async with semaphore:
                return await self.notify(**job)

        outcomes = await asyncio.gather(*(run(job) for job in jobs), return_exceptions=True)

        results = []
        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Dispatch to {job['user_id']} failed before delivery: {outcome}")
                outcome = DispatchResult(
                    user_id=job["user_id"],
                    notification_id=None,
                    task_id=job.get("task_id"),
                    sent=False,
                    error=str(outcome),
                )
            results.append(outcome)
        return results

    # -------------------------------------------------------------------------
    # Deadline scan
    # -------------------------------------------------------------------------

    def find_deadline_tasks(self, today: date, within_days: int) -> Tuple[List[Task], List[Task]]:
        """
        Split open, assigned tasks into (upcoming, overdue).

        upcoming: today <= due_date <= today + within_days
        overdue:  due_date < today
        """
        horizon = today + timedelta(days=within_days)
        upcoming, overdue = [], []
        seen = set()

        rows = self._store.select("tasks", in_={"status": list(OPEN_TASK_STATUSES)}, order_by="due_date")
        for row in rows:
            task = Task.from_dict(row)
            due = parse_date(task.due_date)
            if due is None or not task.assigned_to or task.id in seen:
                continue
            if due < today:
                overdue.append(task)
            elif due <= horizon:
                upcoming.append(task)
            else:
                continue
            seen.add(task.id)
        return upcoming, overdue

    async def run_deadline_scan(
        self,
        today: Optional[date] = None,
        within_days: int = DEADLINE_WINDOW_DAYS,
    ) -> DispatchReport:
        """Trusted scheduler path. Each eligible task is notified once."""
        today = today or date.today()
        upcoming, overdue = await asyncio.to_thread(self.find_deadline_tasks, today, within_days)
        logger.info(f"Deadline scan {today}: {len(upcoming)} upcoming, {len(overdue)} overdue")

        project_rows = await asyncio.to_thread(self._store.select, "projects")
        project_names = {p["id"]: p.get("name") for p in project_rows}

        jobs = []
        for task in upcoming + overdue:
            days_until_due = (parse_date(task.due_date) - today).days
            rendered = NotificationTemplates.deadline_reminder(
                task, project_names.get(task.project_id), days_until_due
            )
            jobs.append({
                "user_id": task.assigned_to,
                "type": NotificationType.DEADLINE_REMINDER.value,
                "title": rendered.title,
                "message": rendered.message,
                "task_id": task.id,
                "project_id": task.project_id,
                "email": rendered,
            })

        report = DispatchReport(upcoming=len(upcoming), overdue=len(overdue))
        report.results = await self.dispatch_many(jobs)
        logger.info(f"Deadline notifications sent: {report.succeeded}/{report.attempted} emails")
        return report

    async def send_deadline_reminders(
        self,
        actor: Actor,
        today: Optional[date] = None,
        within_days: int = DEADLINE_WINDOW_DAYS,
    ) -> DispatchReport:
        """Deadline scan triggered by the chief architect."""
        require(actor, Capability.SEND_ALERTS)
        return await self.run_deadline_scan(today, within_days)

    # -------------------------------------------------------------------------
    # Custom alert
    # -------------------------------------------------------------------------

    async def send_custom_alert(
        self,
        actor: Actor,
        assignee_id: str,
        due_date: str,
        message: Optional[str] = None,
        task_id: Optional[str] = None,
        custom_task_name: Optional[str] = None,
        project_id: Optional[str] = None,
    ) -> DispatchResult:
        """Single-recipient deadline alert composed by the chief architect."""
        require(actor, Capability.SEND_ALERTS)

        errors = []
        if not assignee_id:
            errors.append("assignee_id is required")
        if not due_date:
            errors.append("due_date is required")
        elif parse_date_safe(due_date) is None:
            errors.append(f"due_date must be YYYY-MM-DD, got '{due_date}'")
        if errors:
            raise ValidationError(errors)

        self._profiles.get_profile(assignee_id)

        task_name = custom_task_name
        if task_id:
            row = self._store.get("tasks", task_id)
            if row is None:
                raise NotFoundError("task", task_id)
            task_name = row["title"]
            project_id = project_id or row.get("project_id")
        if not task_name:
            raise ValidationError(["task_id or custom_task_name is required"])

        project_name = None
        if project_id:
            project = self._store.get("projects", project_id)
            project_name = project.get("name") if project else None

        rendered = NotificationTemplates.custom_alert(task_name, due_date, project_name, message)
        result = await self.notify(
            assignee_id,
            NotificationType.DEADLINE_REMINDER.value,
            rendered.title,
            rendered.message,
            task_id=task_id,
            project_id=project_id,
            email=rendered,
        )
        logger.info(f"Custom alert to {assignee_id} by {actor.user_id}: sent={result.sent}")
        return result

    # -------------------------------------------------------------------------
    # Inbox
    # -------------------------------------------------------------------------

    def list_notifications(self, actor: Actor, unread_only: bool = False) -> List[Notification]:
        eq: Dict[str, Any] = {"user_id": actor.user_id}
        if unread_only:
            eq["is_read"] = False
        rows = self._store.select(TABLE, eq=eq, order_by="created_at", descending=True)
        return [Notification.from_dict(r) for r in rows]

    def mark_read(self, actor: Actor, notification_id: str) -> Notification:
        row = self._store.get(TABLE, notification_id)
        if row is None:
            raise NotFoundError("notification", notification_id)
        if row["user_id"] != actor.user_id:
            raise AuthorizationError(
                action="mark_read",
                role=actor.role.value,
                reason="Only the recipient may mark a notification read",
            )
        return Notification.from_dict(self._store.update(TABLE, notification_id, {"is_read": True}))


def parse_date_safe(value: str) -> Optional[date]:
    try:
        return parse_date(value)
    except ValueError:
        return None
