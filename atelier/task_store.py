"""
Task Entity Store

CRUD over the tasks table. Every mutation is authorized here against the
role policy, so callers cannot bypass permissions by skipping the HTTP
layer.

Invariants maintained on every write:
- status == completed  <=>  completed_at is set
- self_assigned        =>   assigned_to == created_by
- every status change appends a task_status_history row

Concurrency: last writer wins; there is no version check.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from .errors import AuthorizationError, NotFoundError, ValidationError
from .models import (
    OPEN_TASK_STATUSES,
    NotificationType,
    Task,
    TaskPriority,
    TaskStatus,
    TaskStatusHistory,
    new_id,
    utc_now_iso,
)
from .profiles import ProfileDirectory
from .role_policy import Actor, Capability, can_assign_to, require
from .store import DataStore

logger = logging.getLogger("task_store")

TABLE = "tasks"
HISTORY_TABLE = "task_status_history"

EDITABLE_FIELDS = frozenset({
    "title",
    "description",
    "status",
    "priority",
    "due_date",
    "assigned_to",
    "project_id",
    "estimated_hours",
    "task_phase",
})


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------
def _validate_fields(data: Dict[str, Any], creating: bool) -> List[str]:
    errors = []

    if creating or "title" in data:
        title = data.get("title")
        if not title or not str(title).strip():
            errors.append("title is required")

    # A present key must carry a valid value; an explicit null is not one.
    if "status" in data and not (creating and data["status"] is None):
        try:
            TaskStatus(data["status"])
        except ValueError:
            errors.append(f"Invalid status '{data['status']}'")

    if "priority" in data and not (creating and data["priority"] is None):
        try:
            TaskPriority(data["priority"])
        except ValueError:
            errors.append(f"Invalid priority '{data['priority']}'")

    if data.get("due_date"):
        try:
            date.fromisoformat(str(data["due_date"]))
        except ValueError:
            errors.append(f"due_date must be YYYY-MM-DD, got '{data['due_date']}'")

    unknown = set(data) - EDITABLE_FIELDS
    if unknown:
        errors.append(f"Unknown task fields: {sorted(unknown)}")

    return errors


def _completion_fields(status: str) -> Dict[str, Any]:
    """completed_at follows status."""
    if status == TaskStatus.COMPLETED.value:
        return {"completed_at": utc_now_iso()}
    return {"completed_at": None}


# -----------------------------------------------------------------------------
# Task Store
# -----------------------------------------------------------------------------
class TaskStore:
    """Task CRUD with per-action authorization."""

    def __init__(self, store: DataStore, profiles: ProfileDirectory, notifier=None):
        self._store = store
        self._profiles = profiles
        # Callable(user_id, type, title, message, task_id, project_id) for in-app records
        self._notifier = notifier

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task:
        row = self._store.get(TABLE, task_id)
        if row is None:
            raise NotFoundError("task", task_id)
        return Task.from_dict(row)

    def view_task(self, actor: Actor, task_id: str) -> Task:
        """get_task restricted to the chief, the assignee and the creator."""
        task = self.get_task(task_id)
        if not actor.can(Capability.MANAGE_ANY_TASK) and actor.user_id not in (task.assigned_to, task.created_by):
            raise AuthorizationError(
                action="view_task",
                role=actor.role.value,
                reason="Task is not assigned to or created by the caller",
            )
        return task

    def list_tasks(
        self,
        actor: Actor,
        project_id: Optional[str] = None,
        status: Optional[str] = None,
        assigned_to: Optional[str] = None,
    ) -> List[Task]:
        """Tasks visible to the actor: all for the chief, otherwise own or assigned."""
        eq: Dict[str, Any] = {}
        if project_id:
            eq["project_id"] = project_id
        if status:
            eq["status"] = status
        if assigned_to:
            eq["assigned_to"] = assigned_to

        rows = self._store.select(TABLE, eq=eq, order_by="created_at", descending=True)
        tasks = [Task.from_dict(r) for r in rows]
        if actor.can(Capability.MANAGE_ANY_TASK):
            return tasks
        return [t for t in tasks if actor.user_id in (t.assigned_to, t.created_by)]

    def get_status_history(self, task_id: str) -> List[TaskStatusHistory]:
        rows = self._store.select(HISTORY_TABLE, eq={"task_id": task_id}, order_by="created_at")
        return [TaskStatusHistory.from_dict(r) for r in rows]

    # -------------------------------------------------------------------------
    # Authorization helpers
    # -------------------------------------------------------------------------

    def _check_assignment(self, actor: Actor, assignee_id: Optional[str]) -> None:
        if not assignee_id:
            if not actor.can(Capability.CREATE_TASK):
                raise AuthorizationError(
                    action="create_unassigned_task",
                    role=actor.role.value,
                    reason="Only roles that create tasks may leave a task unassigned",
                )
            return

        assignee = self._profiles.get_profile(assignee_id)
        if not can_assign_to(actor, assignee_id, assignee.role):
            raise AuthorizationError(
                action=Capability.ASSIGN_TASK.value,
                role=actor.role.value,
                reason=f"Role '{actor.role.value}' may not assign tasks to a {assignee.role}",
            )

    def _check_can_modify(self, actor: Actor, task: Task) -> None:
        if actor.can(Capability.MANAGE_ANY_TASK):
            return
        if actor.user_id in (task.assigned_to, task.created_by):
            return
        raise AuthorizationError(
            action="update_task",
            role=actor.role.value,
            reason="Only the assignee, the creator or the chief architect may modify this task",
        )

    def _record_history(self, task: Task, actor: Actor, old_status: Optional[str], notes: Optional[str] = None) -> None:
        entry = TaskStatusHistory(
            id=new_id(),
            task_id=task.id,
            user_id=actor.user_id,
            old_status=old_status,
            new_status=task.status,
            notes=notes,
        )
        self._store.insert(HISTORY_TABLE, entry.to_dict())

    def _notify_assignee(self, actor: Actor, task: Task) -> None:
        if self._notifier is None or not task.assigned_to or task.assigned_to == actor.user_id:
            return
        self._notifier(
            task.assigned_to,
            NotificationType.TASK_ASSIGNED.value,
            "New task assigned",
            f"You have been assigned: {task.title}",
            task.id,
            task.project_id,
        )

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def create_task(self, actor: Actor, data: Dict[str, Any]) -> Task:
        """
        Create a task.

        Creating requires CREATE_TASK, or SELF_ASSIGN when the actor assigns
        the task to themselves. A self-assignment by a role holding
        SELF_ASSIGN sets the self_assigned flag.
        """
        errors = _validate_fields(data, creating=True)
        if errors:
            raise ValidationError(errors)

        assignee_id = data.get("assigned_to") or None
        is_self = assignee_id == actor.user_id
        if not actor.can(Capability.CREATE_TASK) and not is_self:
            require(actor, Capability.CREATE_TASK)
        self._check_assignment(actor, assignee_id)

        status = data.get("status") or TaskStatus.PENDING.value
        now = utc_now_iso()
        task = Task(
            id=new_id(),
            title=str(data["title"]).strip(),
            description=data.get("description"),
            status=status,
            priority=data.get("priority") or TaskPriority.MEDIUM.value,
            due_date=data.get("due_date") or None,
            assigned_to=assignee_id,
            created_by=actor.user_id,
            project_id=data.get("project_id") or None,
            self_assigned=is_self and actor.can(Capability.SELF_ASSIGN),
            estimated_hours=data.get("estimated_hours"),
            task_phase=data.get("task_phase"),
            created_at=now,
            updated_at=now,
            **_completion_fields(status),
        )
        self._store.insert(TABLE, task.to_dict())
        self._record_history(task, actor, old_status=None)
        self._notify_assignee(actor, task)

        logger.info(f"Task {task.id} created by {actor.user_id} (assigned_to={assignee_id})")
        return task

    def update_task(self, actor: Actor, task_id: str, patch: Dict[str, Any]) -> Task:
        """Apply a partial update. Reassignment is re-authorized."""
        errors = _validate_fields(patch, creating=False)
        if errors:
            raise ValidationError(errors)

        task = self.get_task(task_id)
        self._check_can_modify(actor, task)

        changes = dict(patch)
        if "title" in changes:
            changes["title"] = str(changes["title"]).strip()

        reassigned = "assigned_to" in changes and changes["assigned_to"] != task.assigned_to
        if reassigned:
            new_assignee = changes["assigned_to"] or None
            changes["assigned_to"] = new_assignee
            if new_assignee:
                self._check_assignment(actor, new_assignee)
            # self_assigned only holds while creator and assignee coincide
            if new_assignee != task.created_by:
                changes["self_assigned"] = False

        old_status = task.status
        status_changed = "status" in changes and changes["status"] != old_status
        if status_changed:
            changes.update(_completion_fields(changes["status"]))

        changes["updated_at"] = utc_now_iso()
        row = self._store.update(TABLE, task_id, changes)
        updated = Task.from_dict(row)

        if status_changed:
            self._record_history(updated, actor, old_status)
            logger.info(f"Task {task_id}: {old_status} -> {updated.status} by {actor.user_id}")
        if reassigned:
            self._notify_assignee(actor, updated)
        return updated

    def set_status(self, actor: Actor, task_id: str, status: str, notes: Optional[str] = None) -> Task:
        """Move a task to a new status."""
        try:
            new_status = TaskStatus(status).value
        except ValueError:
            raise ValidationError([f"Invalid status '{status}'"])

        task = self.get_task(task_id)
        self._check_can_modify(actor, task)
        if task.status == new_status:
            return task

        changes = {"status": new_status, "updated_at": utc_now_iso()}
        changes.update(_completion_fields(new_status))
        updated = Task.from_dict(self._store.update(TABLE, task_id, changes))
        self._record_history(updated, actor, task.status, notes)

        logger.info(f"Task {task_id}: {task.status} -> {new_status} by {actor.user_id}")
        return updated

    def mark_complete(self, actor: Actor, task_id: str) -> Task:
        """Set status to completed and stamp completed_at."""
        return self.set_status(actor, task_id, TaskStatus.COMPLETED.value)

    def delete_task(self, actor: Actor, task_id: str) -> bool:
        require(actor, Capability.MANAGE_ANY_TASK)
        self.get_task(task_id)
        deleted = self._store.delete(TABLE, task_id)
        logger.info(f"Task {task_id} deleted by {actor.user_id}")
        return deleted

    # -------------------------------------------------------------------------
    # Overdue sweep
    # -------------------------------------------------------------------------

    def mark_overdue(self, today: Optional[date] = None) -> List[str]:
        """
        Move open tasks past their due date to overdue.

        Trusted scheduler path; returns the ids that changed.
        """
        today = today or date.today()
        changed = []
        for row in self._store.select(TABLE, in_={"status": list(OPEN_TASK_STATUSES)}):
            task = Task.from_dict(row)
            if not task.due_date or date.fromisoformat(task.due_date[:10]) >= today:
                continue
            self._store.update(TABLE, task.id, {
                "status": TaskStatus.OVERDUE.value,
                "completed_at": None,
                "updated_at": utc_now_iso(),
            })
            self._store.insert(HISTORY_TABLE, TaskStatusHistory(
                id=new_id(),
                task_id=task.id,
                user_id=task.created_by,
                old_status=task.status,
                new_status=TaskStatus.OVERDUE.value,
                notes="Past due date",
            ).to_dict())
            changed.append(task.id)

        if changed:
            logger.info(f"Marked {len(changed)} tasks overdue")
        return changed
