"""
Clearance Workflow

State machine for a task's review request:

    pending --approve--> approved   (terminal)
            --reject---> rejected   (terminal)

HARD CONSTRAINTS:
- Only the chief architect resolves clearances
- Resolving anything but a pending clearance is an invalid-state error
- At most one pending clearance per task; a second request is a conflict
- Terminal clearances are never modified; re-review means a new request
- Approval does not complete the task
"""

import logging
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .errors import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from .models import (
    ClearanceRequest,
    ClearanceStatus,
    NotificationType,
    TaskStatus,
    new_id,
    utc_now_iso,
)
from .role_policy import Actor, Capability, require
from .store import DataStore
from .task_rollup import TaskStatusRollup
from .task_store import TaskStore

logger = logging.getLogger("clearance_workflow")

TABLE = "task_clearances"


class ClearanceDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


VALID_TRANSITIONS: Dict[ClearanceStatus, List[ClearanceStatus]] = {
    ClearanceStatus.PENDING: [ClearanceStatus.APPROVED, ClearanceStatus.REJECTED],
    ClearanceStatus.APPROVED: [],  # Terminal
    ClearanceStatus.REJECTED: [],  # Terminal
}

_DECISION_TARGETS = {
    ClearanceDecision.APPROVE: ClearanceStatus.APPROVED,
    ClearanceDecision.REJECT: ClearanceStatus.REJECTED,
}


def can_transition(current: ClearanceStatus, target: ClearanceStatus) -> Tuple[bool, str]:
    """Check if a clearance transition is valid."""
    valid_targets = VALID_TRANSITIONS.get(current, [])
    if target in valid_targets:
        return True, f"Transition {current.value} -> {target.value} allowed"
    return False, f"Invalid transition: {current.value} -> {target.value}. Valid targets: {[t.value for t in valid_targets]}"


class ClearanceWorkflow:
    """Request and resolve clearances on tasks."""

    def __init__(self, store: DataStore, tasks: TaskStore, rollup: TaskStatusRollup, notifier=None):
        self._store = store
        self._tasks = tasks
        self._rollup = rollup
        self._notifier = notifier

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_clearance(self, clearance_id: str) -> ClearanceRequest:
        row = self._store.get(TABLE, clearance_id)
        if row is None:
            raise NotFoundError("clearance", clearance_id)
        return ClearanceRequest.from_dict(row)

    def list_pending(self, actor: Actor) -> List[ClearanceRequest]:
        """Approval queue, oldest request first. Requesters see only their own."""
        eq = {"status": ClearanceStatus.PENDING.value}
        if not actor.can(Capability.RESOLVE_CLEARANCE):
            eq["requested_by"] = actor.user_id
        rows = self._store.select(TABLE, eq=eq, order_by="requested_at")
        return [ClearanceRequest.from_dict(r) for r in rows]

    def list_for_task(self, task_id: str) -> List[ClearanceRequest]:
        rows = self._store.select(TABLE, eq={"task_id": task_id}, order_by="requested_at", descending=True)
        return [ClearanceRequest.from_dict(r) for r in rows]

    # -------------------------------------------------------------------------
    # Request
    # -------------------------------------------------------------------------

    def request_clearance(self, actor: Actor, task_id: str, notes: Optional[str] = None) -> ClearanceRequest:
        """
        Open a pending clearance on a task.

        The requester must hold REQUEST_CLEARANCE and be the task's
        assignee or creator. Raises ConflictError if a pending clearance
        already exists for the task.
        """
        require(actor, Capability.REQUEST_CLEARANCE)
        task = self._tasks.get_task(task_id)

        if actor.user_id not in (task.assigned_to, task.created_by):
            raise AuthorizationError(
                action=Capability.REQUEST_CLEARANCE.value,
                role=actor.role.value,
                reason="Only the task's assignee or creator may request clearance",
            )
        if task.status == TaskStatus.COMPLETED.value:
            raise InvalidStateError("task", task.status, "request clearance for")

        now = utc_now_iso()
        clearance = ClearanceRequest(
            id=new_id(),
            task_id=task_id,
            requested_by=actor.user_id,
            status=ClearanceStatus.PENDING.value,
            notes=(notes or "").strip() or None,
            requested_at=now,
            created_at=now,
            updated_at=now,
        )
        self._store.insert(
            TABLE,
            clearance.to_dict(),
            unique_where={"task_id": task_id, "status": ClearanceStatus.PENDING.value},
        )
        self._rollup.mark_clearance_pending(task_id)

        logger.info(f"Clearance {clearance.id} requested on task {task_id} by {actor.user_id}")
        return clearance

    # -------------------------------------------------------------------------
    # Resolve
    # -------------------------------------------------------------------------

    def resolve_clearance(
        self,
        actor: Actor,
        clearance_id: str,
        decision: str,
        notes: Optional[str] = None,
    ) -> ClearanceRequest:
        """
        Approve or reject a pending clearance.

        Sets exactly one terminal status, cleared_by and cleared_at, then
        mirrors the outcome onto the task and notifies the requester.
        """
        require(actor, Capability.RESOLVE_CLEARANCE)
        try:
            target = _DECISION_TARGETS[ClearanceDecision(decision)]
        except ValueError:
            raise ValidationError([f"Invalid decision '{decision}'. Use 'approve' or 'reject'"])

        clearance = self.get_clearance(clearance_id)
        allowed, message = can_transition(ClearanceStatus(clearance.status), target)
        if not allowed:
            logger.warning(f"Clearance {clearance_id}: {message}")
            raise InvalidStateError("clearance", clearance.status, decision)

        now = utc_now_iso()
        changes = {
            "status": target.value,
            "cleared_by": actor.user_id,
            "cleared_at": now,
            "updated_at": now,
        }
        if notes and notes.strip():
            changes["notes"] = notes.strip()

        resolved = ClearanceRequest.from_dict(self._store.update(TABLE, clearance_id, changes))
        logger.info(f"Clearance {clearance_id}: pending -> {resolved.status} by {actor.user_id}")

        task = self._rollup.apply_clearance_outcome(resolved)

        if self._notifier is not None:
            self._notifier(
                resolved.requested_by,
                NotificationType.STATUS_UPDATE.value,
                f"Clearance {resolved.status}",
                f"Your clearance request for '{task.title}' was {resolved.status}",
                task.id,
                task.project_id,
            )
        return resolved
