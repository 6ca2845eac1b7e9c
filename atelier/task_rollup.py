"""
Task Status Rollup

Reacts to a resolved clearance by mirroring its outcome onto the task.

Approval does NOT complete the task. A cleared task can still be
in_progress; completion is the separate mark_complete action.
"""

import logging

from .errors import InvalidStateError
from .models import ClearanceRequest, ClearanceStatus, Task, TaskClearanceState, utc_now_iso
from .store import DataStore

logger = logging.getLogger("task_rollup")

TASKS_TABLE = "tasks"

_OUTCOME_TO_TASK_STATE = {
    ClearanceStatus.APPROVED.value: TaskClearanceState.APPROVED.value,
    ClearanceStatus.REJECTED.value: TaskClearanceState.REJECTED.value,
}


class TaskStatusRollup:

    def __init__(self, store: DataStore):
        self._store = store

    def mark_clearance_pending(self, task_id: str) -> None:
        self._store.update(TASKS_TABLE, task_id, {
            "clearance_status": TaskClearanceState.PENDING.value,
            "updated_at": utc_now_iso(),
        })

    def apply_clearance_outcome(self, clearance: ClearanceRequest) -> Task:
        """Write a terminal clearance outcome onto its task. Task status is left alone."""
        state = _OUTCOME_TO_TASK_STATE.get(clearance.status)
        if state is None:
            raise InvalidStateError("clearance", clearance.status, "roll up")

        changes = {"clearance_status": state, "updated_at": utc_now_iso()}
        if clearance.status == ClearanceStatus.APPROVED.value:
            changes["cleared_by"] = clearance.cleared_by
            changes["cleared_at"] = clearance.cleared_at

        task = Task.from_dict(self._store.update(TASKS_TABLE, clearance.task_id, changes))
        logger.info(
            f"Task {task.id} clearance_status -> {state} (status stays {task.status})"
        )
        return task
