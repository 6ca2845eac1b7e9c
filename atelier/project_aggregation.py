"""
Project Aggregation

Recomputes a project's derived statistics from its tasks and images and
ratchets its status forward:

- total_tasks > 0 and every task completed  -> completed
- total_tasks > 0 and status != in_progress -> in_progress
- status == completed                       -> never changed automatically

Displayed progress is max(task %, time %) through max_progress_policy so
the rule can be swapped without touching the plumbing.
"""

import logging
import math
from dataclasses import dataclass, asdict
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from .errors import AuthorizationError, NotFoundError, ValidationError
from .models import Project, ProjectStatus, TaskStatus, new_id, parse_date, utc_now_iso
from .role_policy import Actor, Capability, require
from .store import DataStore

logger = logging.getLogger("project_aggregation")

TABLE = "projects"

# 3.5 years
DEFAULT_HORIZON_DAYS = 3.5 * 365

PROJECT_FIELDS = frozenset({
    "name",
    "description",
    "status",
    "phase",
    "project_type",
    "location",
    "start_date",
    "estimated_completion_date",
})


def max_progress_policy(task_percentage: float, time_percentage: float) -> float:
    """Displayed progress never drops below either metric."""
    return max(task_percentage, time_percentage)


@dataclass
class ProjectStats:
    project_id: str
    total_tasks: int
    completed_tasks: int
    total_images: int
    task_completion_percentage: int
    time_based_percentage: int
    completion_percentage: int
    days_elapsed: int
    days_remaining: int
    status: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_time_progress(
    start_date: Optional[date],
    estimated_completion_date: Optional[date],
    today: date,
):
    """
    Return (percentage, days_elapsed, days_remaining).

    Elapsed time is measured against the estimated span when one exists,
    else against the default horizon. Without a start date everything is 0.
    """
    if start_date is None:
        return 0.0, 0, 0

    days_elapsed = (today - start_date).days
    if estimated_completion_date is not None and estimated_completion_date > start_date:
        span = (estimated_completion_date - start_date).days
        days_remaining = (estimated_completion_date - today).days
    else:
        span = DEFAULT_HORIZON_DAYS
        days_remaining = int(math.floor(max(span - days_elapsed, 0)))

    percentage = min(max(days_elapsed / span * 100, 0.0), 100.0)
    return percentage, days_elapsed, days_remaining


def next_status(current: str, total_tasks: int, completed_tasks: int) -> str:
    """One-way ratchet toward completion."""
    if current == ProjectStatus.COMPLETED.value:
        return current
    if total_tasks > 0 and completed_tasks == total_tasks:
        return ProjectStatus.COMPLETED.value
    if total_tasks > 0 and current != ProjectStatus.IN_PROGRESS.value:
        return ProjectStatus.IN_PROGRESS.value
    return current


class ProjectAggregator:
    """Project CRUD (chief only) plus derived statistics."""

    def __init__(
        self,
        store: DataStore,
        progress_policy: Callable[[float, float], float] = max_progress_policy,
    ):
        self._store = store
        self._progress_policy = progress_policy

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_project(self, project_id: str) -> Project:
        row = self._store.get(TABLE, project_id)
        if row is None:
            raise NotFoundError("project", project_id)
        return Project.from_dict(row)

    def view_project(self, actor: Actor, project_id: str) -> Project:
        """get_project restricted to the same visibility as list_projects_for."""
        project = self.get_project(project_id)
        if actor.can(Capability.MANAGE_PROJECTS):
            return project
        for task in self._store.select("tasks", eq={"project_id": project_id}):
            if actor.user_id in (task.get("assigned_to"), task.get("created_by")):
                return project
        raise AuthorizationError(
            action="view_project",
            role=actor.role.value,
            reason="Caller has no tasks in this project",
        )

    def list_projects_for(self, actor: Actor) -> List[Project]:
        """Chief sees every project; others see projects they have tasks in."""
        rows = self._store.select(TABLE, order_by="created_at", descending=True)
        projects = [Project.from_dict(r) for r in rows]
        if actor.can(Capability.MANAGE_PROJECTS):
            return projects

        visible = set()
        for task in self._store.select("tasks"):
            if task.get("project_id") and actor.user_id in (task.get("assigned_to"), task.get("created_by")):
                visible.add(task["project_id"])
        return [p for p in projects if p.id in visible]

    # -------------------------------------------------------------------------
    # Manual edits
    # -------------------------------------------------------------------------

    def _validate(self, data: Dict[str, Any], creating: bool) -> None:
        errors = []
        if creating or "name" in data:
            if not data.get("name") or not str(data["name"]).strip():
                errors.append("name is required")
        if "status" in data and not (creating and data["status"] is None):
            try:
                ProjectStatus(data["status"])
            except ValueError:
                errors.append(f"Invalid project status '{data['status']}'")
        for key in ("start_date", "estimated_completion_date"):
            if data.get(key):
                try:
                    date.fromisoformat(str(data[key]))
                except ValueError:
                    errors.append(f"{key} must be YYYY-MM-DD")
        unknown = set(data) - PROJECT_FIELDS
        if unknown:
            errors.append(f"Unknown project fields: {sorted(unknown)}")
        if errors:
            raise ValidationError(errors)

    def create_project(self, actor: Actor, data: Dict[str, Any]) -> Project:
        require(actor, Capability.MANAGE_PROJECTS)
        self._validate(data, creating=True)

        fields = {k: v for k, v in data.items() if v is not None}
        fields["name"] = str(fields["name"]).strip()
        project = Project(id=new_id(), created_by=actor.user_id, **fields)
        self._store.insert(TABLE, project.to_dict())
        logger.info(f"Project {project.id} '{project.name}' created by {actor.user_id}")
        return project

    def update_project(self, actor: Actor, project_id: str, patch: Dict[str, Any]) -> Project:
        """Manual edit. This is the only place a status may be set by hand."""
        require(actor, Capability.MANAGE_PROJECTS)
        self._validate(patch, creating=False)
        project = self.get_project(project_id)

        changes = dict(patch)
        changes["updated_at"] = utc_now_iso()
        updated = Project.from_dict(self._store.update(TABLE, project_id, changes))
        if "status" in patch and patch["status"] != project.status:
            logger.info(f"Project {project_id}: status manually set {project.status} -> {updated.status}")
        return updated

    def delete_project(self, actor: Actor, project_id: str) -> bool:
        require(actor, Capability.MANAGE_PROJECTS)
        self.get_project(project_id)
        return self._store.delete(TABLE, project_id)

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    def recompute_project_stats(self, project_id: str, today: Optional[date] = None) -> ProjectStats:
        """
        Recompute derived fields, write them back and ratchet the status.

        Calling this twice with no task changes in between yields the same
        numbers and the same status.
        """
        today = today or date.today()
        project = self.get_project(project_id)

        tasks = self._store.select("tasks", eq={"project_id": project_id})
        images = self._store.select("images", eq={"project_id": project_id})

        total_tasks = len(tasks)
        completed_tasks = sum(1 for t in tasks if t.get("status") == TaskStatus.COMPLETED.value)
        task_pct = (completed_tasks / total_tasks * 100) if total_tasks > 0 else 0.0

        time_pct, days_elapsed, days_remaining = compute_time_progress(
            parse_date(project.start_date),
            parse_date(project.estimated_completion_date),
            today,
        )
        displayed = self._progress_policy(task_pct, time_pct)

        status = next_status(project.status, total_tasks, completed_tasks)
        stats = ProjectStats(
            project_id=project_id,
            total_tasks=total_tasks,
            completed_tasks=completed_tasks,
            total_images=len(images),
            task_completion_percentage=int(round(task_pct)),
            time_based_percentage=int(round(time_pct)),
            completion_percentage=int(round(displayed)),
            days_elapsed=days_elapsed,
            days_remaining=days_remaining,
            status=status,
        )

        changes: Dict[str, Any] = {
            "total_tasks": stats.total_tasks,
            "completed_tasks": stats.completed_tasks,
            "total_images": stats.total_images,
            "task_completion_percentage": stats.task_completion_percentage,
            "time_based_percentage": stats.time_based_percentage,
            "completion_percentage": stats.completion_percentage,
        }
        if status != project.status:
            changes["status"] = status
            changes["updated_at"] = utc_now_iso()
            logger.info(f"Project {project_id}: status {project.status} -> {status}")

        current = {k: getattr(project, k) for k in changes if hasattr(project, k)}
        if current != changes:
            self._store.update(TABLE, project_id, changes)
        return stats
