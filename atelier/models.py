"""
Records for every table the service reads or writes.

Rows travel through the store as plain dicts; these dataclasses are the
typed view the workflow code works with. Timestamps are ISO-8601 UTC
strings and calendar dates are YYYY-MM-DD strings, matching what the
hosted database returns.
"""

import uuid
from dataclasses import dataclass, field, asdict, fields
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TaskClearanceState(str, Enum):
    """Latest clearance outcome mirrored onto the task."""
    NOT_REQUESTED = "not_requested"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ClearanceStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ProjectStatus(str, Enum):
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class NotificationType(str, Enum):
    DEADLINE_REMINDER = "deadline_reminder"
    TASK_ASSIGNED = "task_assigned"
    STATUS_UPDATE = "status_update"
    PROJECT_UPDATE = "project_update"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


# Statuses the deadline scan and overdue sweep look at
OPEN_TASK_STATUSES = (TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def today_iso() -> str:
    return date.today().isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def parse_date(value: Optional[str]) -> Optional[date]:
    """Parse a stored date (or timestamp) string into a date."""
    if not value:
        return None
    if isinstance(value, date):
        return value if not isinstance(value, datetime) else value.date()
    return date.fromisoformat(str(value)[:10])


def to_decimal(value: Any) -> Decimal:
    if value is None:
        return Decimal("0")
    return Decimal(str(value))


class _Record:
    """to_dict / from_dict shared by all table records."""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = str(value)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


# -----------------------------------------------------------------------------
# People
# -----------------------------------------------------------------------------
@dataclass
class Profile(_Record):
    user_id: str
    full_name: str
    email: Optional[str]
    role: str
    created_at: str = field(default_factory=utc_now_iso)


# -----------------------------------------------------------------------------
# Tasks
# -----------------------------------------------------------------------------
@dataclass
class Task(_Record):
    """
    A unit of work.

    Invariants:
        status == completed  <=>  completed_at is set
        self_assigned        =>   assigned_to == created_by
    """
    id: str
    title: str
    created_by: str
    description: Optional[str] = None
    status: str = TaskStatus.PENDING.value
    priority: str = TaskPriority.MEDIUM.value
    due_date: Optional[str] = None
    assigned_to: Optional[str] = None
    project_id: Optional[str] = None
    clearance_status: str = TaskClearanceState.NOT_REQUESTED.value
    self_assigned: bool = False
    estimated_hours: Optional[float] = None
    task_phase: Optional[str] = None
    completed_at: Optional[str] = None
    cleared_by: Optional[str] = None
    cleared_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def is_open(self) -> bool:
        return self.status in OPEN_TASK_STATUSES


@dataclass
class TaskStatusHistory(_Record):
    id: str
    task_id: str
    user_id: str
    old_status: Optional[str]
    new_status: str
    notes: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)


@dataclass
class ClearanceRequest(_Record):
    """Review request on a task. Terminal once approved or rejected."""
    id: str
    task_id: str
    requested_by: str
    status: str = ClearanceStatus.PENDING.value
    notes: Optional[str] = None
    cleared_by: Optional[str] = None
    cleared_at: Optional[str] = None
    requested_at: str = field(default_factory=utc_now_iso)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)


# -----------------------------------------------------------------------------
# Projects
# -----------------------------------------------------------------------------
@dataclass
class Project(_Record):
    id: str
    name: str
    created_by: str
    description: Optional[str] = None
    status: str = ProjectStatus.PLANNING.value
    phase: str = "planning"
    project_type: str = "residential"
    location: Optional[str] = None
    start_date: Optional[str] = None
    estimated_completion_date: Optional[str] = None
    # Derived, written back by aggregation
    total_tasks: int = 0
    completed_tasks: int = 0
    total_images: int = 0
    task_completion_percentage: int = 0
    time_based_percentage: int = 0
    completion_percentage: int = 0
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)


# -----------------------------------------------------------------------------
# Notifications
# -----------------------------------------------------------------------------
@dataclass
class Notification(_Record):
    id: str
    user_id: str
    type: str
    title: str
    message: str
    task_id: Optional[str] = None
    project_id: Optional[str] = None
    is_read: bool = False
    sent_at: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)


# -----------------------------------------------------------------------------
# Media
# -----------------------------------------------------------------------------
@dataclass
class Image(_Record):
    id: str
    name: str
    url: str
    uploaded_by: str
    project_id: Optional[str] = None
    task_id: Optional[str] = None
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    phase: Optional[str] = None
    description: Optional[str] = None
    is_featured: bool = False
    created_at: str = field(default_factory=utc_now_iso)


@dataclass
class Document(_Record):
    id: str
    name: str
    file_path: str
    url: str
    uploaded_by: str
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    file_extension: Optional[str] = None
    description: Optional[str] = None
    project_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)


# -----------------------------------------------------------------------------
# Meetings
# -----------------------------------------------------------------------------
@dataclass
class Meeting(_Record):
    id: str
    meeting_date: str
    description: str
    created_by: str
    agenda: Optional[str] = None
    notes: Optional[str] = None
    project_id: Optional[str] = None
    attendees: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)


# -----------------------------------------------------------------------------
# Invoicing
# -----------------------------------------------------------------------------
@dataclass
class Invoice(_Record):
    id: str
    invoice_number: str
    amount: Decimal
    created_by: str
    currency: str = "INR"
    status: str = InvoiceStatus.DRAFT.value
    issue_date: str = field(default_factory=today_iso)
    due_date: Optional[str] = None
    paid_date: Optional[str] = None
    paid_amount: Decimal = Decimal("0")
    description: Optional[str] = None
    project_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    def __post_init__(self):
        self.amount = to_decimal(self.amount)
        self.paid_amount = to_decimal(self.paid_amount)

    @property
    def remaining(self) -> Decimal:
        return self.amount - self.paid_amount


@dataclass
class InvoicePayment(_Record):
    id: str
    invoice_id: str
    amount: Decimal
    recorded_by: str
    payment_date: str = field(default_factory=today_iso)
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)

    def __post_init__(self):
        self.amount = to_decimal(self.amount)
