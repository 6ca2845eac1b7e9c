"""
Role Policy

Single source of truth for what each role may do. Pure functions over a
closed role enumeration; nothing here touches the store.

Roles:
- CHIEF_ARCHITECT: approves clearances, sends alerts, manages everything
- JUNIOR_ARCHITECT: creates/assigns tasks, manages financial records
- INTERN: self-assigns tasks and requests clearances

Role strings are validated by parse_role() at every boundary. Unknown or
misspelled roles (for example "jr_architect") are rejected, never mapped.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet

from .errors import AuthorizationError, ValidationError


# -----------------------------------------------------------------------------
# Role Enum (closed)
# -----------------------------------------------------------------------------
class Role(str, Enum):
    CHIEF_ARCHITECT = "chief_architect"
    JUNIOR_ARCHITECT = "junior_architect"
    INTERN = "intern"


# -----------------------------------------------------------------------------
# Capability Enum
# -----------------------------------------------------------------------------
class Capability(str, Enum):
    """Actions gated by role."""
    CREATE_TASK = "create_task"
    ASSIGN_TASK = "assign_task"
    SELF_ASSIGN = "self_assign"
    MANAGE_ANY_TASK = "manage_any_task"
    REQUEST_CLEARANCE = "request_clearance"
    RESOLVE_CLEARANCE = "resolve_clearance"
    MANAGE_PROJECTS = "manage_projects"
    MANAGE_FINANCIALS = "manage_financials"
    DELETE_FINANCIALS = "delete_financials"
    VIEW_DOCUMENTS = "view_documents"
    UPLOAD_DOCUMENTS = "upload_documents"
    MANAGE_ANY_DOCUMENT = "manage_any_document"
    SEND_ALERTS = "send_alerts"
    MANAGE_MEETINGS = "manage_meetings"
    MANAGE_ANY_MEETING = "manage_any_meeting"


# -----------------------------------------------------------------------------
# Role -> Capabilities Mapping
# -----------------------------------------------------------------------------
_SHARED: FrozenSet[Capability] = frozenset({
    Capability.VIEW_DOCUMENTS,
    Capability.UPLOAD_DOCUMENTS,
})

ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    # Chief approves clearances but never requests them
    Role.CHIEF_ARCHITECT: _SHARED | frozenset({
        Capability.CREATE_TASK,
        Capability.ASSIGN_TASK,
        Capability.MANAGE_ANY_TASK,
        Capability.RESOLVE_CLEARANCE,
        Capability.MANAGE_PROJECTS,
        Capability.MANAGE_FINANCIALS,
        Capability.DELETE_FINANCIALS,
        Capability.MANAGE_ANY_DOCUMENT,
        Capability.SEND_ALERTS,
        Capability.MANAGE_MEETINGS,
        Capability.MANAGE_ANY_MEETING,
    }),

    Role.JUNIOR_ARCHITECT: _SHARED | frozenset({
        Capability.CREATE_TASK,
        Capability.ASSIGN_TASK,
        Capability.SELF_ASSIGN,
        Capability.REQUEST_CLEARANCE,
        Capability.MANAGE_FINANCIALS,
        Capability.MANAGE_MEETINGS,
    }),

    Role.INTERN: _SHARED | frozenset({
        Capability.SELF_ASSIGN,
        Capability.REQUEST_CLEARANCE,
    }),
}

# Roles each role may hand work to (besides themselves)
ASSIGNABLE_ROLES: Dict[Role, FrozenSet[Role]] = {
    Role.CHIEF_ARCHITECT: frozenset(Role),
    Role.JUNIOR_ARCHITECT: frozenset({Role.JUNIOR_ARCHITECT, Role.INTERN}),
    Role.INTERN: frozenset(),
}


# -----------------------------------------------------------------------------
# Actor
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Actor:
    """The authenticated user performing an action."""
    user_id: str
    role: Role

    def can(self, capability: Capability) -> bool:
        return can(self.role, capability)


# -----------------------------------------------------------------------------
# Policy Functions
# -----------------------------------------------------------------------------
def parse_role(value) -> Role:
    """Validate a raw role value against the closed enumeration."""
    if isinstance(value, Role):
        return value
    try:
        return Role(value)
    except ValueError:
        valid = [r.value for r in Role]
        raise ValidationError([f"Unknown role '{value}'. Valid roles: {valid}"])


def capabilities_for(role: Role) -> FrozenSet[Capability]:
    return ROLE_CAPABILITIES.get(parse_role(role), frozenset())


def can(role: Role, capability: Capability) -> bool:
    """Check whether a role holds a capability."""
    return capability in capabilities_for(role)


def require(actor: Actor, capability: Capability) -> None:
    """Raise AuthorizationError unless the actor's role holds the capability."""
    if not can(actor.role, capability):
        raise AuthorizationError(action=capability.value, role=parse_role(actor.role).value)


def assignable_roles(role: Role) -> FrozenSet[Role]:
    return ASSIGNABLE_ROLES.get(parse_role(role), frozenset())


def can_assign_to(actor: Actor, assignee_id: str, assignee_role: Role) -> bool:
    """
    Check whether an actor may put a task on another user's plate.

    Assigning to oneself is a self-assignment and needs SELF_ASSIGN or
    ASSIGN_TASK; assigning to someone else needs ASSIGN_TASK and a target
    role inside the actor's assignable set.
    """
    if assignee_id == actor.user_id:
        return actor.can(Capability.SELF_ASSIGN) or actor.can(Capability.ASSIGN_TASK)
    if not actor.can(Capability.ASSIGN_TASK):
        return False
    return parse_role(assignee_role) in assignable_roles(actor.role)
