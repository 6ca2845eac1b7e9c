"""
Meeting log with attendee invitations.

Attendees are notified (project_update + email) when a meeting is
created, and only newly added attendees are notified on update.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .errors import AuthorizationError, NotFoundError, ValidationError
from .models import Meeting, NotificationType, new_id, utc_now_iso
from .notification_dispatch import DispatchReport, NotificationDispatcher, NotificationTemplates
from .role_policy import Actor, Capability, require
from .store import DataStore

logger = logging.getLogger("meetings")

TABLE = "meetings"
MEETING_FIELDS = frozenset({"meeting_date", "description", "agenda", "notes", "project_id", "attendees"})


def _validate(data: Dict[str, Any], creating: bool) -> None:
    errors = []
    if creating or "description" in data:
        if not data.get("description") or not str(data["description"]).strip():
            errors.append("description is required")
    if creating or "meeting_date" in data:
        value = data.get("meeting_date")
        if not value:
            errors.append("meeting_date is required")
        else:
            try:
                datetime.fromisoformat(str(value))
            except ValueError:
                errors.append(f"meeting_date must be an ISO date or datetime, got '{value}'")
    attendees = data.get("attendees")
    if attendees is not None and not isinstance(attendees, list):
        errors.append("attendees must be a list of user ids")
    unknown = set(data) - MEETING_FIELDS
    if unknown:
        errors.append(f"Unknown meeting fields: {sorted(unknown)}")
    if errors:
        raise ValidationError(errors)


class MeetingLog:

    def __init__(self, store: DataStore, dispatcher: NotificationDispatcher):
        self._store = store
        self._dispatcher = dispatcher

    def get_meeting(self, meeting_id: str) -> Meeting:
        row = self._store.get(TABLE, meeting_id)
        if row is None:
            raise NotFoundError("meeting", meeting_id)
        return Meeting.from_dict(row)

    def list_meetings(self, project_id: Optional[str] = None) -> List[Meeting]:
        eq = {"project_id": project_id} if project_id else None
        rows = self._store.select(TABLE, eq=eq, order_by="meeting_date", descending=True)
        return [Meeting.from_dict(r) for r in rows]

    def _check_can_manage(self, actor: Actor, meeting: Meeting) -> None:
        require(actor, Capability.MANAGE_MEETINGS)
        if meeting.created_by != actor.user_id and not actor.can(Capability.MANAGE_ANY_MEETING):
            raise AuthorizationError(
                action="manage_meeting",
                role=actor.role.value,
                reason="Only the meeting's creator or the chief architect may change it",
            )

    async def _invite(self, meeting: Meeting, attendees: List[str]) -> DispatchReport:
        rendered = NotificationTemplates.meeting_invitation(
            meeting.description, meeting.meeting_date, meeting.agenda
        )
        jobs = [
            {
                "user_id": user_id,
                "type": NotificationType.PROJECT_UPDATE.value,
                "title": rendered.title,
                "message": rendered.message,
                "project_id": meeting.project_id,
                "email": rendered,
            }
            for user_id in attendees
        ]
        report = DispatchReport()
        report.results = await self._dispatcher.dispatch_many(jobs)
        return report

    async def create_meeting(self, actor: Actor, data: Dict[str, Any]) -> Tuple[Meeting, DispatchReport]:
        require(actor, Capability.MANAGE_MEETINGS)
        _validate(data, creating=True)

        attendees = list(dict.fromkeys(data.get("attendees") or []))
        meeting = Meeting(
            id=new_id(),
            meeting_date=str(data["meeting_date"]),
            description=str(data["description"]).strip(),
            agenda=data.get("agenda"),
            notes=data.get("notes"),
            project_id=data.get("project_id"),
            attendees=attendees,
            created_by=actor.user_id,
        )
        self._store.insert(TABLE, meeting.to_dict())
        logger.info(f"Meeting {meeting.id} created by {actor.user_id} with {len(attendees)} attendees")

        report = await self._invite(meeting, attendees)
        return meeting, report

    async def update_meeting(
        self,
        actor: Actor,
        meeting_id: str,
        patch: Dict[str, Any],
    ) -> Tuple[Meeting, DispatchReport]:
        _validate(patch, creating=False)
        meeting = self.get_meeting(meeting_id)
        self._check_can_manage(actor, meeting)

        changes = dict(patch)
        if "attendees" in changes:
            changes["attendees"] = list(dict.fromkeys(changes["attendees"] or []))
        changes["updated_at"] = utc_now_iso()
        updated = Meeting.from_dict(self._store.update(TABLE, meeting_id, changes))

        previous = meeting.attendees or []
        added = [u for u in (updated.attendees or []) if u not in previous]
        report = await self._invite(updated, added)
        logger.info(f"Meeting {meeting_id} updated by {actor.user_id}; {len(added)} new attendees")
        return updated, report

    def delete_meeting(self, actor: Actor, meeting_id: str) -> bool:
        meeting = self.get_meeting(meeting_id)
        self._check_can_manage(actor, meeting)
        return self._store.delete(TABLE, meeting_id)
