"""
User directory and actor resolution.

The role of the calling user always comes from their profile row and is
validated against the closed Role enumeration before an Actor is built.
"""

import logging
from typing import List, Optional

from .errors import NotFoundError, ValidationError
from .models import Profile, utc_now_iso
from .role_policy import Actor, Role, assignable_roles, parse_role
from .store import DataStore

logger = logging.getLogger("profiles")

TABLE = "profiles"


class ProfileDirectory:
    """Lookup of profiles keyed by user id."""

    def __init__(self, store: DataStore):
        self._store = store

    def get_profile(self, user_id: str) -> Profile:
        rows = self._store.select(TABLE, eq={"user_id": user_id})
        if not rows:
            raise NotFoundError("profile", user_id)
        return Profile.from_dict(rows[0])

    def find_profile(self, user_id: Optional[str]) -> Optional[Profile]:
        if not user_id:
            return None
        rows = self._store.select(TABLE, eq={"user_id": user_id})
        return Profile.from_dict(rows[0]) if rows else None

    def resolve_actor(self, user_id: str) -> Actor:
        """Build the Actor for a user id. Unknown roles are rejected."""
        if not user_id:
            raise ValidationError(["User id is required"])
        profile = self.get_profile(user_id)
        return Actor(user_id=profile.user_id, role=parse_role(profile.role))

    def register_profile(
        self,
        user_id: str,
        full_name: str,
        email: Optional[str],
        role: str,
    ) -> Profile:
        """Create a profile row. Trusted path used by provisioning and seeding."""
        errors = []
        if not user_id:
            errors.append("user_id is required")
        if not full_name or not full_name.strip():
            errors.append("full_name is required")
        if errors:
            raise ValidationError(errors)

        profile = Profile(
            user_id=user_id,
            full_name=full_name.strip(),
            email=email,
            role=parse_role(role).value,
            created_at=utc_now_iso(),
        )
        row = profile.to_dict()
        row["id"] = user_id
        self._store.insert(TABLE, row, unique_where={"user_id": user_id})
        logger.info(f"Registered profile {user_id} as {profile.role}")
        return profile

    def list_profiles(self) -> List[Profile]:
        return [Profile.from_dict(r) for r in self._store.select(TABLE, order_by="full_name")]

    def list_assignable_users(self, actor: Actor) -> List[Profile]:
        """
        Users the actor may assign a task to.

        chief_architect sees everyone, junior_architect sees juniors and
        interns, anyone else only sees themselves.
        """
        roles = assignable_roles(actor.role)
        if not roles:
            return [self.get_profile(actor.user_id)]
        return [
            p for p in self.list_profiles()
            if p.user_id == actor.user_id or _role_in(p.role, roles)
        ]


def _role_in(value: str, roles) -> bool:
    try:
        return Role(value) in roles
    except ValueError:
        logger.warning(f"Skipping profile with unknown role '{value}'")
        return False
