# services/watch.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Set

from crimewatch.errors import NotFoundError
from crimewatch.models.group import GroupMember, MemberRole, WatchGroup, WatchGroupIn, WatchGroupView
from crimewatch.services.geo import haversine_m

log = logging.getLogger(__name__)


class WatchGroupService:
    """Neighbourhood-watch groups and their memberships."""

    def __init__(self, store):
        self.store = store

    def create_group(self, data: WatchGroupIn) -> WatchGroup:
        now = datetime.now(timezone.utc)
        group = WatchGroup(
            id=str(uuid.uuid4()),
            name=data.name,
            description=data.description,
            location_lat=data.location_lat,
            location_lng=data.location_lng,
            coverage_radius_meters=data.coverage_radius_meters,
            created_by=data.created_by,
            created_at=now,
            updated_at=now,
        )
        self.store.put_group(group)
        # creator administers the group
        self.store.put_member(
            GroupMember(group_id=group.id, user_id=data.created_by, role=MemberRole.ADMIN, joined_at=now)
        )
        log.info("Created watch group %s (%s) by %s", group.id, group.name, data.created_by)
        return group

    def get_group(self, group_id: str) -> WatchGroup:
        group = self.store.get_group(group_id)
        if group is None:
            raise NotFoundError(f"group {group_id} not found")
        return group

    def join(self, group_id: str, user_id: str) -> GroupMember:
        """Add a member. Joining a group you already belong to keeps your role."""
        self.get_group(group_id)
        existing = self.store.get_member(group_id, user_id)
        if existing is not None:
            return existing
        member = GroupMember(
            group_id=group_id, user_id=user_id, role=MemberRole.MEMBER, joined_at=datetime.now(timezone.utc)
        )
        self.store.put_member(member)
        return member

    def leave(self, group_id: str, user_id: str) -> None:
        self.get_group(group_id)
        if not self.store.delete_member(group_id, user_id):
            raise NotFoundError(f"user {user_id} is not a member of group {group_id}")

    def role_of(self, group_id: str, user_id: str) -> Optional[MemberRole]:
        member = self.store.get_member(group_id, user_id)
        return member.role if member else None

    def list_groups(self, user_id: Optional[str] = None) -> List[WatchGroupView]:
        views = []
        for group in self.store.list_groups():
            members = self.store.list_members(group.id)
            role = next((m.role for m in members if m.user_id == user_id), None) if user_id else None
            views.append(
                WatchGroupView(
                    **group.model_dump(),
                    member_count=len(members),
                    is_member=role is not None,
                    user_role=role,
                )
            )
        return views

    def groups_covering(self, lat: float, lng: float, extra_radius_m: float = 0.0) -> List[WatchGroup]:
        """Groups whose coverage circle reaches within extra_radius_m of the point."""
        return [
            g for g in self.store.list_groups()
            if haversine_m(lat, lng, g.location_lat, g.location_lng) <= g.coverage_radius_meters + extra_radius_m
        ]

    def recipients_near(self, lat: float, lng: float, extra_radius_m: float = 0.0) -> Set[str]:
        users: Set[str] = set()
        for group in self.groups_covering(lat, lng, extra_radius_m):
            users.update(m.user_id for m in self.store.list_members(group.id))
        return users
