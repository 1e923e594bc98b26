from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class MemberRole(str, Enum):
    ADMIN = "admin"
    MEMBER = "member"


class WatchGroupIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    location_lat: float = Field(..., ge=-90, le=90)
    location_lng: float = Field(..., ge=-180, le=180)
    coverage_radius_meters: int = Field(1000, gt=0)
    created_by: str


class WatchGroup(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    location_lat: float
    location_lng: float
    coverage_radius_meters: int = 1000
    created_by: str
    created_at: datetime
    updated_at: datetime


class GroupMember(BaseModel):
    group_id: str
    user_id: str
    role: MemberRole = MemberRole.MEMBER
    joined_at: datetime


class WatchGroupView(WatchGroup):
    member_count: int = 0
    is_member: bool = False
    user_role: Optional[MemberRole] = None


class JoinBody(BaseModel):
    user_id: str
