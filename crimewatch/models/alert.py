from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AlertType(str, Enum):
    INCIDENT = "incident"
    HOTSPOT = "hotspot"
    COMMUNITY = "community"


class Alert(BaseModel):
    # read/unread is the only thing that changes; stores rewrite it via model_copy
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    incident_id: Optional[str] = None
    hotspot_id: Optional[int] = None
    title: str
    message: str
    alert_type: AlertType
    is_read: bool = False
    created_at: datetime


class CommunityAlertIn(BaseModel):
    sender_id: str
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=2000)
