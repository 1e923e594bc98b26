from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from crimewatch.models.incident import CrimeType


class HotspotStatus(str, Enum):
    ACTIVE = "active"
    DORMANT = "dormant"


class Hotspot(BaseModel):
    """Persisted snapshot of a cluster (one row of the hotspots table)."""

    id: int
    location_lat: float = Field(..., ge=-90, le=90)
    location_lng: float = Field(..., ge=-180, le=180)
    radius_meters: int = Field(..., gt=0)
    crime_count: int = Field(0, ge=0)
    severity_score: float = Field(0.0, ge=0)
    dominant_crime_type: Optional[CrimeType] = None
    last_updated: datetime
    created_at: datetime
    status: HotspotStatus = HotspotStatus.ACTIVE
    zone_id: Optional[str] = Field(None, description="H3 cell of the centroid")
    member_ids: List[str] = Field(default_factory=list)
    version: int = Field(0, ge=0, description="Bumped on every cluster change; older writes are dropped")


class SeverityRecord(BaseModel):
    hotspot_id: int
    timestamp: datetime
    severity: float
    updated_by: str = "system"
