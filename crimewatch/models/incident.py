from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class CrimeType(str, Enum):
    THEFT = "Theft"
    BURGLARY = "Burglary"
    ASSAULT = "Assault"
    VANDALISM = "Vandalism"
    VEHICLE_CRIME = "Vehicle Crime"
    DRUG_RELATED = "Drug-related"
    SUSPICIOUS_ACTIVITY = "Suspicious Activity"
    OTHER = "Other"

    @classmethod
    def _missing_(cls, value: object):
        # accept "theft", "vehicle_crime", " DRUG-RELATED " ...
        if isinstance(value, str):
            key = value.strip().lower().replace("_", " ")
            for member in cls:
                if member.value.lower() == key:
                    return member
        return None


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @classmethod
    def _missing_(cls, value: object):
        if isinstance(value, str):
            key = value.strip().lower()
            for member in cls:
                if member.value == key:
                    return member
        return None


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class IncidentStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REPORTED = "reported"
    RESOLVED = "resolved"

    @classmethod
    def _missing_(cls, value: object):
        # older records used the police-service specific label
        if value == "reported_to_saps":
            return cls.REPORTED
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Accept ISO8601 (with/without 'Z'), UNIX seconds/ms, or datetime.
    Returns aware UTC datetime or None if invalid.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)

    if isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        # treat large numbers as ms
        ts = float(value) / 1000.0 if value > 1e12 else float(value)
        try:
            return datetime.fromtimestamp(ts, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    if isinstance(value, str):
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
        return dt.astimezone(timezone.utc) if dt.tzinfo else dt.replace(tzinfo=timezone.utc)

    return None


class GeoPoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90, description="Latitude")
    lng: float = Field(..., ge=-180, le=180, description="Longitude")


# Payload coming FROM the report form
class IncidentIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    id: Optional[str] = Field(None, description="Client supplied id (generated when absent)")
    reporter_id: str = Field("anonymous", description="User identifier or 'anonymous'")
    type: CrimeType = Field(..., description="Crime type")
    description: str = Field(..., min_length=1)
    location: GeoPoint
    location_address: Optional[str] = None
    severity: Severity
    timestamp: datetime = Field(..., description="UTC time when the incident occurred")

    @model_validator(mode="before")
    @classmethod
    def _lift_flat_location(cls, data: Any) -> Any:
        # table rows carry location_lat / location_lng columns
        if isinstance(data, dict) and data.get("location") is None:
            lat = data.get("location_lat")
            lng = data.get("location_lng")
            if lat is not None or lng is not None:
                data = dict(data)
                data["location"] = {"lat": lat, "lng": lng}
        return data

    @field_validator("type", mode="before")
    @classmethod
    def _canonical_type(cls, value: Any) -> Any:
        try:
            return CrimeType(value)
        except ValueError:
            raise ValueError(f"unknown crime type {value!r}")

    @field_validator("severity", mode="before")
    @classmethod
    def _canonical_severity(cls, value: Any) -> Any:
        try:
            return Severity(value)
        except ValueError:
            raise ValueError("severity must be one of low, medium, high, critical")

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> datetime:
        ts = parse_timestamp(value)
        if ts is None:
            raise ValueError("invalid timestamp")
        return ts


class Incident(BaseModel):
    """A normalized incident. Only status and cluster bookkeeping change after creation."""

    model_config = ConfigDict(frozen=True)

    id: str
    reporter_id: str = "anonymous"
    type: CrimeType
    description: str
    location: GeoPoint
    location_address: Optional[str] = None
    severity: Severity
    status: IncidentStatus = IncidentStatus.PENDING
    timestamp: datetime
    created_at: datetime
    cluster_id: Optional[int] = None
    needs_reconciliation: bool = False

    @field_validator("timestamp", "created_at", mode="before")
    @classmethod
    def _aware(cls, value: Any) -> datetime:
        ts = parse_timestamp(value)
        if ts is None:
            raise ValueError("invalid timestamp")
        return ts


class StatusUpdate(BaseModel):
    status: IncidentStatus
