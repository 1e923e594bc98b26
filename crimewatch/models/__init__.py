from crimewatch.models.alert import Alert, AlertType
from crimewatch.models.group import GroupMember, MemberRole, WatchGroup
from crimewatch.models.hotspot import Hotspot, HotspotStatus, SeverityRecord
from crimewatch.models.incident import CrimeType, GeoPoint, Incident, IncidentIn, IncidentStatus, Severity

__all__ = [
    "Alert",
    "AlertType",
    "CrimeType",
    "GeoPoint",
    "GroupMember",
    "Hotspot",
    "HotspotStatus",
    "Incident",
    "IncidentIn",
    "IncidentStatus",
    "MemberRole",
    "SeverityRecord",
    "Severity",
    "WatchGroup",
]
