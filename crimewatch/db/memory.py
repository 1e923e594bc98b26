# db/memory.py
from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from crimewatch.models.alert import Alert
from crimewatch.models.group import GroupMember, WatchGroup
from crimewatch.models.hotspot import Hotspot, HotspotStatus, SeverityRecord
from crimewatch.models.incident import Incident


class MemoryStore:
    """Process-local tables. Default backend for development and tests."""

    def __init__(self):
        self._lock = threading.RLock()
        self._incidents: Dict[str, Incident] = {}
        self._hotspots: Dict[int, Hotspot] = {}
        self._history: Dict[int, List[SeverityRecord]] = {}
        self._alerts: Dict[str, Alert] = {}
        self._groups: Dict[str, WatchGroup] = {}
        self._members: Dict[Tuple[str, str], GroupMember] = {}
        self._last_hotspot_id = 0

    # ---------- incidents ----------

    def put_incident(self, incident: Incident) -> None:
        with self._lock:
            self._incidents[incident.id] = incident

    def insert_incident(self, incident: Incident) -> bool:
        """Store a new incident. False (and nothing written) when the id is taken."""
        with self._lock:
            if incident.id in self._incidents:
                return False
            self._incidents[incident.id] = incident
            return True

    def get_incident(self, incident_id: str) -> Optional[Incident]:
        with self._lock:
            return self._incidents.get(incident_id)

    def update_incident(self, incident_id: str, **fields) -> Optional[Incident]:
        with self._lock:
            current = self._incidents.get(incident_id)
            if current is None:
                return None
            updated = current.model_copy(update=fields)
            self._incidents[incident_id] = updated
            return updated

    def delete_incident(self, incident_id: str) -> bool:
        with self._lock:
            return self._incidents.pop(incident_id, None) is not None

    def list_incidents(self, limit: Optional[int] = None) -> List[Incident]:
        with self._lock:
            items = sorted(self._incidents.values(), key=lambda i: i.timestamp, reverse=True)
        return items[:limit] if limit else items

    def list_unclustered(self) -> List[Incident]:
        with self._lock:
            return [i for i in self._incidents.values() if i.needs_reconciliation]

    # ---------- hotspots ----------

    def allocate_hotspot_id(self) -> int:
        with self._lock:
            self._last_hotspot_id = max([self._last_hotspot_id, *self._hotspots]) + 1
            return self._last_hotspot_id

    def put_hotspot(self, hotspot: Hotspot) -> bool:
        """Write unless the stored row already carries this version or a newer one."""
        with self._lock:
            current = self._hotspots.get(hotspot.id)
            if current is not None and current.version >= hotspot.version:
                return False
            self._hotspots[hotspot.id] = hotspot
            return True

    def get_hotspot(self, hotspot_id: int) -> Optional[Hotspot]:
        with self._lock:
            return self._hotspots.get(hotspot_id)

    def delete_hotspot(self, hotspot_id: int, version: Optional[int] = None) -> bool:
        with self._lock:
            current = self._hotspots.get(hotspot_id)
            if current is None:
                return False
            if version is not None and current.version >= version:
                return False
            del self._hotspots[hotspot_id]
            return True

    def list_hotspots(self, include_dormant: bool = False) -> List[Hotspot]:
        with self._lock:
            items = list(self._hotspots.values())
        if not include_dormant:
            items = [h for h in items if h.status == HotspotStatus.ACTIVE]
        return sorted(items, key=lambda h: (-h.severity_score, h.id))

    def add_severity_record(self, hotspot_id: int, severity: float, updated_by: Optional[str] = None) -> bool:
        rec = SeverityRecord(
            hotspot_id=hotspot_id,
            timestamp=datetime.now(timezone.utc),
            severity=severity,
            updated_by=updated_by or "system",
        )
        with self._lock:
            self._history.setdefault(hotspot_id, []).append(rec)
        return True

    def get_severity_history(self, hotspot_id: int, limit: int = 100) -> List[SeverityRecord]:
        """Latest records first."""
        with self._lock:
            items = list(self._history.get(hotspot_id, []))
        return list(reversed(items))[:limit]

    # ---------- alerts ----------

    def put_alert(self, alert: Alert) -> None:
        with self._lock:
            self._alerts[alert.id] = alert

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            return self._alerts.get(alert_id)

    def list_alerts(self, user_id: str, unread_only: bool = False) -> List[Alert]:
        with self._lock:
            items = [a for a in self._alerts.values() if a.user_id == user_id]
        if unread_only:
            items = [a for a in items if not a.is_read]
        return sorted(items, key=lambda a: a.created_at, reverse=True)

    def mark_alert_read(self, alert_id: str) -> Optional[Alert]:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return None
            alert = alert.model_copy(update={"is_read": True})
            self._alerts[alert_id] = alert
            return alert

    def mark_all_read(self, user_id: str) -> int:
        count = 0
        with self._lock:
            for aid, alert in list(self._alerts.items()):
                if alert.user_id == user_id and not alert.is_read:
                    self._alerts[aid] = alert.model_copy(update={"is_read": True})
                    count += 1
        return count

    # ---------- neighbourhood watch ----------

    def put_group(self, group: WatchGroup) -> None:
        with self._lock:
            self._groups[group.id] = group

    def get_group(self, group_id: str) -> Optional[WatchGroup]:
        with self._lock:
            return self._groups.get(group_id)

    def list_groups(self) -> List[WatchGroup]:
        with self._lock:
            items = list(self._groups.values())
        return sorted(items, key=lambda g: g.created_at, reverse=True)

    def put_member(self, member: GroupMember) -> None:
        with self._lock:
            self._members[(member.group_id, member.user_id)] = member

    def get_member(self, group_id: str, user_id: str) -> Optional[GroupMember]:
        with self._lock:
            return self._members.get((group_id, user_id))

    def delete_member(self, group_id: str, user_id: str) -> bool:
        with self._lock:
            return self._members.pop((group_id, user_id), None) is not None

    def list_members(self, group_id: str) -> List[GroupMember]:
        with self._lock:
            return [m for (gid, _), m in self._members.items() if gid == group_id]
