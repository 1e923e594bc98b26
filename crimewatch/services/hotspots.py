# services/hotspots.py
from __future__ import annotations

import logging
from typing import Any, Dict, List

from crimewatch.errors import ClusteringError, NotFoundError
from crimewatch.models.hotspot import Hotspot
from crimewatch.services import events
from crimewatch.services.clustering import ClusteringEngine, ReconcileReport
from crimewatch.services.geo import in_bbox
from crimewatch.services.h3_utils import hex_boundary, hex_disk, point_to_hex
from crimewatch.services.severity import categorize_score, severity_label

log = logging.getLogger(__name__)


def hotspot_payload(hs: Hotspot, *, include_boundary: bool = False) -> Dict[str, Any]:
    """Hotspot row + display fields (label, colour, optional H3 outline)."""
    payload = hs.model_dump(mode="json")
    payload["severity_score"] = round(hs.severity_score, 3)
    payload["severity_label"] = severity_label(hs.severity_score)
    payload["color"] = categorize_score(hs.severity_score)
    if include_boundary and hs.zone_id:
        payload["boundary"] = hex_boundary(hs.zone_id)
    return payload


class HotspotWriter:
    """Event subscriber that mirrors cluster changes into the hotspots table."""

    def __init__(self, store):
        self.store = store

    def __call__(self, event: events.Event) -> None:
        hs: Hotspot = event.payload
        if event.kind == events.HOTSPOT_REMOVED:
            self.store.delete_hotspot(hs.id, version=hs.version)
            return

        if not self.store.put_hotspot(hs):
            log.warning("Dropped stale write for hotspot %s (version %s)", hs.id, hs.version)
            return
        if event.previous_score is None or round(event.previous_score, 3) != round(hs.severity_score, 3):
            self.store.add_severity_record(hs.id, hs.severity_score, updated_by=event.kind)

    def attach(self, bus: events.EventBus):
        return bus.subscribe(self, kinds=events.HOTSPOT_EVENTS)


class HotspotService:
    def __init__(self, store, engine: ClusteringEngine, ingestor=None):
        self.store = store
        self.engine = engine
        self.ingestor = ingestor

    # ---------- reads ----------

    def list_hotspots(self, *, include_dormant: bool = False) -> List[Hotspot]:
        return self.store.list_hotspots(include_dormant=include_dormant)

    def get_hotspot(self, hotspot_id: int) -> Hotspot:
        hs = self.store.get_hotspot(hotspot_id)
        if hs is None:
            raise NotFoundError(f"hotspot {hotspot_id} not found")
        return hs

    def in_bbox(self, min_lat: float, max_lat: float, min_lng: float, max_lng: float) -> List[Hotspot]:
        """Active hotspots whose centroid lies inside the viewport."""
        return [
            hs for hs in self.store.list_hotspots()
            if in_bbox(hs.location_lat, hs.location_lng, min_lat, max_lat, min_lng, max_lng)
        ]

    def nearby(self, lat: float, lng: float, rings: int = 2) -> List[Hotspot]:
        """Active hotspots whose centroid cell is within `rings` H3 steps of the point."""
        cells = hex_disk(point_to_hex(lat, lng), rings)
        return [hs for hs in self.store.list_hotspots() if hs.zone_id in cells]

    def history(self, hotspot_id: int, limit: int = 100):
        self.get_hotspot(hotspot_id)
        return self.store.get_severity_history(hotspot_id, limit=limit)

    # ---------- maintenance ----------

    def reconcile(self) -> ReconcileReport:
        """
        Run the engine's reconciliation pass, sync moved incidents back into
        the incidents table, then retry incidents flagged as unclustered.
        """
        report = self.engine.reconcile()
        for incident_id, cluster_id in report.moved.items():
            self.store.update_incident(
                incident_id,
                cluster_id=cluster_id,
                needs_reconciliation=incident_id in report.failed,
            )

        if self.ingestor is not None:
            for incident in self.store.list_unclustered():
                result = self.ingestor.cluster(incident)
                if result.cluster_id is not None:
                    report.moved[incident.id] = result.cluster_id
                elif incident.id not in report.failed:
                    report.failed.append(incident.id)

        log.info("Reconciliation finished: %s", report.as_dict())
        return report


def rebuild_hotspots(store, engine: ClusteringEngine) -> int:
    """
    Recompute every hotspot from scratch: drop stored rows, then feed all
    incidents (oldest first) through a fresh engine whose events are mirrored
    into the store. Returns the number of incidents clustered.
    """
    for hs in store.list_hotspots(include_dormant=True):
        store.delete_hotspot(hs.id)

    writer = HotspotWriter(store)
    unsubscribe = writer.attach(engine.bus)
    clustered = 0
    try:
        for incident in sorted(store.list_incidents(), key=lambda i: i.timestamp):
            try:
                cluster_id = engine.assign(incident)
            except ClusteringError as e:
                log.warning("Could not cluster incident %s during rebuild: %s", incident.id, e)
                store.update_incident(incident.id, cluster_id=None, needs_reconciliation=True)
                continue
            store.update_incident(incident.id, cluster_id=cluster_id, needs_reconciliation=False)
            clustered += 1
    finally:
        unsubscribe()
    return clustered
