# services/ingest.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

import pydantic

from crimewatch.errors import ClusteringError, ValidationError
from crimewatch.models.incident import Incident, IncidentIn, IncidentStatus
from crimewatch.services import events
from crimewatch.services.clustering import ClusteringEngine
from crimewatch.services.severity import Clock, utc_now

log = logging.getLogger(__name__)

REQUIRED_FIELDS = ("type", "description", "location", "severity", "timestamp")


@dataclass
class IngestResult:
    incident: Incident
    cluster_id: Optional[int] = None
    error: Optional[ClusteringError] = None

    @property
    def clustering(self) -> str:
        if self.cluster_id is not None:
            return "assigned"
        if self.error is not None:
            return "deferred"
        return "pending"

    def as_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "incident": self.incident.model_dump(mode="json"),
            "cluster_id": self.cluster_id,
            "clustering": self.clustering,
        }
        if self.error is not None:
            out["warning"] = {"reason": self.error.reason, "detail": str(self.error)}
        return out


def _pydantic_errors(exc: pydantic.ValidationError) -> list[dict]:
    errors = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "__root__") or "body"
        errors.append({"field": loc, "message": err.get("msg", "invalid value")})
    return errors


class IncidentIngestor:
    """
    Validates a raw submission, persists it, then hands it to clustering.
    The incident row is written before clustering starts, and clustering
    failures only flag the row; they never undo the write.
    """

    def __init__(
        self,
        store,
        engine: Optional[ClusteringEngine],
        bus: Optional[events.EventBus] = None,
        *,
        clock: Optional[Clock] = None,
        future_skew_s: float = 0.0,
        cluster_on_ingest: bool = True,
    ):
        self.store = store
        self.engine = engine
        self.bus = bus or (engine.bus if engine is not None else events.EventBus())
        self.clock = clock or utc_now
        self.future_skew = timedelta(seconds=future_skew_s)
        self.cluster_on_ingest = cluster_on_ingest and engine is not None

    def normalize(self, raw: Any) -> Incident:
        if not isinstance(raw, dict):
            raise ValidationError([{"field": "body", "message": "expected a JSON object"}])

        missing = [f for f in REQUIRED_FIELDS if _is_blank(raw.get(f)) and not _has_flat_location(raw, f)]
        if missing:
            raise ValidationError([{"field": f, "message": "field required"} for f in missing])

        try:
            data = IncidentIn.model_validate(raw)
        except pydantic.ValidationError as e:
            raise ValidationError(_pydantic_errors(e)) from e

        now = self.clock()
        if data.timestamp > now + self.future_skew:
            raise ValidationError([{"field": "timestamp", "message": "timestamp is in the future"}])

        return Incident(
            id=data.id or str(uuid.uuid4()),
            reporter_id=data.reporter_id or "anonymous",
            type=data.type,
            description=data.description,
            location=data.location,
            location_address=data.location_address or None,
            severity=data.severity,
            status=IncidentStatus.PENDING,
            timestamp=data.timestamp,
            # timestamp <= created_at even inside the allowed clock skew
            created_at=max(now, data.timestamp),
        )

    def ingest(self, raw: Any) -> IngestResult:
        incident = self.normalize(raw)
        if not self.store.insert_incident(incident):
            raise ValidationError([{"field": "id", "message": "incident id already exists"}])
        log.info("Stored incident %s (%s, %s)", incident.id, incident.type.value, incident.severity.value)
        self.bus.publish(events.Event(events.INCIDENT_INGESTED, incident))

        if not self.cluster_on_ingest:
            return IngestResult(incident)
        return self.cluster(incident)

    def cluster(self, incident: Incident) -> IngestResult:
        """Cluster an incident that is already persisted and record the outcome on its row."""
        if self.engine is None:
            return IngestResult(incident)
        try:
            cluster_id = self.engine.assign(incident)
        except ClusteringError as e:
            log.warning("Clustering deferred for incident %s: %s (%s)", incident.id, e, e.reason)
            flagged = self.store.update_incident(
                incident.id, cluster_id=None, needs_reconciliation=True
            )
            return IngestResult(flagged or incident, error=e)

        updated = self.store.update_incident(incident.id, cluster_id=cluster_id, needs_reconciliation=False)
        return IngestResult(updated or incident, cluster_id=cluster_id)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _has_flat_location(raw: Dict[str, Any], field: str) -> bool:
    if field != "location":
        return False
    return raw.get("location_lat") is not None and raw.get("location_lng") is not None
