from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from crimewatch.deps import Services, get_services
from crimewatch.models.incident import StatusUpdate
from crimewatch.services.dashboard import dashboard_stats

router = APIRouter(tags=["incident"])


@router.post("/incidents", status_code=201)
def report_incident(payload: Any = Body(...), services: Services = Depends(get_services)):
    """
    Accept the report form payload (type, description, location, severity,
    timestamp, optional reporter_id / location_address), store it and place it
    in a hotspot. Clustering problems come back as a warning; the incident is
    stored either way.
    """
    return services.ingestor.ingest(payload).as_dict()


@router.get("/incidents")
def list_incidents(
    limit: int = Query(50, ge=1, le=1000, description="Newest first"),
    services: Services = Depends(get_services),
):
    return {"incidents": [i.model_dump(mode="json") for i in services.store.list_incidents(limit=limit)]}


@router.get("/incidents/{incident_id}")
def get_incident(incident_id: str, services: Services = Depends(get_services)):
    incident = services.store.get_incident(incident_id)
    if incident is None:
        raise HTTPException(status_code=404, detail="Incident not found.")
    return incident.model_dump(mode="json")


@router.patch("/incidents/{incident_id}/status")
def update_status(incident_id: str, body: StatusUpdate, services: Services = Depends(get_services)):
    """Moderation hook: status changes never touch clustering."""
    updated = services.store.update_incident(incident_id, status=body.status)
    if updated is None:
        raise HTTPException(status_code=404, detail="Incident not found.")
    return updated.model_dump(mode="json")


@router.get("/dashboard/stats", tags=["dashboard"])
def stats(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return dashboard_stats(services.store, clock=services.scorer.clock)
