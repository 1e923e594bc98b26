from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from crimewatch.deps import Services, get_services
from crimewatch.services.hotspots import hotspot_payload

router = APIRouter(prefix="/hotspots", tags=["hotspots"])


@router.get("")
def list_hotspots(
    include_dormant: bool = Query(False, description="Also return retired hotspots"),
    min_lat: Optional[float] = Query(None, ge=-90, le=90),
    max_lat: Optional[float] = Query(None, ge=-90, le=90),
    min_lng: Optional[float] = Query(None, ge=-180, le=180),
    max_lng: Optional[float] = Query(None, ge=-180, le=180),
    services: Services = Depends(get_services),
):
    """
    Hotspots ordered by severity (highest first). Pass all four bbox params to
    restrict the result to the map viewport.
    """
    bbox = (min_lat, max_lat, min_lng, max_lng)
    if any(v is not None for v in bbox):
        if any(v is None for v in bbox):
            raise HTTPException(status_code=400, detail="Provide all of min_lat, max_lat, min_lng, max_lng.")
        rows = services.hotspots.in_bbox(min_lat, max_lat, min_lng, max_lng)
    else:
        rows = services.hotspots.list_hotspots(include_dormant=include_dormant)
    return {"hotspots": [hotspot_payload(h) for h in rows]}


@router.get("/nearby")
def nearby_hotspots(
    lat: float = Query(..., ge=-90, le=90, description="Latitude"),
    lng: float = Query(..., ge=-180, le=180, description="Longitude"),
    rings: int = Query(2, ge=0, le=10, description="H3 rings to search around the point"),
    services: Services = Depends(get_services),
):
    rows = services.hotspots.nearby(lat, lng, rings=rings)
    return {"hotspots": [hotspot_payload(h, include_boundary=True) for h in rows]}


@router.post("/reconcile")
def reconcile(services: Services = Depends(get_services)):
    """Run the drift / age-out / dormancy pass and retry unclustered incidents."""
    if not services.settings.cluster_on_ingest:
        # the stream handler owns the clusters; it runs reconciliation on its schedule
        raise HTTPException(status_code=409, detail="Clustering is handled by the stream worker.")
    report = services.hotspots.reconcile()
    return {"message": "reconciliation complete", **report.as_dict()}


@router.get("/{hotspot_id}")
def get_hotspot(hotspot_id: int, services: Services = Depends(get_services)):
    return hotspot_payload(services.hotspots.get_hotspot(hotspot_id), include_boundary=True)


@router.get("/{hotspot_id}/history")
def hotspot_history(
    hotspot_id: int,
    limit: int = Query(100, ge=1, le=1000),
    services: Services = Depends(get_services),
):
    history = services.hotspots.history(hotspot_id, limit=limit)
    return {"hotspot_id": hotspot_id, "history": [r.model_dump(mode="json") for r in history]}
