from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from crimewatch.deps import Services, get_services

router = APIRouter(tags=["events"])


@router.get("/events")
def recent_events(
    kind: Optional[List[str]] = Query(None, description="Filter by event kind, e.g. hotspot.updated"),
    services: Services = Depends(get_services),
):
    """Recent change feed (polling bridge for clients without a push channel)."""
    return {"events": services.feed.as_dicts(kinds=set(kind) if kind else None)}
