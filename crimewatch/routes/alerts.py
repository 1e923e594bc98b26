from fastapi import APIRouter, Depends, Query

from crimewatch.deps import Services, get_services

router = APIRouter(tags=["alerts"])


@router.get("/users/{user_id}/alerts")
def list_alerts(
    user_id: str,
    unread: bool = Query(False, description="Only unread alerts"),
    services: Services = Depends(get_services),
):
    alerts = services.alerts.list_alerts(user_id, unread_only=unread)
    return {"alerts": [a.model_dump(mode="json") for a in alerts]}


@router.post("/alerts/{alert_id}/read")
def mark_read(alert_id: str, services: Services = Depends(get_services)):
    return services.alerts.mark_read(alert_id).model_dump(mode="json")


@router.post("/users/{user_id}/alerts/read-all")
def mark_all_read(user_id: str, services: Services = Depends(get_services)):
    return {"updated": services.alerts.mark_all_read(user_id)}
