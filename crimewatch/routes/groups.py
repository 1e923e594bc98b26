from typing import Optional

from fastapi import APIRouter, Depends, Query

from crimewatch.deps import Services, get_services
from crimewatch.models.alert import CommunityAlertIn
from crimewatch.models.group import JoinBody, WatchGroupIn

router = APIRouter(prefix="/groups", tags=["groups"])


@router.get("")
def list_groups(
    user_id: Optional[str] = Query(None, description="Fill is_member / user_role for this user"),
    services: Services = Depends(get_services),
):
    return {"groups": [g.model_dump(mode="json") for g in services.groups.list_groups(user_id)]}


@router.post("", status_code=201)
def create_group(body: WatchGroupIn, services: Services = Depends(get_services)):
    return services.groups.create_group(body).model_dump(mode="json")


@router.post("/{group_id}/members", status_code=201)
def join_group(group_id: str, body: JoinBody, services: Services = Depends(get_services)):
    return services.groups.join(group_id, body.user_id).model_dump(mode="json")


@router.delete("/{group_id}/members/{user_id}", status_code=204)
def leave_group(group_id: str, user_id: str, services: Services = Depends(get_services)):
    services.groups.leave(group_id, user_id)
    return  # 204 No Content


@router.post("/{group_id}/alerts", status_code=201)
def post_community_alert(group_id: str, body: CommunityAlertIn, services: Services = Depends(get_services)):
    sent = services.alerts.post_community_alert(group_id, body.sender_id, body.title, body.message)
    return {"message": "community alert sent", "recipients": len(sent)}
