import json
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from crimewatch.models.alert import Alert
from crimewatch.models.group import GroupMember, WatchGroup
from crimewatch.models.hotspot import Hotspot, HotspotStatus, SeverityRecord
from crimewatch.models.incident import Incident


def to_item(model) -> Dict[str, Any]:
    """
    pydantic model -> Dynamo item. Floats become Decimal (boto3 rejects float),
    datetimes become ISO strings, None attributes are dropped.
    """
    data = json.loads(model.model_dump_json(exclude_none=True), parse_float=Decimal)
    return data


def from_item(value: Any) -> Any:
    """Dynamo item -> plain python (Decimal -> int/float, recursively)."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_item(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_item(v) for v in value]
    return value


def _dynamo_value(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _scan_all(table, **kwargs) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    lek: Optional[Dict[str, Any]] = None
    while True:
        if lek:
            kwargs["ExclusiveStartKey"] = lek
        resp = table.scan(**kwargs)
        items.extend(resp.get("Items", []))
        lek = resp.get("LastEvaluatedKey")
        if not lek:
            break
    return items


def _query_all(table, **kwargs) -> List[Dict[str, Any]]:
    items: List[Dict[str, Any]] = []
    lek: Optional[Dict[str, Any]] = None
    while True:
        if lek:
            kwargs["ExclusiveStartKey"] = lek
        resp = table.query(**kwargs)
        items.extend(resp.get("Items", []))
        lek = resp.get("LastEvaluatedKey")
        if not lek:
            break
    return items


def _condition_failed(err: ClientError) -> bool:
    return err.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _set_fields(table, key: Dict[str, Any], fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    SET the given attributes on an existing item and return the new image.
    Returns None when the item does not exist.
    """
    names = {"#pk": next(iter(key))}
    values = {}
    parts = []
    for i, (name, value) in enumerate(fields.items()):
        names[f"#f{i}"] = name
        values[f":v{i}"] = _dynamo_value(value)
        parts.append(f"#f{i} = :v{i}")
    try:
        resp = table.update_item(
            Key=key,
            UpdateExpression="SET " + ", ".join(parts),
            ConditionExpression="attribute_exists(#pk)",
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            ReturnValues="ALL_NEW",
        )
    except ClientError as e:
        if _condition_failed(e):
            return None
        raise
    return resp.get("Attributes")


class DynamoStore:
    """
    Tables:
      Incidents         PK id
      Hotspots          PK id (Number)
      SeverityHistory   PK hotspot_id, SK timestamp (ISO8601)
      Alerts            PK id, GSI user-index on user_id
      WatchGroups       PK id
      WatchGroupMembers PK group_id, SK user_id
      Counters          PK name (atomic id counters)
    """

    def __init__(self, settings, resource=None):
        self.settings = settings
        dynamodb = resource or boto3.resource("dynamodb", region_name=settings.aws_region)
        self.incidents_table = dynamodb.Table(settings.incidents_table)
        self.hotspots_table = dynamodb.Table(settings.hotspots_table)
        self.history_table = dynamodb.Table(settings.severity_history_table)
        self.alerts_table = dynamodb.Table(settings.alerts_table)
        self.groups_table = dynamodb.Table(settings.groups_table)
        self.members_table = dynamodb.Table(settings.group_members_table)
        self.counters_table = dynamodb.Table(settings.counters_table)
        self.alerts_user_index = settings.alerts_user_index

    # ---------- incidents ----------

    def put_incident(self, incident: Incident) -> None:
        self.incidents_table.put_item(Item=to_item(incident))

    def insert_incident(self, incident: Incident) -> bool:
        """Conditional put; False when an incident with this id already exists."""
        try:
            self.incidents_table.put_item(
                Item=to_item(incident),
                ConditionExpression="attribute_not_exists(#id)",
                ExpressionAttributeNames={"#id": "id"},
            )
        except ClientError as e:
            if _condition_failed(e):
                return False
            raise
        return True

    def get_incident(self, incident_id: str) -> Optional[Incident]:
        item = self.incidents_table.get_item(Key={"id": incident_id}).get("Item")
        return Incident.model_validate(from_item(item)) if item else None

    def update_incident(self, incident_id: str, **fields) -> Optional[Incident]:
        item = _set_fields(self.incidents_table, {"id": incident_id}, fields)
        return Incident.model_validate(from_item(item)) if item else None

    def delete_incident(self, incident_id: str) -> bool:
        resp = self.incidents_table.delete_item(Key={"id": incident_id}, ReturnValues="ALL_OLD")
        return bool(resp.get("Attributes"))

    def list_incidents(self, limit: Optional[int] = None) -> List[Incident]:
        items = [Incident.model_validate(from_item(it)) for it in _scan_all(self.incidents_table)]
        items.sort(key=lambda i: i.timestamp, reverse=True)
        return items[:limit] if limit else items

    def list_unclustered(self) -> List[Incident]:
        return [i for i in self.list_incidents() if i.needs_reconciliation]

    # ---------- hotspots ----------

    def allocate_hotspot_id(self) -> int:
        """Atomic counter shared by every writer (ADD creates the item on first use)."""
        resp = self.counters_table.update_item(
            Key={"name": "hotspot_id"},
            UpdateExpression="ADD #v :one",
            ExpressionAttributeNames={"#v": "value"},
            ExpressionAttributeValues={":one": 1},
            ReturnValues="UPDATED_NEW",
        )
        return int(resp["Attributes"]["value"])

    def put_hotspot(self, hotspot: Hotspot) -> bool:
        """Write unless the stored row already carries this version or a newer one."""
        try:
            self.hotspots_table.put_item(
                Item=to_item(hotspot),
                ConditionExpression="attribute_not_exists(#id) OR attribute_not_exists(#ver) OR #ver < :ver",
                ExpressionAttributeNames={"#id": "id", "#ver": "version"},
                ExpressionAttributeValues={":ver": hotspot.version},
            )
        except ClientError as e:
            if _condition_failed(e):
                return False
            raise
        return True

    def get_hotspot(self, hotspot_id: int) -> Optional[Hotspot]:
        item = self.hotspots_table.get_item(Key={"id": int(hotspot_id)}).get("Item")
        return Hotspot.model_validate(from_item(item)) if item else None

    def delete_hotspot(self, hotspot_id: int, version: Optional[int] = None) -> bool:
        kwargs: Dict[str, Any] = {"Key": {"id": int(hotspot_id)}, "ReturnValues": "ALL_OLD"}
        if version is not None:
            kwargs.update(
                ConditionExpression="attribute_not_exists(#ver) OR #ver < :ver",
                ExpressionAttributeNames={"#ver": "version"},
                ExpressionAttributeValues={":ver": version},
            )
        try:
            resp = self.hotspots_table.delete_item(**kwargs)
        except ClientError as e:
            if _condition_failed(e):
                return False
            raise
        return bool(resp.get("Attributes"))

    def list_hotspots(self, include_dormant: bool = False) -> List[Hotspot]:
        items = [Hotspot.model_validate(from_item(it)) for it in _scan_all(self.hotspots_table)]
        if not include_dormant:
            items = [h for h in items if h.status == HotspotStatus.ACTIVE]
        return sorted(items, key=lambda h: (-h.severity_score, h.id))

    def add_severity_record(self, hotspot_id: int, severity: float, updated_by: Optional[str] = None) -> bool:
        """Add a single severity record for a hotspot."""
        ts_str = datetime.now(timezone.utc).isoformat()
        self.history_table.put_item(
            Item={
                "hotspot_id": int(hotspot_id),
                "timestamp": ts_str,
                "severity": Decimal(str(round(severity, 3))),
                "updated_by": updated_by or "system",
            }
        )
        return True

    def get_severity_history(self, hotspot_id: int, limit: int = 100) -> List[SeverityRecord]:
        """Return latest severity history for a hotspot, sorted by timestamp descending."""
        resp = self.history_table.query(
            KeyConditionExpression=Key("hotspot_id").eq(int(hotspot_id)),
            Limit=limit,
            ScanIndexForward=False,  # descending
        )
        return [SeverityRecord.model_validate(from_item(it)) for it in resp.get("Items", [])]

    # ---------- alerts ----------

    def put_alert(self, alert: Alert) -> None:
        self.alerts_table.put_item(Item=to_item(alert))

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        item = self.alerts_table.get_item(Key={"id": alert_id}).get("Item")
        return Alert.model_validate(from_item(item)) if item else None

    def list_alerts(self, user_id: str, unread_only: bool = False) -> List[Alert]:
        rows = _query_all(
            self.alerts_table,
            IndexName=self.alerts_user_index,
            KeyConditionExpression=Key("user_id").eq(user_id),
        )
        alerts = [Alert.model_validate(from_item(it)) for it in rows]
        if unread_only:
            alerts = [a for a in alerts if not a.is_read]
        return sorted(alerts, key=lambda a: a.created_at, reverse=True)

    def mark_alert_read(self, alert_id: str) -> Optional[Alert]:
        item = _set_fields(self.alerts_table, {"id": alert_id}, {"is_read": True})
        return Alert.model_validate(from_item(item)) if item else None

    def mark_all_read(self, user_id: str) -> int:
        count = 0
        for alert in self.list_alerts(user_id, unread_only=True):
            if _set_fields(self.alerts_table, {"id": alert.id}, {"is_read": True}):
                count += 1
        return count

    # ---------- neighbourhood watch ----------

    def put_group(self, group: WatchGroup) -> None:
        self.groups_table.put_item(Item=to_item(group))

    def get_group(self, group_id: str) -> Optional[WatchGroup]:
        item = self.groups_table.get_item(Key={"id": group_id}).get("Item")
        return WatchGroup.model_validate(from_item(item)) if item else None

    def list_groups(self) -> List[WatchGroup]:
        groups = [WatchGroup.model_validate(from_item(it)) for it in _scan_all(self.groups_table)]
        return sorted(groups, key=lambda g: g.created_at, reverse=True)

    def put_member(self, member: GroupMember) -> None:
        self.members_table.put_item(Item=to_item(member))

    def get_member(self, group_id: str, user_id: str) -> Optional[GroupMember]:
        item = self.members_table.get_item(Key={"group_id": group_id, "user_id": user_id}).get("Item")
        return GroupMember.model_validate(from_item(item)) if item else None

    def delete_member(self, group_id: str, user_id: str) -> bool:
        resp = self.members_table.delete_item(
            Key={"group_id": group_id, "user_id": user_id}, ReturnValues="ALL_OLD"
        )
        return bool(resp.get("Attributes"))

    def list_members(self, group_id: str) -> List[GroupMember]:
        rows = _query_all(self.members_table, KeyConditionExpression=Key("group_id").eq(group_id))
        return [GroupMember.model_validate(from_item(it)) for it in rows]
