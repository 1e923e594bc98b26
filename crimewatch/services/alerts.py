# services/alerts.py
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from crimewatch.errors import NotFoundError, PermissionDeniedError
from crimewatch.models.alert import Alert, AlertType
from crimewatch.models.hotspot import Hotspot
from crimewatch.models.incident import Incident, Severity
from crimewatch.services import events
from crimewatch.services.severity import severity_label
from crimewatch.services.watch import WatchGroupService

log = logging.getLogger(__name__)


# ----------------------------
# Formatters
# ----------------------------

def build_hotspot_alert_message(hotspot: Hotspot, prev_score: Optional[float] = None) -> str:
    arrow = ""
    if prev_score is not None:
        if hotspot.severity_score > prev_score:
            arrow = " (rising)"
        elif hotspot.severity_score < prev_score:
            arrow = " (falling)"

    parts = [
        f"Hotspot #{hotspot.id}",
        f"Risk: {severity_label(hotspot.severity_score)} {hotspot.severity_score:.1f}{arrow}",
        f"Incidents: {hotspot.crime_count}",
    ]
    if hotspot.dominant_crime_type:
        parts.append(f"Most common: {hotspot.dominant_crime_type.value}")
    return " | ".join(parts)


def build_incident_alert_message(incident: Incident) -> str:
    where = incident.location_address or f"{incident.location.lat:.4f}, {incident.location.lng:.4f}"
    return f"{incident.severity.value.capitalize()} {incident.type.value} reported near {where}"


# ----------------------------
# Decision helpers
# ----------------------------

def should_alert(
    prev_score: Optional[float],
    new_score: float,
    *,
    up_threshold: float = 7.0,
    down_threshold: float = 5.0,
    min_jump: float = 1.0,
) -> Tuple[bool, str]:
    """
    Basic hysteresis:
      - Fire if we crossed UP threshold and jumped by >= min_jump.
      - While still above DOWN threshold, fire again only if the score rose
        by >= min_jump since the last update.
      - Re-arm only after we go below DOWN threshold.

    Returns (decision, reason).
    """
    # No prior -> alert if we're already high
    if prev_score is None:
        return (new_score >= up_threshold, "no_prev_high" if new_score >= up_threshold else "no_prev_low")

    # Still high
    if prev_score >= up_threshold and new_score >= down_threshold:
        if new_score - prev_score >= min_jump:
            return (True, "rising")
        return (False, "still_high")

    # Just crossed up
    if prev_score < up_threshold <= new_score and (new_score - prev_score) >= min_jump:
        return (True, "crossed_up")

    return (False, "low_or_small_change")


# ----------------------------
# Publishers
# ----------------------------

class TopicPublisher:
    """Optional SNS fan-out of alert text (one message per alert batch)."""

    def __init__(self, topic_arn: str, *, region: Optional[str] = None, client=None):
        self.topic_arn = topic_arn
        self.sns = client or boto3.client("sns", region_name=region)

    def publish(self, message: str, *, subject: Optional[str] = None) -> str:
        resp = self.sns.publish(TopicArn=self.topic_arn, Message=message, Subject=subject or "CrimeWatch Alert")
        return resp["MessageId"]


class AlertService:
    """
    Turns incident and hotspot events into per-user alerts for members of the
    watch groups covering the location, plus community posts inside a group.
    """

    def __init__(
        self,
        store,
        groups: WatchGroupService,
        bus: Optional[events.EventBus] = None,
        *,
        up_threshold: float = 7.0,
        down_threshold: float = 5.0,
        min_jump: float = 1.0,
        incident_severity: Severity = Severity.CRITICAL,
        publisher: Optional[TopicPublisher] = None,
    ):
        self.store = store
        self.groups = groups
        self.bus = bus
        self.up_threshold = up_threshold
        self.down_threshold = down_threshold
        self.min_jump = min_jump
        self.incident_severity = Severity(incident_severity)
        self.publisher = publisher

    def attach(self, bus: events.EventBus) -> None:
        self.bus = bus
        bus.subscribe(self.on_hotspot_event, kinds={events.HOTSPOT_CREATED, events.HOTSPOT_UPDATED})
        bus.subscribe(self.on_incident_ingested, kinds={events.INCIDENT_INGESTED})

    # ---------- event handlers ----------

    def on_hotspot_event(self, event: events.Event) -> None:
        hotspot: Hotspot = event.payload
        ok, reason = should_alert(
            event.previous_score,
            hotspot.severity_score,
            up_threshold=self.up_threshold,
            down_threshold=self.down_threshold,
            min_jump=self.min_jump,
        )
        if not ok:
            return
        recipients = self.groups.recipients_near(
            hotspot.location_lat, hotspot.location_lng, extra_radius_m=hotspot.radius_meters
        )
        log.info("Hotspot %s alert (%s) to %d users", hotspot.id, reason, len(recipients))
        self._send(
            recipients,
            title=f"{severity_label(hotspot.severity_score)}-risk hotspot in your area",
            message=build_hotspot_alert_message(hotspot, event.previous_score),
            alert_type=AlertType.HOTSPOT,
            hotspot_id=hotspot.id,
        )

    def on_incident_ingested(self, event: events.Event) -> None:
        incident: Incident = event.payload
        if incident.severity.rank < self.incident_severity.rank:
            return
        recipients = self.groups.recipients_near(incident.location.lat, incident.location.lng)
        recipients.discard(incident.reporter_id)
        self._send(
            recipients,
            title=f"{incident.type.value} reported nearby",
            message=build_incident_alert_message(incident),
            alert_type=AlertType.INCIDENT,
            incident_id=incident.id,
        )

    # ---------- community posts ----------

    def post_community_alert(self, group_id: str, sender_id: str, title: str, message: str) -> List[Alert]:
        group = self.groups.get_group(group_id)
        if self.groups.role_of(group_id, sender_id) is None:
            raise PermissionDeniedError(f"user {sender_id} is not a member of group {group_id}")
        recipients = {m.user_id for m in self.store.list_members(group_id)}
        recipients.discard(sender_id)
        return self._send(
            recipients,
            title=f"[{group.name}] {title}",
            message=message,
            alert_type=AlertType.COMMUNITY,
        )

    # ---------- inbox ----------

    def list_alerts(self, user_id: str, unread_only: bool = False) -> List[Alert]:
        return self.store.list_alerts(user_id, unread_only=unread_only)

    def mark_read(self, alert_id: str) -> Alert:
        alert = self.store.mark_alert_read(alert_id)
        if alert is None:
            raise NotFoundError(f"alert {alert_id} not found")
        return alert

    def mark_all_read(self, user_id: str) -> int:
        return self.store.mark_all_read(user_id)

    # ---------- internals ----------

    def _send(
        self,
        recipients,
        *,
        title: str,
        message: str,
        alert_type: AlertType,
        incident_id: Optional[str] = None,
        hotspot_id: Optional[int] = None,
    ) -> List[Alert]:
        now = datetime.now(timezone.utc)
        created = []
        for user_id in sorted(recipients):
            alert = Alert(
                id=str(uuid.uuid4()),
                user_id=user_id,
                incident_id=incident_id,
                hotspot_id=hotspot_id,
                title=title,
                message=message,
                alert_type=alert_type,
                created_at=now,
            )
            self.store.put_alert(alert)
            created.append(alert)
            if self.bus is not None:
                self.bus.publish(events.Event(events.ALERT_CREATED, alert))

        if created and self.publisher is not None:
            try:
                self.publisher.publish(f"{title} | {message}")
            except (BotoCoreError, ClientError):
                log.exception("SNS publish failed for %s alert", alert_type.value)
        return created
