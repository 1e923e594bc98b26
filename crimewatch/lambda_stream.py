# crimewatch/lambda_stream.py
"""
DynamoDB Streams handler for the Incidents table.

INSERT  -> place the incident in a hotspot (the row is already persisted)
REMOVE  -> drop it from its hotspot
MODIFY  -> ignored (status moderation does not affect clustering)

A scheduled invocation ({"action": "reconcile"}, e.g. an EventBridge rule)
runs the reconciliation pass in the same container.

Deploy with CLUSTER_ON_INGEST=false and reserved concurrency 1: the API only
writes incidents and this function is the one process that mutates clusters.
Hotspot ids come from the Counters table and hotspot rows are version-guarded,
so a stale container can never overwrite newer rows.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from boto3.dynamodb.types import TypeDeserializer

from crimewatch.db.dynamo import from_item
from crimewatch.deps import Services, build_services, load_registry
from crimewatch.errors import LockTimeoutError
from crimewatch.models.incident import Incident

log = logging.getLogger(__name__)

_deserializer = TypeDeserializer()
_services: Optional[Services] = None


def _get_services() -> Services:
    # one registry per warm container, rebuilt from the hotspots table on cold start
    global _services
    if _services is None:
        _services = build_services()
        load_registry(_services)
    return _services


def _image(ddb: Dict[str, Any], name: str) -> Dict[str, Any]:
    raw = ddb.get(name) or {}
    return from_item({k: _deserializer.deserialize(v) for k, v in raw.items()})


def process_records(services: Services, records) -> Dict[str, int]:
    clustered = removed = skipped = 0
    for rec in records:
        if rec.get("eventSource") != "aws:dynamodb":
            continue
        name = rec.get("eventName")
        ddb = rec.get("dynamodb", {}) or {}

        if name == "INSERT":
            incident = Incident.model_validate(_image(ddb, "NewImage"))
            result = services.ingestor.cluster(incident)
            if result.cluster_id is not None:
                clustered += 1
            elif isinstance(result.error, LockTimeoutError):
                # let Lambda retry the batch instead of leaving the row flagged
                raise result.error
            else:
                skipped += 1
        elif name == "REMOVE":
            incident_id = _image(ddb, "OldImage").get("id") or _image(ddb, "Keys").get("id")
            if incident_id and services.engine.remove(incident_id) is not None:
                removed += 1
        else:
            skipped += 1

    return {"clustered": clustered, "removed": removed, "skipped": skipped}


def handler(event, context):
    """
    Lambda entrypoint. Idempotent for redelivered INSERTs: an incident that is
    already a member keeps its cluster.
    """
    event = event or {}
    services = _get_services()
    if event.get("action") == "reconcile":
        report = services.hotspots.reconcile()
        log.info("Scheduled reconciliation: %s", report.as_dict())
        return report.as_dict()

    out = process_records(services, event.get("Records", []))
    log.info("Stream batch processed: %s", out)
    return out
