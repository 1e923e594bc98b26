# crimewatch/deps.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from crimewatch.config import Settings, get_settings
from crimewatch.db import get_store
from crimewatch.services.alerts import AlertService, TopicPublisher
from crimewatch.services.clustering import ClusteringEngine
from crimewatch.services.events import EventBus, EventRecorder
from crimewatch.services.hotspots import HotspotService, HotspotWriter
from crimewatch.services.ingest import IncidentIngestor
from crimewatch.services.severity import Clock, SeverityScorer
from crimewatch.services.watch import WatchGroupService

log = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: object
    bus: EventBus
    feed: EventRecorder
    scorer: SeverityScorer
    engine: ClusteringEngine
    ingestor: IncidentIngestor
    hotspots: HotspotService
    groups: WatchGroupService
    alerts: AlertService


def build_services(
    settings: Optional[Settings] = None,
    *,
    store=None,
    clock: Optional[Clock] = None,
    publisher: Optional[TopicPublisher] = None,
) -> Services:
    """Wire store, event bus, engine and the subscribers around them."""
    settings = settings or get_settings()
    store = store if store is not None else get_store(settings)
    bus = EventBus()

    scorer = SeverityScorer.from_settings(settings, clock=clock)
    # cluster ids come from storage so separate processes never reuse one
    engine = ClusteringEngine.from_settings(settings, scorer, bus, id_source=store.allocate_hotspot_id)
    ingestor = IncidentIngestor(
        store,
        engine,
        bus,
        clock=clock,
        future_skew_s=settings.future_skew_s,
        cluster_on_ingest=settings.cluster_on_ingest,
    )
    groups = WatchGroupService(store)
    if publisher is None and settings.alerts_topic_arn:
        publisher = TopicPublisher(settings.alerts_topic_arn, region=settings.aws_region)
    alerts = AlertService(
        store,
        groups,
        up_threshold=settings.alert_up_threshold,
        down_threshold=settings.alert_down_threshold,
        min_jump=settings.alert_min_jump,
        incident_severity=settings.incident_alert_severity,
        publisher=publisher,
    )

    # subscription order = delivery order: persist first, then notify
    HotspotWriter(store).attach(bus)
    alerts.attach(bus)
    feed = EventRecorder()
    bus.subscribe(feed)

    log.info("Services ready (storage=%s, radius=%sm)", settings.storage_backend, settings.default_radius_m)
    return Services(
        settings=settings,
        store=store,
        bus=bus,
        feed=feed,
        scorer=scorer,
        engine=engine,
        ingestor=ingestor,
        hotspots=HotspotService(store, engine, ingestor),
        groups=groups,
        alerts=alerts,
    )


def load_registry(services: Services) -> int:
    """Rehydrate the in-memory cluster registry from stored hotspots."""
    hotspots = services.store.list_hotspots(include_dormant=True)
    if not hotspots:
        return 0
    incidents = {i.id: i for i in services.store.list_incidents()}
    return services.engine.load(hotspots, incidents)


def get_services(request: Request) -> Services:
    return request.app.state.services
