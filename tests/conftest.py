from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from crimewatch.config import Settings
from crimewatch.db.memory import MemoryStore
from crimewatch.deps import build_services
from crimewatch.main import create_app
from crimewatch.models.incident import CrimeType, GeoPoint, Incident, Severity
from crimewatch.services.clustering import ClusteringEngine
from crimewatch.services.events import EventBus, EventRecorder
from crimewatch.services.severity import SeverityScorer

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

# Johannesburg CBD, ~80 m apart
JHB_A = (-26.2041, 28.0473)
JHB_B = (-26.2045, 28.0480)


class FixedClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def make_incident(clock):
    def _make(
        incident_id,
        lat,
        lng,
        *,
        type=CrimeType.THEFT,
        severity=Severity.HIGH,
        age_days=0.0,
        reporter_id="reporter",
    ):
        ts = clock.now - timedelta(days=age_days)
        return Incident(
            id=incident_id,
            reporter_id=reporter_id,
            type=type,
            description=f"{type.value} near {lat},{lng}",
            location=GeoPoint(lat=lat, lng=lng),
            severity=severity,
            timestamp=ts,
            created_at=clock.now,
        )

    return _make


@pytest.fixture
def raw_report(clock):
    def _raw(**overrides):
        data = {
            "type": "Theft",
            "description": "Phone snatched at the taxi rank",
            "location": {"lat": JHB_A[0], "lng": JHB_A[1]},
            "severity": "high",
            "timestamp": (clock.now - timedelta(hours=2)).isoformat(),
            "reporter_id": "reporter",
        }
        data.update(overrides)
        return data

    return _raw


@pytest.fixture
def scorer(clock):
    return SeverityScorer(clock=clock)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def recorder(bus):
    rec = EventRecorder()
    bus.subscribe(rec)
    return rec


@pytest.fixture
def engine(scorer, bus):
    return ClusteringEngine(scorer, bus, radius_m=500)


@pytest.fixture
def settings():
    return Settings(lock_timeout_s=0.05, lock_backoff_s=0.0)


@pytest.fixture
def services(settings, clock):
    return build_services(settings, store=MemoryStore(), clock=clock)


@pytest.fixture
def client(services):
    return TestClient(create_app(services))
