from datetime import timedelta

import pytest

from conftest import JHB_A, JHB_B
from crimewatch.db.memory import MemoryStore
from crimewatch.errors import ValidationError
from crimewatch.models.incident import CrimeType, IncidentStatus, Severity
from crimewatch.services import events
from crimewatch.services.clustering import ClusteringEngine, ClusterRegistry
from crimewatch.services.ingest import IncidentIngestor


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def ingestor(store, engine, bus, clock):
    return IncidentIngestor(store, engine, bus, clock=clock)


def fields_of(exc_info):
    return {e["field"] for e in exc_info.value.errors}


class TestNormalize:
    def test_valid_report_is_stored_and_clustered(self, ingestor, store, raw_report, recorder):
        result = ingestor.ingest(raw_report())

        inc = result.incident
        assert inc.id
        assert inc.status == IncidentStatus.PENDING
        assert inc.type == CrimeType.THEFT
        assert inc.severity == Severity.HIGH
        assert result.clustering == "assigned"
        assert store.get_incident(inc.id).cluster_id == result.cluster_id
        kinds = [e.kind for e in recorder.events()]
        assert kinds == [events.INCIDENT_INGESTED, events.HOTSPOT_CREATED]

    def test_missing_fields_listed_together(self, ingestor, store, raw_report):
        raw = raw_report()
        del raw["type"]
        raw["description"] = "   "
        with pytest.raises(ValidationError) as exc:
            ingestor.ingest(raw)
        assert fields_of(exc) == {"type", "description"}
        assert store.list_incidents() == []

    def test_out_of_range_latitude(self, ingestor, store, raw_report):
        with pytest.raises(ValidationError) as exc:
            ingestor.ingest(raw_report(location={"lat": 91.0, "lng": 28.0}))
        assert "location.lat" in fields_of(exc)
        assert store.list_incidents() == []

    def test_future_timestamp_rejected(self, ingestor, clock, raw_report):
        with pytest.raises(ValidationError) as exc:
            ingestor.ingest(raw_report(timestamp=(clock.now + timedelta(hours=1)).isoformat()))
        assert fields_of(exc) == {"timestamp"}

    def test_future_skew_tolerated(self, store, engine, clock, raw_report):
        ingestor = IncidentIngestor(store, engine, clock=clock, future_skew_s=120)
        ahead = clock.now + timedelta(seconds=60)
        result = ingestor.ingest(raw_report(timestamp=ahead.isoformat()))
        assert result.cluster_id is not None
        # creation time never precedes the reported time
        assert result.incident.timestamp == ahead
        assert result.incident.created_at == ahead
        assert store.get_incident(result.incident.id).created_at == ahead

    def test_duplicate_id_rejected_and_stored_row_kept(self, ingestor, store, engine, raw_report, recorder):
        first = ingestor.ingest(raw_report(id="x1"))
        store.update_incident("x1", status=IncidentStatus.RESOLVED)
        before = len(recorder.events())

        with pytest.raises(ValidationError) as exc:
            ingestor.ingest(raw_report(id="x1", location={"lat": 10.0, "lng": 10.0}, severity="low"))

        assert fields_of(exc) == {"id"}
        kept = store.get_incident("x1")
        assert kept.location == first.incident.location
        assert kept.severity == Severity.HIGH
        assert kept.status == IncidentStatus.RESOLVED
        assert kept.cluster_id == first.cluster_id
        assert engine.active_count() == 1
        assert len(recorder.events()) == before

    def test_unknown_type_rejected(self, ingestor, raw_report):
        with pytest.raises(ValidationError) as exc:
            ingestor.ingest(raw_report(type="Arson"))
        assert fields_of(exc) == {"type"}

    def test_unknown_severity_rejected(self, ingestor, raw_report):
        with pytest.raises(ValidationError) as exc:
            ingestor.ingest(raw_report(severity="extreme"))
        assert fields_of(exc) == {"severity"}

    def test_non_object_body(self, ingestor):
        with pytest.raises(ValidationError) as exc:
            ingestor.ingest(["not", "a", "dict"])
        assert fields_of(exc) == {"body"}

    @pytest.mark.parametrize(
        "raw_type, expected",
        [
            ("theft", CrimeType.THEFT),
            ("VEHICLE_CRIME", CrimeType.VEHICLE_CRIME),
            (" drug-related ", CrimeType.DRUG_RELATED),
        ],
    )
    def test_type_is_case_insensitive(self, ingestor, raw_report, raw_type, expected):
        assert ingestor.normalize(raw_report(type=raw_type)).type == expected

    def test_severity_is_case_insensitive(self, ingestor, raw_report):
        assert ingestor.normalize(raw_report(severity="CRITICAL")).severity == Severity.CRITICAL

    def test_flat_location_columns(self, ingestor, raw_report):
        raw = raw_report()
        del raw["location"]
        raw.update(location_lat=JHB_B[0], location_lng=JHB_B[1])
        inc = ingestor.normalize(raw)
        assert (inc.location.lat, inc.location.lng) == JHB_B

    def test_epoch_millis_and_zulu(self, ingestor, clock, raw_report):
        two_hours_ago = clock.now - timedelta(hours=2)
        by_ms = ingestor.normalize(raw_report(timestamp=int(two_hours_ago.timestamp() * 1000)))
        by_z = ingestor.normalize(raw_report(timestamp=two_hours_ago.strftime("%Y-%m-%dT%H:%M:%SZ")))
        assert by_ms.timestamp == by_z.timestamp == two_hours_ago

    def test_client_id_and_reporter_kept(self, ingestor, raw_report):
        inc = ingestor.normalize(raw_report(id="abc-123", reporter_id="u-9"))
        assert (inc.id, inc.reporter_id) == ("abc-123", "u-9")


class TestClusteringFailures:
    def test_no_capacity_keeps_incident_and_flags_it(self, store, bus, scorer, clock, raw_report, recorder):
        engine = ClusteringEngine(scorer, bus, radius_m=500, max_active_clusters=1)
        ingestor = IncidentIngestor(store, engine, bus, clock=clock)
        ingestor.ingest(raw_report(location={"lat": 10.0, "lng": 10.0}))

        result = ingestor.ingest(raw_report())

        assert result.cluster_id is None
        assert result.clustering == "deferred"
        assert result.as_dict()["warning"]["reason"] == "no_capacity"
        stored = store.get_incident(result.incident.id)
        assert stored is not None
        assert stored.needs_reconciliation is True
        assert store.list_unclustered() == [stored]
        # ingestion event was still delivered
        assert recorder.events(kinds={events.INCIDENT_INGESTED})[-1].payload.id == stored.id

    def test_lock_timeout_flags_incident(self, store, bus, scorer, clock, raw_report):
        registry = ClusterRegistry(lock_timeout_s=0.01, lock_retries=1, lock_backoff_s=0.0, sleep=lambda s: None)
        engine = ClusteringEngine(scorer, bus, radius_m=500, registry=registry)
        ingestor = IncidentIngestor(store, engine, bus, clock=clock)
        cid = ingestor.ingest(raw_report()).cluster_id

        with registry.locked(registry.get(cid)):
            result = ingestor.ingest(raw_report(location={"lat": JHB_B[0], "lng": JHB_B[1]}))

        assert result.as_dict()["warning"]["reason"] == "lock_timeout"
        assert store.get_incident(result.incident.id).needs_reconciliation is True
        assert engine.get(cid).crime_count == 1

    def test_clustering_can_be_left_to_stream(self, store, engine, clock, raw_report):
        ingestor = IncidentIngestor(store, engine, clock=clock, cluster_on_ingest=False)
        result = ingestor.ingest(raw_report())
        assert result.clustering == "pending"
        assert engine.active_count() == 0

        later = ingestor.cluster(store.get_incident(result.incident.id))
        assert later.cluster_id == 1
        assert store.get_incident(result.incident.id).cluster_id == 1
