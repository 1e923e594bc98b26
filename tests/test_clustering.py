import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from conftest import JHB_A, JHB_B
from crimewatch.config import Settings
from crimewatch.db.memory import MemoryStore
from crimewatch.deps import build_services
from crimewatch.errors import LockTimeoutError, NoCapacityError
from crimewatch.models.hotspot import Hotspot, HotspotStatus
from crimewatch.models.incident import CrimeType, Severity
from crimewatch.services import events
from crimewatch.services.clustering import ClusteringEngine, ClusterRegistry
from crimewatch.services.geo import haversine_m
from crimewatch.services.hotspots import HotspotWriter, rebuild_hotspots

# metres along the equator per degree of longitude
M_PER_DEG = 111_194.93


def east(metres):
    return metres / M_PER_DEG


def drifted_cluster(engine, make_incident):
    """Cluster whose center walked east until its first member "a" lies outside the radius."""
    cid = engine.assign(make_incident("a", 0.0, 0.0))
    # each point is within 500 m of the moving center when it arrives
    for iid, metres in (("b", 450), ("c", 700), ("d", 850), ("e", 950)):
        assert engine.assign(make_incident(iid, 0.0, east(metres))) == cid
    return cid


class TestAssign:
    def test_nearby_incidents_share_a_cluster(self, engine, make_incident):
        a = make_incident("a", *JHB_A, type=CrimeType.THEFT, severity=Severity.HIGH)
        b = make_incident("b", *JHB_B, type=CrimeType.THEFT, severity=Severity.HIGH)
        assert haversine_m(*JHB_A, *JHB_B) < 100

        cid = engine.assign(a)
        assert engine.assign(b) == cid

        hs = engine.get(cid)
        assert hs.crime_count == 2
        assert hs.dominant_crime_type == CrimeType.THEFT
        assert sorted(hs.member_ids) == ["a", "b"]

    def test_far_incident_opens_new_cluster(self, engine, make_incident):
        engine.assign(make_incident("a", *JHB_A))
        far = make_incident("far", JHB_A[0] + 0.09, JHB_A[1], severity=Severity.HIGH)
        assert haversine_m(*JHB_A, far.location.lat, far.location.lng) > 9_000

        cid = engine.assign(far)
        hs = engine.get(cid)
        assert hs.crime_count == 1
        assert hs.severity_score == pytest.approx(4.0)  # one fresh "high" incident
        assert (hs.location_lat, hs.location_lng) == (far.location.lat, far.location.lng)
        assert hs.radius_meters == 500
        assert engine.active_count() == 2

    def test_centroid_is_mean_of_members(self, engine, make_incident):
        engine.assign(make_incident("a", 0.0, 0.0))
        cid = engine.assign(make_incident("b", 0.0, east(200)))
        engine.assign(make_incident("c", 0.0, east(400)))
        hs = engine.get(cid)
        assert hs.location_lat == pytest.approx(0.0)
        assert hs.location_lng == pytest.approx(east(200))

    def test_centroid_stays_within_radius_of_new_member(self, engine, make_incident):
        rng = random.Random(7)
        for i in range(150):
            lat = -26.20 + rng.uniform(-0.02, 0.02)
            lng = 28.04 + rng.uniform(-0.02, 0.02)
            cid = engine.assign(make_incident(f"i{i}", lat, lng))
            hs = engine.get(cid)
            assert haversine_m(lat, lng, hs.location_lat, hs.location_lng) <= hs.radius_meters

    def test_nearest_cluster_wins(self, make_incident, scorer):
        engine = ClusteringEngine(scorer, radius_m=1000)
        far = engine.assign(make_incident("far", 0.0, east(-1500)))
        near = engine.assign(make_incident("near", 0.0, east(100)))
        assert far < near
        # both in range (900 m and 700 m); distance beats the lower id
        assert engine.assign(make_incident("x", 0.0, east(-600))) == near

    def test_equidistant_tie_goes_to_lowest_id(self, make_incident, scorer):
        engine = ClusteringEngine(scorer, radius_m=2000)
        west_id = engine.assign(make_incident("w", 0.0, -0.01))
        east_id = engine.assign(make_incident("e", 0.0, 0.01))
        assert west_id < east_id
        assert engine.assign(make_incident("mid", 0.0, 0.0)) == west_id

    def test_boundary_distance_is_inclusive(self, make_incident, scorer):
        def distance(lat1, lng1, lat2, lng2):
            return 0.0 if (lat1, lng1) == (lat2, lng2) else 500.0

        engine = ClusteringEngine(scorer, radius_m=500, distance=distance)
        cid = engine.assign(make_incident("a", 0.0, 0.0))
        assert engine.assign(make_incident("b", 0.0, 1.0)) == cid

    def test_just_outside_boundary_opens_new_cluster(self, make_incident, scorer):
        def distance(lat1, lng1, lat2, lng2):
            return 0.0 if (lat1, lng1) == (lat2, lng2) else 500.001

        engine = ClusteringEngine(scorer, radius_m=500, distance=distance)
        cid = engine.assign(make_incident("a", 0.0, 0.0))
        assert engine.assign(make_incident("b", 0.0, 1.0)) != cid

    def test_reassigning_member_is_noop(self, engine, make_incident):
        inc = make_incident("a", *JHB_A)
        cid = engine.assign(inc)
        assert engine.assign(inc) == cid
        assert engine.get(cid).crime_count == 1

    def test_adding_critical_never_lowers_score(self, engine, make_incident):
        cid = engine.assign(make_incident("a", *JHB_A, severity=Severity.MEDIUM, age_days=20))
        before = engine.get(cid).severity_score
        engine.assign(make_incident("c", *JHB_B, severity=Severity.CRITICAL, age_days=200))
        assert engine.get(cid).severity_score >= before

    def test_rejects_non_positive_radius(self, scorer):
        with pytest.raises(ValueError):
            ClusteringEngine(scorer, radius_m=0)


class TestCapacity:
    def test_new_cluster_over_limit_raises(self, scorer, make_incident):
        engine = ClusteringEngine(scorer, radius_m=500, max_active_clusters=2)
        engine.assign(make_incident("a", 0.0, 0.0))
        engine.assign(make_incident("b", 0.0, 1.0))
        with pytest.raises(NoCapacityError) as exc:
            engine.assign(make_incident("c", 0.0, 2.0))
        assert exc.value.incident_id == "c"
        assert engine.active_count() == 2

    def test_joining_still_works_at_capacity(self, scorer, make_incident):
        engine = ClusteringEngine(scorer, radius_m=500, max_active_clusters=1)
        cid = engine.assign(make_incident("a", 0.0, 0.0))
        assert engine.assign(make_incident("b", 0.0, east(50))) == cid


class TestEvents:
    def test_created_then_updated(self, engine, recorder, make_incident):
        engine.assign(make_incident("a", *JHB_A))
        engine.assign(make_incident("b", *JHB_B))
        kinds = [e.kind for e in recorder.events()]
        assert kinds == [events.HOTSPOT_CREATED, events.HOTSPOT_UPDATED]
        created, updated = recorder.events()
        assert created.previous_score is None
        assert updated.previous_score == pytest.approx(created.payload.severity_score)
        assert updated.payload.crime_count == 2

    def test_subscribers_run_after_the_update_lock_is_released(self, scorer, bus, make_incident):
        registry = ClusterRegistry(lock_timeout_s=0.01, lock_retries=0)
        engine = ClusteringEngine(scorer, bus, radius_m=500, registry=registry)
        seen = []

        def takes_cluster_lock(event):
            with registry.locked(registry.get(event.payload.id)):
                seen.append(event.kind)

        bus.subscribe(takes_cluster_lock, kinds={events.HOTSPOT_CREATED, events.HOTSPOT_UPDATED})
        engine.assign(make_incident("a", *JHB_A))
        engine.assign(make_incident("b", *JHB_B))

        assert seen == [events.HOTSPOT_CREATED, events.HOTSPOT_UPDATED]

    def test_versions_increase_with_every_change(self, engine, recorder, make_incident):
        cid = engine.assign(make_incident("a", *JHB_A))
        engine.assign(make_incident("b", *JHB_B))
        engine.remove("a")
        engine.remove("b")
        assert [e.payload.version for e in recorder.events()] == [1, 2, 3, 4]
        assert recorder.events()[-1].kind == events.HOTSPOT_REMOVED
        assert {e.payload.id for e in recorder.events()} == {cid}

    def test_ids_from_shared_source(self, scorer, make_incident):
        issued = iter([7, 12])
        engine = ClusteringEngine(scorer, radius_m=500, registry=ClusterRegistry(id_source=lambda: next(issued)))
        assert engine.assign(make_incident("a", 0.0, 0.0)) == 7
        assert engine.assign(make_incident("b", 5.0, 5.0)) == 12


class TestRemove:
    def test_remove_member_recomputes(self, engine, recorder, make_incident):
        cid = engine.assign(make_incident("a", 0.0, 0.0))
        engine.assign(make_incident("b", 0.0, east(100)))
        assert engine.remove("b") == cid
        hs = engine.get(cid)
        assert hs.crime_count == 1
        assert hs.location_lng == pytest.approx(0.0)

    def test_removing_last_member_retires_cluster(self, engine, recorder, make_incident):
        cid = engine.assign(make_incident("a", 0.0, 0.0))
        engine.remove("a")
        assert engine.get(cid) is None
        assert recorder.events()[-1].kind == events.HOTSPOT_REMOVED

    def test_remove_unknown_incident(self, engine):
        assert engine.remove("nope") is None

    def test_remove_after_cluster_retired(self, scorer, make_incident):
        engine = ClusteringEngine(scorer, radius_m=500, dormancy_floor=0.5)
        engine.assign(make_incident("stale", 0.0, 0.0, severity=Severity.LOW, age_days=200))
        assert engine.reconcile().retired == 1
        assert engine.remove("stale") is None
        assert engine.active_count() == 0


class TestReconcile:
    def test_drifted_cluster_evicts_and_reassigns(self, engine, make_incident):
        cid = drifted_cluster(engine, make_incident)
        hs = engine.get(cid)
        assert haversine_m(0.0, 0.0, hs.location_lat, hs.location_lng) > 500

        report = engine.reconcile()

        assert report.drifted == 1
        assert report.moved["a"] not in (None, cid)
        assert engine.get(cid).crime_count == 4
        assert engine.get(report.moved["a"]).member_ids == ["a"]

    def test_age_out_drops_old_members(self, scorer, make_incident):
        engine = ClusteringEngine(scorer, radius_m=500, max_member_age_days=90)
        cid = engine.assign(make_incident("old", 0.0, 0.0, age_days=120))
        engine.assign(make_incident("new", 0.0, east(20)))

        report = engine.reconcile()

        assert report.aged_out == 1
        assert report.moved["old"] is None
        assert engine.get(cid).member_ids == ["new"]

    def test_low_score_cluster_goes_dormant(self, scorer, bus, recorder, make_incident):
        engine = ClusteringEngine(scorer, bus, radius_m=500, dormancy_floor=0.5)
        cid = engine.assign(make_incident("stale", 0.0, 0.0, severity=Severity.LOW, age_days=200))
        engine.assign(make_incident("fresh", 10.0, 10.0, severity=Severity.HIGH))

        report = engine.reconcile()

        assert report.retired == 1
        assert engine.get(cid) is None
        assert engine.active_count() == 1
        dormant = [e for e in recorder.events() if e.kind == events.HOTSPOT_DORMANT]
        assert len(dormant) == 1
        assert dormant[0].payload.status == HotspotStatus.DORMANT
        assert report.moved["stale"] is None
        assert engine.registry.cluster_of("stale") is None
        # a new report at the same spot opens a fresh cluster
        assert engine.assign(make_incident("again", 0.0, 0.0)) != cid

    def test_busy_cluster_is_skipped_and_evicted_members_still_placed(self, scorer, make_incident):
        registry = ClusterRegistry(lock_timeout_s=0.01, lock_retries=1, lock_backoff_s=0.0, sleep=lambda s: None)
        engine = ClusteringEngine(scorer, radius_m=500, registry=registry)
        cid = drifted_cluster(engine, make_incident)
        busy = engine.assign(make_incident("far", 10.0, 10.0))

        with registry.locked(registry.get(busy)):
            report = engine.reconcile()

        assert report.skipped == [busy]
        assert report.as_dict()["skipped_clusters"] == [busy]
        assert report.drifted == 1
        assert report.moved["a"] not in (None, cid, busy)
        assert registry.cluster_of("a") == report.moved["a"]
        assert engine.get(busy).member_ids == ["far"]

    def test_evicted_member_without_room_is_reported(self, scorer, make_incident):
        engine = ClusteringEngine(scorer, radius_m=500, max_active_clusters=1)
        cid = drifted_cluster(engine, make_incident)

        report = engine.reconcile()

        assert report.failed == ["a"]
        assert report.moved["a"] is None
        assert engine.registry.cluster_of("a") is None
        assert engine.get(cid).crime_count == 4

    def test_reconcile_rescores_with_current_time(self, engine, clock, make_incident):
        cid = engine.assign(make_incident("a", 0.0, 0.0, severity=Severity.CRITICAL))
        assert engine.get(cid).severity_score == pytest.approx(8.0)
        clock.advance(days=30)
        engine.reconcile()
        assert engine.get(cid).severity_score == pytest.approx(4.0)


class TestLoad:
    def test_rehydrate_from_snapshot(self, engine, scorer, make_incident):
        incidents = [
            make_incident("a", *JHB_A),
            make_incident("b", *JHB_B),
            make_incident("c", 10.0, 10.0),
        ]
        for inc in incidents:
            engine.assign(inc)
        snapshot = engine.snapshot()

        fresh = ClusteringEngine(scorer, radius_m=500)
        assert fresh.load(snapshot, {i.id: i for i in incidents}) == 2
        assert fresh.assign(make_incident("d", *JHB_A)) == snapshot[0].id
        new_id = fresh.assign(make_incident("e", -40.0, 100.0))
        assert new_id > max(h.id for h in snapshot)

    def test_dormant_rows_reserve_their_ids(self, scorer, make_incident):
        engine = ClusteringEngine(scorer, radius_m=500)
        engine.assign(make_incident("a", 0.0, 0.0))
        dormant = engine.snapshot()[0].model_copy(update={"id": 41, "status": HotspotStatus.DORMANT})

        fresh = ClusteringEngine(scorer, radius_m=500)
        assert fresh.load([dormant], {}) == 0
        assert fresh.assign(make_incident("b", 5.0, 5.0)) == 42


class TestConcurrency:
    def test_parallel_assign_keeps_every_member(self, scorer, make_incident):
        engine = ClusteringEngine(
            scorer,
            radius_m=500,
            registry=ClusterRegistry(lock_timeout_s=2.0, lock_retries=5, lock_backoff_s=0.001),
        )
        sites = [(0.0, 0.0), (1.0, 1.0), (-1.0, 2.0), (2.0, -1.0)]
        incidents = [
            make_incident(f"s{s}-{i}", lat + i * 1e-5, lng, severity=Severity.MEDIUM)
            for s, (lat, lng) in enumerate(sites)
            for i in range(50)
        ]
        random.Random(3).shuffle(incidents)

        with ThreadPoolExecutor(max_workers=8) as pool:
            ids = list(pool.map(engine.assign, incidents))

        snapshot = engine.snapshot()
        assert len(snapshot) == 4
        assert sorted(h.crime_count for h in snapshot) == [50, 50, 50, 50]
        assert len(set(ids)) == 4

    def test_busy_cluster_times_out_after_retries(self, scorer, make_incident):
        sleeps = []
        registry = ClusterRegistry(lock_timeout_s=0.01, lock_retries=2, lock_backoff_s=0.1, sleep=sleeps.append)
        engine = ClusteringEngine(scorer, radius_m=500, registry=registry)
        cid = engine.assign(make_incident("a", *JHB_A))

        with registry.locked(registry.get(cid)):
            with pytest.raises(LockTimeoutError) as exc:
                engine.assign(make_incident("b", *JHB_B))

        assert exc.value.cluster_id == cid
        assert exc.value.incident_id == "b"
        assert sleeps == [0.1, 0.2]
        # state untouched, and the lock is usable again
        assert engine.get(cid).crime_count == 1
        assert engine.assign(make_incident("b", *JHB_B)) == cid


def test_rebuild_from_stored_incidents(services, make_incident):
    for iid, (lat, lng) in {"a": JHB_A, "b": JHB_B, "c": (10.0, 10.0)}.items():
        services.store.put_incident(make_incident(iid, lat, lng))
    services.store.put_hotspot(stale_row(services))

    fresh = ClusteringEngine(services.scorer, radius_m=500)
    assert rebuild_hotspots(services.store, fresh) == 3

    rows = services.store.list_hotspots(include_dormant=True)
    assert sorted(h.crime_count for h in rows) == [1, 2]
    assert 99 not in {h.id for h in rows}
    assert services.store.get_incident("c").cluster_id is not None


def stale_row(services):
    # leftover row from an earlier run
    now = services.scorer.clock()
    return Hotspot(id=99, location_lat=0.0, location_lng=0.0, radius_meters=500, last_updated=now, created_at=now)


def test_stale_writer_cannot_overwrite_newer_row(services, make_incident):
    a, b, c = (make_incident(iid, *JHB_A) for iid in "abc")
    cid = services.engine.assign(a)

    # a second process that loaded the same row
    other = ClusteringEngine(services.scorer, radius_m=500)
    HotspotWriter(services.store).attach(other.bus)
    assert other.load(services.store.list_hotspots(), {"a": a}) == 1

    services.engine.assign(b)
    other.assign(c)

    row = services.store.get_hotspot(cid)
    assert row.version == 2
    assert sorted(row.member_ids) == ["a", "b"]


def test_dormant_members_lose_their_cluster_id(clock, make_incident):
    services = build_services(Settings(dormancy_floor=0.5), store=MemoryStore(), clock=clock)
    stale = make_incident("stale", 0.0, 0.0, severity=Severity.LOW, age_days=200)
    services.store.put_incident(stale)
    cid = services.ingestor.cluster(stale).cluster_id

    services.hotspots.reconcile()

    row = services.store.get_incident("stale")
    assert row.cluster_id is None
    assert row.needs_reconciliation is False
    assert services.store.get_hotspot(cid).status == HotspotStatus.DORMANT


def test_reconcile_flags_members_it_could_not_place(clock, make_incident):
    services = build_services(Settings(max_active_clusters=1), store=MemoryStore(), clock=clock)
    engine = services.engine
    cid = drifted_cluster(engine, make_incident)
    for iid in engine.get(cid).member_ids:
        services.store.put_incident(make_incident(iid, 0.0, 0.0).model_copy(update={"cluster_id": cid}))

    report = services.hotspots.reconcile()

    assert "a" in report.failed
    row = services.store.get_incident("a")
    assert row.cluster_id is None
    assert row.needs_reconciliation is True
