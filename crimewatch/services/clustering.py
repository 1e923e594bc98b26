"""Spatial clustering: groups nearby incidents into hotspot clusters.

Greedy fixed-radius assignment: for each incident, find the nearest active
cluster whose center lies within the cluster radius (inclusive). If found,
join it; otherwise open a new cluster centered on the incident. The center is
the unweighted mean of every member location, so clusters drift as they grow.

Writers are serialized per cluster. The registry's own lock only guards the
cluster table (insert/remove/id allocation) and is never held while waiting
on a cluster lock.

Change events are queued on the cluster while its lock is held and delivered
after release, in queue order. Subscribers (storage, alerts, SNS) never run
under the update lock.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Deque, Dict, Iterable, Iterator, List, Optional, Tuple

from crimewatch.errors import ClusteringError, LockTimeoutError, NoCapacityError
from crimewatch.models.hotspot import Hotspot, HotspotStatus
from crimewatch.models.incident import CrimeType, Incident
from crimewatch.services import events
from crimewatch.services.geo import centroid, haversine_m
from crimewatch.services.h3_utils import point_to_hex
from crimewatch.services.severity import SeverityScorer

log = logging.getLogger(__name__)

DistanceFn = Callable[[float, float, float, float], float]

# How many times assign() re-scans when the chosen cluster moved or retired
# between the scan and taking its lock.
MAX_RESCANS = 5


@dataclass
class Cluster:
    id: int
    center: Tuple[float, float]
    radius_m: int
    created_at: datetime
    last_updated: datetime
    members: Dict[str, Incident] = field(default_factory=dict)
    # center at creation / last reconciliation; drift is measured from here
    anchor: Tuple[float, float] = (0.0, 0.0)
    score: float = 0.0
    dominant_type: Optional[CrimeType] = None
    active: bool = True
    # bumped on every emitted change; stores drop writes older than what they hold
    version: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    outbox: Deque[events.Event] = field(default_factory=deque, repr=False, compare=False)
    delivery: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def recompute_center(self) -> None:
        if self.members:
            self.center = centroid((m.location.lat, m.location.lng) for m in self.members.values())

    def to_hotspot(self) -> Hotspot:
        lat, lng = self.center
        return Hotspot(
            id=self.id,
            location_lat=lat,
            location_lng=lng,
            radius_meters=self.radius_m,
            crime_count=len(self.members),
            severity_score=self.score,
            dominant_crime_type=self.dominant_type,
            last_updated=self.last_updated,
            created_at=self.created_at,
            status=HotspotStatus.ACTIVE if self.active else HotspotStatus.DORMANT,
            zone_id=point_to_hex(lat, lng),
            member_ids=list(self.members),
            version=self.version,
        )


class ClusterRegistry:
    """
    Cluster table with one update lock per cluster.

    Ids come from `id_source` when given (a shared counter in storage, so
    separate processes never hand out the same id); otherwise from a local
    counter.
    """

    def __init__(
        self,
        *,
        lock_timeout_s: float = 0.5,
        lock_retries: int = 3,
        lock_backoff_s: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
        id_source: Optional[Callable[[], int]] = None,
    ):
        self.lock_timeout_s = lock_timeout_s
        self.lock_retries = lock_retries
        self.lock_backoff_s = lock_backoff_s
        self._sleep = sleep
        self._id_source = id_source
        self._table_lock = threading.Lock()
        self._clusters: Dict[int, Cluster] = {}
        self._member_of: Dict[str, int] = {}
        self._next_id = 1

    # ---------- table access (short critical sections) ----------

    @contextmanager
    def table(self) -> Iterator[None]:
        with self._table_lock:
            yield

    def active(self) -> List[Cluster]:
        with self._table_lock:
            return list(self._clusters.values())

    def active_count(self) -> int:
        with self._table_lock:
            return len(self._clusters)

    def get(self, cluster_id: int) -> Optional[Cluster]:
        with self._table_lock:
            return self._clusters.get(cluster_id)

    def cluster_of(self, incident_id: str) -> Optional[int]:
        with self._table_lock:
            return self._member_of.get(incident_id)

    def index(self, incident_id: str, cluster_id: int) -> None:
        with self._table_lock:
            self._member_of[incident_id] = cluster_id

    def unindex(self, incident_ids: Iterable[str]) -> None:
        with self._table_lock:
            for iid in incident_ids:
                self._member_of.pop(iid, None)

    def discard(self, cluster_id: int) -> None:
        with self._table_lock:
            self._clusters.pop(cluster_id, None)

    def new_id(self) -> int:
        """Next cluster id. Store-backed ids are fetched outside the table lock."""
        if self._id_source is not None:
            cid = int(self._id_source())
            self.reserve_ids_through(cid)
            return cid
        with self._table_lock:
            cid = self._next_id
            self._next_id += 1
            return cid

    # caller holds table()
    def _insert(self, cluster: Cluster) -> None:
        self._clusters[cluster.id] = cluster
        for iid in cluster.members:
            self._member_of[iid] = cluster.id
        self._next_id = max(self._next_id, cluster.id + 1)

    def reserve_ids_through(self, cluster_id: int) -> None:
        with self._table_lock:
            self._next_id = max(self._next_id, cluster_id + 1)

    # ---------- per-cluster write lock ----------

    @contextmanager
    def locked(self, cluster: Cluster, *, incident_id: Optional[str] = None) -> Iterator[None]:
        """
        Hold the update lock of one cluster.
        Each attempt waits lock_timeout_s; between attempts we back off
        exponentially. After lock_retries extra attempts -> LockTimeoutError.
        """
        attempts = self.lock_retries + 1
        for attempt in range(attempts):
            if cluster.lock.acquire(timeout=self.lock_timeout_s):
                try:
                    yield
                finally:
                    cluster.lock.release()
                return
            if attempt + 1 < attempts:
                delay = self.lock_backoff_s * (2 ** attempt)
                log.debug(
                    "Cluster %s busy (incident %s), retry %d/%d in %.3fs",
                    cluster.id, incident_id, attempt + 1, self.lock_retries, delay,
                )
                self._sleep(delay)

        log.error("Timed out waiting for cluster %s lock (incident %s)", cluster.id, incident_id)
        raise LockTimeoutError(
            f"cluster {cluster.id} is busy", incident_id=incident_id, cluster_id=cluster.id
        )


@dataclass
class ReconcileReport:
    clusters_checked: int = 0
    drifted: int = 0
    aged_out: int = 0
    retired: int = 0
    # incident id -> new cluster id (None when it left clustering or could not be placed)
    moved: Dict[str, Optional[int]] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)
    # clusters whose lock could not be taken; checked again on the next pass
    skipped: List[int] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "clusters_checked": self.clusters_checked,
            "drifted": self.drifted,
            "aged_out": self.aged_out,
            "retired": self.retired,
            "reassigned": sum(1 for v in self.moved.values() if v is not None),
            "failed": list(self.failed),
            "skipped_clusters": list(self.skipped),
        }


class ClusteringEngine:
    def __init__(
        self,
        scorer: SeverityScorer,
        bus: Optional[events.EventBus] = None,
        *,
        radius_m: int = 500,
        max_active_clusters: int = 10_000,
        drift_fraction: float = 0.5,
        max_member_age_days: Optional[float] = None,
        dormancy_floor: float = 0.05,
        dormancy_min_members: int = 1,
        registry: Optional[ClusterRegistry] = None,
        distance: DistanceFn = haversine_m,
    ):
        if radius_m <= 0:
            raise ValueError("radius_m must be positive")
        self.scorer = scorer
        self.bus = bus or events.EventBus()
        self.radius_m = radius_m
        self.max_active_clusters = max_active_clusters
        self.drift_fraction = drift_fraction
        self.max_member_age_days = max_member_age_days
        self.dormancy_floor = dormancy_floor
        self.dormancy_min_members = dormancy_min_members
        self.registry = registry or ClusterRegistry()
        self.distance = distance

    @classmethod
    def from_settings(
        cls,
        settings,
        scorer: SeverityScorer,
        bus: Optional[events.EventBus] = None,
        *,
        id_source: Optional[Callable[[], int]] = None,
    ) -> "ClusteringEngine":
        registry = ClusterRegistry(
            lock_timeout_s=settings.lock_timeout_s,
            lock_retries=settings.lock_retries,
            lock_backoff_s=settings.lock_backoff_s,
            id_source=id_source,
        )
        return cls(
            scorer,
            bus,
            radius_m=settings.default_radius_m,
            max_active_clusters=settings.max_active_clusters,
            drift_fraction=settings.drift_fraction,
            max_member_age_days=settings.max_member_age_days,
            dormancy_floor=settings.dormancy_floor,
            dormancy_min_members=settings.dormancy_min_members,
            registry=registry,
        )

    # ---------- queries ----------

    def get(self, cluster_id: int) -> Optional[Hotspot]:
        cluster = self.registry.get(cluster_id)
        return cluster.to_hotspot() if cluster else None

    def snapshot(self) -> List[Hotspot]:
        return [c.to_hotspot() for c in sorted(self.registry.active(), key=lambda c: c.id)]

    def active_count(self) -> int:
        return self.registry.active_count()

    # ---------- assignment ----------

    def _nearest(self, lat: float, lng: float, clusters: Iterable[Cluster]) -> Optional[Cluster]:
        best: Optional[Cluster] = None
        best_key: Optional[Tuple[float, int]] = None
        for c in clusters:
            clat, clng = c.center
            d = self.distance(lat, lng, clat, clng)
            if d > c.radius_m:
                continue
            key = (d, c.id)  # nearest first, then lowest id
            if best_key is None or key < best_key:
                best, best_key = c, key
        return best

    def assign(self, incident: Incident) -> int:
        """
        Place the incident in the nearest cluster within radius, or open a new
        one. Returns the cluster id. Re-assigning an incident that is already a
        member is a no-op returning its current cluster.
        """
        current = self.registry.cluster_of(incident.id)
        if current is not None:
            return current

        lat, lng = incident.location.lat, incident.location.lng
        for _ in range(MAX_RESCANS):
            candidate = self._nearest(lat, lng, self.registry.active())
            if candidate is None:
                created = self._create(incident)
                if created is not None:
                    return created
                continue  # someone opened a cluster nearby in the meantime

            with self.registry.locked(candidate, incident_id=incident.id):
                clat, clng = candidate.center
                if not candidate.active or self.distance(lat, lng, clat, clng) > candidate.radius_m:
                    continue
                self._join(candidate, incident)
            self._flush(candidate)
            return candidate.id

        raise LockTimeoutError(
            "nearby clusters kept changing during assignment", incident_id=incident.id
        )

    def _create(self, incident: Incident) -> Optional[int]:
        lat, lng = incident.location.lat, incident.location.lng
        now = self.scorer.clock()
        cluster_id = self.registry.new_id()
        with self.registry.table():
            # re-check under the table lock so two writers don't open twin clusters
            if self._nearest(lat, lng, self.registry._clusters.values()) is not None:
                return None
            if len(self.registry._clusters) >= self.max_active_clusters:
                log.warning(
                    "Cluster capacity reached (%d); incident %s left unclustered",
                    self.max_active_clusters, incident.id,
                )
                raise NoCapacityError(
                    f"active cluster limit {self.max_active_clusters} reached",
                    incident_id=incident.id,
                )
            cluster = Cluster(
                id=cluster_id,
                center=(lat, lng),
                anchor=(lat, lng),
                radius_m=self.radius_m,
                created_at=now,
                last_updated=now,
                members={incident.id: incident},
            )
            cluster.score, cluster.dominant_type = self.scorer.score(cluster, now)
            # queued before the cluster is visible, so "created" is always first
            self._emit(events.HOTSPOT_CREATED, cluster, previous_score=None)
            self.registry._insert(cluster)
        log.info("Opened cluster %s for incident %s", cluster.id, incident.id)
        self._flush(cluster)
        return cluster.id

    # caller holds the cluster lock
    def _join(self, cluster: Cluster, incident: Incident) -> None:
        previous = cluster.score
        cluster.members[incident.id] = incident
        self.registry.index(incident.id, cluster.id)
        cluster.recompute_center()
        self._rescore(cluster)
        log.debug("Incident %s joined cluster %s (%d members)", incident.id, cluster.id, len(cluster.members))
        self._emit(events.HOTSPOT_UPDATED, cluster, previous_score=previous)

    # caller holds the cluster lock
    def _rescore(self, cluster: Cluster, now: Optional[datetime] = None) -> None:
        now = now or self.scorer.clock()
        cluster.score, cluster.dominant_type = self.scorer.score(cluster, now)
        cluster.last_updated = now

    # caller holds the cluster lock
    def _emit(self, kind: str, cluster: Cluster, previous_score: Optional[float]) -> None:
        cluster.version += 1
        cluster.outbox.append(events.Event(kind, cluster.to_hotspot(), previous_score=previous_score))

    def _flush(self, cluster: Cluster) -> None:
        """Deliver queued events of one cluster, oldest first, outside its update lock."""
        with cluster.delivery:
            while cluster.outbox:
                self.bus.publish(cluster.outbox.popleft())

    # ---------- removal ----------

    def remove(self, incident_id: str) -> Optional[int]:
        """Drop an incident from its cluster. Empty clusters are retired."""
        cluster_id = self.registry.cluster_of(incident_id)
        cluster = self.registry.get(cluster_id) if cluster_id is not None else None
        if cluster is None:
            return None
        with self.registry.locked(cluster, incident_id=incident_id):
            if incident_id not in cluster.members:
                return None
            previous = cluster.score
            del cluster.members[incident_id]
            self.registry.unindex([incident_id])
            if not cluster.members:
                self._retire(cluster, events.HOTSPOT_REMOVED, previous)
            else:
                cluster.recompute_center()
                self._rescore(cluster)
                self._emit(events.HOTSPOT_UPDATED, cluster, previous_score=previous)
        self._flush(cluster)
        return cluster_id

    # caller holds the cluster lock
    def _retire(self, cluster: Cluster, kind: str, previous: Optional[float]) -> None:
        cluster.active = False
        self.registry.unindex(list(cluster.members))
        self.registry.discard(cluster.id)
        log.info("Retired cluster %s (%s, %d members)", cluster.id, kind, len(cluster.members))
        self._emit(kind, cluster, previous_score=previous)

    # ---------- reconciliation ----------

    def reconcile(self, now: Optional[datetime] = None) -> ReconcileReport:
        """
        Periodic pass over active clusters:
          - age out members older than max_member_age_days (if configured)
          - clusters whose center drifted more than drift_fraction * radius from
            their anchor evict members now outside the radius; those are
            re-assigned after the cluster lock is released
          - rescore with the current time and retire clusters whose member
            count or score fell under the dormancy floor
        A busy cluster is skipped and reported; the pass carries on.
        """
        now = now or self.scorer.clock()
        report = ReconcileReport()
        evicted: List[Incident] = []

        try:
            for cluster in self.registry.active():
                report.clusters_checked += 1
                try:
                    with self.registry.locked(cluster):
                        if cluster.active:
                            self._reconcile_cluster(cluster, now, report, evicted)
                except LockTimeoutError as e:
                    log.warning("Skipped cluster %s during reconciliation: %s", cluster.id, e)
                    report.skipped.append(cluster.id)
                    continue
                self._flush(cluster)
        finally:
            for inc in evicted:
                try:
                    report.moved[inc.id] = self.assign(inc)
                except ClusteringError as e:
                    log.warning("Could not re-assign incident %s after eviction: %s", inc.id, e)
                    report.moved[inc.id] = None
                    report.failed.append(inc.id)
        return report

    # caller holds the cluster lock
    def _reconcile_cluster(
        self, cluster: Cluster, now: datetime, report: ReconcileReport, evicted: List[Incident]
    ) -> None:
        previous = cluster.score
        dropped: List[str] = []

        if self.max_member_age_days is not None:
            for iid, inc in list(cluster.members.items()):
                age_days = (now - inc.timestamp).total_seconds() / 86400.0
                if age_days > self.max_member_age_days:
                    del cluster.members[iid]
                    dropped.append(iid)
                    report.moved[iid] = None
                    report.aged_out += 1
            if dropped:
                cluster.recompute_center()

        alat, alng = cluster.anchor
        clat, clng = cluster.center
        if self.distance(alat, alng, clat, clng) > self.drift_fraction * cluster.radius_m:
            report.drifted += 1
            for iid, inc in list(cluster.members.items()):
                if self.distance(inc.location.lat, inc.location.lng, clat, clng) > cluster.radius_m:
                    del cluster.members[iid]
                    dropped.append(iid)
                    evicted.append(inc)
            cluster.recompute_center()
            cluster.anchor = cluster.center

        self.registry.unindex(dropped)
        self._rescore(cluster, now)

        if len(cluster.members) < max(1, self.dormancy_min_members) or cluster.score < self.dormancy_floor:
            kind = events.HOTSPOT_REMOVED if not cluster.members else events.HOTSPOT_DORMANT
            # members of a dormant cluster leave clustering
            for iid in cluster.members:
                report.moved[iid] = None
            self._retire(cluster, kind, previous)
            report.retired += 1
        else:
            self._emit(events.HOTSPOT_UPDATED, cluster, previous_score=previous)

    # ---------- rehydration ----------

    def load(self, hotspots: Iterable[Hotspot], incidents: Dict[str, Incident]) -> int:
        """
        Rebuild the registry from persisted hotspots. Members missing from
        `incidents` are skipped. Returns the number of active clusters loaded.
        """
        loaded = 0
        now = self.scorer.clock()
        for hs in hotspots:
            self.registry.reserve_ids_through(hs.id)
            if hs.status != HotspotStatus.ACTIVE:
                continue
            members = {iid: incidents[iid] for iid in hs.member_ids if iid in incidents}
            if not members:
                continue
            cluster = Cluster(
                id=hs.id,
                center=(hs.location_lat, hs.location_lng),
                anchor=(hs.location_lat, hs.location_lng),
                radius_m=hs.radius_meters,
                created_at=hs.created_at,
                last_updated=hs.last_updated,
                members=members,
                version=hs.version,
            )
            cluster.score, cluster.dominant_type = self.scorer.score(cluster, now)
            with self.registry.table():
                self.registry._insert(cluster)
            loaded += 1
        log.info("Loaded %d active clusters", loaded)
        return loaded
