from __future__ import annotations

from typing import Dict, List, Optional


class CrimeWatchError(Exception):
    """Base class for all domain errors."""


class ValidationError(CrimeWatchError):
    """Bad incident submission. Raised before any state change."""

    def __init__(self, errors: List[Dict[str, str]]):
        self.errors = errors
        summary = "; ".join(f"{e['field']}: {e['message']}" for e in errors)
        super().__init__(summary or "invalid input")


class ClusteringError(CrimeWatchError):
    """Clustering-stage failure. Never rolls back a persisted incident."""

    reason = "clustering_failed"

    def __init__(self, message: str, *, incident_id: Optional[str] = None):
        self.incident_id = incident_id
        super().__init__(message)


class NoCapacityError(ClusteringError):
    reason = "no_capacity"


class LockTimeoutError(ClusteringError):
    reason = "lock_timeout"

    def __init__(self, message: str, *, incident_id: Optional[str] = None, cluster_id: Optional[int] = None):
        self.cluster_id = cluster_id
        super().__init__(message, incident_id=incident_id)


class NotFoundError(CrimeWatchError):
    pass


class PermissionDeniedError(CrimeWatchError):
    pass
