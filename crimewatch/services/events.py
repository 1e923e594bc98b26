# services/events.py
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

log = logging.getLogger(__name__)

INCIDENT_INGESTED = "incident.ingested"
HOTSPOT_CREATED = "hotspot.created"
HOTSPOT_UPDATED = "hotspot.updated"
HOTSPOT_DORMANT = "hotspot.dormant"
HOTSPOT_REMOVED = "hotspot.removed"
ALERT_CREATED = "alert.created"

HOTSPOT_EVENTS = frozenset({HOTSPOT_CREATED, HOTSPOT_UPDATED, HOTSPOT_DORMANT, HOTSPOT_REMOVED})


@dataclass(frozen=True)
class Event:
    kind: str
    payload: Any
    previous_score: Optional[float] = None
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Handler = Callable[[Event], None]


class EventBus:
    """
    In-process change feed. Consumers (hotspot writer, alert dispatch, UI
    bridges) subscribe independently; nothing here knows about a transport.
    Handlers run synchronously on the publishing thread.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subs: List[Tuple[int, Handler, Optional[FrozenSet[str]]]] = []
        self._next = 0

    def subscribe(self, handler: Handler, kinds=None) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        wanted = frozenset(kinds) if kinds else None
        with self._lock:
            token = self._next
            self._next += 1
            self._subs.append((token, handler, wanted))

        def _unsubscribe() -> None:
            with self._lock:
                self._subs = [s for s in self._subs if s[0] != token]

        return _unsubscribe

    def publish(self, event: Event) -> int:
        """Deliver to every matching subscriber. Returns how many were called."""
        with self._lock:
            subs = list(self._subs)
        delivered = 0
        for _, handler, wanted in subs:
            if wanted is not None and event.kind not in wanted:
                continue
            try:
                handler(event)
            except Exception:
                # handler failures stay isolated from other subscribers
                log.exception("Event handler %r failed for %s", handler, event.kind)
            delivered += 1
        return delivered


class EventRecorder:
    """Subscriber that keeps the last N events; used by the API feed and tests."""

    def __init__(self, maxlen: int = 500):
        self.maxlen = maxlen
        self._events: List[Event] = []
        self._lock = threading.Lock()

    def __call__(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)
            if len(self._events) > self.maxlen:
                del self._events[: len(self._events) - self.maxlen]

    def events(self, kinds=None) -> List[Event]:
        with self._lock:
            items = list(self._events)
        if kinds:
            items = [e for e in items if e.kind in kinds]
        return items

    def as_dicts(self, kinds=None) -> List[Dict[str, Any]]:
        out = []
        for e in self.events(kinds):
            payload = e.payload.model_dump(mode="json") if hasattr(e.payload, "model_dump") else e.payload
            out.append({"kind": e.kind, "emitted_at": e.emitted_at.isoformat(), "payload": payload})
        return out
