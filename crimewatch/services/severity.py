from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Optional, Tuple

from crimewatch.models.incident import CrimeType, Incident, Severity

# Nominal weight per reported severity
SEVERITY_WEIGHTS: Dict[Severity, float] = {
    Severity.LOW: 1.0,
    Severity.MEDIUM: 2.0,
    Severity.HIGH: 4.0,
    Severity.CRITICAL: 8.0,
}
DEFAULT_HALF_LIFE_DAYS = 30.0
DEFAULT_DECAY_FLOOR = 1e-3
SCORE_CAP = 10.0

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def severity_weight(severity: Severity) -> float:
    return SEVERITY_WEIGHTS[Severity(severity)]


def recency_decay(
    age_days: float,
    half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
    floor: float = DEFAULT_DECAY_FLOOR,
) -> float:
    """
    Exponential decay based on how many days old the incident is.
    Never drops below `floor`, so ancient incidents fade instead of vanishing.
    """
    age_days = max(0.0, age_days)
    # protect against zero/negative half-life
    decay = 0.5 ** (age_days / max(1e-6, float(half_life_days)))
    return max(floor, decay)


def severity_label(score: float) -> str:
    if score >= 8:
        return "Critical"
    if score >= 5:
        return "High"
    if score >= 3:
        return "Medium"
    return "Low"


def categorize_score(score: float) -> str:
    """
    Convert a numeric score into a map colour.
    """
    if score >= 8:
        return "#DC2626"
    if score >= 5:
        return "#EA580C"
    if score >= 3:
        return "#EAB308"
    return "#16A34A"


class SeverityScorer:
    """
    Recency-weighted risk score for a cluster.

    Scoring is a pure function of the member incidents and the reference time:
    weight = severity weight x recency decay, score = sum of weights mapped onto
    [0, cap]. There is no accumulator between calls, so scoring the same members
    at the same `now` always returns the same result.
    """

    def __init__(
        self,
        *,
        half_life_days: float = DEFAULT_HALF_LIFE_DAYS,
        decay_floor: float = DEFAULT_DECAY_FLOOR,
        cap: float = SCORE_CAP,
        scale: str = "linear",
        saturation: float = 64.0,
        clock: Optional[Clock] = None,
    ):
        if scale not in ("linear", "log"):
            raise ValueError(f"unknown score scale {scale!r}")
        self.half_life_days = half_life_days
        self.decay_floor = decay_floor
        self.cap = cap
        self.scale = scale
        self.saturation = saturation
        self.clock = clock or utc_now

    @classmethod
    def from_settings(cls, settings, clock: Optional[Clock] = None) -> "SeverityScorer":
        return cls(
            half_life_days=settings.half_life_days,
            decay_floor=settings.decay_floor,
            cap=settings.score_cap,
            scale=settings.score_scale,
            saturation=settings.score_saturation,
            clock=clock,
        )

    def incident_weight(self, incident: Incident, now: Optional[datetime] = None) -> float:
        now = now or self.clock()
        age_days = (now - incident.timestamp).total_seconds() / 86400.0
        return severity_weight(incident.severity) * recency_decay(
            age_days, self.half_life_days, self.decay_floor
        )

    def scale_total(self, total: float) -> float:
        if total <= 0:
            return 0.0
        if self.scale == "log":
            return min(self.cap, self.cap * math.log1p(total) / math.log1p(self.saturation))
        return min(total, self.cap)

    def score_incidents(
        self, incidents: Iterable[Incident], now: Optional[datetime] = None
    ) -> Tuple[float, Optional[CrimeType]]:
        """
        Sum up (weight x decay) for all incidents and pick the dominant type.
        Dominant type ties go to the type seen most recently.
        """
        now = now or self.clock()
        total = 0.0
        by_type: Dict[CrimeType, float] = {}
        latest: Dict[CrimeType, datetime] = {}
        for inc in incidents:
            w = self.incident_weight(inc, now)
            total += w
            by_type[inc.type] = by_type.get(inc.type, 0.0) + w
            if inc.type not in latest or inc.timestamp > latest[inc.type]:
                latest[inc.type] = inc.timestamp

        dominant = None
        if by_type:
            # name is the last resort so equal weight + equal time stays deterministic
            dominant = max(by_type, key=lambda t: (by_type[t], latest[t], t.value))
        return self.scale_total(total), dominant

    def score(self, cluster, now: Optional[datetime] = None) -> Tuple[float, Optional[CrimeType]]:
        return self.score_incidents(cluster.members.values(), now)
