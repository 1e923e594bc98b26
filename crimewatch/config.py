# crimewatch/config.py
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal, Optional

from pydantic import BaseModel, Field

# --- Load .env early so os.getenv works everywhere ---
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else None


class Settings(BaseModel):
    # ---- clustering ----
    default_radius_m: int = Field(500, gt=0)
    max_active_clusters: int = Field(10_000, gt=0)
    drift_fraction: float = Field(0.5, gt=0)
    max_member_age_days: Optional[float] = Field(None, gt=0)
    dormancy_floor: float = Field(0.05, ge=0)
    dormancy_min_members: int = Field(1, ge=0)

    # ---- scoring ----
    half_life_days: float = Field(30.0, gt=0)
    decay_floor: float = Field(1e-3, gt=0, lt=1)
    score_cap: float = Field(10.0, gt=0)
    score_scale: Literal["linear", "log"] = "linear"
    score_saturation: float = Field(64.0, gt=0)

    # ---- per-cluster locking ----
    lock_timeout_s: float = Field(0.5, gt=0)
    lock_retries: int = Field(3, ge=0)
    lock_backoff_s: float = Field(0.05, ge=0)

    # ---- ingestion ----
    future_skew_s: float = Field(0.0, ge=0)
    cluster_on_ingest: bool = True

    # ---- alerts ----
    alert_up_threshold: float = 7.0
    alert_down_threshold: float = 5.0
    alert_min_jump: float = 1.0
    incident_alert_severity: Literal["low", "medium", "high", "critical"] = "critical"
    alerts_topic_arn: Optional[str] = None

    # ---- storage ----
    storage_backend: Literal["memory", "dynamodb"] = "memory"
    aws_region: str = "eu-north-1"
    incidents_table: str = "Incidents"
    hotspots_table: str = "Hotspots"
    alerts_table: str = "Alerts"
    alerts_user_index: str = "user-index"
    groups_table: str = "WatchGroups"
    group_members_table: str = "WatchGroupMembers"
    severity_history_table: str = "SeverityHistory"
    counters_table: str = "Counters"

    # ---- api ----
    api_prefix: str = ""
    cors_origins: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables (unset ones keep defaults)."""
        mapping = {
            "default_radius_m": "HOTSPOT_RADIUS_M",
            "max_active_clusters": "MAX_ACTIVE_CLUSTERS",
            "drift_fraction": "DRIFT_FRACTION",
            "dormancy_floor": "DORMANCY_FLOOR",
            "dormancy_min_members": "DORMANCY_MIN_MEMBERS",
            "half_life_days": "HALF_LIFE_DAYS",
            "decay_floor": "DECAY_FLOOR",
            "score_cap": "SCORE_CAP",
            "score_scale": "SCORE_SCALE",
            "score_saturation": "SCORE_SATURATION",
            "lock_timeout_s": "LOCK_TIMEOUT_S",
            "lock_retries": "LOCK_RETRIES",
            "lock_backoff_s": "LOCK_BACKOFF_S",
            "future_skew_s": "FUTURE_SKEW_S",
            "alert_up_threshold": "ALERT_UP_THRESHOLD",
            "alert_down_threshold": "ALERT_DOWN_THRESHOLD",
            "alert_min_jump": "ALERT_MIN_JUMP",
            "incident_alert_severity": "INCIDENT_ALERT_SEVERITY",
            "alerts_topic_arn": "ALERTS_TOPIC_ARN",
            "storage_backend": "STORAGE_BACKEND",
            "aws_region": "AWS_REGION",
            "incidents_table": "INCIDENTS_TABLE",
            "hotspots_table": "HOTSPOTS_TABLE",
            "alerts_table": "ALERTS_TABLE",
            "alerts_user_index": "ALERTS_USER_INDEX",
            "groups_table": "GROUPS_TABLE",
            "group_members_table": "GROUP_MEMBERS_TABLE",
            "severity_history_table": "SEVERITY_HISTORY_TABLE",
            "counters_table": "COUNTERS_TABLE",
            "cors_origins": "CORS_ORIGINS",
            "log_level": "LOG_LEVEL",
        }
        values = {}
        for field, env_name in mapping.items():
            raw = os.getenv(env_name)
            if raw is not None and raw.strip():
                values[field] = raw.strip()

        values["max_member_age_days"] = _env_optional_float("MAX_MEMBER_AGE_DAYS")
        values["cluster_on_ingest"] = _env_bool("CLUSTER_ON_INGEST", True)
        values["api_prefix"] = _normalize_prefix(os.getenv("API_PREFIX", ""))
        return cls(**values)


def _normalize_prefix(raw: str) -> str:
    prefix = raw.strip()
    if not prefix:
        return ""
    if not prefix.startswith("/"):
        prefix = "/" + prefix
    # avoid trailing slash so paths look like /api/hotspots (not //hotspots)
    return prefix.rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
