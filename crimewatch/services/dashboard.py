from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, Optional

from crimewatch.models.incident import IncidentStatus, Severity
from crimewatch.services.severity import Clock, utc_now

RECENT_WINDOW = timedelta(days=7)


def dashboard_stats(store, *, clock: Optional[Clock] = None, recent_limit: int = 10) -> Dict[str, Any]:
    """Headline counts for the dashboard plus the most recent incidents."""
    now = (clock or utc_now)()
    incidents = store.list_incidents()
    week_ago = now - RECENT_WINDOW
    return {
        "total_incidents": len(incidents),
        "recent_incidents": sum(1 for i in incidents if i.timestamp >= week_ago),
        "critical_incidents": sum(
            1 for i in incidents if i.severity == Severity.CRITICAL and i.status != IncidentStatus.RESOLVED
        ),
        "resolved_incidents": sum(1 for i in incidents if i.status == IncidentStatus.RESOLVED),
        "latest": [i.model_dump(mode="json") for i in incidents[:recent_limit]],
    }
