# scripts/rebuild_hotspots.py
"""
Recompute every hotspot from the full incidents table.

    STORAGE_BACKEND=dynamodb python scripts/rebuild_hotspots.py

Stop the stream worker first: this process becomes the only cluster writer.
"""
import logging

from crimewatch.deps import build_services
from crimewatch.services.clustering import ClusteringEngine
from crimewatch.services.hotspots import rebuild_hotspots


def main():
    logging.basicConfig(level=logging.INFO)
    services = build_services()
    # private bus: rebuilt hotspots are persisted without re-sending alerts
    engine = ClusteringEngine.from_settings(
        services.settings, services.scorer, id_source=services.store.allocate_hotspot_id
    )
    clustered = rebuild_hotspots(services.store, engine)
    print(f"Clustered {clustered} incidents into {engine.active_count()} hotspots.")


if __name__ == "__main__":
    main()
