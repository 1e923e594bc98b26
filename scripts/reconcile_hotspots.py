# scripts/reconcile_hotspots.py
"""
Periodic maintenance: drift re-partition, age-out, dormancy and retry of
unclustered incidents. Meant for a cron / scheduled task.

When CLUSTER_ON_INGEST=false the stream Lambda owns the clusters; schedule
it with {"action": "reconcile"} instead of running this script.
"""
import logging
import sys

from crimewatch.deps import build_services, load_registry


def main():
    logging.basicConfig(level=logging.INFO)
    services = build_services()
    if not services.settings.cluster_on_ingest:
        print("Clustering is owned by the stream worker; invoke it with {\"action\": \"reconcile\"}.")
        sys.exit(1)
    load_registry(services)
    report = services.hotspots.reconcile()
    print(f"Reconciled hotspots: {report.as_dict()}")


if __name__ == "__main__":
    main()
