#!/usr/bin/env python3
"""
Report replication status from the local store.

Prints the sync checkpoint and incident counts per state without calling
the upstream API, for monitoring and alerting.

Usage:
    python scripts/sync_status.py [--config CONFIG_PATH] [--json]

Exit codes:
    0: Store readable
    1: Configuration error or store unavailable
"""

import argparse
import json
import sys

import structlog

from incident_sync.exceptions import StoreUnavailable
from incident_sync.storage.incident_store import IncidentStore
from incident_sync.utils.config_loader import ConfigLoader, ConfigurationError

log = structlog.stdlib.get_logger()


def collect_status(store: IncidentStore) -> dict:
    checkpoint = store.load_checkpoint()
    return {
        "checkpoint": checkpoint.isoformat() if checkpoint else None,
        "incident_count": store.count_incidents(),
        "by_state": store.count_by_state(),
    }


def main():
    parser = argparse.ArgumentParser(description="Incident replication status")
    parser.add_argument("--config", type=str, help="Path to configuration file", default=None)
    parser.add_argument("--json", action="store_true", help="Output JSON")
    args = parser.parse_args()

    try:
        config = ConfigLoader().load_config(args.config)
        store = IncidentStore(config.store.database_url)
        store.create_schema()
        status = collect_status(store)
    except (ConfigurationError, StoreUnavailable) as e:
        log.error("status_unavailable", error=str(e))
        print(f"Status unavailable: {e}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(status, indent=2))
    else:
        print(f"Checkpoint: {status['checkpoint'] or 'never synced'}")
        print(f"Incidents:  {status['incident_count']}")
        for state, count in sorted(status["by_state"].items()):
            print(f"  {state:<18} {count}")

    sys.exit(0)


if __name__ == "__main__":
    main()
