#!/usr/bin/env python3
"""
Scheduled synchronization script for the incident sync engine.

Runs exactly one synchronization cycle:
- Lists incidents updated since the stored checkpoint
- Skips incidents already stored in a terminal state
- Hydrates and reconciles the rest within the quota budget
- Advances the checkpoint past what was durably stored

Designed to be run on a schedule (cron, systemd timer, Airflow). A quota
exhausted cycle exits 0: the next run resumes from the same checkpoint.

Usage:
    python scripts/scheduled_sync.py [--config CONFIG_PATH] [--force-refresh ID ...] [--json]

Exit codes:
    0: Cycle completed (possibly early on quota or cancellation)
    1: Configuration error or local store unavailable
"""

import argparse
import json
import signal
import sys

import structlog

from incident_sync.exceptions import StoreUnavailable
from incident_sync.sync.models import CycleResult
from incident_sync.sync.sync_coordinator import SyncOrchestrator
from incident_sync.utils.config_loader import ConfigLoader, ConfigurationError
from incident_sync.utils.logging_config import configure_logging

log = structlog.stdlib.get_logger()


def perform_sync(config_path: str | None = None, force_refresh: list[str] | None = None) -> CycleResult:
    """
    Build the engine from configuration and run one cycle.

    SIGINT and SIGTERM cancel the cycle cooperatively: no new upstream calls
    are made, but details already fetched are still written.

    Raises:
        ConfigurationError: If configuration cannot be loaded
        StoreUnavailable: If the local store fails during the cycle
    """
    config = ConfigLoader().load_config(config_path)
    configure_logging(
        log_level=config.logging.log_level,
        json_logs=config.logging.json_logs,
        log_file=config.logging.log_file,
    )
    ConfigLoader().validate_config(config)

    orchestrator = SyncOrchestrator.from_config(config)
    for incident_id in force_refresh or []:
        orchestrator.immutability_filter.force_refresh(incident_id)

    def _handle_signal(signum, frame):
        log.warning("shutdown_signal_received", signal=signum)
        orchestrator.cancel()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        return orchestrator.run_cycle()
    finally:
        orchestrator.close()


def print_summary(result: CycleResult) -> None:
    print("\n" + "=" * 60)
    print("SYNCHRONIZATION SUMMARY")
    print("=" * 60)
    print(f"Listed:      {result.items_listed}")
    print(f"Skipped:     {result.items_skipped} (terminal)")
    print(f"Hydrated:    {result.items_hydrated}")
    print(f"Reconciled:  {result.items_reconciled}")
    print(f"Failed:      {result.items_failed}")
    print(f"Quota exhausted: {'yes' if result.quota_exhausted else 'no'}")
    if result.cancelled:
        print("Cancelled:   yes")
    checkpoint = result.checkpoint_advanced_to
    print(f"Checkpoint:  {checkpoint.isoformat() if checkpoint else 'unchanged'}")
    print(f"Duration:    {result.duration_seconds:.2f} seconds")
    for error in result.errors[:10]:
        print(f"  ! {error}")
    if len(result.errors) > 10:
        print(f"  ... {len(result.errors) - 10} more")
    print("=" * 60)


def main():
    """Main entry point for scheduled sync script."""
    parser = argparse.ArgumentParser(description="Run one incident synchronization cycle")
    parser.add_argument("--config", type=str, help="Path to configuration file", default=None)
    parser.add_argument(
        "--force-refresh",
        nargs="*",
        default=[],
        metavar="INCIDENT_ID",
        help="Re-fetch these incidents even if stored as terminal",
    )
    parser.add_argument("--json", action="store_true", help="Print the cycle result as JSON")
    args = parser.parse_args()

    try:
        result = perform_sync(config_path=args.config, force_refresh=args.force_refresh)
    except ConfigurationError as e:
        log.error("configuration_error", error=str(e))
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    except StoreUnavailable as e:
        print(f"Local store unavailable: {e}", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        print_summary(result)

    sys.exit(0)


if __name__ == "__main__":
    main()
