"""
Audit flywheel records

Prints an integrity report for launches, user tokens, configs and cycle
states. Read-only; use --reconcile to link completed launches afterwards.

Usage:
    python scripts/audit_flywheel_records.py [--reconcile] [--json]
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from loguru import logger

from config.logging import setup_logging
from flywheel.database.engine import dispose_engine
from flywheel.services.launches.audit import audit_integrity
from flywheel.services.launches.reconciler import reconcile


async def run_audit(fix: bool, as_json: bool) -> bool:
    """Print the report; returns True when no issues remain."""
    try:
        report = await audit_integrity()

        if fix and report.unlinked_completed_launches:
            logger.info(f"🔧 Reconciling {len(report.unlinked_completed_launches)} unlinked launch(es)...")
            stats = await reconcile()
            logger.info(f"Reconcile result: {stats.to_dict()}")
            report = await audit_integrity()

        if as_json:
            print(json.dumps(report.to_dict(), indent=2, default=str))
            return report.healthy

        logger.info("=" * 70)
        logger.info("FLYWHEEL DATABASE AUDIT")
        logger.info("=" * 70)
        logger.info(f"Launches by status: {report.launch_status_counts}")
        logger.info(f"User tokens: {report.user_tokens} (active: {report.active_tokens})")
        logger.info(f"Active flywheels: {report.active_flywheels}, paused: {report.paused_tokens}")
        logger.info(f"Audit events: {report.audit_event_counts}")

        if report.healthy:
            logger.info("✅ No integrity issues found")
        else:
            for name, ids in report.issues().items():
                logger.warning(f"⚠️ {name}: {len(ids)} -> {ids[:20]}")
        logger.info("=" * 70)

        return report.healthy
    finally:
        await dispose_engine()


def main():
    parser = argparse.ArgumentParser(description="Flywheel database integrity audit")
    parser.add_argument("--reconcile", action="store_true", help="Link unlinked completed launches")
    parser.add_argument("--json", action="store_true", help="Print the report as JSON")
    args = parser.parse_args()

    setup_logging()
    healthy = asyncio.run(run_audit(fix=args.reconcile, as_json=args.json))
    sys.exit(0 if healthy else 1)


if __name__ == "__main__":
    main()
