"""
Script to backfill activity locations from the command line

This script will:
1. Geolocate every pending activity of the given servers
2. Run anomaly detection for each newly located activity
3. Rebuild the fingerprints of every user on those servers

Tasks go through the local task runner, so a backfill already running for a
server (e.g. started from the API) is not started twice.
"""

import sys
import os
import logging
import argparse
from tqdm import tqdm

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from dotenv import load_dotenv

# Load environment variables before the engine is created
load_dotenv()

from streamguard.core.database import register_models
from streamguard.services.backfill_service import (
    BackfillCoordinator, LocalTaskRunner, BACKFILL_TASK, FINGERPRINT_TASK,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Backfill activity locations and fingerprints")
    parser.add_argument("--server-id", type=int, action="append", required=True,
                        help="Server to process (repeatable)")
    parser.add_argument("--batch-size", type=int, default=None, help="Activities per geolocation batch")
    parser.add_argument("--fingerprints-only", action="store_true",
                        help="Only rebuild fingerprints, skip geolocation")
    args = parser.parse_args()

    register_models()

    # Tasks run inline, one after another
    runner = LocalTaskRunner()
    coordinator = BackfillCoordinator(runner)
    kind = FINGERPRINT_TASK if args.fingerprints_only else BACKFILL_TASK

    failed = 0
    for server_id in tqdm(args.server_id, desc="Servers"):
        if args.fingerprints_only:
            result = coordinator.trigger_fingerprint_recalculation(server_id)
        else:
            result = coordinator.trigger_backfill(server_id, batch_size=args.batch_size)

        if not result.success:
            logger.warning(f"Server {server_id}: {result.message}")
            failed += 1
            continue

        task = coordinator.get_task(result.task_id)
        logger.info(f"\n{'='*60}")
        logger.info(f"Server {server_id}: {kind} {task['status']}")
        logger.info(f"Activities processed: {task['activities_processed']}")
        logger.info(f"Anomalies detected: {task['anomalies_detected']}")
        logger.info(f"Fingerprints updated: {task['fingerprints_updated']}")
        logger.info(f"Duration: {task['duration_seconds']}s")
        if task["error_message"]:
            logger.error(f"Error: {task['error_message']}")
            failed += 1
        logger.info(f"{'='*60}\n")

    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
