#!/usr/bin/env python3
"""
Scheduled deadline reminder run.

Meant for cron or a platform scheduler. Notifies every assignee of an
open task that is due within the window or already past due, then
optionally sweeps past-due tasks to overdue.

Exit code is 0 when the scan ran, even if some emails failed; partial
delivery is reported in the summary line.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from atelier.errors import WorkflowError  # noqa: E402
from atelier.notification_dispatch import DEADLINE_WINDOW_DAYS  # noqa: E402
from atelier.services import get_services  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger("deadline_reminders")


async def main() -> int:
    parser = argparse.ArgumentParser(description="Send deadline reminder notifications")
    parser.add_argument("--within-days", type=int, default=DEADLINE_WINDOW_DAYS)
    parser.add_argument("--sweep-overdue", action="store_true", help="mark past-due open tasks overdue after the scan")
    args = parser.parse_args()

    services = get_services()
    try:
        report = await services.dispatcher.run_deadline_scan(within_days=args.within_days)

        # Scan excludes overdue-status tasks, so sweep last
        if args.sweep_overdue:
            changed = services.tasks.mark_overdue()
            logger.info(f"Overdue sweep moved {len(changed)} tasks")
    except WorkflowError as e:
        logger.error(f"Deadline run failed: {e.code} {e.message}")
        return 1

    summary = report.to_dict()
    summary.pop("results")
    print(json.dumps(summary))
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
