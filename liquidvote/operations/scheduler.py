# liquidvote/operations/scheduler.py
# Background jobs: hourly snapshots of open proposals and the deadline sweep
# that resolves proposals whose voting period has ended.

import logging
from apscheduler.schedulers.background import BackgroundScheduler

from liquidvote.operations.backup_manager import TRIGGER_HOURLY

logger = logging.getLogger(__name__)


def create_scheduler(app, snapshots, resolution_service, backup_interval_minutes=60, sweep_interval_minutes=1):
    scheduler = BackgroundScheduler(timezone="UTC")

    def hourly_snapshots():
        with app.app_context():
            written = snapshots.capture_open_proposals(TRIGGER_HOURLY)
            logger.info("Hourly snapshot job wrote %d snapshot(s)", len(written))

    def deadline_sweep():
        with app.app_context():
            try:
                summary = resolution_service.sweep_due_proposals()
            except Exception:
                logger.exception("Deadline sweep failed")
                return
            if summary:
                logger.info("Deadline sweep results: %s", summary)

    scheduler.add_job(
        hourly_snapshots, 'interval', minutes=backup_interval_minutes,
        id='hourly_snapshots', max_instances=1, coalesce=True,
    )
    scheduler.add_job(
        deadline_sweep, 'interval', minutes=sweep_interval_minutes,
        id='deadline_sweep', max_instances=1, coalesce=True,
    )
    return scheduler
