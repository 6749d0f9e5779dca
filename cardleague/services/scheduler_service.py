"""
Card League Settlement Scheduler Service

This module runs settlement passes and schedule syncs in the background
using APScheduler. Deployments that drive settlement from an external cron
(``manage.py settle run``) leave SCHEDULER_ENABLED off.
"""

import atexit
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from cardleague import db
from cardleague.errors import FeedUnavailable
from cardleague.services.game_feed import build_game_feed, sync_schedule
from cardleague.services.settlement import SettlementService

logger = logging.getLogger(__name__)


class SchedulerService:
    """Manages background settlement passes and schedule syncs"""

    def __init__(self, app=None):
        self.scheduler = None
        self.app = app
        self.settlement = None
        self.feed = None
        self.is_running = False
        self.sync_stats = self._empty_stats()

        if app:
            self.init_app(app)

    @staticmethod
    def _empty_stats():
        return {
            "last_run": None,
            "total_runs": 0,
            "successful_runs": 0,
            "failed_runs": 0,
            "last_error": None,
            "picks_graded": 0,
            "cards_updated": 0,
            "last_report": None,
        }

    def init_app(self, app):
        """Initialize scheduler with Flask app"""
        self.app = app
        self.scheduler = BackgroundScheduler(daemon=True, timezone="UTC")

        # Initialize services
        with app.app_context():
            self.feed = build_game_feed(app.config)
            self.settlement = SettlementService(feed=self.feed)

        # Register shutdown
        atexit.register(self.shutdown)

        # Start scheduler if enabled
        if app.config.get("SCHEDULER_ENABLED", True):
            self.start()

    def start(self):
        """Start the background scheduler"""
        if self.is_running:
            return

        try:
            # Clear any existing jobs
            self.scheduler.remove_all_jobs()

            # Add scheduled jobs
            self._add_core_jobs()

            # Start scheduler
            self.scheduler.start()
            self.is_running = True

            logger.info("Scheduler started successfully")

        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")
            raise

    def stop(self):
        """Stop the background scheduler"""
        if not self.is_running:
            return

        try:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Scheduler stopped")

        except Exception as e:
            logger.error(f"Error stopping scheduler: {e}")

    def shutdown(self):
        """Graceful shutdown"""
        self.stop()

    def _add_core_jobs(self):
        """Add core scheduled jobs"""
        interval = self.app.config.get("SETTLEMENT_INTERVAL_SECONDS", 300)

        # Settlement pass: refresh results, grade, recompute cards
        self.scheduler.add_job(
            func=self._settlement_pass,
            trigger=IntervalTrigger(seconds=interval),
            id="settlement_pass",
            name="Settlement Pass",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=max(30, interval // 2),
        )

        # Daily schedule sync (2 AM UTC) picks up new games and postponements
        if self.feed is not None:
            self.scheduler.add_job(
                func=self._schedule_sync,
                trigger=CronTrigger(hour=2, minute=0),
                id="schedule_sync",
                name="Daily Schedule Sync",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=3600,
            )

        logger.info(f"Core scheduled jobs added (settlement every {interval}s)")

    def _settlement_pass(self):
        """Run one settlement pass; failures are logged and counted, never raised"""
        with self.app.app_context():
            try:
                report = self.settlement.run_settlement_pass()
                self.sync_stats["last_report"] = report.to_dict()
                self._update_stats(
                    not report.errors,
                    picks_graded=report.picks_graded,
                    cards_updated=report.cards_updated,
                )
                if report.errors:
                    self.sync_stats["last_error"] = report.errors[-1].get("message")
            except Exception as e:
                db.session.rollback()
                self._update_stats(False)
                self.sync_stats["last_error"] = str(e)
                logger.error(f"Error in settlement pass: {e}", exc_info=True)

    def _schedule_sync(self):
        """Pull the full schedule from the feed"""
        with self.app.app_context():
            try:
                update = sync_schedule(self.feed)
                self._update_stats(True)
                logger.info(f"Schedule sync completed: {update.to_dict()}")
            except FeedUnavailable as e:
                self._update_stats(False)
                self.sync_stats["last_error"] = str(e)
                logger.warning(f"Schedule sync skipped, feed unavailable: {e}")
            except Exception as e:
                db.session.rollback()
                self._update_stats(False)
                self.sync_stats["last_error"] = str(e)
                logger.error(f"Error in schedule sync: {e}", exc_info=True)

    def _update_stats(self, success, picks_graded=0, cards_updated=0):
        """Update run statistics"""
        self.sync_stats["last_run"] = datetime.now(timezone.utc)
        self.sync_stats["total_runs"] += 1

        if success:
            self.sync_stats["successful_runs"] += 1
            self.sync_stats["last_error"] = None
        else:
            self.sync_stats["failed_runs"] += 1
        self.sync_stats["picks_graded"] += picks_graded
        self.sync_stats["cards_updated"] += cards_updated

    def get_status(self):
        """Get scheduler status information"""
        jobs = []
        if self.scheduler and self.is_running:
            for job in self.scheduler.get_jobs():
                next_run = job.next_run_time
                jobs.append(
                    {
                        "id": job.id,
                        "name": job.name,
                        "next_run": next_run.isoformat() if next_run else None,
                        "trigger": str(job.trigger),
                    }
                )

        stats = dict(self.sync_stats)
        if stats["last_run"]:
            stats["last_run"] = stats["last_run"].isoformat()
        return {"is_running": self.is_running, "jobs": jobs, "stats": stats}

    def force_sync(self, sync_type="settlement"):
        """Manually trigger a job"""
        if sync_type == "settlement":
            self._settlement_pass()
        elif sync_type == "schedule":
            if self.feed is None:
                return False, "No GAME_FEED_URL configured"
            self._schedule_sync()
        else:
            return False, f"Unknown sync type: {sync_type}"

        if self.sync_stats["last_error"]:
            return False, f"Manual {sync_type} run finished with errors: {self.sync_stats['last_error']}"
        return True, f"Manual {sync_type} run completed"

    def pause_job(self, job_id):
        """Pause a specific job"""
        try:
            self.scheduler.pause_job(job_id)
            return True, f"Job {job_id} paused"
        except Exception as e:
            return False, f"Failed to pause job: {e}"

    def resume_job(self, job_id):
        """Resume a specific job"""
        try:
            self.scheduler.resume_job(job_id)
            return True, f"Job {job_id} resumed"
        except Exception as e:
            return False, f"Failed to resume job: {e}"


# Global scheduler instance
scheduler_service = SchedulerService()
