"""
Subscription Scheduler: runs the lifecycle scans once per interval.

Scan order per run:
  1. renewal reminders (7 / 3 / 1 days)
  2. ending notices (auto-renewal off)
  3. renewal payments
  4. grace period expiry
  5. stale record expiry
  6. lapsed premium downgrade

Each scan gets its own session. A failing scan is logged and recorded, the rest still run.
Only one process should start the loop.
"""

import asyncio
import logging
from datetime import datetime

from services.clock import utcnow

logger = logging.getLogger(__name__)

SCANS = (
    "send_upcoming_renewal_reminders",
    "send_ending_notifications",
    "process_renewals",
    "expire_grace_periods",
    "expire_stale_records",
    "downgrade_lapsed_users",
)


class SubscriptionScheduler:
    def __init__(self, lifecycle, session_factory, interval_seconds: int = 24 * 60 * 60):
        self.lifecycle = lifecycle
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None
        self._running = False

        self.total_runs = 0
        self.successful_runs = 0
        self.failed_runs = 0
        self.last_run: datetime | None = None
        self.last_error: str | None = None
        self.last_results: dict = {}

    @property
    def stats(self) -> dict:
        return {
            "is_running": self._running,
            "loop_active": self._task is not None and not self._task.done(),
            "interval_seconds": self.interval_seconds,
            "total_runs": self.total_runs,
            "successful_runs": self.successful_runs,
            "failed_runs": self.failed_runs,
            "last_run": self.last_run,
            "last_error": self.last_error,
            "last_results": self.last_results,
        }

    async def run_once(self) -> dict:
        """
        Run every scan once.

        Returns:
            {scan_name: {"ok": bool, "count": int | None, "error": str | None}},
            or {"skipped": True} if a run is already in progress.
        """
        if self._running:
            logger.warning("Scheduler run skipped: previous run still in progress")
            return {"skipped": True}

        self._running = True
        self.total_runs += 1
        self.last_run = utcnow()
        results: dict = {}
        errors: list[str] = []

        try:
            for name in SCANS:
                scan = getattr(self.lifecycle, name)
                try:
                    # Closing the session rolls back anything a failed scan left uncommitted.
                    async with self.session_factory() as db:
                        count = await scan(db)
                    results[name] = {"ok": True, "count": count, "error": None}
                except Exception as e:
                    logger.exception("Scheduler scan %s failed", name)
                    results[name] = {"ok": False, "count": None, "error": str(e)}
                    errors.append(f"{name}: {e}")
        finally:
            self._running = False

        if errors:
            self.failed_runs += 1
            self.last_error = "; ".join(errors)
        else:
            self.successful_runs += 1
        self.last_results = results

        logger.info(
            "Scheduler run %s finished: %s",
            self.total_runs,
            ", ".join(f"{k}={v['count'] if v['ok'] else 'error'}" for k, v in results.items()),
        )
        return results

    async def _loop(self) -> None:
        logger.info("Subscription scheduler started (interval=%ds)", self.interval_seconds)
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._loop(), name="subscription-scheduler")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Subscription scheduler stopped")
