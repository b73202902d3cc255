# app/core/dispatch/scheduler.py
"""
Proactive dispatch for neglected high-urgency jobs.

Each cycle finds OPEN, HIGH-urgency jobs older than the stale window and
alerts nearby well-rated employees.  The scheduler only reads job state; it
never claims or modifies a job.

When the proximity query fails for a job, that job is skipped for the
cycle.  Broadcasting to every worker instead would turn a geo outage into
a notification storm.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from app.core.jobs.domain import Job, NotificationRequest, NotificationType
from app.core.jobs.ports import AsyncJobRepository, AsyncNotificationSink
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


@dataclass
class DispatchCycle:
    jobs_scanned: int = 0
    jobs_notified: int = 0
    jobs_skipped_geo_failure: int = 0
    notifications_sent: int = 0
    notifications_suppressed: int = 0

    def to_dict(self) -> dict:
        return {
            "jobs_scanned": self.jobs_scanned,
            "jobs_notified": self.jobs_notified,
            "jobs_skipped_geo_failure": self.jobs_skipped_geo_failure,
            "notifications_sent": self.notifications_sent,
            "notifications_suppressed": self.notifications_suppressed,
        }


class DispatchScheduler:
    """
    Usage:
        scheduler = DispatchScheduler(jobs=repo, notifications=sink)
        summary = await scheduler.run_dispatch_cycle()

    ``renotify_cooldown_minutes`` keeps a (job, worker) pair from being
    alerted again every cycle; 0 disables it.  The ledger lives in memory,
    so a restart may alert a worker once more.
    """

    def __init__(
        self,
        *,
        jobs: AsyncJobRepository,
        notifications: AsyncNotificationSink,
        radius_meters: float = 10000,
        min_rating: float = 4.5,
        stale_minutes: int = 30,
        renotify_cooldown_minutes: int = 120,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._jobs = jobs
        self._notifications = notifications
        self._radius_meters = radius_meters
        self._min_rating = min_rating
        self._stale = timedelta(minutes=stale_minutes)
        self._cooldown = timedelta(minutes=renotify_cooldown_minutes)
        self._clock = clock
        # job_id -> worker_id -> last alert time
        self._last_alerted: dict[str, dict[str, datetime]] = {}

    async def run_dispatch_cycle(self) -> DispatchCycle:
        cycle = DispatchCycle()
        now = self._clock()

        try:
            candidates = await self._jobs.find_stale_high_urgency(now - self._stale)
        except Exception as exc:
            logger.error(f"Dispatch candidate query failed: {exc}", exc_info=True)
            inc_counter("dispatch_cycle_errors")
            return cycle

        self._prune({job.id for job in candidates})

        for job in candidates:
            cycle.jobs_scanned += 1
            try:
                await self._dispatch_job(job, now, cycle)
            except Exception as exc:
                logger.error(
                    f"Dispatch failed for job: {exc.__class__.__name__}: {exc}",
                    extra={"job_id": job.id},
                )
                inc_counter("dispatch_job_errors")

        inc_counter("dispatch_cycles_total")
        logger.info(
            f"Dispatch cycle: scanned={cycle.jobs_scanned}, notified={cycle.jobs_notified}, "
            f"sent={cycle.notifications_sent}, suppressed={cycle.notifications_suppressed}, "
            f"geo_skipped={cycle.jobs_skipped_geo_failure}",
        )
        return cycle

    async def _dispatch_job(self, job: Job, now: datetime, cycle: DispatchCycle) -> None:
        try:
            workers = await self._jobs.find_open_within(
                job.location.point, self._radius_meters, self._min_rating,
            )
        except Exception as exc:
            cycle.jobs_skipped_geo_failure += 1
            inc_counter("dispatch_geo_failures")
            logger.warning(
                f"Nearby worker query failed, skipping job this cycle: {exc}",
                extra={"job_id": job.id},
            )
            return

        ledger = self._last_alerted.setdefault(job.id, {})
        batch: list[NotificationRequest] = []
        for worker in workers:
            if worker.id in ledger and now - ledger[worker.id] < self._cooldown:
                cycle.notifications_suppressed += 1
                continue
            batch.append(NotificationRequest(
                user_id=worker.id,
                type=NotificationType.DISPATCH_ALERT,
                payload={
                    "job_id": job.id,
                    "urgency": job.urgency.value,
                    "distance_meters": int(round(worker.distance_meters)),
                },
            ))

        if not batch:
            return

        try:
            await self._notifications.notify_many(batch)
        except Exception as exc:
            inc_counter("dispatch_notify_failures")
            logger.error(
                f"Dispatch alert batch failed ({len(batch)} workers): {exc}",
                extra={"job_id": job.id},
            )
            return

        for item in batch:
            ledger[item.user_id] = now
        cycle.jobs_notified += 1
        cycle.notifications_sent += len(batch)
        inc_counter("dispatch_alerts_sent", len(batch))

    def _prune(self, candidate_ids: set[str]) -> None:
        for job_id in list(self._last_alerted):
            if job_id not in candidate_ids:
                del self._last_alerted[job_id]
