# app/core/jobs/reconciliation.py
"""
Out-of-band repair of approvals and cancellations that stopped half-way.

Two kinds of rows are swept:

- PENDING_REVIEW jobs with a recorded capture that have not moved for a
  grace period: the approval crashed or failed after capture.  The
  transfer is re-issued under the job's transfer idempotency key (the
  provider returns the original transfer if it already happened) and
  the job is completed.
- CANCELLED jobs whose hold was never voided: the void is retried.

Every job is handled on its own; one failure never stops the sweep.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from app.core.jobs.coordinator import JobLifecycleCoordinator, transfer_key
from app.core.jobs.domain import Job, JobStatus
from app.core.jobs.fees import split_payout
from app.core.jobs.ports import AsyncJobRepository, AsyncProfileRepository, EscrowProvider
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


@dataclass
class ReconciliationSummary:
    approvals_checked: int = 0
    approvals_completed: int = 0
    cancellations_checked: int = 0
    holds_released: int = 0
    failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "approvals_checked": self.approvals_checked,
            "approvals_completed": self.approvals_completed,
            "cancellations_checked": self.cancellations_checked,
            "holds_released": self.holds_released,
            "failures": list(self.failures),
        }


class ReconciliationSweeper:

    def __init__(
        self,
        *,
        coordinator: JobLifecycleCoordinator,
        jobs: AsyncJobRepository,
        profiles: AsyncProfileRepository,
        escrow: EscrowProvider,
        fee_percent: Callable[[], float],
        grace_seconds: int = 120,
        batch_size: int = 50,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._coordinator = coordinator
        self._jobs = jobs
        self._profiles = profiles
        self._escrow = escrow
        self._fee_percent = fee_percent
        self._grace = timedelta(seconds=grace_seconds)
        self._batch_size = batch_size
        self._clock = clock

    async def run_reconciliation_sweep(self) -> ReconciliationSummary:
        summary = ReconciliationSummary()
        await self._sweep_approvals(summary)
        await self._sweep_cancellations(summary)

        if summary.approvals_checked or summary.cancellations_checked:
            logger.info(
                f"Reconciliation sweep: approvals {summary.approvals_completed}/"
                f"{summary.approvals_checked}, holds {summary.holds_released}/"
                f"{summary.cancellations_checked}, failures={len(summary.failures)}",
                extra={"reconciliation": True},
            )
        return summary

    async def _sweep_approvals(self, summary: ReconciliationSummary) -> None:
        cutoff = self._clock() - self._grace
        try:
            stuck = await self._jobs.find_stuck_captures(cutoff, self._batch_size)
        except Exception as exc:
            logger.error(f"Stuck capture query failed: {exc}", exc_info=True)
            inc_counter("reconciliation_query_errors", kind="approvals")
            return

        for job in stuck:
            summary.approvals_checked += 1
            try:
                await self._complete_approval(job)
                summary.approvals_completed += 1
                inc_counter("reconciliation_repaired", kind="approval")
            except Exception as exc:
                summary.failures.append(job.id)
                inc_counter("reconciliation_failed", kind="approval")
                logger.error(
                    f"Could not complete stuck approval: {exc.__class__.__name__}: {exc}",
                    extra={"job_id": job.id, "reconciliation": True},
                )

    async def _complete_approval(self, job: Job) -> None:
        if job.status != JobStatus.PENDING_REVIEW or not job.capture_id or not job.worker_id:
            raise ValueError("job is not a recorded capture awaiting payout")

        worker = await self._profiles.get(job.worker_id)
        if worker is None or not worker.can_receive_payouts:
            raise ValueError("worker payout account not connected")

        payout_amount = job.payout_amount
        if payout_amount is None:
            payout_amount = split_payout(job.price_amount, self._fee_percent()).transfer_amount

        transfer = await self._escrow.transfer(
            payout_amount,
            worker.payout_destination,
            job.capture_id,
            idempotency_key=transfer_key(job.id),
            metadata={"job_id": job.id, "reconciled": "true"},
        )
        await self._coordinator.finalize_completion(job, transfer.transfer_id)
        logger.info(
            f"Stuck approval completed: id={job.id[:8]}, transfer={transfer.transfer_id}",
            extra={"job_id": job.id, "reconciliation": True},
        )

    async def _sweep_cancellations(self, summary: ReconciliationSummary) -> None:
        try:
            unvoided = await self._jobs.find_unvoided_cancellations(self._batch_size)
        except Exception as exc:
            logger.error(f"Unvoided cancellation query failed: {exc}", exc_info=True)
            inc_counter("reconciliation_query_errors", kind="cancellations")
            return

        for job in unvoided:
            summary.cancellations_checked += 1
            released = await self._coordinator.release_hold(job)
            if released.escrow_voided_at is not None:
                summary.holds_released += 1
                inc_counter("reconciliation_repaired", kind="void")
            else:
                summary.failures.append(job.id)
                inc_counter("reconciliation_failed", kind="void")
