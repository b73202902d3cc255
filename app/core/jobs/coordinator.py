# app/core/jobs/coordinator.py
"""
Job lifecycle coordinator.

Owns the job state machine and the escrow sequencing around it:

    create   authorize hold -> guarded insert (void the hold if the insert fails)
    claim    single conditional write, OPEN + unassigned -> IN_PROGRESS
    proof    single conditional write, IN_PROGRESS + assignee -> PENDING_REVIEW
    approve  capture -> fee split -> transfer -> PENDING_REVIEW -> COMPLETED
    cancel   single conditional write, then void the hold

Every state change is one compare-and-swap in storage; the job read that
precedes it is only used to pick the right error for the caller.
Notifications are sent after the state change and never affect its outcome.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from app.core.jobs.domain import (
    InvalidTransition,
    Job,
    JobAction,
    JobFilter,
    JobLocation,
    JobStatus,
    NewJob,
    NotificationType,
    Profile,
    UserRole,
    next_status,
    source_statuses,
)
from app.core.jobs.errors import (
    ConflictError,
    ForbiddenError,
    JobNotFoundError,
    ReconciliationRequired,
    UpstreamFailure,
    ValidationError,
)
from app.core.jobs.fees import split_payout
from app.core.jobs.ports import (
    AsyncJobRepository,
    AsyncNotificationSink,
    AsyncProfileRepository,
    CaptureResult,
    EscrowProvider,
)
from app.core.jobs.validators import (
    filter_proof_urls,
    sanitize_tasks,
    validate_location,
    validate_price,
    validate_urgency,
)
from app.infra.logging_config import get_logger
from app.infra.metrics import AppMetrics, inc_counter

logger = get_logger(__name__)


def _default_fee_percent() -> float:
    from app.config import settings
    return settings.platform_fee_percent


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def capture_key(job_id: str) -> str:
    return f"{job_id}:capture"


def transfer_key(job_id: str) -> str:
    return f"{job_id}:transfer"


@dataclass
class CreatedJob:
    job: Job
    client_token: str


class JobLifecycleCoordinator:
    """
    Application service for the job lifecycle.

    All collaborators are injected; nothing here reaches for a module-level
    client.  ``fee_percent`` is a callable so the platform fee is read at
    approval time rather than frozen when the coordinator is built.
    """

    def __init__(
        self,
        *,
        jobs: AsyncJobRepository,
        profiles: AsyncProfileRepository,
        escrow: EscrowProvider,
        notifications: AsyncNotificationSink,
        fee_percent: Callable[[], float] = _default_fee_percent,
        currency: str = "usd",
        min_price_amount: int = 100,
        max_active_jobs: int = 2,
        feed_radius_meters: float = 50000,
        feed_fallback_limit: int = 50,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._jobs = jobs
        self._profiles = profiles
        self._escrow = escrow
        self._notifications = notifications
        self._fee_percent = fee_percent
        self._currency = currency
        self._min_price_amount = min_price_amount
        self._max_active_jobs = max_active_jobs
        self._feed_radius_meters = feed_radius_meters
        self._feed_fallback_limit = feed_fallback_limit
        self._clock = clock

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_job(
        self,
        customer_id: str,
        urgency: Any,
        price_amount: Any,
        location: JobLocation | dict[str, Any],
        tasks: Sequence[Any],
    ) -> CreatedJob:
        """
        Validate, place an escrow hold, and persist a new OPEN job.

        If the hold was placed but the job could not be stored, the hold is
        voided before the error is raised.
        """
        urgency_value = validate_urgency(urgency)
        price = validate_price(price_amount, self._min_price_amount)
        job_location = self._coerce_location(location)
        clean_tasks = sanitize_tasks(tasks)

        # Fast path: reject before touching escrow. The guarded insert below
        # is what actually enforces the cap under concurrency.
        try:
            active = await self._jobs.count_active_for_customer(customer_id)
        except Exception as exc:
            AppMetrics.database_error("count_active_for_customer")
            raise UpstreamFailure("Failed to check active jobs") from exc
        if active >= self._max_active_jobs:
            raise ConflictError(
                f"Customer cannot have more than {self._max_active_jobs} active jobs"
            )

        with AppMetrics.track_operation_time("create_job"):
            try:
                authorization = await self._escrow.authorize(
                    price,
                    self._currency,
                    {"customer_id": customer_id, "job_type": "cleaning"},
                )
            except Exception as exc:
                AppMetrics.escrow_call("authorize", "error")
                logger.error(
                    f"Escrow authorization failed: {exc.__class__.__name__}",
                    extra={"user_id": customer_id},
                    exc_info=True,
                )
                raise UpstreamFailure("Failed to authorize payment") from exc
            AppMetrics.escrow_call("authorize", "ok")

            new_job = NewJob(
                id=str(uuid.uuid4()),
                customer_id=customer_id,
                urgency=urgency_value,
                price_amount=price,
                currency=self._currency,
                location=job_location,
                tasks=clean_tasks,
                escrow_handle_id=authorization.handle_id,
            )

            try:
                job = await self._jobs.insert(new_job, max_active=self._max_active_jobs)
            except Exception as exc:
                logger.error(
                    f"Job insert failed after authorization: {exc.__class__.__name__}",
                    extra={"job_id": new_job.id, "user_id": customer_id},
                    exc_info=True,
                )
                AppMetrics.database_error("job_insert")
                await self._void_hold(authorization.handle_id, job_id=new_job.id, reason="insert_failed")
                raise UpstreamFailure("Failed to create job") from exc

            if job is None:
                await self._void_hold(authorization.handle_id, job_id=new_job.id, reason="active_cap")
                raise ConflictError(
                    f"Customer cannot have more than {self._max_active_jobs} active jobs"
                )

        AppMetrics.job_created(job.urgency.value)
        logger.info(
            f"Job created: id={job.id[:8]}, urgency={job.urgency.value}, price={job.price_amount}",
            extra={"job_id": job.id, "user_id": customer_id},
        )
        return CreatedJob(job=job, client_token=authorization.client_token)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> Job:
        return await self._load(job_id)

    async def list_jobs(self, job_filter: JobFilter) -> list[Job]:
        try:
            return await self._jobs.list_jobs(job_filter)
        except Exception as exc:
            AppMetrics.database_error("list_jobs")
            raise UpstreamFailure("Failed to fetch jobs") from exc

    async def list_jobs_for(
        self, user_id: str, role: UserRole, status: Optional[JobStatus] = None,
    ) -> list[Job]:
        """Customers see their own jobs; employees see open jobs plus their own."""
        if role == UserRole.CUSTOMER:
            job_filter = JobFilter(customer_id=user_id, status=status)
        else:
            job_filter = JobFilter(worker_id=user_id, include_open=True, status=status)
        return await self.list_jobs(job_filter)

    async def job_feed(self, worker_id: str) -> list[Job]:
        """Open jobs near the worker, nearest first.

        When the proximity query fails the feed degrades to the most recent
        open jobs.
        """
        profile = await self._load_profile(worker_id)
        if profile is None or profile.role != UserRole.EMPLOYEE:
            raise ForbiddenError("Only employees have a job feed")
        if profile.location is None:
            raise ValidationError("Employee location not set")

        try:
            return await self._jobs.find_open_jobs_near(
                profile.location, self._feed_radius_meters, self._feed_fallback_limit,
            )
        except Exception as exc:
            logger.warning(
                f"Nearby jobs query failed, falling back to recent open jobs: {exc}",
                extra={"user_id": worker_id},
            )
            inc_counter("job_feed_fallbacks")
            return await self.list_jobs(
                JobFilter(status=JobStatus.OPEN, limit=self._feed_fallback_limit)
            )

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def claim_job(self, job_id: str, worker_id: str) -> Job:
        """
        Assign an open job to ``worker_id``.

        Exactly one of several concurrent claims wins; the others get
        ``ConflictError``.  A job that is not OPEN is a conflict whoever
        asks.
        """
        job = await self._load(job_id)
        target = self._require_transition(job, JobAction.CLAIM)

        profile = await self._load_profile(worker_id)
        if profile is None or profile.role != UserRole.EMPLOYEE:
            raise ForbiddenError("Only employees can claim jobs")
        if not profile.can_receive_payouts:
            raise ForbiddenError("Connect a payout account before claiming jobs")

        claimed = await self._cas(
            job_id,
            source_statuses(JobAction.CLAIM),
            {"status": target, "worker_id": worker_id},
            unassigned=True,
        )
        if claimed is None:
            AppMetrics.job_transition(JobAction.CLAIM.value, "conflict")
            raise ConflictError("Job not found or not available")

        AppMetrics.job_transition(JobAction.CLAIM.value, "ok")
        logger.info(
            f"Job claimed: id={job_id[:8]}",
            extra={"job_id": job_id, "user_id": worker_id},
        )
        await self._notify(
            claimed.customer_id,
            NotificationType.JOB_ASSIGNED,
            {"job_id": job_id, "worker_id": worker_id},
            job_id=job_id,
        )
        return claimed

    # ------------------------------------------------------------------
    # Proof of work
    # ------------------------------------------------------------------

    async def submit_proof(self, job_id: str, worker_id: str, proof_urls: Sequence[Any]) -> Job:
        job = await self._load(job_id)
        target = self._require_transition(job, JobAction.SUBMIT_PROOF)
        if job.worker_id != worker_id:
            raise ForbiddenError("Only the assigned worker can submit work for review")

        submitted = list(proof_urls or [])
        urls = filter_proof_urls(submitted)
        dropped = len(submitted) - len(urls)
        if dropped > 0:
            logger.info(
                f"Dropped {dropped} malformed proof URL(s)",
                extra={"job_id": job_id, "user_id": worker_id},
            )

        updated = await self._cas(
            job_id,
            source_statuses(JobAction.SUBMIT_PROOF),
            {"status": target, "proof_of_work": urls},
            worker_id=worker_id,
        )
        if updated is None:
            AppMetrics.job_transition(JobAction.SUBMIT_PROOF.value, "conflict")
            raise ConflictError("Job is no longer in progress")

        AppMetrics.job_transition(JobAction.SUBMIT_PROOF.value, "ok")
        await self._notify(
            updated.customer_id,
            NotificationType.JOB_UPDATED,
            {"job_id": job_id, "status": updated.status.value},
            job_id=job_id,
        )
        return updated

    # ------------------------------------------------------------------
    # Approve (capture + payout)
    # ------------------------------------------------------------------

    async def approve_job(self, job_id: str, customer_id: str) -> Job:
        """
        Capture the held funds, pay the worker, and complete the job.

        Steps run strictly in order and each one gates the next:

        1. job must be PENDING_REVIEW, owned by the caller, with an escrow
           hold, an assignee, and an assignee payout destination
        2. mark the approval started (PENDING_REVIEW only); from here on the
           job can no longer be cancelled
        3. capture (idempotent per job); failure leaves the job in review
        4. fee split at the current platform rate, recorded with the capture
        5. transfer (idempotent per job); failure raises
           ``ReconciliationRequired`` and the job is not completed
        6. PENDING_REVIEW -> COMPLETED
        7. notifications
        """
        with AppMetrics.track_operation_time("approve_job"):
            job = await self._load(job_id)
            self._require_transition(job, JobAction.APPROVE)
            if job.customer_id != customer_id:
                raise ForbiddenError("Only the customer can approve this job")
            if not job.escrow_handle_id:
                raise ValidationError("Payment authorization not found")
            if not job.worker_id:
                raise ValidationError("Job has no assigned worker")

            worker = await self._load_profile(job.worker_id)
            if worker is None or not worker.can_receive_payouts:
                raise ValidationError("Worker payout account not connected")

            job = await self._begin_capture(job, customer_id)
            capture = await self._capture(job)

            split = split_payout(job.price_amount, self._fee_percent())
            job = await self._record_capture(job, capture, split.fee_amount, split.transfer_amount)
            if job.status == JobStatus.COMPLETED:
                return job

            try:
                transfer = await self._escrow.transfer(
                    job.payout_amount,
                    worker.payout_destination,
                    capture.capture_id,
                    idempotency_key=transfer_key(job.id),
                    metadata={"job_id": job.id, "platform_fee": str(job.fee_amount)},
                )
            except Exception as exc:
                AppMetrics.escrow_call("transfer", "error")
                await self._flag_reconciliation(job.id, "transfer", exc)
                raise ReconciliationRequired(job.id, "transfer") from exc
            AppMetrics.escrow_call("transfer", "ok")

            completed = await self.finalize_completion(
                job, transfer.transfer_id, customer_id=customer_id,
            )

        logger.info(
            f"Job approved: id={job.id[:8]}, payout={job.payout_amount}, fee={job.fee_amount}",
            extra={"job_id": job.id, "user_id": customer_id},
        )
        return completed

    async def finalize_completion(
        self, job: Job, transfer_id: str, *, customer_id: Optional[str] = None,
    ) -> Job:
        """
        Steps 6 and 7 of approval: persist COMPLETED and notify.

        Also used by the reconciliation sweeper once the transfer is known
        to exist.  A zero-row result is fine when a concurrent call already
        completed the job with this same transfer.
        """
        try:
            completed = await self._jobs.compare_and_swap_status(
                job.id,
                source_statuses(JobAction.APPROVE),
                {
                    "status": next_status(JobStatus.PENDING_REVIEW, JobAction.APPROVE),
                    "completed_at": self._clock(),
                    "transfer_id": transfer_id,
                    "reconciliation_note": None,
                },
                customer_id=customer_id,
            )
        except Exception as exc:
            await self._flag_reconciliation(job.id, "complete", exc)
            raise ReconciliationRequired(job.id, "complete") from exc

        if completed is None:
            try:
                current = await self._jobs.get(job.id)
            except Exception as exc:
                await self._flag_reconciliation(job.id, "complete", exc)
                raise ReconciliationRequired(job.id, "complete") from exc
            if (
                current is not None
                and current.status == JobStatus.COMPLETED
                and current.transfer_id == transfer_id
            ):
                return current
            await self._flag_reconciliation(job.id, "complete", None)
            raise ReconciliationRequired(job.id, "complete")

        AppMetrics.job_transition(JobAction.APPROVE.value, "ok")
        await self._notify(
            completed.worker_id,
            NotificationType.PAYMENT_RECEIVED,
            {
                "job_id": completed.id,
                "amount": completed.payout_amount,
                "transfer_id": transfer_id,
            },
            job_id=completed.id,
        )
        await self._notify(
            completed.customer_id,
            NotificationType.JOB_UPDATED,
            {"job_id": completed.id, "status": completed.status.value},
            job_id=completed.id,
        )
        return completed

    async def _begin_capture(self, job: Job, customer_id: str) -> Job:
        """Stamp ``capture_started_at`` while the job is still PENDING_REVIEW.

        Cancellation requires the stamp to be absent, so a cancel and a
        capture can never both succeed.  A retried approval keeps the first
        stamp.
        """
        started = await self._cas(
            job.id,
            source_statuses(JobAction.APPROVE),
            {"capture_started_at": job.capture_started_at or self._clock()},
            customer_id=customer_id,
        )
        if started is None:
            AppMetrics.job_transition(JobAction.APPROVE.value, "conflict")
            raise ConflictError("Job is no longer pending review")
        return started

    async def _capture(self, job: Job) -> CaptureResult:
        try:
            capture = await self._escrow.capture(
                job.escrow_handle_id, idempotency_key=capture_key(job.id),
            )
        except Exception as exc:
            AppMetrics.escrow_call("capture", "error")
            logger.error(
                f"Escrow capture failed: {exc.__class__.__name__}",
                extra={"job_id": job.id},
                exc_info=True,
            )
            raise UpstreamFailure("Payment capture failed") from exc

        if not capture.succeeded:
            AppMetrics.escrow_call("capture", "rejected")
            logger.error(
                f"Escrow capture returned status={capture.status}",
                extra={"job_id": job.id},
            )
            raise UpstreamFailure("Payment capture failed")

        AppMetrics.escrow_call("capture", "ok")
        return capture

    async def _record_capture(
        self, job: Job, capture: CaptureResult, fee_amount: int, payout_amount: int,
    ) -> Job:
        """Store the capture and the fee split while the job is still PENDING_REVIEW.

        A retried approval keeps the split from its first attempt, so a fee
        change between attempts never changes an in-flight payout.
        """
        if job.capture_id == capture.capture_id and job.payout_amount is not None:
            return job

        try:
            recorded = await self._jobs.compare_and_swap_status(
                job.id,
                (JobStatus.PENDING_REVIEW,),
                {
                    "capture_id": capture.capture_id,
                    "fee_amount": fee_amount,
                    "payout_amount": payout_amount,
                },
            )
        except Exception as exc:
            # No transfer has happened; capture is idempotent, so the
            # customer can simply retry.
            AppMetrics.database_error("record_capture")
            logger.error(
                "Failed to record capture, aborting before transfer",
                extra={"job_id": job.id},
                exc_info=True,
            )
            raise UpstreamFailure("Failed to approve job") from exc

        if recorded is not None:
            return recorded

        current = await self._load(job.id)
        if current.status == JobStatus.COMPLETED:
            return current
        # Left review while the capture was in flight.  Keep the capture id
        # on the row whatever its status so the funds can be traced.
        await self._flag_reconciliation(
            job.id,
            "capture_conflict",
            None,
            expected=tuple(JobStatus),
            extra={"capture_id": capture.capture_id},
        )
        raise ReconciliationRequired(job.id, "capture_conflict")

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    async def cancel_job(
        self, job_id: str, *, actor_id: Optional[str] = None, reason: str = "",
    ) -> Job:
        """
        Cancel a job and release its escrow hold.

        ``actor_id=None`` is the administrative path (any non-terminal
        status).  A customer may cancel only their own job while it is OPEN.
        Jobs whose approval has started capturing funds cannot be cancelled.
        """
        job = await self._load(job_id)
        target = self._require_transition(job, JobAction.CANCEL)

        if actor_id is not None:
            if actor_id != job.customer_id:
                raise ForbiddenError("Only the customer can cancel this job")
            if job.status != JobStatus.OPEN:
                raise ConflictError("Only open jobs can be cancelled by the customer")
            expected: tuple[JobStatus, ...] = (JobStatus.OPEN,)
        else:
            expected = source_statuses(JobAction.CANCEL)

        if job.capture_id:
            raise ConflictError("Payment already captured for this job")
        if job.capture_started_at:
            raise ConflictError("Payment capture already started for this job")

        cancelled = await self._cas(
            job_id,
            expected,
            {"status": target, "cancelled_at": self._clock()},
            uncaptured=True,
            customer_id=actor_id,
        )
        if cancelled is None:
            AppMetrics.job_transition(JobAction.CANCEL.value, "conflict")
            raise ConflictError("Job can no longer be cancelled")

        AppMetrics.job_transition(JobAction.CANCEL.value, "ok")
        logger.info(
            f"Job cancelled: id={job_id[:8]}, by={'admin' if actor_id is None else 'customer'}, "
            f"reason={reason or '-'}",
            extra={"job_id": job_id},
        )

        if cancelled.escrow_handle_id:
            cancelled = await self.release_hold(cancelled)

        payload = {"job_id": job_id, "status": cancelled.status.value}
        await self._notify(cancelled.customer_id, NotificationType.JOB_UPDATED, payload, job_id=job_id)
        if cancelled.worker_id:
            await self._notify(cancelled.worker_id, NotificationType.JOB_UPDATED, payload, job_id=job_id)
        return cancelled

    async def release_hold(self, job: Job) -> Job:
        """Void the hold of a cancelled job and stamp ``escrow_voided_at``.

        On failure the job is returned unchanged; the reconciliation sweeper
        picks up cancelled jobs without ``escrow_voided_at``.
        """
        try:
            await self._escrow.void(job.escrow_handle_id)
        except Exception as exc:
            AppMetrics.escrow_call("void", "error")
            logger.warning(
                f"Void failed for cancelled job, left for reconciliation: {exc}",
                extra={"job_id": job.id, "reconciliation": True},
            )
            return job
        AppMetrics.escrow_call("void", "ok")

        try:
            stamped = await self._jobs.compare_and_swap_status(
                job.id, (JobStatus.CANCELLED,), {"escrow_voided_at": self._clock()},
            )
        except Exception as exc:
            # Void is idempotent; the sweeper will void again and stamp
            logger.warning(
                f"Failed to record escrow void: {exc}",
                extra={"job_id": job.id},
            )
            return job
        return stamped or job

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_location(location: JobLocation | dict[str, Any]) -> JobLocation:
        if isinstance(location, JobLocation):
            return validate_location(location.lat, location.lng, location.address)
        if not isinstance(location, dict):
            raise ValidationError("location is required")
        return validate_location(location.get("lat"), location.get("lng"), location.get("address"))

    @staticmethod
    def _require_transition(job: Job, action: JobAction) -> JobStatus:
        try:
            return next_status(job.status, action)
        except InvalidTransition as exc:
            AppMetrics.job_transition(action.value, "invalid")
            raise ConflictError(str(exc)) from None

    async def _load(self, job_id: str) -> Job:
        try:
            job = await self._jobs.get(job_id)
        except Exception as exc:
            AppMetrics.database_error("job_get")
            raise UpstreamFailure("Failed to load job") from exc
        if job is None:
            raise JobNotFoundError("Job not found")
        return job

    async def _load_profile(self, user_id: str) -> Optional[Profile]:
        try:
            return await self._profiles.get(user_id)
        except Exception as exc:
            AppMetrics.database_error("profile_get")
            raise UpstreamFailure("Failed to load profile") from exc

    async def _cas(
        self,
        job_id: str,
        expected: Sequence[JobStatus],
        patch: dict[str, Any],
        **guards: Any,
    ) -> Optional[Job]:
        try:
            return await self._jobs.compare_and_swap_status(job_id, expected, patch, **guards)
        except Exception as exc:
            AppMetrics.database_error("job_update")
            raise UpstreamFailure("Failed to update job") from exc

    async def _void_hold(self, handle_id: str, *, job_id: str, reason: str) -> None:
        """Compensating void for a hold with no job row behind it."""
        try:
            await self._escrow.void(handle_id)
            AppMetrics.escrow_call("void", "ok")
            logger.info(
                f"Escrow hold voided: reason={reason}",
                extra={"job_id": job_id},
            )
        except Exception:
            AppMetrics.escrow_call("void", "error")
            inc_counter("escrow_orphaned_holds", reason=reason)
            logger.error(
                f"Failed to void escrow hold {handle_id}: funds remain held with no job (reason={reason})",
                extra={"job_id": job_id, "reconciliation": True},
                exc_info=True,
            )

    async def _flag_reconciliation(
        self,
        job_id: str,
        stage: str,
        exc: Optional[BaseException],
        *,
        expected: Sequence[JobStatus] = (JobStatus.PENDING_REVIEW,),
        extra: Optional[dict[str, Any]] = None,
    ) -> None:
        """Log a stuck approval distinctly and leave a note on the row for the sweeper."""
        AppMetrics.reconciliation_required(stage)
        cause = exc.__class__.__name__ if exc else "concurrent_update"
        logger.error(
            f"Reconciliation required: stage={stage}, cause={cause}",
            extra={"job_id": job_id, "reconciliation": True},
            exc_info=exc is not None,
        )
        try:
            await self._jobs.compare_and_swap_status(
                job_id,
                expected,
                {"reconciliation_note": f"{stage}: {cause}", **(extra or {})},
            )
        except Exception as note_exc:
            logger.warning(
                f"Could not store reconciliation note: {note_exc}",
                extra={"job_id": job_id},
            )

    async def _notify(
        self,
        user_id: Optional[str],
        notification_type: NotificationType,
        payload: dict[str, Any],
        *,
        job_id: str,
    ) -> None:
        if not user_id:
            return
        try:
            await self._notifications.notify(user_id, notification_type, payload)
        except Exception as exc:
            AppMetrics.notification_failed(notification_type.value)
            logger.warning(
                f"Notification {notification_type.value} failed: {exc}",
                extra={"job_id": job_id, "user_id": user_id},
            )
