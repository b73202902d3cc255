# tests/fakes.py
"""
In-memory collaborators for coordinator, dispatch and reconciliation tests.

FakeJobRepository gives the same guarantees as the Postgres repository:
every conditional update and the capped insert check-and-write without
yielding in between, while still yielding once before, so concurrent
callers under asyncio.gather genuinely interleave.
"""
from __future__ import annotations

import asyncio
import dataclasses
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

from app.core.jobs.coordinator import JobLifecycleCoordinator
from app.core.jobs.domain import (
    ACTIVE_STATUSES,
    GeoPoint,
    Job,
    JobFilter,
    JobLocation,
    JobStatus,
    NearbyWorker,
    NewJob,
    NotificationRequest,
    NotificationType,
    Profile,
    Task,
    Urgency,
    UserRole,
)
from app.core.jobs.ports import CaptureResult
from app.infra.escrow_mock import MockEscrowProvider

CUSTOMER_ID = "11111111-1111-1111-1111-111111111111"
WORKER_ID = "22222222-2222-2222-2222-222222222222"
OTHER_WORKER_ID = "33333333-3333-3333-3333-333333333333"
PAYOUT_DESTINATION = "acct_worker_1"

LOCATION = {"lat": 32.08, "lng": 34.78, "address": "1 Rothschild Blvd"}
TASKS = [{"name": "Kitchen", "description": "Deep clean"}, {"name": "Bathroom"}]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def make_job(status: JobStatus = JobStatus.OPEN, **overrides: Any) -> Job:
    fields: dict[str, Any] = dict(
        id=str(uuid.uuid4()),
        customer_id=CUSTOMER_ID,
        status=status,
        urgency=Urgency.NORMAL,
        price_amount=10000,
        location=JobLocation(**LOCATION),
        tasks=[Task(id="t1", name="Kitchen")],
        escrow_handle_id="pi_seeded",
        created_at=utcnow(),
        updated_at=utcnow(),
    )
    if status in (JobStatus.IN_PROGRESS, JobStatus.PENDING_REVIEW, JobStatus.COMPLETED):
        fields["worker_id"] = WORKER_ID
    fields.update(overrides)
    return Job(**fields)


class FakeJobRepository:
    def __init__(self):
        self.jobs: dict[str, Job] = {}
        self.failures: dict[str, Exception] = {}
        self.fail_completion: Optional[Exception] = None
        self.nearby_workers: list[NearbyWorker] = []
        self.nearby_jobs_error: Optional[Exception] = None
        self.geo_error: Optional[Exception] = None
        self.geo_errors_for: set[tuple[float, float]] = set()
        self.cas_calls: list[tuple[str, tuple, dict]] = []

    def seed(self, job: Job) -> Job:
        self.jobs[job.id] = dataclasses.replace(job)
        return job

    def stored(self, job_id: str) -> Job:
        return self.jobs[job_id]

    def _maybe_fail(self, op: str) -> None:
        if op in self.failures:
            raise self.failures[op]

    async def insert(self, job: NewJob, *, max_active: Optional[int] = None) -> Optional[Job]:
        await asyncio.sleep(0)
        self._maybe_fail("insert")
        if max_active is not None and self._active_count(job.customer_id) >= max_active:
            return None
        now = utcnow()
        stored = Job(
            id=job.id,
            customer_id=job.customer_id,
            status=JobStatus.OPEN,
            urgency=job.urgency,
            price_amount=job.price_amount,
            currency=job.currency,
            location=job.location,
            tasks=list(job.tasks),
            escrow_handle_id=job.escrow_handle_id,
            created_at=now,
            updated_at=now,
        )
        self.jobs[job.id] = stored
        return dataclasses.replace(stored)

    async def get(self, job_id: str) -> Optional[Job]:
        self._maybe_fail("get")
        job = self.jobs.get(job_id)
        return dataclasses.replace(job) if job else None

    async def compare_and_swap_status(
        self,
        job_id: str,
        expected: Sequence[JobStatus],
        patch: dict[str, Any],
        *,
        worker_id: Optional[str] = None,
        unassigned: bool = False,
        uncaptured: bool = False,
        customer_id: Optional[str] = None,
    ) -> Optional[Job]:
        await asyncio.sleep(0)
        self.cas_calls.append((job_id, tuple(expected), dict(patch)))
        self._maybe_fail("cas")
        if self.fail_completion is not None and patch.get("status") == JobStatus.COMPLETED:
            raise self.fail_completion

        job = self.jobs.get(job_id)
        if job is None or job.status not in expected:
            return None
        if worker_id is not None and job.worker_id != worker_id:
            return None
        if customer_id is not None and job.customer_id != customer_id:
            return None
        if unassigned and job.worker_id is not None:
            return None
        if uncaptured and (job.capture_id is not None or job.capture_started_at is not None):
            return None

        for key, value in patch.items():
            setattr(job, key, value)
        job.updated_at = utcnow()
        return dataclasses.replace(job)

    async def count_active_for_customer(self, customer_id: str) -> int:
        self._maybe_fail("count")
        return self._active_count(customer_id)

    def _active_count(self, customer_id: str) -> int:
        return sum(
            1 for j in self.jobs.values()
            if j.customer_id == customer_id and j.status in ACTIVE_STATUSES
        )

    async def list_jobs(self, job_filter: JobFilter) -> list[Job]:
        self._maybe_fail("list")
        result = []
        for job in self.jobs.values():
            if job_filter.customer_id and job.customer_id != job_filter.customer_id:
                continue
            if job_filter.worker_id:
                mine = job.worker_id == job_filter.worker_id
                if not (mine or (job_filter.include_open and job.status == JobStatus.OPEN)):
                    continue
            if job_filter.status and job.status != job_filter.status:
                continue
            result.append(dataclasses.replace(job))
        result.sort(key=lambda j: j.created_at, reverse=True)
        return result[:job_filter.limit]

    async def find_open_within(
        self, point: GeoPoint, radius_meters: float, min_rating: float,
    ) -> list[NearbyWorker]:
        if self.geo_error is not None:
            raise self.geo_error
        if (point.lat, point.lng) in self.geo_errors_for:
            raise RuntimeError("rpc get_nearby_employees failed")
        return [w for w in self.nearby_workers if w.rating > min_rating and w.distance_meters <= radius_meters]

    async def find_open_jobs_near(
        self, point: GeoPoint, radius_meters: float, limit: int,
    ) -> list[Job]:
        if self.nearby_jobs_error is not None:
            raise self.nearby_jobs_error
        open_jobs = [dataclasses.replace(j) for j in self.jobs.values() if j.status == JobStatus.OPEN]
        return open_jobs[:limit]

    async def find_stale_high_urgency(self, created_before: datetime) -> list[Job]:
        return [
            dataclasses.replace(j) for j in self.jobs.values()
            if j.status == JobStatus.OPEN and j.urgency == Urgency.HIGH and j.created_at < created_before
        ]

    async def find_stuck_captures(self, updated_before: datetime, limit: int) -> list[Job]:
        return [
            dataclasses.replace(j) for j in self.jobs.values()
            if j.status == JobStatus.PENDING_REVIEW and j.capture_id and j.updated_at < updated_before
        ][:limit]

    async def find_unvoided_cancellations(self, limit: int) -> list[Job]:
        return [
            dataclasses.replace(j) for j in self.jobs.values()
            if j.status == JobStatus.CANCELLED
            and j.escrow_handle_id
            and not j.capture_id
            and j.escrow_voided_at is None
        ][:limit]


class FakeProfileRepository:
    def __init__(self):
        self.profiles: dict[str, Profile] = {
            CUSTOMER_ID: Profile(id=CUSTOMER_ID, role=UserRole.CUSTOMER),
            WORKER_ID: Profile(
                id=WORKER_ID,
                role=UserRole.EMPLOYEE,
                payout_destination=PAYOUT_DESTINATION,
                rating=4.9,
                location=GeoPoint(32.07, 34.79),
            ),
            OTHER_WORKER_ID: Profile(
                id=OTHER_WORKER_ID,
                role=UserRole.EMPLOYEE,
                payout_destination="acct_worker_2",
                rating=4.7,
                location=GeoPoint(32.09, 34.77),
            ),
        }

    def add(self, profile: Profile) -> None:
        self.profiles[profile.id] = profile

    async def get(self, user_id: str) -> Optional[Profile]:
        return self.profiles.get(user_id)


class RecordingEscrow(MockEscrowProvider):
    """MockEscrowProvider with a call log and failure injection per operation."""

    def __init__(self):
        super().__init__()
        self.calls: list[tuple[str, Any]] = []
        self.failures: dict[str, Exception] = {}
        self.capture_status: Optional[str] = None

    def calls_of(self, op: str) -> list[Any]:
        return [arg for name, arg in self.calls if name == op]

    def _maybe_fail(self, op: str) -> None:
        if op in self.failures:
            raise self.failures[op]

    async def authorize(self, amount, currency, metadata):
        self.calls.append(("authorize", amount))
        self._maybe_fail("authorize")
        return await super().authorize(amount, currency, metadata)

    async def capture(self, handle_id, *, idempotency_key):
        self.calls.append(("capture", (handle_id, idempotency_key)))
        self._maybe_fail("capture")
        result = await super().capture(handle_id, idempotency_key=idempotency_key)
        if self.capture_status is not None:
            return CaptureResult(capture_id=result.capture_id, status=self.capture_status)
        return result

    async def void(self, handle_id):
        self.calls.append(("void", handle_id))
        self._maybe_fail("void")
        await super().void(handle_id)

    async def transfer(self, amount, destination_id, source_capture_id, *, idempotency_key, metadata=None):
        self.calls.append(("transfer", (amount, destination_id, idempotency_key)))
        self._maybe_fail("transfer")
        return await super().transfer(
            amount, destination_id, source_capture_id,
            idempotency_key=idempotency_key, metadata=metadata,
        )


class FakeNotificationSink:
    def __init__(self):
        self.sent: list[NotificationRequest] = []
        self.batches: list[list[NotificationRequest]] = []
        self.fail: Optional[Exception] = None

    async def notify(self, user_id: str, type: NotificationType, payload: dict[str, Any]) -> None:
        if self.fail is not None:
            raise self.fail
        self.sent.append(NotificationRequest(user_id=user_id, type=type, payload=payload))

    async def notify_many(self, items: Sequence[NotificationRequest]) -> None:
        if self.fail is not None:
            raise self.fail
        self.batches.append(list(items))
        self.sent.extend(items)

    def of_type(self, notification_type: NotificationType) -> list[NotificationRequest]:
        return [n for n in self.sent if n.type == notification_type]


class FeeSetting:
    """Mutable platform fee, read by the coordinator on every approval."""

    def __init__(self, percent: float = 15.0):
        self.percent = percent

    def __call__(self) -> float:
        return self.percent


@dataclasses.dataclass
class World:
    jobs: FakeJobRepository
    profiles: FakeProfileRepository
    escrow: RecordingEscrow
    notifications: FakeNotificationSink
    fee: FeeSetting
    coordinator: JobLifecycleCoordinator


def build_world(**coordinator_kwargs: Any) -> World:
    jobs = FakeJobRepository()
    profiles = FakeProfileRepository()
    escrow = RecordingEscrow()
    notifications = FakeNotificationSink()
    fee = FeeSetting()
    coordinator = JobLifecycleCoordinator(
        jobs=jobs,
        profiles=profiles,
        escrow=escrow,
        notifications=notifications,
        fee_percent=fee,
        **coordinator_kwargs,
    )
    return World(jobs, profiles, escrow, notifications, fee, coordinator)


async def job_in_review(world: World, price_amount: int = 10000) -> Job:
    """Drive a job through create -> claim -> proof with the real coordinator."""
    created = await world.coordinator.create_job(
        CUSTOMER_ID, "NORMAL", price_amount, dict(LOCATION), TASKS,
    )
    await world.coordinator.claim_job(created.job.id, WORKER_ID)
    return await world.coordinator.submit_proof(
        created.job.id, WORKER_ID, ["https://cdn.example.com/proof/1.jpg"],
    )


def later(hours: float = 1) -> datetime:
    return utcnow() + timedelta(hours=hours)


__all__ = [
    "CUSTOMER_ID", "WORKER_ID", "OTHER_WORKER_ID", "PAYOUT_DESTINATION",
    "LOCATION", "TASKS",
    "FakeJobRepository", "FakeProfileRepository", "RecordingEscrow",
    "FakeNotificationSink", "FeeSetting", "World",
    "build_world", "job_in_review", "make_job", "later", "utcnow",
]
