# app/core/jobs/ports.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence

from app.core.jobs.domain import (
    GeoPoint,
    Job,
    JobFilter,
    JobStatus,
    NearbyWorker,
    NewJob,
    NotificationRequest,
    NotificationType,
    Profile,
)


# ============================================================================
# JOB REPOSITORY
# ============================================================================

class AsyncJobRepository(Protocol):
    async def insert(self, job: NewJob, *, max_active: Optional[int] = None) -> Optional[Job]:
        """
        Persist a new OPEN job.

        With ``max_active`` set, the insert happens only if the customer has
        fewer than ``max_active`` jobs in OPEN/IN_PROGRESS, checked and
        written atomically. Returns None when the cap is reached.
        """
        ...

    async def get(self, job_id: str) -> Optional[Job]: ...

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
        """
        Apply ``patch`` in one conditional write.

        The row must currently be in one of ``expected`` and satisfy every
        guard given (assigned to ``worker_id``, unassigned, no capture
        recorded, owned by ``customer_id``). Returns the updated job, or
        None when zero rows matched.
        """
        ...

    async def count_active_for_customer(self, customer_id: str) -> int: ...

    async def list_jobs(self, job_filter: JobFilter) -> list[Job]: ...

    async def find_open_within(
        self, point: GeoPoint, radius_meters: float, min_rating: float,
    ) -> list[NearbyWorker]:
        """Employees within ``radius_meters`` of ``point`` rated above ``min_rating``."""
        ...

    async def find_open_jobs_near(
        self, point: GeoPoint, radius_meters: float, limit: int,
    ) -> list[Job]: ...

    async def find_stale_high_urgency(self, created_before: datetime) -> list[Job]: ...

    async def find_stuck_captures(self, updated_before: datetime, limit: int) -> list[Job]: ...

    async def find_unvoided_cancellations(self, limit: int) -> list[Job]: ...


# ============================================================================
# PROFILES
# ============================================================================

class AsyncProfileRepository(Protocol):
    async def get(self, user_id: str) -> Optional[Profile]: ...


# ============================================================================
# NOTIFICATION SINK
# ============================================================================

class AsyncNotificationSink(Protocol):
    async def notify(self, user_id: str, type: NotificationType, payload: dict[str, Any]) -> None: ...

    async def notify_many(self, items: Sequence[NotificationRequest]) -> None:
        """Insert all items as a single batch."""
        ...


# ============================================================================
# ESCROW PROVIDER
# ============================================================================

@dataclass(frozen=True)
class EscrowAuthorization:
    handle_id: str
    client_token: str


@dataclass(frozen=True)
class CaptureResult:
    capture_id: str
    status: str

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


@dataclass(frozen=True)
class TransferResult:
    transfer_id: str
    amount: int
    destination_id: str


class EscrowError(Exception):
    """Escrow provider rejected or failed an operation."""


class EscrowTransientError(EscrowError):
    """Network-level failure; safe to retry with the same idempotency key."""


class EscrowProvider(Protocol):
    async def authorize(
        self, amount: int, currency: str, metadata: dict[str, Any],
    ) -> EscrowAuthorization:
        """Hold funds without moving them (manual capture)."""
        ...

    async def capture(self, handle_id: str, *, idempotency_key: str) -> CaptureResult:
        """Move held funds to the platform. Capturing twice returns the first result."""
        ...

    async def void(self, handle_id: str) -> None: ...

    async def transfer(
        self,
        amount: int,
        destination_id: str,
        source_capture_id: str,
        *,
        idempotency_key: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> TransferResult:
        """Pay out to a worker. A repeated idempotency key returns the original transfer."""
        ...
