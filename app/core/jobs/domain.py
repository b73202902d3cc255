# app/core/jobs/domain.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


# ============================================================================
# ENUMS
# ============================================================================

class JobStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    PENDING_REVIEW = "PENDING_REVIEW"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class Urgency(str, Enum):
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"


class JobAction(str, Enum):
    CLAIM = "claim"
    SUBMIT_PROOF = "submit_proof"
    APPROVE = "approve"
    CANCEL = "cancel"


class UserRole(str, Enum):
    CUSTOMER = "customer"
    EMPLOYEE = "employee"


class NotificationType(str, Enum):
    JOB_ASSIGNED = "JOB_ASSIGNED"
    JOB_UPDATED = "JOB_UPDATED"
    MESSAGE_RECEIVED = "MESSAGE_RECEIVED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    DISPATCH_ALERT = "DISPATCH_ALERT"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})

# Statuses counted against the per-customer active job cap
ACTIVE_STATUSES = (JobStatus.OPEN, JobStatus.IN_PROGRESS)


# ============================================================================
# STATE MACHINE
# ============================================================================

# (from_status, action) -> to_status. The only place transitions are defined.
TRANSITIONS: dict[tuple[JobStatus, JobAction], JobStatus] = {
    (JobStatus.OPEN, JobAction.CLAIM): JobStatus.IN_PROGRESS,
    (JobStatus.IN_PROGRESS, JobAction.SUBMIT_PROOF): JobStatus.PENDING_REVIEW,
    (JobStatus.PENDING_REVIEW, JobAction.APPROVE): JobStatus.COMPLETED,
    (JobStatus.OPEN, JobAction.CANCEL): JobStatus.CANCELLED,
    (JobStatus.IN_PROGRESS, JobAction.CANCEL): JobStatus.CANCELLED,
    (JobStatus.PENDING_REVIEW, JobAction.CANCEL): JobStatus.CANCELLED,
}


class InvalidTransition(Exception):
    """Raised when an action is not allowed from the current status."""

    def __init__(self, status: JobStatus, action: JobAction):
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action.value} a job in status {status.value}")


def next_status(current: JobStatus, action: JobAction) -> JobStatus:
    """Return the target status for ``action`` or raise ``InvalidTransition``."""
    try:
        return TRANSITIONS[(current, action)]
    except KeyError:
        raise InvalidTransition(current, action) from None


def source_statuses(action: JobAction) -> tuple[JobStatus, ...]:
    """All statuses from which ``action`` is legal (used as the CAS compare key)."""
    return tuple(src for (src, act) in TRANSITIONS if act == action)


# ============================================================================
# VALUE OBJECTS
# ============================================================================

@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float

    def to_wkt(self) -> str:
        """PostGIS expects longitude first."""
        return f"POINT({self.lng} {self.lat})"


@dataclass(frozen=True)
class JobLocation:
    lat: float
    lng: float
    address: str

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(self.lat, self.lng)

    def to_dict(self) -> dict[str, Any]:
        return {"lat": self.lat, "lng": self.lng, "address": self.address}


@dataclass(frozen=True)
class Task:
    id: str
    name: str
    description: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "name": self.name}
        if self.description:
            data["description"] = self.description
        return data


# ============================================================================
# ENTITIES
# ============================================================================

@dataclass
class Job:
    """A cleaning job. Mutated only through the coordinator's guarded transitions."""

    id: str
    customer_id: str
    status: JobStatus
    urgency: Urgency
    price_amount: int
    location: JobLocation
    tasks: list[Task] = field(default_factory=list)
    currency: str = "usd"
    worker_id: Optional[str] = None
    escrow_handle_id: Optional[str] = None
    proof_of_work: list[str] = field(default_factory=list)

    # Escrow progress, written during approval / cancellation
    capture_started_at: Optional[datetime] = None
    capture_id: Optional[str] = None
    transfer_id: Optional[str] = None
    fee_amount: Optional[int] = None
    payout_amount: Optional[int] = None
    escrow_voided_at: Optional[datetime] = None
    reconciliation_note: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def can(self, action: JobAction) -> bool:
        return (self.status, action) in TRANSITIONS

    def to_dict(self) -> dict[str, Any]:
        """Client-facing representation (escrow internals are not exposed)."""
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "worker_id": self.worker_id,
            "status": self.status.value,
            "urgency": self.urgency.value,
            "price_amount": self.price_amount,
            "currency": self.currency,
            "location": self.location.to_dict(),
            "tasks": [t.to_dict() for t in self.tasks],
            "proof_of_work": list(self.proof_of_work),
            "payout_amount": self.payout_amount,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "completed_at": _iso(self.completed_at),
            "cancelled_at": _iso(self.cancelled_at),
        }


@dataclass
class NewJob:
    """A validated job that has not been persisted yet."""

    id: str
    customer_id: str
    urgency: Urgency
    price_amount: int
    currency: str
    location: JobLocation
    tasks: list[Task]
    escrow_handle_id: str


@dataclass
class Profile:
    """A user profile as seen by the job service (read-only)."""

    id: str
    role: UserRole
    payout_destination: Optional[str] = None
    rating: float = 0.0
    location: Optional[GeoPoint] = None

    @property
    def can_receive_payouts(self) -> bool:
        return bool(self.payout_destination)


@dataclass(frozen=True)
class NearbyWorker:
    id: str
    distance_meters: float
    rating: float = 0.0


@dataclass(frozen=True)
class NotificationRequest:
    user_id: str
    type: NotificationType
    payload: dict[str, Any]


@dataclass
class JobFilter:
    """Listing filter.

    ``customer_id`` restricts to one customer's jobs. ``worker_id`` restricts
    to jobs assigned to that worker, and with ``include_open`` also returns
    every OPEN job (the employee view).
    """
    customer_id: Optional[str] = None
    worker_id: Optional[str] = None
    include_open: bool = False
    status: Optional[JobStatus] = None
    limit: int = 100


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
