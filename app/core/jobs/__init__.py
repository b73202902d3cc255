# app/core/jobs/__init__.py
"""
Job lifecycle -- state machine, escrow sequencing and reconciliation.

Canonical imports:
    from app.core.jobs import JobLifecycleCoordinator, JobStatus
    from app.core.jobs.ports import AsyncJobRepository, EscrowProvider
    from app.core.jobs.errors import ConflictError
"""
from app.core.jobs.domain import (  # noqa: F401
    Job,
    JobAction,
    JobStatus,
    TRANSITIONS,
    Urgency,
)
from app.core.jobs.coordinator import CreatedJob, JobLifecycleCoordinator  # noqa: F401
from app.core.jobs.reconciliation import ReconciliationSweeper  # noqa: F401
