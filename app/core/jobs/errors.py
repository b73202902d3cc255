# app/core/jobs/errors.py
"""
Typed domain errors for the job lifecycle coordinator.

Each error maps to a specific HTTP status code.  The transport layer
catches ``JobError`` subtypes and converts them to ``HTTPException``
without embedding business logic in the route handlers.
"""
from __future__ import annotations


class JobError(Exception):
    """Base class for all job domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(JobError):
    """Malformed input, rejected before any side effect (400)."""

    status_code = 400


class ForbiddenError(JobError):
    """Caller is not the customer/worker the operation requires (403)."""

    status_code = 403


class JobNotFoundError(JobError):
    """Unknown job id (404)."""

    status_code = 404


class ConflictError(JobError):
    """State-machine precondition violated (409)."""

    status_code = 409


class UpstreamFailure(JobError):
    """Escrow provider or repository call failed (502).

    ``detail`` is always generic; the underlying exception is chained
    and logged, never returned to the caller.
    """

    status_code = 502


class ReconciliationRequired(JobError):
    """Capture succeeded but the transfer or the final write did not.

    Internal: the job stays in PENDING_REVIEW with its capture recorded, and
    the reconciliation sweeper finishes it out-of-band.
    """

    status_code = 500

    def __init__(self, job_id: str, stage: str, detail: str = "Payment is being finalized"):
        self.job_id = job_id
        self.stage = stage
        super().__init__(detail)
