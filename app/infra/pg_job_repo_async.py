# app/infra/pg_job_repo_async.py
"""
Async PostgreSQL job repository (asyncpg).

Every state change is a single conditional UPDATE:

    UPDATE jobs SET ... WHERE id = $1 AND status = ANY($2) [AND guards] RETURNING ...

so concurrent callers are serialized by the row lock and exactly one of
them sees a row come back.  The per-customer active job cap is enforced
by counting and inserting inside one transaction that holds a
transaction-scoped advisory lock on the customer.

Geography columns are never selected; the location is read back from
``location_coordinates`` (jsonb).
"""
from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

from app.core.jobs.domain import (
    ACTIVE_STATUSES,
    GeoPoint,
    Job,
    JobFilter,
    JobLocation,
    JobStatus,
    NearbyWorker,
    NewJob,
    Task,
    Urgency,
)
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


_JOB_COLUMNS = (
    "id, customer_id, worker_id, status, urgency, price_amount, currency, "
    "location_coordinates, tasks, proof_of_work, escrow_handle_id, capture_started_at, capture_id, "
    "transfer_id, fee_amount, payout_amount, escrow_voided_at, reconciliation_note, "
    "created_at, updated_at, completed_at, cancelled_at"
)

# Columns a conditional update may write. Everything else is immutable.
_PATCHABLE = {
    "status",
    "worker_id",
    "proof_of_work",
    "completed_at",
    "cancelled_at",
    "capture_started_at",
    "capture_id",
    "transfer_id",
    "fee_amount",
    "payout_amount",
    "escrow_voided_at",
    "reconciliation_note",
}
_JSONB_COLUMNS = {"proof_of_work"}


def is_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _row_to_job(row) -> Job:
    """Convert an asyncpg Record to a Job."""
    location = _json(row["location_coordinates"]) or {}
    tasks = _json(row["tasks"]) or []
    return Job(
        id=str(row["id"]),
        customer_id=str(row["customer_id"]),
        worker_id=str(row["worker_id"]) if row["worker_id"] else None,
        status=JobStatus(row["status"]),
        urgency=Urgency(row["urgency"]),
        price_amount=row["price_amount"],
        currency=row["currency"],
        location=JobLocation(
            lat=float(location.get("lat", 0.0)),
            lng=float(location.get("lng", 0.0)),
            address=location.get("address", ""),
        ),
        tasks=[
            Task(id=t.get("id", ""), name=t.get("name", ""), description=t.get("description"))
            for t in tasks
        ],
        proof_of_work=list(_json(row["proof_of_work"]) or []),
        escrow_handle_id=row["escrow_handle_id"],
        capture_started_at=row["capture_started_at"],
        capture_id=row["capture_id"],
        transfer_id=row["transfer_id"],
        fee_amount=row["fee_amount"],
        payout_amount=row["payout_amount"],
        escrow_voided_at=row["escrow_voided_at"],
        reconciliation_note=row["reconciliation_note"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
        cancelled_at=row["cancelled_at"],
    )


def _encode_patch_value(column: str, value: Any) -> Any:
    if isinstance(value, (JobStatus, Urgency)):
        return value.value
    if column in _JSONB_COLUMNS:
        return json.dumps(value)
    return value


def build_conditional_update(
    job_id: str,
    expected: Sequence[JobStatus],
    patch: dict[str, Any],
    *,
    worker_id: Optional[str] = None,
    unassigned: bool = False,
    uncaptured: bool = False,
    customer_id: Optional[str] = None,
) -> tuple[str, list[Any]]:
    """Build the UPDATE statement and parameters for ``compare_and_swap_status``."""
    if not expected:
        raise ValueError("expected statuses must not be empty")
    unknown = set(patch) - _PATCHABLE
    if unknown:
        raise ValueError(f"not patchable: {sorted(unknown)}")

    params: list[Any] = [job_id, [s.value for s in expected]]
    sets: list[str] = []
    for column, value in patch.items():
        params.append(_encode_patch_value(column, value))
        cast = "::jsonb" if column in _JSONB_COLUMNS else ""
        sets.append(f"{column} = ${len(params)}{cast}")
    sets.append("updated_at = now()")

    conditions = ["id = $1", "status = ANY($2::text[])"]
    if worker_id is not None:
        params.append(worker_id)
        conditions.append(f"worker_id = ${len(params)}")
    if customer_id is not None:
        params.append(customer_id)
        conditions.append(f"customer_id = ${len(params)}")
    if unassigned:
        conditions.append("worker_id IS NULL")
    if uncaptured:
        conditions.append("capture_id IS NULL")
        conditions.append("capture_started_at IS NULL")

    sql = (
        f"UPDATE jobs SET {', '.join(sets)} "
        f"WHERE {' AND '.join(conditions)} "
        f"RETURNING {_JOB_COLUMNS}"
    )
    return sql, params


class AsyncPostgresJobRepository:
    """Jobs table access with guarded transitions and PostGIS proximity queries."""

    async def insert(self, job: NewJob, *, max_active: Optional[int] = None) -> Optional[Job]:
        """
        Insert an OPEN job.

        With ``max_active``, the count of the customer's OPEN/IN_PROGRESS jobs
        and the insert run under ``pg_advisory_xact_lock(hashtext(customer_id))``,
        so two concurrent creates for one customer cannot both pass the cap.

        Returns:
            The stored job, or None when the cap is reached.
        """
        async with safe_db_conn(transactional=True) as conn:
            if max_active is not None:
                await conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext($1))", job.customer_id,
                )
                active = await conn.fetchval(
                    "SELECT count(*)::int FROM jobs WHERE customer_id = $1 AND status = ANY($2::text[])",
                    job.customer_id,
                    [s.value for s in ACTIVE_STATUSES],
                )
                if active >= max_active:
                    inc_counter("jobs_insert_rejected_cap")
                    return None

            row = await conn.fetchrow(
                f"""
                INSERT INTO jobs (
                  id, customer_id, status, urgency, price_amount, currency,
                  location_coordinates, location_point, tasks, escrow_handle_id
                )
                VALUES (
                  $1, $2, 'OPEN', $3, $4, $5,
                  $6::jsonb, ST_GeogFromText($7), $8::jsonb, $9
                )
                RETURNING {_JOB_COLUMNS}
                """,
                job.id,
                job.customer_id,
                job.urgency.value,
                job.price_amount,
                job.currency,
                json.dumps(job.location.to_dict()),
                job.location.point.to_wkt(),
                json.dumps([t.to_dict() for t in job.tasks]),
                job.escrow_handle_id,
            )
            logger.debug(
                f"Job inserted: id={job.id[:8]}, urgency={job.urgency.value}",
                extra={"job_id": job.id},
            )
            return _row_to_job(row)

    @retry_on_transient_error()
    async def get(self, job_id: str) -> Optional[Job]:
        if not is_uuid(job_id):
            return None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = $1", job_id)
            return _row_to_job(row) if row else None

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
        Apply ``patch`` only if the row is in one of ``expected`` and every
        guard holds.  Not retried: a lost acknowledgement must surface to the
        caller rather than be replayed.

        Returns:
            The updated job, or None when zero rows matched.
        """
        if not is_uuid(job_id):
            return None
        sql, params = build_conditional_update(
            job_id,
            expected,
            patch,
            worker_id=worker_id,
            unassigned=unassigned,
            uncaptured=uncaptured,
            customer_id=customer_id,
        )
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(sql, *params)
        if row is None:
            inc_counter("job_cas_misses")
            return None
        return _row_to_job(row)

    @retry_on_transient_error()
    async def count_active_for_customer(self, customer_id: str) -> int:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                "SELECT count(*)::int FROM jobs WHERE customer_id = $1 AND status = ANY($2::text[])",
                customer_id,
                [s.value for s in ACTIVE_STATUSES],
            )

    @retry_on_transient_error()
    async def list_jobs(self, job_filter: JobFilter) -> list[Job]:
        conditions = []
        params: list[Any] = []

        if job_filter.customer_id:
            params.append(job_filter.customer_id)
            conditions.append(f"customer_id = ${len(params)}")

        if job_filter.worker_id:
            params.append(job_filter.worker_id)
            if job_filter.include_open:
                conditions.append(f"(worker_id = ${len(params)} OR status = 'OPEN')")
            else:
                conditions.append(f"worker_id = ${len(params)}")

        if job_filter.status:
            params.append(job_filter.status.value)
            conditions.append(f"status = ${len(params)}")

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(job_filter.limit)

        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"SELECT {_JOB_COLUMNS} FROM jobs {where} ORDER BY created_at DESC LIMIT ${len(params)}",
                *params,
            )
            return [_row_to_job(row) for row in rows]

    async def find_open_within(
        self, point: GeoPoint, radius_meters: float, min_rating: float,
    ) -> list[NearbyWorker]:
        """Employees near ``point`` via ``get_nearby_employees`` (nearest first)."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT id, distance_meters, rating "
                "FROM get_nearby_employees(ST_GeogFromText($1), $2, $3)",
                point.to_wkt(),
                float(radius_meters),
                float(min_rating),
            )
            return [
                NearbyWorker(
                    id=str(row["id"]),
                    distance_meters=float(row["distance_meters"]),
                    rating=float(row["rating"]),
                )
                for row in rows
            ]

    async def find_open_jobs_near(
        self, point: GeoPoint, radius_meters: float, limit: int,
    ) -> list[Job]:
        """Open jobs near ``point`` via ``get_nearby_jobs`` (nearest first)."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"SELECT {_JOB_COLUMNS} FROM get_nearby_jobs(ST_GeogFromText($1), $2) LIMIT $3",
                point.to_wkt(),
                float(radius_meters),
                limit,
            )
            return [_row_to_job(row) for row in rows]

    @retry_on_transient_error()
    async def find_stale_high_urgency(self, created_before: datetime) -> list[Job]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE status = 'OPEN'
                  AND urgency = 'HIGH'
                  AND created_at < $1
                ORDER BY created_at
                """,
                created_before,
            )
            return [_row_to_job(row) for row in rows]

    @retry_on_transient_error()
    async def find_stuck_captures(self, updated_before: datetime, limit: int) -> list[Job]:
        """PENDING_REVIEW jobs with a recorded capture untouched since ``updated_before``."""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE status = 'PENDING_REVIEW'
                  AND capture_id IS NOT NULL
                  AND updated_at < $1
                ORDER BY updated_at
                LIMIT $2
                """,
                updated_before,
                limit,
            )
            return [_row_to_job(row) for row in rows]

    @retry_on_transient_error()
    async def find_unvoided_cancellations(self, limit: int) -> list[Job]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_JOB_COLUMNS} FROM jobs
                WHERE status = 'CANCELLED'
                  AND escrow_handle_id IS NOT NULL
                  AND capture_id IS NULL
                  AND escrow_voided_at IS NULL
                ORDER BY cancelled_at
                LIMIT $1
                """,
                limit,
            )
            return [_row_to_job(row) for row in rows]


# Global singleton
_job_repo: AsyncPostgresJobRepository | None = None


def get_job_repo() -> AsyncPostgresJobRepository:
    """Get the global job repository instance."""
    global _job_repo
    if _job_repo is None:
        _job_repo = AsyncPostgresJobRepository()
    return _job_repo
