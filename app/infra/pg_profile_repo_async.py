# app/infra/pg_profile_repo_async.py
"""
Read-only access to user profiles.

Profiles are owned by the account service; this service only needs the
role, payout destination, rating and home location.
"""
from __future__ import annotations

from typing import Optional

from app.core.jobs.domain import GeoPoint, Profile, UserRole
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.pg_job_repo_async import is_uuid

logger = get_logger(__name__)


def _row_to_profile(row) -> Profile:
    location = None
    if row["lat"] is not None and row["lng"] is not None:
        location = GeoPoint(lat=float(row["lat"]), lng=float(row["lng"]))
    return Profile(
        id=str(row["id"]),
        role=UserRole(row["role"]),
        payout_destination=row["payout_destination"],
        rating=float(row["rating"] or 0),
        location=location,
    )


class AsyncPostgresProfileRepository:

    @retry_on_transient_error()
    async def get(self, user_id: str) -> Optional[Profile]:
        if not is_uuid(user_id):
            return None
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, role, payout_destination, rating,
                       ST_Y(location_point::geometry) AS lat,
                       ST_X(location_point::geometry) AS lng
                FROM profiles
                WHERE id = $1
                """,
                user_id,
            )
            return _row_to_profile(row) if row else None


_profile_repo: AsyncPostgresProfileRepository | None = None


def get_profile_repo() -> AsyncPostgresProfileRepository:
    global _profile_repo
    if _profile_repo is None:
        _profile_repo = AsyncPostgresProfileRepository()
    return _profile_repo
