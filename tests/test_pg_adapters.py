# tests/test_pg_adapters.py
"""Tests for the profile repository and notification sink (asyncpg mocked)."""
import json

import pytest
from unittest.mock import AsyncMock, patch

from app.core.jobs.domain import GeoPoint, NotificationRequest, NotificationType, UserRole
from app.infra.migrations_async import pending_migration_files
from app.infra.pg_notification_repo_async import AsyncPostgresNotificationSink
from app.infra.pg_profile_repo_async import AsyncPostgresProfileRepository

WORKER_ID = "22222222-2222-2222-2222-222222222222"


def _ctx(mock_conn):
    mock_ctx = AsyncMock()
    mock_ctx.__aenter__ = AsyncMock(return_value=mock_conn)
    mock_ctx.__aexit__ = AsyncMock(return_value=False)
    return mock_ctx


class TestProfileRepository:
    @pytest.mark.asyncio
    async def test_get_maps_location(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value={
            "id": WORKER_ID,
            "role": "employee",
            "payout_destination": "acct_1",
            "rating": 4.8,
            "lat": 32.07,
            "lng": 34.79,
        })

        with patch("app.infra.pg_profile_repo_async.safe_db_conn", return_value=_ctx(mock_conn)):
            profile = await AsyncPostgresProfileRepository().get(WORKER_ID)

        assert profile.role == UserRole.EMPLOYEE
        assert profile.can_receive_payouts
        assert profile.location == GeoPoint(32.07, 34.79)

    @pytest.mark.asyncio
    async def test_missing_location_and_rating(self):
        mock_conn = AsyncMock()
        mock_conn.fetchrow = AsyncMock(return_value={
            "id": WORKER_ID, "role": "customer", "payout_destination": None,
            "rating": None, "lat": None, "lng": None,
        })

        with patch("app.infra.pg_profile_repo_async.safe_db_conn", return_value=_ctx(mock_conn)):
            profile = await AsyncPostgresProfileRepository().get(WORKER_ID)

        assert profile.location is None
        assert profile.rating == 0.0
        assert not profile.can_receive_payouts

    @pytest.mark.asyncio
    async def test_non_uuid_is_unknown(self):
        with patch("app.infra.pg_profile_repo_async.safe_db_conn") as mock_ctx:
            assert await AsyncPostgresProfileRepository().get("someone") is None
        mock_ctx.assert_not_called()


class TestNotificationSink:
    @pytest.mark.asyncio
    async def test_notify_many_is_one_statement(self):
        mock_conn = AsyncMock()
        items = [
            NotificationRequest(WORKER_ID, NotificationType.DISPATCH_ALERT, {"job_id": "j1", "distance_meters": 10}),
            NotificationRequest(WORKER_ID, NotificationType.DISPATCH_ALERT, {"job_id": "j2", "distance_meters": 20}),
        ]

        with patch("app.infra.pg_notification_repo_async.safe_db_conn", return_value=_ctx(mock_conn)):
            await AsyncPostgresNotificationSink().notify_many(items)

        mock_conn.execute.assert_awaited_once()
        sql, user_ids, types, payloads = mock_conn.execute.call_args[0]
        assert "unnest" in sql
        assert user_ids == [WORKER_ID, WORKER_ID]
        assert types == ["DISPATCH_ALERT", "DISPATCH_ALERT"]
        assert json.loads(payloads[1]) == {"job_id": "j2", "distance_meters": 20}

    @pytest.mark.asyncio
    async def test_notify_many_empty_is_noop(self):
        with patch("app.infra.pg_notification_repo_async.safe_db_conn") as mock_ctx:
            await AsyncPostgresNotificationSink().notify_many([])
        mock_ctx.assert_not_called()

    @pytest.mark.asyncio
    async def test_notify(self):
        mock_conn = AsyncMock()

        with patch("app.infra.pg_notification_repo_async.safe_db_conn", return_value=_ctx(mock_conn)):
            await AsyncPostgresNotificationSink().notify(WORKER_ID, NotificationType.JOB_ASSIGNED, {"job_id": "j1"})

        _sql, user_id, notification_type, payload = mock_conn.execute.call_args[0]
        assert (user_id, notification_type) == (WORKER_ID, "JOB_ASSIGNED")
        assert json.loads(payload) == {"job_id": "j1"}


class TestMigrations:
    def test_initial_schema_is_pending_on_empty_database(self):
        names = [p.name for p in pending_migration_files(set())]
        assert names[0] == "001_init.sql"

    def test_applied_files_are_skipped(self):
        assert "001_init.sql" not in [p.name for p in pending_migration_files({"001_init.sql"})]
