# tests/test_infrastructure.py
"""Tests for infrastructure components"""
import asyncio

import pytest
from unittest.mock import AsyncMock, patch
from asyncpg.exceptions import PostgresError, PostgresConnectionError

from app.infra.db_resilience_async import is_transient_error, retry_on_transient_error


class TestDatabaseResilience:
    def test_is_transient_error_connection_error(self):
        assert is_transient_error(PostgresConnectionError("connection timeout")) is True

    def test_is_transient_error_timeout(self):
        assert is_transient_error(asyncio.TimeoutError()) is True

    def test_is_transient_error_server_closed(self):
        assert is_transient_error(OSError("server closed the connection unexpectedly")) is True

    def test_server_errors_are_not_retried_by_message(self):
        # A PostgresError mentioning "connection" is still a server-side rejection
        assert is_transient_error(PostgresError("connection limit for role")) is False

    def test_is_transient_error_non_transient(self):
        assert is_transient_error(ValueError("some other error")) is False

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_on_first_try(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def successful_operation():
            nonlocal call_count
            call_count += 1
            return "success"

        result = await successful_operation()
        assert result == "success"
        assert call_count == 1

    @pytest.mark.asyncio
    async def test_retry_decorator_succeeds_after_transient_error(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3, initial_delay=0)
        async def operation_with_transient_error():
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise PostgresConnectionError("connection timeout")
            return "success"

        result = await operation_with_transient_error()
        assert result == "success"
        assert call_count == 2

    @pytest.mark.asyncio
    async def test_retry_decorator_raises_non_transient_immediately(self):
        call_count = 0

        @retry_on_transient_error(max_retries=3)
        async def operation_with_non_transient_error():
            nonlocal call_count
            call_count += 1
            raise ValueError("not a transient error")

        with pytest.raises(ValueError):
            await operation_with_non_transient_error()

        assert call_count == 1  # Should not retry

    @pytest.mark.asyncio
    async def test_retry_exhaustion_is_counted(self):
        from app.infra.metrics import get_metrics_collector

        @retry_on_transient_error(max_retries=2, initial_delay=0)
        async def always_down():
            raise ConnectionError("connection refused")

        with pytest.raises(ConnectionError):
            await always_down()
        assert get_metrics_collector().counter_value("db_retries_exhausted", operation="always_down") == 1

    @pytest.mark.asyncio
    async def test_safe_db_conn_retries_acquisition_only(self):
        from app.infra.db_resilience_async import safe_db_conn

        conn = object()
        ctx = AsyncMock()
        ctx.__aenter__ = AsyncMock(return_value=conn)
        ctx.__aexit__ = AsyncMock(return_value=False)
        attempts = [ConnectionError("pool closed"), ctx]

        def fake_db_conn(transactional=False):
            result = attempts.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        with patch("app.infra.db_async.db_conn", side_effect=fake_db_conn):
            async with safe_db_conn() as acquired:
                assert acquired is conn

        ctx.__aexit__.assert_awaited_once()


class TestMetrics:
    def test_metrics_counter_increment(self):
        from app.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        collector.inc_counter("test_counter", 1)
        collector.inc_counter("test_counter", 2)

        metrics = collector.get_metrics()
        assert metrics["counters"]["test_counter"] == 3

    def test_metrics_histogram_observe(self):
        from app.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        collector.observe_histogram("test_histogram", 0.1)
        collector.observe_histogram("test_histogram", 0.2)
        collector.observe_histogram("test_histogram", 0.5)

        metrics = collector.get_metrics()
        stats = metrics["histograms"]["test_histogram"]
        assert stats["count"] == 3
        assert stats["min"] == 0.1
        assert stats["max"] == 0.5

    def test_histogram_keeps_recent_window(self):
        from app.infra.metrics import HISTOGRAM_WINDOW, MetricsCollector

        collector = MetricsCollector()
        for i in range(HISTOGRAM_WINDOW + 10):
            collector.observe_histogram("latency", float(i))

        stats = collector.get_metrics()["histograms"]["latency"]
        assert stats["count"] == HISTOGRAM_WINDOW
        assert stats["min"] == 10.0

    def test_metrics_with_labels(self):
        from app.infra.metrics import MetricsCollector

        collector = MetricsCollector()
        collector.inc_counter("escrow_calls_total", 1, {"operation": "capture", "outcome": "ok"})
        collector.inc_counter("escrow_calls_total", 2, {"outcome": "error", "operation": "transfer"})

        metrics = collector.get_metrics()
        assert "escrow_calls_total{operation=capture,outcome=ok}" in metrics["counters"]
        assert collector.counter_value("escrow_calls_total", operation="transfer", outcome="error") == 2
        assert collector.counter_value("escrow_calls_total", operation="void", outcome="ok") == 0

    def test_timer_records_duration(self):
        from app.infra.metrics import Timer, get_metrics_collector

        with Timer("job_operation_seconds", operation="approve_job") as timer:
            pass

        assert timer.duration is not None
        stats = get_metrics_collector().get_metrics()["histograms"]
        assert stats["job_operation_seconds{operation=approve_job}"]["count"] == 1


# ===================================================================
# Configuration
# ===================================================================


class TestRunModeConfig:
    """Tests for RUN_MODE configuration."""

    def test_default_run_mode_is_all(self):
        """Default run_mode should be 'all' for dev/single-process deployments."""
        from app.config import Settings
        s = Settings(_env_file=None)
        assert s.run_mode == "all"

    def test_run_mode_web(self):
        from app.config import Settings
        s = Settings(run_mode="web", _env_file=None)
        assert s.run_mode == "web"

    def test_run_mode_scheduler(self):
        from app.config import Settings
        s = Settings(run_mode="scheduler", _env_file=None)
        assert s.run_mode == "scheduler"

    def test_run_mode_invalid_rejected(self):
        """Invalid run_mode should raise validation error."""
        from app.config import Settings
        from pydantic import ValidationError
        with pytest.raises(ValidationError):
            Settings(run_mode="banana", _env_file=None)

    def test_marketplace_defaults(self):
        from app.config import Settings
        s = Settings(_env_file=None)
        assert s.platform_fee_percent == 15.0
        assert s.min_price_amount == 100
        assert s.max_active_jobs_per_customer == 2
        assert s.dispatch_radius_meters == 10000
        assert s.dispatch_min_rating == 4.5
        assert s.dispatch_renotify_cooldown_minutes == 120

    def test_database_dsn_prefers_url(self):
        from app.config import Settings
        s = Settings(database_url="postgresql://u:p@db:5432/jobs", _env_file=None)
        assert s.database_dsn == "postgresql://u:p@db:5432/jobs"

        s = Settings(pghost="pg", pguser="app", pgpassword="pw", pgdatabase="jobs", _env_file=None)
        assert s.database_dsn == "postgresql://app:pw@pg:5432/jobs"


class TestSettingsValidation:
    def test_fee_out_of_range_is_an_error(self):
        from app.config import Settings, validate_settings
        errors = validate_settings(Settings(platform_fee_percent=100, _env_file=None))
        assert any("platform_fee_percent" in e for e in errors)

    def test_valid_defaults(self):
        from app.config import Settings, validate_settings
        assert validate_settings(Settings(_env_file=None)) == []

    def test_risky_values_warn(self):
        from app.config import Settings, warn_on_risky_config
        warnings = warn_on_risky_config(Settings(
            dispatch_renotify_cooldown_minutes=0,
            reconciliation_enabled=False,
            _env_file=None,
        ))
        assert any("cooldown" in w for w in warnings)
        assert any("reconciliation_enabled" in w for w in warnings)

    def test_production_requires_database_url(self):
        from app.config import Settings, validate_or_warn
        with pytest.raises(RuntimeError, match="database_url"):
            validate_or_warn(Settings(app_env="prod", metrics_token="t", _env_file=None))


class TestRunModeGuards:
    """Tests for which periodic tasks the lifespan starts."""

    def test_both_loops_by_default(self):
        from app.transport.http_app import _periodic_tasks_for

        names = [t.name for t in _periodic_tasks_for(AsyncMock())]
        assert names == ["dispatch", "reconciliation"]

    def test_dispatch_can_be_disabled(self):
        from app.config import settings
        from app.transport.http_app import _periodic_tasks_for

        with patch.object(settings, "dispatch_enabled", False):
            names = [t.name for t in _periodic_tasks_for(AsyncMock())]
        assert names == ["reconciliation"]
