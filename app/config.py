# app/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    run_mode: Literal["all", "web", "scheduler"] = "all"
    log_level: str = "INFO"

    # Database
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Security
    allowed_origins: list[str] = ["*"]
    metrics_token: str | None = None  # Optional bearer token for /metrics
    internal_networks: str = "10.0.0.0/8,172.16.0.0/12,192.168.0.0/16,127.0.0.0/8,::1/128"
    trust_proxy_headers: bool = False  # Only behind a reverse proxy that sets X-Forwarded-For

    # Payments / escrow
    platform_fee_percent: float = 15.0  # Read on every approval, never cached on the job
    currency: str = "usd"
    min_price_amount: int = 100  # Minor units (cents)
    escrow_max_retries: int = 3
    escrow_retry_base_delay: float = 0.2  # seconds, doubles on each retry

    # Job lifecycle
    max_active_jobs_per_customer: int = 2  # Jobs in OPEN or IN_PROGRESS
    job_feed_radius_meters: int = 50000
    job_feed_fallback_limit: int = 50

    # Dispatch scheduler
    dispatch_enabled: bool = True
    dispatch_interval_minutes: float = 30.0
    dispatch_stale_minutes: float = 30.0       # Only jobs unclaimed this long are dispatched
    dispatch_radius_meters: int = 10000
    dispatch_min_rating: float = 4.5
    dispatch_renotify_cooldown_minutes: float = 120.0  # 0 = alert every cycle

    # Reconciliation sweeper
    reconciliation_enabled: bool = True
    reconciliation_interval_minutes: float = 5.0
    reconciliation_grace_seconds: int = 120    # Leave in-flight approvals alone for this long
    reconciliation_batch_size: int = 50

    # Feature Flags
    enable_metrics: bool = True
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        return (
            f"postgresql://{self.pguser}:{self.pgpassword}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []
        if not self.database_url:
            missing.append("database_url")
        if self.enable_metrics and not self.metrics_token:
            missing.append("metrics_token")
        return missing


def validate_settings(s: "Settings") -> list[str]:
    """Hard errors: values the coordinator cannot work with."""
    errors: list[str] = []

    if not (0 <= s.platform_fee_percent < 100):
        errors.append(f"platform_fee_percent must be in [0, 100), got {s.platform_fee_percent}")
    if s.min_price_amount < 1:
        errors.append("min_price_amount must be positive")
    if s.max_active_jobs_per_customer < 1:
        errors.append("max_active_jobs_per_customer must be at least 1")
    if s.dispatch_interval_minutes <= 0:
        errors.append("dispatch_interval_minutes must be positive")
    if s.reconciliation_interval_minutes <= 0:
        errors.append("reconciliation_interval_minutes must be positive")

    return errors


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    if s.run_mode in ("all", "scheduler") and not s.reconciliation_enabled:
        warnings.append(
            "reconciliation_enabled=False: approvals interrupted after capture "
            "will not be completed automatically."
        )

    if s.trust_proxy_headers:
        warnings.append(
            "trust_proxy_headers=True: ensure you are behind a trusted reverse proxy, "
            "otherwise clients can spoof X-Forwarded-For."
        )

    if s.enable_metrics and not s.metrics_token:
        warnings.append(
            "enable_metrics=True but metrics_token is not set: /metrics relies on internal_networks."
        )

    if s.dispatch_renotify_cooldown_minutes == 0:
        warnings.append(
            "dispatch_renotify_cooldown_minutes=0: nearby workers are re-alerted every cycle."
        )

    if s.reconciliation_grace_seconds < 30:
        warnings.append(
            "reconciliation_grace_seconds < 30: the sweeper may race in-flight approvals."
        )

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In all envs: reject invalid values, warn on risky ones.
    """
    missing = s.validate_required_for_production()
    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    errors = validate_settings(s)
    if errors:
        raise RuntimeError(f"Invalid settings: {'; '.join(errors)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
