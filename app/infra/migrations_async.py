# app/infra/migrations_async.py
"""
Async database migrations runner (asyncpg).
"""
from __future__ import annotations
from pathlib import Path

from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger

logger = get_logger(__name__)


def _sql_dir() -> Path:
    """SQL migrations live next to this file: app/infra/sql"""
    return Path(__file__).resolve().parent / "sql"


def pending_migration_files(applied: set[str]) -> list[Path]:
    """Migration files not yet recorded in schema_migrations, in apply order."""
    files = sorted(p for p in _sql_dir().glob("*.sql") if p.is_file())
    return [p for p in files if p.name not in applied]


async def apply_migrations() -> dict:
    """
    Apply SQL migrations from app/infra/sql in filename order.

    All pending files run in one transaction; a failure leaves the schema
    untouched.  Applied versions are tracked in ``schema_migrations``.

    Returns:
        {"ok": True, "applied": [filenames], "count": n}
    """
    async with db_conn(transactional=True) as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations(
              version text PRIMARY KEY,
              applied_at timestamptz NOT NULL DEFAULT now()
            )
            """
        )

        rows = await conn.fetch("SELECT version FROM schema_migrations")
        applied = {row["version"] for row in rows}

        applied_now = []
        for p in pending_migration_files(applied):
            logger.info(f"Applying migration: {p.name}")
            await conn.execute(p.read_text(encoding="utf-8"))
            await conn.execute(
                "INSERT INTO schema_migrations(version) VALUES ($1)",
                p.name,
            )
            applied_now.append(p.name)

    logger.info(f"Migrations complete: {len(applied_now)} applied")
    return {"ok": True, "applied": applied_now, "count": len(applied_now)}
