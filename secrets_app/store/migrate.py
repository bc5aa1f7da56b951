"""
Schema migrations for the user store.

Each ``migrations/NNNN_*.sql`` file runs once, in name order, inside its own
transaction. ``schema_migrations`` records the sha256 of every applied file so
that editing a migration after it shipped stops the next run instead of
drifting silently.
"""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import psycopg

from secrets_app.config import AppConfig, load_app_config

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Held for the whole run so two instances booting together apply each file once.
MIGRATION_LOCK_KEY = 731904417205

_LEDGER_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
  version text PRIMARY KEY,
  checksum text NOT NULL,
  applied_at timestamptz NOT NULL DEFAULT now()
)
"""


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    checksum: str
    sql: str

    @classmethod
    def from_file(cls, path: Path) -> "Migration":
        raw = path.read_bytes()
        return cls(
            version=path.stem.partition("_")[0],
            path=path,
            checksum=hashlib.sha256(raw).hexdigest(),
            sql=raw.decode("utf-8"),
        )


def load_migrations(directory: Path = MIGRATIONS_DIR) -> List[Migration]:
    return [Migration.from_file(p) for p in sorted(directory.glob("*.sql"))]


def _connect(dsn: str, connect_timeout: int = 10) -> psycopg.Connection:
    return psycopg.connect(dsn, connect_timeout=connect_timeout)


def _pending(conn: psycopg.Connection, migrations: Iterable[Migration]) -> List[Migration]:
    """Migrations not recorded yet. Raises if a recorded file has changed on disk."""
    conn.execute(_LEDGER_DDL)
    recorded = {str(v): str(c) for v, c in conn.execute("SELECT version, checksum FROM schema_migrations").fetchall()}

    todo: List[Migration] = []
    for m in migrations:
        checksum = recorded.get(m.version)
        if checksum is None:
            todo.append(m)
        elif checksum != m.checksum:
            raise RuntimeError(
                f"Migration {m.path.name} checksum mismatch: recorded {checksum[:12]}, file {m.checksum[:12]}"
            )
    return todo


def apply_migrations(
    *,
    dsn: str,
    migrations: Optional[Iterable[Migration]] = None,
    connect_timeout: int = 10,
) -> Tuple[int, List[str]]:
    """
    Bring the schema up to date.

    Returns: (applied_count, applied_versions)
    """
    migs = load_migrations() if migrations is None else list(migrations)
    done: List[str] = []

    with _connect(dsn, connect_timeout) as conn:
        conn.execute("SELECT pg_advisory_lock(%s)", (MIGRATION_LOCK_KEY,))
        try:
            for m in _pending(conn, migs):
                with conn.transaction():
                    conn.execute(m.sql)
                    conn.execute(
                        "INSERT INTO schema_migrations (version, checksum) VALUES (%s, %s)",
                        (m.version, m.checksum),
                    )
                logger.info("Applied migration %s", m.path.name)
                done.append(m.version)
        finally:
            conn.execute("SELECT pg_advisory_unlock(%s)", (MIGRATION_LOCK_KEY,))

    return len(done), done


def maybe_auto_migrate(cfg: AppConfig) -> Tuple[bool, str]:
    """
    Startup hook for DB_AUTO_MIGRATE=1. Never raises; the app still starts and
    store calls report the database as unavailable.

    Returns: (did_attempt, message)
    """
    if not cfg.db_auto_migrate:
        return False, "DB_AUTO_MIGRATE is disabled"
    try:
        n, versions = apply_migrations(dsn=cfg.database_url, connect_timeout=cfg.db_connect_timeout)
    except (psycopg.Error, OSError, RuntimeError) as e:
        return True, f"Migration failed: {e}"
    return True, (f"Applied {n} migration(s): {', '.join(versions)}" if n else "Schema is up to date")


def main(cfg: Optional[AppConfig] = None) -> int:
    cfg = cfg or load_app_config()
    n, versions = apply_migrations(dsn=cfg.database_url, connect_timeout=cfg.db_connect_timeout)
    if n:
        logger.info("Applied %d migration(s): %s", n, ", ".join(versions))
    else:
        logger.info("Schema is up to date")
    return 0
