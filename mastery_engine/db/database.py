"""Database abstraction layer supporting both SQLite (aiosqlite) and PostgreSQL (asyncpg).

Backend is selected via the DATABASE_URL setting:
  - starts with "postgresql://" → asyncpg
  - absent / empty             → aiosqlite (uses DATABASE_PATH)

The PostgreSQL wrapper transparently converts:
  - ? placeholders → $1, $2, … (positional)
  - cursor.lastrowid → RETURNING id
  - cursor.rowcount → rows returned / command status
  - Row access by column name (dict-like)

Every engine storage call goes through run_storage(), which applies the
caller's timeout and turns driver failures into StorageUnavailable /
StorageConflict.
"""

import asyncio
import re
import logging
import sqlite3
from collections.abc import AsyncGenerator, Awaitable
from contextlib import asynccontextmanager
from pathlib import Path

from alembic import command
from alembic.config import Config

from mastery_engine.config import settings
from mastery_engine.errors import EngineError, StorageConflict, StorageUnavailable

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


def _is_postgres() -> bool:
    return settings.database_url.startswith("postgresql://")


# ── SQLite helpers ────────────────────────────────────────────────────

async def _connect_sqlite():
    import aiosqlite
    # timeout is the busy handler wait when another writer holds the lock
    db = await aiosqlite.connect(settings.database_path, timeout=settings.storage_timeout_seconds)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    return db


# ── PostgreSQL wrapper ────────────────────────────────────────────────

_pg_pool = None


async def _get_pg_pool():
    global _pg_pool
    if _pg_pool is None:
        import asyncpg
        _pg_pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=2,
            max_size=10,
            command_timeout=settings.storage_timeout_seconds,
        )
    return _pg_pool


class PgRow:
    """Wraps an asyncpg Record to support dict-style access by column name.

    Mimics sqlite3.Row interface: keys() + __getitem__ enable dict(row).
    """

    __slots__ = ("_record",)

    def __init__(self, record):
        self._record = record

    def __getitem__(self, key):
        return self._record[key]

    def __contains__(self, key):
        return key in self._record.keys()

    def __len__(self):
        return len(self._record)

    def keys(self):
        return self._record.keys()

    def values(self):
        return list(self._record.values())

    def items(self):
        return self._record.items()

    def get(self, key, default=None):
        try:
            return self._record[key]
        except (KeyError, IndexError):
            return default


def _to_pg_row(record):
    """Convert asyncpg Record to PgRow, or None."""
    if record is None:
        return None
    return PgRow(record)


# Regex to replace ? placeholders with $1, $2, … while skipping quoted strings
_PARAM_RE = re.compile(r"'[^']*'|(\?)")


def _convert_placeholders(sql: str) -> str:
    """Replace ? with $1, $2, … for asyncpg, skipping ?s inside string literals."""
    counter = [0]

    def _replacer(match):
        if match.group(1) is None:
            # Quoted string, left unchanged
            return match.group(0)
        counter[0] += 1
        return f"${counter[0]}"

    return _PARAM_RE.sub(_replacer, sql)


def _is_insert(sql: str) -> bool:
    """Check if an SQL statement is an INSERT (for RETURNING id)."""
    return sql.lstrip().upper().startswith("INSERT")


def _status_rowcount(status: str) -> int:
    """Parse the affected row count from an asyncpg command tag ("UPDATE 3")."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return -1


class PgCursor:
    """Mimics aiosqlite cursor for the result of execute()."""

    __slots__ = ("_rows", "_lastrowid", "_rowcount", "_idx")

    def __init__(self, rows=None, lastrowid=None, rowcount=-1):
        self._rows = rows or []
        self._lastrowid = lastrowid
        self._rowcount = rowcount
        self._idx = 0

    @property
    def lastrowid(self):
        return self._lastrowid

    @property
    def rowcount(self):
        return self._rowcount

    async def fetchone(self):
        if self._idx < len(self._rows):
            row = self._rows[self._idx]
            self._idx += 1
            return _to_pg_row(row)
        return None

    async def fetchall(self):
        remaining = self._rows[self._idx:]
        self._idx = len(self._rows)
        return [PgRow(r) for r in remaining]


class PgConnection:
    """Wraps an asyncpg connection to present an aiosqlite-compatible interface.

    Supports:
      - execute(sql, params) with ? placeholders
      - cursor.lastrowid via RETURNING id
      - cursor.rowcount for INSERT … ON CONFLICT and UPDATE
      - commit() / rollback() / close()
      - fetchone() / fetchall() on returned cursor
    """

    def __init__(self, conn):
        self._conn = conn

    async def execute(self, sql: str, params=None):
        pg_sql = _convert_placeholders(sql)
        args = tuple(params) if params else ()

        if _is_insert(pg_sql):
            # Append RETURNING id if not already present
            if "RETURNING" not in pg_sql.upper():
                pg_sql = pg_sql.rstrip().rstrip(";") + " RETURNING id"
            rows = await self._conn.fetch(pg_sql, *args)
            lastrowid = rows[0]["id"] if rows else None
            return PgCursor(rows=rows, lastrowid=lastrowid, rowcount=len(rows))

        stripped = pg_sql.lstrip().upper()
        if stripped.startswith("SELECT") or "RETURNING" in stripped:
            rows = await self._conn.fetch(pg_sql, *args)
            return PgCursor(rows=rows, rowcount=len(rows))
        status = await self._conn.execute(pg_sql, *args)
        return PgCursor(rowcount=_status_rowcount(status))

    async def commit(self):
        # asyncpg runs in autocommit mode; every statement is already committed.
        pass

    async def rollback(self):
        pass

    def transaction(self):
        return self._conn.transaction()

    async def close(self):
        # No-op: pool release is handled by get_db() dependency
        pass


# ── Storage guard ─────────────────────────────────────────────────────

# asyncpg exception class names, matched by name so asyncpg stays an
# optional import for SQLite deployments
_PG_CONFLICT_ERRORS = {
    "UniqueViolationError",
    "IntegrityConstraintViolationError",
    "CheckViolationError",
}
_PG_TRANSIENT_ERRORS = {
    "ConnectionDoesNotExistError",
    "ConnectionFailureError",
    "InterfaceError",
    "TooManyConnectionsError",
    "CannotConnectNowError",
    "SerializationError",
    "DeadlockDetectedError",
    "QueryCanceledError",
}


def classify_storage_error(exc: BaseException, operation: str) -> EngineError | None:
    """Map a driver exception to the engine taxonomy, or None if it is a bug."""
    name = type(exc).__name__
    if isinstance(exc, sqlite3.IntegrityError) or name in _PG_CONFLICT_ERRORS:
        return StorageConflict(f"{operation}: {exc}", operation=operation)
    if (
        isinstance(exc, (sqlite3.OperationalError, ConnectionError, OSError))
        or name in _PG_TRANSIENT_ERRORS
    ):
        return StorageUnavailable(f"{operation}: {exc}", operation=operation)
    return None


async def _rollback_quietly(db, operation: str) -> None:
    try:
        await db.rollback()
    except Exception as rollback_exc:
        logger.error("Rollback after %s failed: %s", operation, rollback_exc)


async def run_storage(db, operation: str, awaitable: Awaitable, timeout: float):
    """Await a storage coroutine under a timeout, mapping failures.

    Timeouts and transient driver errors become StorageUnavailable; unresolved
    unique violations become StorageConflict. Either way the connection's open
    transaction is rolled back, so statements that already ran are never
    committed by a later call. Nothing is retried here.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        logger.warning("%s timed out after %.1fs", operation, timeout)
        await _rollback_quietly(db, operation)
        raise StorageUnavailable(
            f"{operation} timed out after {timeout}s", operation=operation, timeout=timeout
        ) from None
    except EngineError:
        raise
    except Exception as exc:
        mapped = classify_storage_error(exc, operation)
        if mapped is None:
            raise
        await _rollback_quietly(db, operation)
        if isinstance(mapped, StorageConflict):
            logger.error("%s hit an unresolved constraint violation: %s", operation, exc)
        else:
            logger.warning("%s failed with a transient storage error: %s", operation, exc)
        raise mapped from exc


@asynccontextmanager
async def atomic(db):
    """Run the enclosed statements as one transaction on either backend.

    asyncpg connections are in autocommit mode, so PostgreSQL gets an explicit
    transaction block. aiosqlite already groups statements until commit; the
    block commits on success and rolls back when the body raises.
    """
    if isinstance(db, PgConnection):
        async with db.transaction():
            yield
        return
    try:
        yield
    except Exception:
        await db.rollback()
        raise
    await db.commit()


# ── Public API ────────────────────────────────────────────────────────

async def get_db() -> AsyncGenerator:
    """FastAPI dependency that yields a database connection and closes it after the request."""
    if _is_postgres():
        try:
            pool = await _get_pg_pool()
            conn = await pool.acquire(timeout=settings.storage_timeout_seconds)
        except (OSError, asyncio.TimeoutError) as exc:
            raise StorageUnavailable(f"PostgreSQL unavailable: {exc}", operation="connect") from exc
        pg_conn = PgConnection(conn)
        try:
            yield pg_conn
        finally:
            await pool.release(conn)
    else:
        try:
            db = await _connect_sqlite()
        except sqlite3.OperationalError as exc:
            raise StorageUnavailable(f"SQLite unavailable: {exc}", operation="connect") from exc
        try:
            yield db
        finally:
            await db.close()


def _run_alembic_upgrade():
    """Run Alembic migrations to head (synchronous, called once at startup)."""
    alembic_cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "migrations"))

    if _is_postgres():
        alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url)
    else:
        alembic_cfg.set_main_option(
            "sqlalchemy.url", f"sqlite:///{settings.database_path}"
        )

    command.upgrade(alembic_cfg, "head")


async def init_db():
    if _is_postgres():
        logger.info("Using PostgreSQL backend: %s", settings.database_url.split("@")[-1])
    else:
        # Ensure parent directory exists (for Docker volume mounts)
        db_path = Path(settings.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Using SQLite backend: %s", settings.database_path)

    # Alembic handles all schema creation and migrations
    _run_alembic_upgrade()


async def close_db():
    """Shutdown hook: close the connection pool if using PostgreSQL."""
    global _pg_pool
    if _pg_pool is not None:
        await _pg_pool.close()
        _pg_pool = None
