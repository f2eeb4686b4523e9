"""Connection layer for SQLite (aiosqlite) and PostgreSQL (asyncpg).

DATABASE_URL picks the backend: a "postgresql://" URL selects asyncpg,
anything else falls back to aiosqlite on DATABASE_PATH.

Services only ever see the aiosqlite surface: execute() with ? placeholders,
fetchone()/fetchall(), lastrowid, rowcount, commit() and rollback(). The
PostgreSQL adapter below translates that surface onto asyncpg, and opens a
transaction on the first write so a service's statements commit together.
"""

import re
import logging
from collections.abc import AsyncGenerator
from datetime import datetime, date
from pathlib import Path

from alembic import command
from alembic.config import Config

from app.config import settings

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"


def _is_postgres() -> bool:
    return settings.database_url.startswith("postgresql://")


# ── SQLite ────────────────────────────────────────────────────────────

async def _connect_sqlite():
    import aiosqlite
    db = await aiosqlite.connect(settings.database_path)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    return db


async def apply_schema(db) -> None:
    """Load schema.sql into an aiosqlite connection (tests and local tooling)."""
    await db.executescript(SCHEMA_PATH.read_text())
    await db.commit()


# ── PostgreSQL adapter ────────────────────────────────────────────────

_pg_pool = None


async def _get_pg_pool():
    global _pg_pool
    if _pg_pool is None:
        import asyncpg
        _pg_pool = await asyncpg.create_pool(settings.database_url, min_size=2, max_size=10)
    return _pg_pool


def _as_text(value):
    # SQLite hands timestamps back as ISO strings; keep PostgreSQL rows identical
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class PgRow:
    """asyncpg Record seen through the sqlite3.Row interface used by dict(row)."""

    __slots__ = ("_record",)

    def __init__(self, record):
        self._record = record

    def __getitem__(self, key):
        return _as_text(self._record[key])

    def keys(self):
        return self._record.keys()


_PLACEHOLDER_RE = re.compile(r"'[^']*'|(\?)")
_ISO_TIMESTAMP_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")


def _numbered_placeholders(sql: str) -> str:
    """Rewrite ? placeholders as $1, $2, ... leaving string literals alone."""
    position = 0

    def replace(match):
        nonlocal position
        if match.group(1) is None:
            return match.group(0)
        position += 1
        return f"${position}"

    return _PLACEHOLDER_RE.sub(replace, sql)


def _timestamp_args(args: tuple) -> tuple:
    """Turn ISO timestamp strings into naive datetimes for TIMESTAMP columns."""
    converted = []
    for arg in args:
        if isinstance(arg, str) and _ISO_TIMESTAMP_RE.match(arg):
            try:
                arg = datetime.fromisoformat(arg).replace(tzinfo=None)
            except ValueError:
                pass
        converted.append(arg)
    return tuple(converted)


def _affected_rows(status: str) -> int:
    # asyncpg reports "UPDATE 3", "DELETE 0", ...
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return -1


class PgCursor:
    __slots__ = ("_rows", "lastrowid", "rowcount", "_idx")

    def __init__(self, rows=None, lastrowid=None, rowcount=-1):
        self._rows = rows or []
        self.lastrowid = lastrowid
        self.rowcount = rowcount
        self._idx = 0

    async def fetchone(self):
        if self._idx >= len(self._rows):
            return None
        row = self._rows[self._idx]
        self._idx += 1
        return PgRow(row)

    async def fetchall(self):
        remaining, self._idx = self._rows[self._idx:], len(self._rows)
        return [PgRow(r) for r in remaining]


class PgConnection:
    """aiosqlite-shaped wrapper around one pooled asyncpg connection."""

    def __init__(self, conn):
        self._conn = conn
        self._tx = None

    async def execute(self, sql: str, params=None):
        pg_sql = _numbered_placeholders(sql)
        args = tuple(params) if params else ()
        try:
            return await self._run(pg_sql, args)
        except Exception as exc:
            # Timestamps travel as ISO strings; asyncpg wants datetimes for them
            if type(exc).__name__ != "DataError" or not args:
                raise
            converted = _timestamp_args(args)
            if converted == args:
                raise
            return await self._run(pg_sql, converted)

    async def _begin(self):
        if self._tx is None:
            self._tx = self._conn.transaction()
            await self._tx.start()

    async def _run(self, pg_sql: str, args: tuple):
        verb = pg_sql.lstrip().upper()
        if verb.startswith("SELECT"):
            rows = await self._conn.fetch(pg_sql, *args)
            return PgCursor(rows=rows, rowcount=len(rows))

        await self._begin()
        if verb.startswith("INSERT"):
            if "RETURNING" not in verb:
                pg_sql = pg_sql.rstrip().rstrip(";") + " RETURNING id"
            row = await self._conn.fetchrow(pg_sql, *args)
            if row is None:
                # ON CONFLICT DO NOTHING skipped the insert
                return PgCursor(rowcount=0)
            return PgCursor(rows=[row], lastrowid=row["id"], rowcount=1)
        if "RETURNING" in verb:
            rows = await self._conn.fetch(pg_sql, *args)
            return PgCursor(rows=rows, rowcount=len(rows))
        status = await self._conn.execute(pg_sql, *args)
        return PgCursor(rowcount=_affected_rows(status))

    async def commit(self):
        if self._tx is not None:
            tx, self._tx = self._tx, None
            await tx.commit()

    async def rollback(self):
        if self._tx is not None:
            tx, self._tx = self._tx, None
            await tx.rollback()

    async def close(self):
        await self.rollback()


# ── Public API ────────────────────────────────────────────────────────

async def get_db() -> AsyncGenerator:
    """FastAPI dependency: one connection per request, closed afterwards."""
    if _is_postgres():
        pool = await _get_pg_pool()
        conn = await pool.acquire()
        pg_conn = PgConnection(conn)
        try:
            yield pg_conn
        finally:
            await pg_conn.close()
            await pool.release(conn)
    else:
        db = await _connect_sqlite()
        try:
            yield db
        finally:
            await db.close()


async def open_db():
    """Connection for work outside a request, such as the due-date sweep.

    Close it with close_standalone_db().
    """
    if _is_postgres():
        pool = await _get_pg_pool()
        return PgConnection(await pool.acquire())
    return await _connect_sqlite()


async def close_standalone_db(db) -> None:
    await db.close()
    if isinstance(db, PgConnection):
        pool = await _get_pg_pool()
        await pool.release(db._conn)


def _run_alembic_upgrade():
    alembic_cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(PROJECT_ROOT / "migrations"))
    if _is_postgres():
        url = settings.database_url
    else:
        url = f"sqlite:///{settings.database_path}"
    alembic_cfg.set_main_option("sqlalchemy.url", url)
    command.upgrade(alembic_cfg, "head")


async def init_db():
    if _is_postgres():
        logger.info("Using PostgreSQL backend: %s", settings.database_url.split("@")[-1])
    else:
        Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)
        logger.info("Using SQLite backend: %s", settings.database_path)
    _run_alembic_upgrade()


async def close_db():
    global _pg_pool
    if _pg_pool is not None:
        await _pg_pool.close()
        _pg_pool = None
