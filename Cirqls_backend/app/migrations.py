import logging
from datetime import datetime, timezone

from sqlalchemy import text

logger = logging.getLogger("cirqls.migrations")

MIGRATIONS = []


def migration(name: str):
    """Register a named, run-once schema patch."""
    def register(handler):
        MIGRATIONS.append((name, handler))
        return handler
    return register


async def _prepare_ledger(conn):
    await conn.execute(text(
        "CREATE TABLE IF NOT EXISTS schema_migrations ("
        " name TEXT PRIMARY KEY,"
        " applied_at TEXT NOT NULL"
        ")"
    ))


async def _applied(conn) -> set[str]:
    result = await conn.execute(text("SELECT name FROM schema_migrations"))
    return {row[0] for row in result}


async def _record(conn, name: str):
    await conn.execute(
        text("INSERT INTO schema_migrations(name, applied_at) VALUES (:name, :at)"),
        {"name": name, "at": datetime.now(timezone.utc).isoformat()},
    )


async def _columns(conn, table: str) -> set[str]:
    result = await conn.execute(text(f"PRAGMA table_info({table})"))
    return {row["name"] for row in result.mappings()}


async def _add_flag_column(conn, table: str, column: str):
    if column in await _columns(conn, table):
        return
    await conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} BOOLEAN NOT NULL DEFAULT 0"))


@migration("202203_add_is_read_to_comments")
async def add_comment_read_flag(conn):
    await _add_flag_column(conn, "comments", "is_read")


@migration("202203_add_is_read_to_messages")
async def add_message_read_flag(conn):
    await _add_flag_column(conn, "messages", "is_read")


async def run_migrations(conn):
    # Patches SQLite files created before a column existed; other engines are managed externally
    if conn.dialect.name != "sqlite":
        return
    await _prepare_ledger(conn)
    done = await _applied(conn)
    for name, handler in MIGRATIONS:
        if name in done:
            continue
        await handler(conn)
        await _record(conn, name)
        logger.info("applied migration %s", name)
