from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from app.migrations import MIGRATIONS, run_migrations


async def _columns(conn, table):
    result = await conn.execute(text(f"PRAGMA table_info({table})"))
    return {row["name"] for row in result.mappings()}


async def test_read_flags_are_added_once(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'legacy.db'}")
    try:
        async with engine.begin() as conn:
            # tables as they looked before read flags existed
            await conn.execute(text("CREATE TABLE comments (id INTEGER PRIMARY KEY, message TEXT)"))
            await conn.execute(text("CREATE TABLE messages (id INTEGER PRIMARY KEY, message TEXT)"))
            await conn.execute(text("INSERT INTO comments (id, message) VALUES (1, 'old')"))
            await run_migrations(conn)

        async with engine.begin() as conn:
            assert "is_read" in await _columns(conn, "comments")
            assert "is_read" in await _columns(conn, "messages")
            flag = (await conn.execute(text("SELECT is_read FROM comments WHERE id = 1"))).scalar()
            assert flag == 0
            # second run is a no-op
            await run_migrations(conn)
            applied = (await conn.execute(text("SELECT COUNT(*) FROM schema_migrations"))).scalar()
            assert applied == len(MIGRATIONS)
    finally:
        await engine.dispose()
