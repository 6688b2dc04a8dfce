from fastapi import Request
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from app.config import Settings
from app.migrations import run_migrations

Base = declarative_base()


def build_engine(config: Settings) -> AsyncEngine:
    return create_async_engine(config.database_url, echo=config.DATABASE_ECHO)


def build_session_factory(engine: AsyncEngine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db(request: Request):
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def create_tables(engine: AsyncEngine):
    # Import all models so they register on Base.metadata
    import models.user  # noqa: F401
    import models.community  # noqa: F401
    import models.feed  # noqa: F401
    import models.chat  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await run_migrations(conn)
