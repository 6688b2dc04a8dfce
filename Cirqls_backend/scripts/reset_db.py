import asyncio
import sys
from pathlib import Path


async def recreate_db():
    backend_root = Path(__file__).resolve().parents[1]
    # Ensure backend root on import path
    sys.path.insert(0, str(backend_root))

    from app.config import settings  # type: ignore
    from app.database import build_engine, create_tables  # type: ignore

    if not settings.DATABASE_URL:
        db_path = Path(settings.DATABASE_PATH)
        if not db_path.is_absolute():
            db_path = backend_root / db_path
        if db_path.exists():
            db_path.unlink()
        settings.DATABASE_PATH = str(db_path)

    engine = build_engine(settings)
    try:
        await create_tables(engine)
    finally:
        await engine.dispose()
    return settings.database_url


if __name__ == '__main__':
    url = asyncio.run(recreate_db())
    print(f'Database recreated at {url}')
