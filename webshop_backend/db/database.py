# webshop_backend/db/database.py
import os
from dotenv import load_dotenv
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker, declarative_base

load_dotenv()

DATABASE_URL = os.getenv("WEBSHOP_DATABASE_URL", "sqlite+aiosqlite:///./data/webshop.db")
DB_ECHO = os.getenv("WEBSHOP_DB_ECHO", "").lower() in ("1", "true", "yes")

# Базовый класс для моделей
Base = declarative_base()


def build_engine(database_url: str = DATABASE_URL) -> AsyncEngine:
    return create_async_engine(database_url, echo=DB_ECHO)


def build_session_factory(engine: AsyncEngine):
    # Асинхронная фабрика сессий
    return sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


def prepare_database_dir(engine: AsyncEngine):
    """Make sure the directory of a file-backed SQLite database exists."""
    if engine.url.get_backend_name() != "sqlite":
        return
    path = engine.url.database
    if not path or path == ":memory:":
        return
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)


# Генератор сессий
async def get_db(request: Request):
    async with request.app.state.session_factory() as session:
        yield session
