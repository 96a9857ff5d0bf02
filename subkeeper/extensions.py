"""
Database engine, session factory and shared executors.
"""

import os
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import quote_plus

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

DEFAULT_SQLITE_URL = "sqlite:////data/subkeeper.db"


def _build_database_url() -> str:
    """
    Build the database URL from environment variables.

    POSTGRES_HOST switches to PostgreSQL; otherwise DATABASE_URL or the
    default SQLite file is used.
    """
    host = os.getenv("POSTGRES_HOST")
    if host:
        user = quote_plus(os.getenv("POSTGRES_USER", "subkeeper"))
        password = os.getenv("POSTGRES_PASSWORD")
        port = os.getenv("POSTGRES_PORT", "5432")
        name = os.getenv("POSTGRES_DB", "subkeeper")
        credentials = f"{user}:{quote_plus(password)}" if password else user
        return f"postgresql+psycopg2://{credentials}@{host}:{port}/{name}"

    return os.getenv("DATABASE_URL", DEFAULT_SQLITE_URL)


def _configure_sqlite(engine: Engine) -> None:
    """Apply connection pragmas for SQLite engines."""
    journal_mode = (
        "DELETE"
        if os.getenv("SQLITE_NETWORK_SHARE", "false").lower() == "true"
        else "WAL"
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA journal_mode={journal_mode}")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def make_engine(url: str) -> Engine:
    """Create an engine for the given URL with dialect-specific options."""
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _configure_sqlite(engine)
        return engine

    return create_engine(url, pool_pre_ping=True, pool_size=10, max_overflow=20)


SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False)
engine: Engine | None = None
DB_DIALECT: str = "sqlite"


def init_engine(url: str | None = None) -> Engine:
    """
    Create the process-wide engine and bind SessionLocal to it.

    Args:
        url: Database URL, or None to build one from the environment.

    Returns:
        The bound engine.
    """
    global engine, DB_DIALECT

    if engine is not None:
        engine.dispose()

    engine = make_engine(url or _build_database_url())
    DB_DIALECT = engine.dialect.name
    SessionLocal.configure(bind=engine)
    return engine


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler = BackgroundScheduler()
sse_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="sse")
