"""
Database session management for topicflow.

Provides SQLAlchemy engine, session factory, and FastAPI dependencies
with SQLite-specific optimizations (WAL mode, foreign keys enforcement).
"""
from typing import Generator
from sqlalchemy import create_engine, event, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from pathlib import Path

from topicflow.web.config import settings


def _sqlite_path(url: str):
    prefix = "sqlite:///"
    if url.startswith(prefix) and ":memory:" not in url:
        return Path(url[len(prefix):])
    return None


# Make sure the SQLite directory exists before the engine connects
_db_path = _sqlite_path(settings.database_url)
if _db_path is not None:
    _db_path.parent.mkdir(parents=True, exist_ok=True)

DATABASE_URL = settings.database_url

# Create engine with connection pooling appropriate for SQLite
engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False},  # Allow multi-threading
    poolclass=StaticPool,  # Reuse single connection for SQLite
    echo=False,  # Set to True for SQL debugging
)


@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """
    Set SQLite pragmas for optimal performance and data integrity.

    Called automatically when a new connection is established.

    Pragmas:
    - foreign_keys=ON: Enforce foreign key constraints
    - journal_mode=WAL: Write-Ahead Logging for better concurrency
    - synchronous=NORMAL: Balance between safety and performance
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine
)


def init_db() -> None:
    """Create all tables on the configured engine (migrations cover upgrades)."""
    from topicflow.web.models import Base

    Base.metadata.create_all(bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency for database sessions.

    Yields a database session and ensures it's closed after use.
    Use in route functions with Depends(get_db).
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_test_session_factory() -> sessionmaker:
    """
    Session factory bound to a fresh in-memory SQLite database.

    All sessions from the factory share one connection (StaticPool), so the
    orchestrator's per-worker sessions and a test's own session see the
    same data.
    """
    from topicflow.web.models import Base

    test_engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=test_engine
    )


def get_test_db() -> Generator[Session, None, None]:
    """
    Test database session factory.

    Creates an in-memory SQLite database for testing.
    Each test gets a fresh database with all tables created.

    Example:
        @pytest.fixture
        def db():
            yield from get_test_db()
    """
    TestSessionLocal = create_test_session_factory()

    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()
        TestSessionLocal.kw["bind"].dispose()
