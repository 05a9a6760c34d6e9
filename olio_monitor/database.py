"""Database configuration and session management."""
import os
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker


def _database_url() -> str:
    url = os.getenv("DATABASE_URL", "sqlite:///./olio_monitor.db")
    # Managed Postgres providers hand out postgres:// which SQLAlchemy rejects
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


def build_engine(url: str) -> Engine:
    """Create an engine with the pool settings appropriate to the backend."""
    if url.startswith("sqlite"):
        # Request handlers run in a threadpool, so the connection crosses threads
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
    )


SQLALCHEMY_DATABASE_URL = _database_url()
engine = build_engine(SQLALCHEMY_DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind: Engine = engine) -> None:
    """Create all tables. Models must be imported so they register on Base."""
    from olio_monitor.models import audit, domain  # noqa: F401

    Base.metadata.create_all(bind=bind)


def get_db():
    """Dependency for FastAPI endpoints to get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
