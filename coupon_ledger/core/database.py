"""Engine, session factory and declarative base."""

from collections.abc import Generator
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from coupon_ledger.core.config import settings


def create_db_engine(dsn: str) -> Engine:
    """Build an engine for ``dsn``.

    SQLite connections are handed across request threads. Pooled servers are
    pinged on checkout.
    """
    if dsn.startswith("sqlite"):
        return create_engine(dsn, connect_args={"check_same_thread": False})
    return create_engine(dsn, pool_pre_ping=True)


engine = create_db_engine(settings.APP_DATABASE_DSN)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base: Any = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """Create all tables without running migrations."""
    import coupon_ledger.models  # noqa: F401

    Base.metadata.create_all(bind=bind if bind is not None else engine)
