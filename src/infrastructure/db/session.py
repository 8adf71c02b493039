# src/infrastructure/db/session.py

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from src.infrastructure import config


# -----------------------------
# Engine
# -----------------------------
# Fulfillment and cancellation hold row locks for the length of one
# transaction; a small pool with a bounded wait keeps callers from piling up.
_pool_options = (
    {}
    if config.DATABASE_URL.startswith("sqlite")
    else {"pool_size": config.DB_POOL_SIZE, "pool_timeout": config.DB_POOL_TIMEOUT_SECONDS}
)

engine: Engine = create_engine(
    config.DATABASE_URL,
    echo=False,
    pool_pre_ping=True,
    **_pool_options,
)


class Base(DeclarativeBase):
    pass


# Snapshots built inside a transaction stay readable after commit.
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    expire_on_commit=False,
)


@contextmanager
def get_db_session() -> Iterator[Session]:
    """Commit-or-rollback session for scripts running outside FastAPI."""
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
