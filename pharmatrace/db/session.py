from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from pharmatrace.core.config import get_settings

settings = get_settings()

DATABASE_URL = settings.database_url  # fail fast if missing

engine = create_engine(
    DATABASE_URL,
    pool_pre_ping=True,
    future=True,
    # the reconciliation loop shares the engine from a worker thread
    connect_args={"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {},
)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    future=True,
)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
