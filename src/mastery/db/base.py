"""Database configuration and session management."""

from __future__ import annotations

import os
from datetime import datetime
from typing import Any, Dict

from dotenv import load_dotenv
from sqlalchemy import MetaData, create_engine, func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from mastery.db.types import UTCDateTime, utc_now

# Load environment variables
load_dotenv()


class Base(DeclarativeBase):
    """Shared base for all models."""

    metadata = MetaData()

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utc_now, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utc_now,
        server_default=func.now(),
        onupdate=utc_now,
        nullable=False,
    )


# Configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///mastery.db")


def build_engine(url: str) -> Engine:
    """Create an engine tuned for the backend behind ``url``."""
    connect_args: Dict[str, Any] = {}
    engine_kwargs: Dict[str, Any] = {"echo": False}

    if url.startswith("postgresql"):
        # Production PostgreSQL settings
        engine_kwargs.update({
            "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
            "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "20")),
            "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", "3600")),
            "pool_pre_ping": True,
        })

        ssl_mode = os.getenv("DB_SSL_MODE", "prefer")  # 'require' for strict RDS
        if ssl_mode:
            connect_args["sslmode"] = ssl_mode
    else:
        # SQLite for dev and tests. Writers queue on the file lock instead of failing fast.
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = int(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))

    if connect_args:
        engine_kwargs["connect_args"] = connect_args

    return create_engine(url, **engine_kwargs)


def init_db(bind: Engine | None = None) -> None:
    """Create all tables. Production schemas are managed by alembic."""
    import mastery.db.models  # noqa: F401  registers the mappers

    Base.metadata.create_all(bind=bind or engine)


engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
