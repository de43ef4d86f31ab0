"""
Database layer — PostgreSQL via SQLAlchemy 2.0.

The engine runs as a short-lived batch job invoked by the scheduler, so
the store uses a synchronous engine and a plain session factory; FastAPI
runs the job endpoints in its threadpool.

Provides:
    • Engine (lazily created from settings) and session factory builder
    • Base model for ORM entities
    • close_db() for application shutdown

Usage:
    from backend.app.core.database import build_engine, build_session_factory

    engine = build_engine("sqlite://")
    Session = build_session_factory(engine)
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


def build_engine(url: Optional[str] = None, *, echo: Optional[bool] = None) -> Engine:
    """
    Create an engine for the given URL (defaults to settings.DATABASE_URL).

    In-memory SQLite gets a StaticPool so every session sees the same
    database, which is what the test-suite relies on.
    """
    url = url or settings.DATABASE_URL
    echo = settings.DATABASE_ECHO if echo is None else echo

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, future=True, **kwargs)

    return create_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,
        echo=echo,
        future=True,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


# ── Lazily created default engine ──
_engine: Optional[Engine] = None


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


# ── Lifecycle ──
def close_db() -> None:
    """Dispose engine connections."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
        logger.info("Database connections closed")
