"""Database bootstrap helpers for the order store."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from tablepay.common.config import settings


def build_engine(dsn: str, **kwargs) -> Engine:
    if dsn.startswith("sqlite"):
        # Sessions are opened from request threads and the event loop alike.
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    return create_engine(dsn, **kwargs)


def build_session_factory(engine: Engine) -> sessionmaker:
    # `expire_on_commit=False` keeps snapshots readable after commit.
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


# Single SQLAlchemy engine per process.
engine = build_engine(settings.postgres_dsn)
SessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    """Declarative base for SQLAlchemy models."""

    pass
