"""
Database engine and session factory for the entitlement store.
"""

import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from tenant_entitlements.config import DATABASE_URL

logger = logging.getLogger(__name__)

Base = declarative_base()


def build_engine(database_url: Optional[str] = None, **kwargs) -> Engine:
    """
    Create an engine for the store.

    In-memory SQLite gets a single shared connection so every session (and
    every worker thread) sees the same database.
    """
    url = database_url or DATABASE_URL
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        if ":memory:" in url or url == "sqlite://":
            kwargs.setdefault("poolclass", StaticPool)
    else:
        kwargs.setdefault("pool_pre_ping", True)
    engine = create_engine(url, **kwargs)
    logger.info("Entitlement store engine created", extra={"dialect": engine.dialect.name})
    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_schema(engine: Engine) -> None:
    # Import registers the tables on Base.metadata
    from tenant_entitlements import tables  # noqa: F401

    Base.metadata.create_all(bind=engine)
