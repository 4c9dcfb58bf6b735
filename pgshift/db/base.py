"""Database configuration and base setup for pgshift.

Two kinds of databases are involved in a run:

- the migration endpoints (source and target Postgres), reached through
  SQLAlchemy with a synchronous psycopg driver and through the libpq client
  tools with a plain ``postgresql://`` URL;
- the run ledger, a SQLite file inside the run directory.
"""

from pathlib import Path
from typing import Union

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine.url import URL, make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """Base class for all ledger models."""

    pass


def _ensure_sync_driver(url: URL) -> URL:
    """Force the synchronous psycopg driver for Postgres URLs."""

    if url.drivername in ("postgres", "postgresql"):
        url = url.set(drivername="postgresql+psycopg")
    elif url.drivername.startswith("postgresql+"):
        # Normalize async and legacy driver variants to psycopg (sync)
        if url.drivername != "postgresql+psycopg":
            url = url.set(drivername="postgresql+psycopg")

    return url


def get_sqlalchemy_url(raw_url: str) -> str:
    """Return an endpoint URL with a guaranteed synchronous driver."""

    url = make_url(raw_url)
    # render_as_string(hide_password=False) keeps the real password;
    # str(url) would mask it with *** which breaks authentication
    return _ensure_sync_driver(url).render_as_string(hide_password=False)


def get_libpq_url(raw_url: str) -> str:
    """Return the endpoint URL in the form pg_dump and psql accept."""

    url = make_url(raw_url)
    if url.drivername.startswith("postgresql") or url.drivername == "postgres":
        url = url.set(drivername="postgresql")
    return url.render_as_string(hide_password=False)


def mask_url(raw_url: str) -> str:
    """Return the URL with its password masked, safe for logs and reports."""

    if not raw_url:
        return "<not set>"
    try:
        return make_url(raw_url).render_as_string(hide_password=True)
    except ArgumentError:
        return "<unparseable url>"


def create_endpoint_engine(raw_url: str) -> Engine:
    """Create an engine for a migration endpoint.

    No pool pre-ping retry loop: a failed connection surfaces immediately.
    """
    return create_engine(
        get_sqlalchemy_url(raw_url),
        pool_size=5,
        max_overflow=10,
        pool_recycle=3600,
        connect_args={"connect_timeout": 10},
    )


def create_ledger_engine(path: Union[str, Path]) -> Engine:
    """Create the SQLite engine for a run ledger.

    Args:
        path: Ledger file path, or ":memory:" for tests
    """
    target = str(path)
    url = "sqlite:///:memory:" if target == ":memory:" else f"sqlite:///{target}"
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Import models to ensure they're registered with Base
    from . import ledger_models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    return engine


def create_ledger_session(path: Union[str, Path]) -> Session:
    """Open a session on a run ledger, creating its tables if needed."""
    session_local = sessionmaker(
        autocommit=False, autoflush=False, bind=create_ledger_engine(path)
    )
    return session_local()
