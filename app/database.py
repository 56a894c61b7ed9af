"""SQLite database for the contact discovery service.

Holds the ledger records (discovery_sessions), the boundary's sealed session
state (sealed_states), queued and finished computations (computations) and
admin setting overrides (settings). The path comes from PCD_DB_PATH.
"""

from __future__ import annotations

import os
from contextlib import contextmanager

from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine

DB_PATH = os.environ.get("PCD_DB_PATH", "pcd.db")
DATABASE_URL = f"sqlite:///{DB_PATH}"

engine = create_engine(
    DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
)


@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    """Set SQLite pragmas on each connection."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_session() -> Session:
    """Create a new database session."""
    return Session(engine, expire_on_commit=False)


@contextmanager
def get_db():
    """Context manager for database sessions with auto-commit.

    Everything written inside the block commits together or not at all.
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db():
    """Create any missing tables; existing rows are left alone."""
    # Registers the tables on SQLModel.metadata
    from . import db_models  # noqa: F401

    SQLModel.metadata.create_all(engine)
