"""SQLModel database models for the contact discovery ledger.

These models serve as both SQLAlchemy ORM models AND Pydantic models,
eliminating the need for separate data classes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlmodel import JSON, Column, Field, SQLModel


def utcnow() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


class DiscoverySession(SQLModel, table=True):
    """Ledger record for one discovery session.

    session_id, first_party, second_party, status and bump make up the
    106-byte record layout; the remaining columns are bookkeeping.
    """

    __tablename__ = "discovery_sessions"

    session_id: str = Field(primary_key=True)  # 64 hex chars
    address: str = Field(unique=True, index=True)
    bump: int = Field(default=255)
    first_party: str = Field(index=True)  # identity hex
    second_party: str | None = Field(default=None, index=True)
    status: int = Field(default=0, index=True)
    computation_id: str | None = None  # last queued computation
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(default_factory=utcnow, index=True)
    computing_since: datetime | None = None


class SealedState(SQLModel, table=True):
    """Session state as sealed by the compute boundary. Opaque outside it."""

    __tablename__ = "sealed_states"

    session_id: str = Field(primary_key=True)
    sealed: str  # base64(nonce || ciphertext)
    version: int = Field(default=0)
    updated_at: datetime = Field(default_factory=utcnow)


class Computation(SQLModel, table=True):
    """One request queued to the compute boundary."""

    __tablename__ = "computations"

    computation_id: str = Field(primary_key=True)  # 16 hex chars
    session_id: str = Field(index=True)
    kind: str = Field(index=True)
    status: str = Field(default="queued", index=True)  # queued|finalized|failed
    party: int | None = None
    request: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    output: dict | None = Field(default=None, sa_column=Column(JSON))
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    finalized_at: datetime | None = None


class Setting(SQLModel, table=True):
    """Key-value settings stored in DB, overriding env vars."""

    __tablename__ = "settings"

    key: str = Field(primary_key=True)
    value: str = Field(default="")
    is_secret: bool = Field(default=False)
    updated_at: datetime = Field(default_factory=utcnow)
