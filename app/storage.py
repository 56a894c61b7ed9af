"""SQLModel-backed storage for the contact discovery service."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlmodel import select

from .database import get_db
from .db_models import Computation, DiscoverySession, SealedState

logger = logging.getLogger(__name__)


def _aware(dt: datetime) -> datetime:
    """Ensure a datetime is timezone-aware (assume UTC if naive)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class SessionStore:
    """Read access to ledger records.

    Transitions go through app.ledger so they are status-checked under the
    ledger lock.
    """

    def get(self, session_id: str) -> DiscoverySession | None:
        with get_db() as session:
            return session.get(DiscoverySession, session_id)

    def list(self, filters: dict | None = None) -> list[DiscoverySession]:
        with get_db() as session:
            records = list(
                session.exec(
                    select(DiscoverySession).order_by(DiscoverySession.created_at.desc())
                ).all()
            )
        if filters:
            if filters.get("status") is not None:
                records = [r for r in records if r.status == filters["status"]]
            if filters.get("party"):
                party = filters["party"]
                records = [r for r in records if party in (r.first_party, r.second_party)]
        return records

    def clear(self) -> None:
        with get_db() as session:
            for r in session.exec(select(DiscoverySession)).all():
                session.delete(r)


class SealedStateStore:
    """Storage for sealed session state blobs."""

    def get(self, session_id: str) -> SealedState | None:
        with get_db() as session:
            return session.get(SealedState, session_id)

    def put(self, session_id: str, sealed: str) -> int:
        """Insert or replace the sealed state. Returns the new version."""
        with get_db() as session:
            existing = session.get(SealedState, session_id)
            if existing:
                existing.sealed = sealed
                existing.version += 1
                existing.updated_at = datetime.now(timezone.utc)
                session.add(existing)
                return existing.version
            session.add(SealedState(session_id=session_id, sealed=sealed))
            return 0

    def clear(self) -> None:
        with get_db() as session:
            for s in session.exec(select(SealedState)).all():
                session.delete(s)


class ComputationStore:
    """Storage for computations queued to the compute boundary."""

    def get(self, computation_id: str) -> Computation | None:
        with get_db() as session:
            return session.get(Computation, computation_id)

    def list(self, filters: dict | None = None) -> list[Computation]:
        with get_db() as session:
            computations = list(
                session.exec(select(Computation).order_by(Computation.created_at)).all()
            )
        if filters:
            if filters.get("session_id"):
                computations = [c for c in computations if c.session_id == filters["session_id"]]
            if filters.get("status"):
                computations = [c for c in computations if c.status == filters["status"]]
        return computations

    def get_pending(self) -> list[Computation]:
        """Queued computations, oldest first."""
        return self.list({"status": "queued"})

    def finalize(self, computation_id: str, output: dict) -> bool:
        with get_db() as session:
            c = session.get(Computation, computation_id)
            if not c or c.status != "queued":
                return False
            c.status = "finalized"
            c.output = output
            c.finalized_at = datetime.now(timezone.utc)
            session.add(c)
            return True

    def fail(self, computation_id: str, error: str) -> bool:
        with get_db() as session:
            c = session.get(Computation, computation_id)
            if not c or c.status != "queued":
                return False
            c.status = "failed"
            c.error = error
            c.finalized_at = datetime.now(timezone.utc)
            session.add(c)
            return True

    def clear(self) -> None:
        with get_db() as session:
            for c in session.exec(select(Computation)).all():
                session.delete(c)


# Global store instances
session_store = SessionStore()
sealed_state_store = SealedStateStore()
computation_store = ComputationStore()
