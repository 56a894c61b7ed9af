"""Session ledger: status-gated transitions over DiscoverySession records.

Every mutating operation follows the same order:
    1. verify the caller's request signature
    2. parse and validate the payload (including opening it in the boundary)
    3. under the ledger lock, in one DB transaction: load the record, apply
       lazy expiry, check authority, check status, mutate, add the
       computation row

Any failure before step 3 commits leaves the record untouched. The status
only ever moves to a higher code.
"""

from __future__ import annotations

import logging
import secrets
import threading
from datetime import datetime, timedelta, timezone

from sqlmodel import Session, select

from pcd.cipher import EncryptedSubmission
from pcd.errors import AuthorityError, InputError, SessionNotFoundError, StateError
from pcd.identity import parse_identity, verify_request_signature
from pcd.layout import (
    ZERO_IDENTITY,
    SessionRecord,
    SessionStatus,
    derive_session_address,
    encode_record,
    parse_session_id,
    session_id_to_hex,
)

from .database import get_db
from .db_models import Computation, DiscoverySession
from .mxe import get_boundary
from .settings import get_setting_int
from .storage import _aware, session_store

logger = logging.getLogger(__name__)

# One writer at a time across all records
_lock = threading.RLock()

_EXPIRABLE = (
    SessionStatus.AWAITING_FIRST_PARTY,
    SessionStatus.AWAITING_SECOND_PARTY,
    SessionStatus.COMPUTING,
)

# Statuses in which each computation kind may run or be delivered
RUNNABLE_STATUSES = {
    "init_session": _EXPIRABLE,
    "submit_first_party": (SessionStatus.AWAITING_SECOND_PARTY, SessionStatus.COMPUTING),
    "submit_and_match": (SessionStatus.COMPUTING,),
    "reveal_matches": (SessionStatus.MATCHED,),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _short(session_id: str) -> str:
    return session_id[:16]


def new_computation(
    session_id: str, kind: str, payload: dict | None = None, party: int | None = None
) -> Computation:
    return Computation(
        computation_id=secrets.token_hex(8),
        session_id=session_id,
        kind=kind,
        party=party,
        request=payload or {},
    )


def is_due(record: DiscoverySession, now: datetime | None = None) -> bool:
    """Whether an unfinished record is past its deadline."""
    now = now or _now()
    if record.status not in _EXPIRABLE:
        return False
    if now > _aware(record.expires_at):
        return True
    if record.status == SessionStatus.COMPUTING and record.computing_since is not None:
        timeout = timedelta(seconds=get_setting_int("operational.computation_timeout_seconds"))
        return now > _aware(record.computing_since) + timeout
    return False


def _fail_pending(db: Session, session_id: str, now: datetime, reason: str) -> int:
    """Fail every queued computation of a session in the current transaction."""
    pending = db.exec(
        select(Computation).where(
            Computation.session_id == session_id, Computation.status == "queued"
        )
    ).all()
    for computation in pending:
        computation.status = "failed"
        computation.error = reason
        computation.finalized_at = now
        db.add(computation)
    if pending:
        logger.info(f"Session {_short(session_id)}: {len(pending)} pending computation(s) failed")
    return len(pending)


def _expire(db: Session, record: DiscoverySession, now: datetime, reason: str) -> None:
    record.status = SessionStatus.EXPIRED
    record.computing_since = None
    record.updated_at = now
    db.add(record)
    _fail_pending(db, record.session_id, now, reason)


def _expire_if_due(db: Session, record: DiscoverySession, now: datetime) -> bool:
    if not is_due(record, now):
        return False
    logger.info(
        f"Session {_short(record.session_id)} expired "
        f"(was {SessionStatus(record.status).slug})"
    )
    _expire(db, record, now, "session expired")
    return True


def _load(db: Session, session_id: str, now: datetime) -> DiscoverySession:
    record = db.get(DiscoverySession, session_id)
    if record is None:
        raise SessionNotFoundError(f"Session {_short(session_id)} not found")
    _expire_if_due(db, record, now)
    return record


def _require_status(record: DiscoverySession, expected: SessionStatus, action: str) -> None:
    if record.status == expected:
        return
    current = SessionStatus(record.status)
    if current == SessionStatus.EXPIRED:
        raise StateError(f"Cannot {action}: session has expired")
    raise StateError(f"Cannot {action}: session is {current.label} ({current.slug})")


def _commit_expiry(session_id: str, now: datetime) -> None:
    """Persist a lazy expiry discovered while rejecting an operation."""
    with get_db() as db:
        record = db.get(DiscoverySession, session_id)
        if record is not None:
            _expire_if_due(db, record, now)


def _transition(session_id: str, mutate) -> tuple[DiscoverySession, Computation | None]:
    """Run mutate(db, record, now) under the lock in one transaction.

    A StateError raised from mutate still persists lazy expiry.
    """
    now = _now()
    with _lock:
        try:
            with get_db() as db:
                record = _load(db, session_id, now)
                computation = mutate(db, record, now)
                record.updated_at = now
                db.add(record)
                if computation is not None:
                    record.computation_id = computation.computation_id
                    db.add(computation)
        except StateError:
            _commit_expiry(session_id, now)
            raise
    return record, computation


def _parse_submission(payload: dict) -> EncryptedSubmission:
    if not isinstance(payload, dict):
        raise InputError("Submission must be an object")
    submission = EncryptedSubmission.from_dict(payload)
    get_boundary().validate_submission(submission)
    return submission


# ── Operations ───────────────────────────────────────────────────────────────


def create_session(
    session_id: str, identity: str, signature: str
) -> tuple[DiscoverySession, Computation]:
    """Initialize a session with the caller as first party.

    Raises:
        InputError: Malformed session id or identity
        AuthorityError: Bad signature
        StateError: Session id already in use
    """
    sid = session_id_to_hex(parse_session_id(session_id))
    caller = verify_request_signature(identity, signature, "create_session", sid, {})
    address, bump = derive_session_address(sid)
    now = _now()
    ttl = get_setting_int("operational.session_ttl_seconds")

    record = DiscoverySession(
        session_id=sid,
        address=address,
        bump=bump,
        first_party=caller.hex(),
        status=SessionStatus.AWAITING_FIRST_PARTY,
        created_at=now,
        updated_at=now,
        expires_at=now + timedelta(seconds=ttl),
    )
    computation = new_computation(sid, "init_session")
    record.computation_id = computation.computation_id

    with _lock:
        if session_store.get(sid) is not None:
            raise StateError(f"Session {_short(sid)} already exists")
        with get_db() as db:
            db.add(record)
            db.add(computation)

    logger.info(f"Session {_short(sid)} created by {caller.hex()[:16]}")
    return record, computation


def submit_first_party(
    session_id: str, identity: str, signature: str, submission: dict
) -> tuple[DiscoverySession, Computation]:
    """Accept the first party's encrypted contact set.

    Raises:
        InputError: Malformed submission
        AuthorityError: Bad signature or caller is not the first party
        StateError: Session is not awaiting the first party
    """
    sid = session_id_to_hex(parse_session_id(session_id))
    caller = verify_request_signature(identity, signature, "submit_first_party", sid, submission)
    sealed = _parse_submission(submission)

    def mutate(db, record, now):
        if record.first_party != caller.hex():
            raise AuthorityError("Only the first party can submit first-party contacts")
        _require_status(record, SessionStatus.AWAITING_FIRST_PARTY, "submit first-party contacts")
        record.status = SessionStatus.AWAITING_SECOND_PARTY
        return new_computation(
            sid, "submit_first_party", {"submission": sealed.to_dict()}, party=1
        )

    record, computation = _transition(sid, mutate)
    logger.info(f"Session {_short(sid)} first-party contacts accepted")
    return record, computation


def submit_second_party(
    session_id: str, identity: str, signature: str, submission: dict
) -> tuple[DiscoverySession, Computation]:
    """Claim the second-party slot and queue the match.

    Raises:
        InputError: Malformed submission
        AuthorityError: Bad signature, or the first party claiming the slot
        StateError: Session is not awaiting the second party
    """
    sid = session_id_to_hex(parse_session_id(session_id))
    caller = verify_request_signature(identity, signature, "submit_second_party", sid, submission)
    sealed = _parse_submission(submission)

    def mutate(db, record, now):
        _require_status(record, SessionStatus.AWAITING_SECOND_PARTY, "submit second-party contacts")
        if record.second_party is not None:
            raise AuthorityError("The second-party slot is already taken")
        if record.first_party == caller.hex():
            raise AuthorityError("The first party cannot also be the second party")
        record.second_party = caller.hex()
        record.status = SessionStatus.COMPUTING
        record.computing_since = now
        return new_computation(sid, "submit_and_match", {"submission": sealed.to_dict()}, party=2)

    record, computation = _transition(sid, mutate)
    logger.info(f"Session {_short(sid)} second party joined, computing matches")
    return record, computation


def reveal(
    session_id: str, identity: str, signature: str, public_key: str
) -> tuple[DiscoverySession, Computation]:
    """Queue a read-only projection of the caller's matches.

    The record is not modified apart from remembering the computation id.

    Raises:
        InputError: Malformed public key
        AuthorityError: Bad signature or caller is not a party
        StateError: Session has not matched
    """
    sid = session_id_to_hex(parse_session_id(session_id))
    payload = {"public_key": public_key}
    caller = verify_request_signature(identity, signature, "reveal", sid, payload)
    try:
        key = bytes.fromhex(public_key)
    except ValueError as e:
        raise InputError("Reveal public key is not valid hex") from e
    if len(key) != 32:
        raise InputError("Reveal public key must be 32 bytes")
    get_boundary().validate_public_key(key)

    def mutate(db, record, now):
        if caller.hex() == record.first_party:
            party = 1
        elif caller.hex() == record.second_party:
            party = 2
        else:
            raise AuthorityError("Only session parties can reveal matches")
        _require_status(record, SessionStatus.MATCHED, "reveal matches")
        return new_computation(
            sid, "reveal_matches", {"party": party, "public_key": public_key}, party=party
        )

    return _transition(sid, mutate)


def cancel_session(session_id: str, identity: str, signature: str) -> DiscoverySession:
    """First party abandons a session that has not started computing.

    Raises:
        AuthorityError: Bad signature or caller is not the first party
        StateError: Session is computing or finished
    """
    sid = session_id_to_hex(parse_session_id(session_id))
    caller = verify_request_signature(identity, signature, "cancel", sid, {})

    def mutate(db, record, now):
        if record.first_party != caller.hex():
            raise AuthorityError("Only the first party can cancel a session")
        current = SessionStatus(record.status)
        if current not in (
            SessionStatus.AWAITING_FIRST_PARTY,
            SessionStatus.AWAITING_SECOND_PARTY,
        ):
            raise StateError(f"Cannot cancel: session is {current.label} ({current.slug})")
        _expire(db, record, now, "session cancelled")
        return None

    record, _ = _transition(sid, mutate)
    logger.info(f"Session {_short(sid)} cancelled by first party")
    return record


def mark_matched(session_id: str) -> bool:
    """Advance COMPUTING -> MATCHED after a verified match output."""
    now = _now()
    with _lock:
        with get_db() as db:
            record = db.get(DiscoverySession, session_id)
            if record is None or record.status != SessionStatus.COMPUTING:
                logger.warning(
                    f"Session {_short(session_id)} not computing; match output not applied"
                )
                return False
            record.status = SessionStatus.MATCHED
            record.computing_since = None
            record.updated_at = now
            db.add(record)
    logger.info(f"Session {_short(session_id)} is complete")
    return True


def require_runnable(session_id: str, kind: str) -> None:
    """Check the ledger still allows a computation of *kind* for a session.

    Applies lazy expiry first, so a computation for a session past its
    deadline is refused and its pending work is failed.

    Raises:
        InputError: Unknown computation kind
        SessionNotFoundError: No such session
        StateError: Session status does not allow this computation
    """
    allowed = RUNNABLE_STATUSES.get(kind)
    if allowed is None:
        raise InputError(f"Unknown computation kind: {kind}")
    with _lock:
        with get_db() as db:
            record = db.get(DiscoverySession, session_id)
            if record is not None:
                _expire_if_due(db, record, _now())
                status = SessionStatus(record.status)
    if record is None:
        raise SessionNotFoundError(f"Session {_short(session_id)} not found")
    if status == SessionStatus.EXPIRED:
        raise StateError(f"Cannot run {kind}: session has expired")
    if status not in allowed:
        raise StateError(f"Cannot run {kind}: session is {status.label} ({status.slug})")


# ── Reads ────────────────────────────────────────────────────────────────────


def get_session(session_id: str) -> DiscoverySession:
    """Load a record, applying lazy expiry.

    Raises:
        InputError: Malformed session id
        SessionNotFoundError: No such session
    """
    sid = session_id_to_hex(parse_session_id(session_id))
    with _lock:
        with get_db() as db:
            return _load(db, sid, _now())


def list_sessions(
    identity: str | None = None, status: SessionStatus | None = None
) -> list[DiscoverySession]:
    """Sessions newest first, optionally of one status; the caller's own come first."""
    filters = {"status": int(status)} if status is not None else None
    records = session_store.list(filters)
    if not identity:
        return records
    caller = parse_identity(identity).hex()
    own = session_store.list({**(filters or {}), "party": caller})
    own_ids = {r.session_id for r in own}
    return own + [r for r in records if r.session_id not in own_ids]


def to_record(record: DiscoverySession) -> SessionRecord:
    return SessionRecord(
        session_id=bytes.fromhex(record.session_id),
        first_party=bytes.fromhex(record.first_party),
        second_party=bytes.fromhex(record.second_party) if record.second_party else ZERO_IDENTITY,
        status=SessionStatus(record.status),
        bump=record.bump,
    )


def record_bytes(record: DiscoverySession) -> bytes:
    """The 106-byte ledger layout for a record."""
    return encode_record(to_record(record))


def expire_stale(now: datetime | None = None) -> int:
    """Expire every unfinished record past its deadline. Returns the count."""
    now = now or _now()
    count = 0
    with _lock:
        with get_db() as db:
            pending = db.exec(
                select(DiscoverySession).where(
                    DiscoverySession.status.in_([int(s) for s in _EXPIRABLE])
                )
            ).all()
            for record in pending:
                if _expire_if_due(db, record, now):
                    count += 1
    return count
