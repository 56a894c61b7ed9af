"""Private Contact Discovery Service - FastAPI Application."""

from __future__ import annotations

import asyncio
import base64
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pcd import __version__
from pcd.errors import ComputationNotFoundError, InputError, PCDError
from pcd.layout import RECORD_SIZE, SessionStatus

from . import ledger
from .computations import computation_mode, computation_queue, dispatch
from .database import init_db
from .db_models import Computation, DiscoverySession
from .models import (
    CancelRequest,
    ClusterResponse,
    ComputationListResponse,
    ComputationResponse,
    CreateSessionRequest,
    HealthResponse,
    OperationResponse,
    RecordResponse,
    RevealRequest,
    SessionListResponse,
    SessionResponse,
    SettingListResponse,
    SettingResponse,
    SubmitContactsRequest,
)
from .mxe import get_boundary, init_boundary
from .settings import get_setting_int, list_settings, log_settings_sources
from .storage import computation_store

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "PCD_CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000"
    ).split(",")
    if origin.strip()
]


async def background_expiry_sweeper():
    """Background task to expire sessions past their deadline."""
    while True:
        try:
            expired = ledger.expire_stale()
            if expired:
                logger.info(f"Expiry sweep: {expired} session(s) expired")
        except Exception as e:
            logger.error(f"Background expiry sweeper error: {e}")

        await asyncio.sleep(get_setting_int("operational.expiry_sweep_interval", fallback=60))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan - start background tasks."""
    # Initialize database
    init_db()
    logger.info("Database initialized")
    log_settings_sources()

    init_boundary()

    mode = computation_mode()
    if mode == "queued":
        await computation_queue.start()
        logger.info("Started computation worker")
    else:
        logger.info(f"Computation mode: {mode}")

    sweeper_task = asyncio.create_task(background_expiry_sweeper())
    logger.info("Started background expiry sweeper")
    yield
    # Shutdown
    sweeper_task.cancel()
    try:
        await sweeper_task
    except asyncio.CancelledError:
        pass
    await computation_queue.stop()


# Create FastAPI app
app = FastAPI(
    title="Private Contact Discovery Service",
    description="Two-party private set intersection over 32-slot contact sets",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PCDError)
async def pcd_error_handler(request: Request, exc: PCDError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": type(exc).__name__},
    )


def _session_response(record: DiscoverySession) -> SessionResponse:
    status = SessionStatus(record.status)
    return SessionResponse(
        session_id=record.session_id,
        address=record.address,
        bump=record.bump,
        first_party=record.first_party,
        second_party=record.second_party,
        status=int(status),
        status_name=status.slug,
        status_label=status.label,
        created_at=record.created_at,
        updated_at=record.updated_at,
        expires_at=record.expires_at,
        computation_id=record.computation_id,
    )


def _computation_response(computation: Computation) -> ComputationResponse:
    return ComputationResponse(
        computation_id=computation.computation_id,
        session_id=computation.session_id,
        kind=computation.kind,
        status=computation.status,
        party=computation.party,
        output=computation.output,
        error=computation.error,
        created_at=computation.created_at,
        finalized_at=computation.finalized_at,
    )


def _operation_response(
    record: DiscoverySession, computation: Computation | None = None
) -> OperationResponse:
    if computation is not None:
        computation = dispatch(computation)
        # Inline delivery may have moved the record on
        record = ledger.get_session(record.session_id)
    return OperationResponse(
        session=_session_response(record),
        computation=_computation_response(computation) if computation else None,
    )


# Health check endpoint
@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=__version__,
        computation_mode=computation_mode(),
    )


# API v1 endpoints
@app.get("/api/v1/cluster", response_model=ClusterResponse)
async def cluster_info():
    """Public keys of the compute boundary."""
    return ClusterResponse(**get_boundary().cluster_info())


@app.post("/api/v1/sessions", response_model=OperationResponse, status_code=202)
async def create_session(request: CreateSessionRequest):
    """Initialize a session with the caller as first party."""
    record, computation = ledger.create_session(
        request.session_id, request.identity, request.signature
    )
    return _operation_response(record, computation)


@app.get("/api/v1/sessions", response_model=SessionListResponse)
async def list_sessions(
    identity: str | None = Query(None, description="List this identity's sessions first"),
    status: int | None = Query(None, description="Filter by status code"),
):
    """List sessions, newest first."""
    if status is not None:
        try:
            status = SessionStatus(status)
        except ValueError as e:
            raise InputError(f"Unknown session status: {status}") from e
    records = ledger.list_sessions(identity, status)
    return SessionListResponse(
        sessions=[_session_response(r) for r in records],
        total=len(records),
    )


@app.get("/api/v1/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str):
    """Get a session by id."""
    return _session_response(ledger.get_session(session_id))


@app.get("/api/v1/sessions/{session_id}/record", response_model=RecordResponse)
async def get_session_record(session_id: str):
    """Raw ledger record bytes and derived address."""
    record = ledger.get_session(session_id)
    data = ledger.record_bytes(record)
    return RecordResponse(
        session_id=record.session_id,
        address=record.address,
        bump=record.bump,
        size=RECORD_SIZE,
        data=base64.b64encode(data).decode("ascii"),
    )


@app.get(
    "/api/v1/sessions/{session_id}/computations", response_model=ComputationListResponse
)
async def list_session_computations(session_id: str):
    """Computations queued for a session, oldest first."""
    record = ledger.get_session(session_id)
    computations = computation_store.list({"session_id": record.session_id})
    return ComputationListResponse(
        computations=[_computation_response(c) for c in computations],
        total=len(computations),
    )


@app.post(
    "/api/v1/sessions/{session_id}/first-party",
    response_model=OperationResponse,
    status_code=202,
)
async def submit_first_party(session_id: str, request: SubmitContactsRequest):
    """Submit the first party's encrypted contacts."""
    record, computation = ledger.submit_first_party(
        session_id, request.identity, request.signature, request.submission
    )
    return _operation_response(record, computation)


@app.post(
    "/api/v1/sessions/{session_id}/second-party",
    response_model=OperationResponse,
    status_code=202,
)
async def submit_second_party(session_id: str, request: SubmitContactsRequest):
    """Submit the second party's encrypted contacts and compute matches."""
    record, computation = ledger.submit_second_party(
        session_id, request.identity, request.signature, request.submission
    )
    return _operation_response(record, computation)


@app.post(
    "/api/v1/sessions/{session_id}/reveal",
    response_model=OperationResponse,
    status_code=202,
)
async def reveal_matches(session_id: str, request: RevealRequest):
    """Reveal the caller's matches, encrypted to the supplied key."""
    record, computation = ledger.reveal(
        session_id, request.identity, request.signature, request.public_key
    )
    return _operation_response(record, computation)


@app.post("/api/v1/sessions/{session_id}/cancel", response_model=OperationResponse)
async def cancel_session(session_id: str, request: CancelRequest):
    """Cancel a session that has not started computing."""
    record = ledger.cancel_session(session_id, request.identity, request.signature)
    return _operation_response(record)


@app.get("/api/v1/computations/{computation_id}", response_model=ComputationResponse)
async def get_computation(computation_id: str):
    """Get a computation by id."""
    computation = computation_store.get(computation_id)
    if computation is None:
        raise ComputationNotFoundError(f"Computation {computation_id} not found")
    return _computation_response(computation)


@app.get("/api/v1/settings", response_model=SettingListResponse)
async def get_settings(group: str | None = Query(None, description="Filter by group")):
    """Effective settings; secrets are masked."""
    return SettingListResponse(settings=[SettingResponse(**s) for s in list_settings(group)])


# Run with: uvicorn app.main:app --host 0.0.0.0 --port 8000
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
