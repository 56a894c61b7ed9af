"""Request and response models for the contact discovery service."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class SignedRequest(BaseModel):
    """Fields every mutating request carries."""

    identity: str = Field(..., description="Caller's Ed25519 public key (64 hex chars)")
    signature: str = Field(..., description="Ed25519 signature over the request message (hex)")


class CreateSessionRequest(SignedRequest):
    """Request model for initializing a session."""

    session_id: str = Field(..., description="Random 256-bit session id chosen by the first party")


class SubmitContactsRequest(SignedRequest):
    """Request model for either party's encrypted contact set."""

    submission: dict = Field(
        ...,
        description="public_key, nonce, 32 ciphertexts and count_ciphertext (all hex)",
    )


class RevealRequest(SignedRequest):
    """Request model for revealing a party's matches."""

    public_key: str = Field(
        ..., description="Ephemeral X25519 key the result is encrypted to (64 hex chars)"
    )


class CancelRequest(SignedRequest):
    """Request model for cancelling a session."""


class SessionResponse(BaseModel):
    """Public view of a ledger record."""

    session_id: str
    address: str
    bump: int
    first_party: str
    second_party: str | None = None
    status: int = Field(..., description="Ledger status code")
    status_name: str
    status_label: str = Field(..., description="Human-readable status")
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    computation_id: str | None = Field(
        default=None, description="Last computation queued for this session"
    )


class SessionListResponse(BaseModel):
    """Response model for listing sessions."""

    sessions: list[SessionResponse]
    total: int


class RecordResponse(BaseModel):
    """Raw 106-byte ledger record."""

    session_id: str
    address: str
    bump: int
    size: int
    data: str = Field(..., description="Base64-encoded record bytes")


class ComputationResponse(BaseModel):
    """State of one computation."""

    computation_id: str
    session_id: str
    kind: str
    status: str = Field(..., description="queued, finalized or failed")
    party: int | None = None
    output: dict | None = Field(default=None, description="Signed boundary output once finalized")
    error: str | None = None
    created_at: datetime
    finalized_at: datetime | None = None


class ComputationListResponse(BaseModel):
    """Computations of one session, oldest first."""

    computations: list[ComputationResponse]
    total: int


class OperationResponse(BaseModel):
    """Result of a mutating session operation."""

    session: SessionResponse
    computation: ComputationResponse | None = None


class ClusterResponse(BaseModel):
    """Public keys of the compute boundary."""

    public_key: str = Field(..., description="X25519 key submissions are encrypted to")
    verify_key: str = Field(..., description="Ed25519 key outputs are signed with")
    ephemeral_keys: bool = Field(..., description="Keys were generated for this boot only")
    max_contacts: int


class SettingResponse(BaseModel):
    key: str
    value: str
    source: str
    is_secret: bool
    description: str
    group: str
    env_var: str


class SettingListResponse(BaseModel):
    settings: list[SettingResponse]


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str
    timestamp: datetime
    version: str = "0.1.0"
    computation_mode: str
