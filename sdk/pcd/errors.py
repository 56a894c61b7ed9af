"""Error taxonomy shared by the contact discovery client and service.

Every error carries an HTTP status code so the service can map it onto a
response and the client can map a response back onto the same class.
"""

from __future__ import annotations


class PCDError(Exception):
    """Base exception for private contact discovery errors."""

    status_code = 500

    def __init__(self, detail: str, status_code: int | None = None):
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code
        super().__init__(detail)


class InputError(PCDError):
    """Raised for malformed or over-capacity input. Fix the input and retry."""

    status_code = 400


class CapacityExceeded(InputError):
    """Raised when more identifiers are supplied than a contact set can hold."""

    pass


class AuthorityError(PCDError):
    """Raised when the caller does not hold the role required for a transition."""

    status_code = 403


class SessionNotFoundError(PCDError):
    """Raised when no ledger record exists for a session identifier."""

    status_code = 404


class ComputationNotFoundError(PCDError):
    """Raised when no computation exists for a computation identifier."""

    status_code = 404


class StateError(PCDError):
    """Raised when an operation is attempted in the wrong session status."""

    status_code = 409


class VerificationError(PCDError):
    """Raised when a computation output fails signature verification."""

    status_code = 502


class InfrastructureError(PCDError):
    """Raised when the compute boundary or its results cannot be reached."""

    status_code = 503


class KeyUnavailable(InfrastructureError):
    """Raised when the compute boundary's public key cannot be retrieved."""

    pass


ERRORS_BY_NAME: dict[str, type[PCDError]] = {
    cls.__name__: cls
    for cls in (
        PCDError,
        InputError,
        CapacityExceeded,
        AuthorityError,
        SessionNotFoundError,
        ComputationNotFoundError,
        StateError,
        VerificationError,
        InfrastructureError,
        KeyUnavailable,
    )
}

ERRORS_BY_STATUS: dict[int, type[PCDError]] = {
    400: InputError,
    403: AuthorityError,
    404: SessionNotFoundError,
    409: StateError,
    502: VerificationError,
    503: InfrastructureError,
}


def error_from_response(status_code: int, body: dict | None) -> PCDError:
    """Rebuild the most specific error for a service error response."""
    body = body or {}
    detail = body.get("detail") or f"HTTP {status_code}"
    if not isinstance(detail, str):
        detail = str(detail)
    cls = ERRORS_BY_NAME.get(str(body.get("error", "")))
    if cls is None:
        cls = ERRORS_BY_STATUS.get(status_code, PCDError)
    return cls(detail, status_code=status_code)
