"""
Error taxonomy shared by the services and the HTTP/WebSocket surfaces.

Each error carries the HTTP status it maps to and a short machine-readable
code; the exception handlers in ``checkin.main`` render them as JSON.
"""


class CheckinError(Exception):
    """Base class for all service errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or self.code


class ValidationError(CheckinError):
    """Malformed input, rejected before any side effect."""

    status_code = 400
    code = "validation_error"


class NotFoundError(CheckinError):
    """Unknown identity or login session."""

    status_code = 404
    code = "not_found"


class ConflictError(CheckinError):
    """Request conflicts with the current state of a resource."""

    status_code = 409
    code = "conflict"


class DuplicateIdentityError(ConflictError):
    """An identity with the same external user id already exists."""

    code = "duplicate_identity"


class DuplicateNameError(ConflictError):
    """An identity with the same display name already exists."""

    code = "duplicate_name"


class AuthorizationError(CheckinError):
    """Shared secret did not match."""

    status_code = 401
    code = "unauthorized"


class UpstreamError(CheckinError):
    """The external platform could not be reached or answered badly."""

    status_code = 502
    code = "upstream_error"


class ProviderUnavailableError(UpstreamError):
    """The login provider could not issue a challenge."""

    code = "provider_unavailable"


class InternalError(CheckinError):
    """Unexpected failure, e.g. store corruption."""


class RateLimitedError(CheckinError):
    """Too many attempts from one client."""

    status_code = 429
    code = "rate_limited"
