"""Application error taxonomy.

Each error carries the HTTP status the API layer renders it with. Services
raise these; only the API exception handler turns them into responses.
"""


class AppError(Exception):
    """Base class for operational errors with a stable code and status."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class UnauthorizedError(AppError):
    status_code = 401
    code = "unauthorized"


class NotFoundError(AppError):
    """Unknown resource, or one the caller does not own (never a 403)."""

    status_code = 404
    code = "not_found"


class ConflictError(AppError):
    status_code = 409
    code = "conflict"


class InvalidStateError(AppError):
    """An illegal lifecycle transition was attempted."""

    status_code = 409
    code = "invalid_state"


class GatewayError(AppError):
    """Payment provider call failed, timed out or answered unexpectedly."""

    status_code = 502
    code = "gateway_error"


class InternalError(AppError):
    pass


class RateLimitedError(AppError):
    status_code = 429
    code = "rate_limited"
