"""Base exceptions for rac daemon."""


class RacError(Exception):
    """Base exception for all rac errors."""

    pass


class StorageError(RacError):
    """Storage operation error."""

    pass


class GatewayError(RacError):
    """Error surfaced to an HTTP caller.

    Attributes:
        status: HTTP status code the error maps to.
    """

    status = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)


class BadRequestError(GatewayError):
    """Malformed body or missing required field."""

    status = 400
    default_message = "Bad request"


class UnauthorizedError(GatewayError):
    """Missing, malformed, expired, revoked or orphaned credential.

    All token failure modes share this error so callers cannot tell them apart.
    """

    status = 401
    default_message = "Unauthorized"


class ForbiddenError(GatewayError):
    """Caller origin is not allowed for this operation."""

    status = 403
    default_message = "Forbidden"


class NotFoundError(GatewayError):
    """Unknown device or request id."""

    status = 404
    default_message = "Not found"


class ConflictError(GatewayError):
    """Operation conflicts with the caller's own state."""

    status = 409
    default_message = "Conflict"
