"""
Error taxonomy shared by services and routers.

Services raise these; main.py renders them through error_response so every
failure carries a stable machine-readable code plus a human-readable message.
"""


class EntitlementError(Exception):
    code = "INTERNAL"
    status = 500

    def __init__(self, message: str = "An error occurred"):
        super().__init__(message)
        self.message = message


class UnauthenticatedError(EntitlementError):
    code = "UNAUTHENTICATED"
    status = 401


class ForbiddenError(EntitlementError):
    code = "FORBIDDEN"
    status = 403


class NotFoundError(EntitlementError):
    code = "NOT_FOUND"
    status = 404


class InvalidArgumentError(EntitlementError):
    code = "INVALID_ARGUMENT"
    status = 400


class ConflictError(EntitlementError):
    code = "CONFLICT"
    status = 409


class UpstreamError(EntitlementError):
    """The billing provider was unreachable or rejected the request."""
    code = "UPSTREAM_ERROR"
    status = 502


class InternalError(EntitlementError):
    """The entitlement store failed."""
    code = "INTERNAL"
    status = 500
