# Overview: Typed domain errors shared by services and routes.

"""
Error taxonomy

Services raise these; routes translate them into JSON responses using
`status_code`. Anything else escaping a route is logged and answered with a
generic 500 so internal detail never leaks to clients.
"""


class OrderError(Exception):
    """Base class for client-visible domain errors."""
    status_code = 400

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.code:
            body["code"] = self.code
        return body


class ValidationError(OrderError):
    """Malformed or missing input."""
    status_code = 400


class NotFoundError(OrderError):
    """Order or resource absent."""
    status_code = 404


class UnauthorizedError(OrderError):
    """Missing or invalid token or session."""
    status_code = 401


class ForbiddenError(OrderError):
    """Authenticated, but not allowed to act on this resource."""
    status_code = 403


class InvalidStateError(OrderError):
    """Requested transition violates a precondition."""
    status_code = 409


class RateLimitedError(OrderError):
    """Too many attempts from one client origin."""
    status_code = 429


class UpstreamFailure(OrderError):
    """Payment gateway or storage call failed."""
    status_code = 502


def http_error(exc: OrderError) -> tuple[dict, int]:
    """
    JSON body and status for a domain error.

    Upstream failures are answered with a generic 500; their detail stays
    in the server log.
    """
    if isinstance(exc, UpstreamFailure):
        return {"error": "Internal server error"}, 500
    return exc.to_dict(), exc.status_code
