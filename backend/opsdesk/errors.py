# Overview: Domain error taxonomy shared by services and routes.

"""
Domain errors.

Services raise these; routes translate them into JSON error responses using
``http_status``. Storage-level exceptions (IntegrityError and friends) are
translated into one of these at the service boundary and never leak to
callers.
"""


class DomainError(Exception):
    """Base class for all business-rule failures."""

    http_status = 400

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message or self.__class__.__name__}


class NotFoundError(DomainError):
    """Referenced entity does not exist."""

    http_status = 404


class InvalidStateError(DomainError):
    """Operation is not legal in the entity's current status."""

    http_status = 409


class SendThrottledError(InvalidStateError):
    """A send was attempted again inside the cooldown window."""

    http_status = 429

    def __init__(self, message: str, retry_after_seconds: int):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> dict:
        return {"error": self.message, "retry_after_seconds": self.retry_after_seconds}


class InvalidQuantityError(DomainError):
    """Non-positive amount or quantity."""

    http_status = 400


class ValidationError(DomainError):
    """Malformed input payload."""

    http_status = 400


class ForbiddenError(DomainError):
    """Row belongs to another business."""

    http_status = 403


class UpstreamServiceError(DomainError):
    """Payment or notification provider failed or timed out."""

    http_status = 502
