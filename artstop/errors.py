"""Exception taxonomy for the order service.

Every error carries the HTTP status it maps to at the request boundary.
"""


class ArtStopError(Exception):
    """Base exception for all order service errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(ArtStopError):
    """Bad or missing input, unavailable stock, or an invalid state transition."""

    status_code = 400


class AuthenticationError(ArtStopError):
    """Signature mismatch or a missing/invalid bearer credential."""

    status_code = 401


class AuthorizationError(ArtStopError):
    """Requester is neither the owner of the resource nor an administrator."""

    status_code = 403


class NotFoundError(ArtStopError):
    """Raised when an order, product, user or cart doesn't exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str | None = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class UpstreamError(ArtStopError):
    """The payment gateway call failed or timed out."""

    status_code = 502

    def __init__(self, operation: str, reason: str):
        self.operation = operation
        self.reason = reason
        super().__init__(f"Payment gateway error during {operation}")
