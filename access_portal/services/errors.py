"""Domain errors raised by the service layer.

Each error carries the HTTP status code it maps to so the API layer can render
it without a per-route translation table.
"""


class AccessPortalError(Exception):
    """Base class for domain errors."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class BadRequestError(AccessPortalError):
    """Malformed input or an operation not allowed in the current state."""

    status_code = 400


class ForbiddenError(AccessPortalError):
    """Actor lacks the manager-of or owner-of relation an operation needs."""

    status_code = 403


class NotFoundError(AccessPortalError):
    """Referenced entity does not exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id: str, message: str | None = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(message or f"{entity} with ID '{entity_id}' not found")


class ConflictError(AccessPortalError):
    """Entity already exists (duplicate grant, owner or catalog name)."""

    status_code = 409


class UnprocessableError(AccessPortalError):
    """Entities exist but do not fit together."""

    status_code = 422
