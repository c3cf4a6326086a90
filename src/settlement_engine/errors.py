"""Domain error taxonomy.

Every operation either returns a success payload or raises one of these.
The API layer maps ``http_status`` and ``code`` onto the response.
"""

from __future__ import annotations


class SettlementError(Exception):
    """Base class for all domain errors."""

    code = "SETTLEMENT_ERROR"
    http_status = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UnauthenticatedError(SettlementError):
    """No caller identity, or the bearer token did not verify."""

    code = "UNAUTHENTICATED"
    http_status = 401


class UnauthorizedError(SettlementError):
    """Caller identity is known but lacks rights over the resource."""

    code = "UNAUTHORIZED"
    http_status = 403


class NotFoundError(SettlementError):
    """Raised when the addressed entity does not exist."""

    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, identifier: object):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} not found")


class InvalidStateError(SettlementError):
    """Operation is not valid for the entity's current status."""

    code = "INVALID_STATE"
    http_status = 400

    def __init__(self, entity: str, current_status: str, reason: str | None = None):
        self.entity = entity
        self.current_status = current_status
        self.reason = reason
        msg = f"Invalid {entity} status: {current_status}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class ConflictError(SettlementError):
    """Duplicate creation, including unique-constraint races."""

    code = "CONFLICT"
    http_status = 409


class ValidationFailedError(SettlementError):
    """Malformed or out-of-range input."""

    code = "VALIDATION_FAILED"
    http_status = 400


class UpstreamFailureError(SettlementError):
    """An external collaborator failed. Only raised inside best-effort steps."""

    code = "UPSTREAM_FAILURE"
    http_status = 502

    def __init__(self, collaborator: str, message: str):
        self.collaborator = collaborator
        super().__init__(f"{collaborator}: {message}")
