"""Service-layer exception taxonomy.

Services raise these; HTTP endpoints translate them into status codes
(see ``conversa.api.errors``) and queue workers log them.
"""


class ServiceError(Exception):
    """Base exception for service operations."""


class ValidationError(ServiceError):
    """Raised for malformed or contradictory input (e.g. reopen without a reason)."""


class NotFoundError(ServiceError):
    """Raised when a referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: object) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ConflictError(ServiceError):
    """Raised on an invalid state transition or a duplicate active record.

    Carries the entity's current status so callers can decide whether to
    retry or abandon.
    """

    def __init__(self, message: str, current_status: str | None = None) -> None:
        self.current_status = current_status
        super().__init__(message)


class ExternalServiceError(ServiceError):
    """Raised when a messaging-provider or ERP call fails synchronously."""

    def __init__(self, provider: str, message: str, detail: object = None) -> None:
        self.provider = provider
        self.detail = detail
        super().__init__(f"[{provider}] {message}")


class SecurityError(ServiceError):
    """Raised when a webhook signature or verification token is rejected."""
