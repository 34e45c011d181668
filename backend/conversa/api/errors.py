"""Translation of service exceptions into HTTP errors."""

from fastapi import HTTPException

from conversa.core.exceptions import (
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    SecurityError,
    ServiceError,
    ValidationError,
)


def to_http_exception(exc: ServiceError) -> HTTPException:
    """Map a service exception to the HTTPException an endpoint should raise."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(
            status_code=409,
            detail={"message": str(exc), "current_status": exc.current_status},
        )
    if isinstance(exc, ExternalServiceError):
        return HTTPException(status_code=502, detail=str(exc))
    if isinstance(exc, SecurityError):
        return HTTPException(status_code=401, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
