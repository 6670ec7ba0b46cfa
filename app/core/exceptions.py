# app/core/exceptions.py
"""
Error taxonomy shared by the sync and alert services.

Routers translate these into HTTP responses; background workers log them.
"""
from typing import Optional

from fastapi import HTTPException, status


class FleetError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidRequest(FleetError):
    """Malformed input (watermark, comm id, alert action...)."""


class NotFound(FleetError):
    """Referenced entity does not exist."""

    def __init__(self, entity_type: str, entity_id):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class FeatureDisabled(FleetError):
    """Client lacks the feature entitlement required for the operation."""

    def __init__(self, feature: str, client_id: Optional[int] = None):
        self.feature = feature
        self.client_id = client_id
        super().__init__("Module not available")


class ExternalServiceFailure(FleetError):
    """A call to the Message Handler web service failed."""

    def __init__(self, path: str, method: str, reason: str):
        self.path = path
        self.method = method
        super().__init__(f"{method} {path} failed: {reason}")


class TransactionFailure(FleetError):
    """A transactional step was aborted and rolled back."""


def to_http_exception(error: FleetError) -> HTTPException:
    """Map a domain error onto the HTTP status the routers answer with."""
    if isinstance(error, InvalidRequest):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error.message)
    if isinstance(error, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=error.message)
    if isinstance(error, FeatureDisabled):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=error.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.message)
