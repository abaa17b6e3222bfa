"""
Error taxonomy shared by every lifecycle module.

Business operations raise these; the HTTP layer maps each class to a status
code through `status_code`.
"""
from typing import Optional


class MarketplaceError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(MarketplaceError):
    status_code = 404

    def __init__(self, entity: str, entity_id: Optional[str] = None):
        detail = f"{entity} not found" if entity_id is None else f"{entity} {entity_id} not found"
        super().__init__(detail)
        self.entity = entity
        self.entity_id = entity_id


class InvalidState(MarketplaceError):
    status_code = 409


class AuthRequired(MarketplaceError):
    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class PermissionDenied(MarketplaceError):
    status_code = 403


class InvalidKind(MarketplaceError):
    status_code = 400

    def __init__(self, kind: str):
        super().__init__(f"Invalid notification type: {kind}")
        self.kind = kind


class NotificationDeliveryFailure(MarketplaceError):
    """Raised inside the dispatcher; callers go through notify_safely and never see it."""
    status_code = 500


class UploadFailure(MarketplaceError):
    status_code = 502


class PaymentFailure(MarketplaceError):
    status_code = 402
