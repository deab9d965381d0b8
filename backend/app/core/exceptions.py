"""
Domain exceptions raised by the service layer.

Each class carries the HTTP status code that the exception handler in
``app.main`` responds with.
"""
from fastapi import status


class CommunityCapitalError(Exception):
    """Base class for all domain errors."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CommunityCapitalError):
    """Request is well-formed but violates a business rule."""
    status_code = status.HTTP_400_BAD_REQUEST


class MissingPaymentSourceError(ValidationError):
    """Participant has no linked bank account."""


class NothingOwedError(ValidationError):
    """Participant's computed share is zero."""


class InvalidClaimError(ValidationError):
    """Claim references items outside the event or comes from a non-participant."""


class NotFoundError(CommunityCapitalError):
    status_code = status.HTTP_404_NOT_FOUND


class PermissionDeniedError(CommunityCapitalError):
    status_code = status.HTTP_403_FORBIDDEN


class InvalidTransitionError(CommunityCapitalError):
    """Requested state change is not allowed from the current state."""
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, message: str, current=None, target=None):
        super().__init__(message)
        self.current = current
        self.target = target


class PaymentProviderError(CommunityCapitalError):
    """External payment or bank-link provider failed."""
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, code: str = None):
        super().__init__(message)
        self.code = code


class TransientPaymentError(PaymentProviderError):
    """Timeouts, 5xx and rate limits. Safe to retry."""


class PermanentPaymentError(PaymentProviderError):
    """Declines and invalid sources. Never retried."""


class SettlementError(CommunityCapitalError):
    """Merchant settlement failed; fatal for the whole event."""
    status_code = status.HTTP_502_BAD_GATEWAY
