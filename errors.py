"""
Error taxonomy shared by the service layer and the HTTP handlers.
"""
from typing import Dict, List, Optional


class CarRentalError(Exception):
    """Base class for errors that map to a JSON `{"message": ...}` response."""
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_content(self) -> dict:
        return {"message": self.message}


class ValidationFailed(CarRentalError):
    """Malformed or out-of-range input, reported field by field."""
    status_code = 400

    def __init__(self, errors: List[Dict[str, str]], message: str = "Validation failed"):
        super().__init__(message)
        self.errors = errors

    def to_content(self) -> dict:
        return {"message": self.message, "errors": self.errors}


class NotFoundError(CarRentalError):
    status_code = 404


class AuthorizationError(CarRentalError):
    status_code = 403


class BusinessRuleViolation(CarRentalError):
    status_code = 400


class PaymentSignatureError(BusinessRuleViolation):
    """The payment signature did not match; never retried."""


class InfrastructureError(CarRentalError):
    """Store or payment provider failure. The message carries no internal detail."""
    status_code = 503


class DuplicatePaymentError(BusinessRuleViolation):
    """The payment or its order already backs a booking."""
