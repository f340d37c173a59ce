"""Typed failures raised by the pricing engine.

Only ``ConflictError`` is worth retrying, and only after the caller has
re-read the current state of the subject.
"""

from typing import Any, Dict, Optional


class PricingError(Exception):
    """Base class; carries the HTTP status the API layer answers with."""

    status_code = 500
    code = "pricing_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(PricingError):
    """Malformed or out-of-range input, rejected before anything is written."""

    status_code = 400
    code = "validation_error"

    def __init__(self, errors: Dict[str, str], message: str = "Invalid input"):
        super().__init__(message)
        self.errors = dict(errors)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["errors"] = self.errors
        return body

    def __str__(self):
        fields = ", ".join(f"{k}: {v}" for k, v in sorted(self.errors.items()))
        return f"{self.message} ({fields})" if fields else self.message


class ConflictError(PricingError):
    """The effective range collides with committed state for the same subject."""

    status_code = 409
    code = "conflict"
    retryable = True


class InvalidStateError(PricingError):
    """The operation is not allowed in the record's current lifecycle state."""

    status_code = 409
    code = "invalid_state"


class RecordNotFoundError(PricingError):
    status_code = 404
    code = "not_found"


class NoPriceDefinedError(PricingError):
    status_code = 404
    code = "no_price_defined"


class NoRateDefinedError(PricingError):
    status_code = 404
    code = "no_rate_defined"
