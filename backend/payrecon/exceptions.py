"""
Payment Exception Hierarchy

Classified error kinds shared by the gateway client, the transaction store
and the reconciliation engine. Boundary layers map `status_code` and
`to_dict()` onto their own transport.
"""
from typing import Optional, Dict, Any


GENERIC_PROVIDER_MESSAGE = "Payment provider is temporarily unavailable, please try again later"


class PaymentError(Exception):
    """
    Base exception for all payment errors.

    Every error carries a stable error code so callers can branch on the
    kind without parsing messages.
    """

    status_code: int = 500

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def public_message(self) -> str:
        """Message safe to show to an end user."""
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.public_message,
            "details": self.details
        }


class ValidationError(PaymentError):
    """
    Caller input violates a business rule.

    Examples:
    - Amount not positive or above the ceiling
    - Currency not a 3-letter ISO code
    """

    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:validation_failed", message, details)


class Unauthorized(PaymentError):
    """Transaction belongs to a different owner."""

    status_code = 403

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:unauthorized", message, details)


class NotFound(PaymentError):
    """Unknown transaction or order."""

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:not_found", message, details)


class InvalidStateError(PaymentError):
    """
    Illegal state transition attempted.

    Examples:
    - Cancel on a completed transaction
    - Refund on a pending transaction
    """

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:invalid_state", message, details)


class GatewayErrorMixin:
    """Carries the machine-readable gateway code and hides gateway internals."""

    gateway_code: str

    @property
    def public_message(self) -> str:
        return GENERIC_PROVIDER_MESSAGE


class ProviderError(GatewayErrorMixin, PaymentError):
    """
    Gateway returned a definitive error.

    Examples:
    - Error envelope (error_code / error_msg) in the reply
    - HTTP 4xx rejection
    - Reply missing required fields
    """

    status_code = 502

    def __init__(
        self,
        message: str,
        gateway_code: str = "GATEWAY_ERROR",
        http_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.gateway_code = gateway_code
        self.http_status = http_status
        details = dict(details or {})
        details.setdefault("gateway_code", gateway_code)
        super().__init__("payment:provider_error", message, details)


class ProviderUnavailable(GatewayErrorMixin, PaymentError):
    """
    Gateway unreachable after all attempts.

    Examples:
    - Connection refused / DNS failure on every attempt
    - HTTP 5xx on every attempt
    """

    status_code = 503

    def __init__(
        self,
        message: str,
        gateway_code: str = "NETWORK_ERROR",
        http_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.gateway_code = gateway_code
        self.http_status = http_status
        details = dict(details or {})
        details.setdefault("gateway_code", gateway_code)
        super().__init__("payment:provider_unavailable", message, details)


class GatewayTimeoutError(ProviderUnavailable):
    """Soft timeout elapsed on an operation bounded by gateway or store calls."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, gateway_code="TIMEOUT", details=details)


class InternalError(PaymentError):
    """Persistence or unexpected failure."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:internal_error", message, details)
