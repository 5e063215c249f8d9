"""
Payment Gateway Exceptions

Error taxonomy shared by the encryption layer, the gateway providers and the
refund reconciliation engine. Transport and protocol failures are kept apart
because they are retried differently.
"""

from typing import Any, Dict, Optional


class PaymentGatewayError(Exception):
    """Base class for all gateway integration errors"""

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        gateway: Optional[str] = None,
    ):
        self.message = message
        self.original_error = original_error
        self.gateway = gateway
        super().__init__(self.message)

    def __str__(self):
        if self.original_error:
            return f"{self.message} | Original error: {str(self.original_error)}"
        return self.message


class ConfigurationError(PaymentGatewayError):
    """Raised when an encryption key or gateway credential is missing or malformed"""

    def __init__(self, message: str, missing_fields: Optional[list] = None, **kwargs):
        self.missing_fields = missing_fields or []
        super().__init__(message, **kwargs)


class RemoteProtocolError(PaymentGatewayError):
    """Raised when the gateway answered but reported failure (often inside a 200)"""

    def __init__(
        self,
        message: str,
        payload: Any = None,
        status_code: Optional[str] = None,
        http_status: Optional[int] = None,
        **kwargs,
    ):
        self.payload = payload
        self.status_code = status_code
        self.http_status = http_status
        super().__init__(message, **kwargs)


class TransportError(PaymentGatewayError):
    """Raised on timeouts, connection failures and non-2xx responses"""

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        payload: Any = None,
        **kwargs,
    ):
        self.http_status = http_status
        self.payload = payload
        super().__init__(message, **kwargs)


class DecryptionError(PaymentGatewayError):
    """Raised on malformed ciphertext, bad padding or authentication tag mismatch"""


class ReconciliationGap(PaymentGatewayError):
    """A completed refund with no provable gateway success and no data to replay it"""

    def __init__(self, message: str, refund_id: Optional[int] = None, **kwargs):
        self.refund_id = refund_id
        super().__init__(message, **kwargs)


def extract_remote_message(payload: Any, fallback: str) -> str:
    """Pick the most specific human-readable message a gateway returned."""
    if isinstance(payload, dict):
        for key in ("statusMessage", "errorMessage", "message", "msg"):
            value = payload.get(key)
            if value:
                return str(value)
    return fallback


def extract_remote_code(payload: Any) -> Optional[str]:
    """Structured status/error code from a gateway payload, if any."""
    if isinstance(payload, dict):
        for key in ("statusCode", "errorCode", "reason"):
            value = payload.get(key)
            if value:
                return str(value)
    return None


def error_context(error: PaymentGatewayError) -> Dict[str, Any]:
    """Small dict used for log `extra=` and failure payloads."""
    context: Dict[str, Any] = {
        "error_type": type(error).__name__,
        "error_message": error.message,
    }
    if error.gateway:
        context["gateway"] = error.gateway
    status_code = getattr(error, "status_code", None)
    if status_code:
        context["status_code"] = status_code
    http_status = getattr(error, "http_status", None)
    if http_status:
        context["http_status"] = http_status
    return context
