"""Typed error hierarchy shared by the signing, provider and service layers."""

from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base class for every error raised by the gateway core.

    Args:
        message: Human readable description.
        code: Stable machine readable error code.
        provider: Provider key the error relates to, if any.
        details: Extra structured context (never secrets).
    """

    code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        provider: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.code
        self.provider = provider
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert the error to a JSON friendly dictionary."""
        data = {"error": self.code, "detail": self.message}
        if self.provider:
            data["provider"] = self.provider
        return data


class ValidationError(GatewayError):
    """Malformed input. Raised before any network call is issued."""

    code = "VALIDATION_ERROR"


class SigningError(GatewayError):
    """A signature could not be computed or verified because of a programming error."""

    code = "SIGNING_ERROR"


class TransportError(GatewayError):
    """Network failure, timeout or an unreadable vendor response.

    ``retryable`` is only a hint: callers must not blindly retry charge creation.
    """

    code = "TRANSPORT_ERROR"

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        status_code: Optional[int] = None,
        timeout: bool = False,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.retryable = retryable
        self.status_code = status_code
        self.timeout = timeout


class VendorDeclineError(GatewayError):
    """Business decline reported by the vendor during an intermediate step."""

    code = "VENDOR_DECLINE"

    def __init__(
        self,
        message: str,
        vendor_code: Optional[str] = None,
        raw: Optional[Any] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.vendor_code = vendor_code
        self.raw = raw


class StateError(GatewayError):
    """Unknown or expired callback token, missing reference or illegal transition."""

    code = "STATE_ERROR"
