"""
Standardized error responses for the webhook endpoints.
"""

from typing import Optional

from .response_utils import error_response


class APIError(Exception):
    """Base class for API errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API Gateway response format."""
        return error_response(self.status_code, self.code, self.message, details=self.details)


class MissingSignatureError(APIError):
    """Raised when the provider signature header is absent."""

    def __init__(self):
        super().__init__(
            code="missing_signature",
            message="Missing Stripe signature",
            status_code=400,
        )


class InvalidSignatureError(APIError):
    """Raised when the provider signature does not verify."""

    def __init__(self):
        super().__init__(
            code="invalid_signature",
            message="Invalid signature",
            status_code=400,
        )


class InvalidPayloadError(APIError):
    """Raised when a verified body is not a usable event envelope."""

    def __init__(self, message: str = "Invalid webhook payload"):
        super().__init__(
            code="invalid_webhook_payload",
            message=message,
            status_code=400,
        )


class ConfigurationError(APIError):
    """Raised when a required secret or setting is missing."""

    def __init__(self, code: str = "stripe_not_configured", message: str = "Stripe not configured"):
        super().__init__(
            code=code,
            message=message,
            status_code=500,
        )
