"""Custom exception hierarchy for gateway failures.

Every failure the gateway can surface is one of these typed exceptions so
callers can handle them without inspecting raw ``botocore`` errors or response
bodies.  Each class carries a stable ``kind`` string that the HTTP layer and the
logs use as the failure category.
"""


class GatewayError(Exception):
    """Base exception for all gateway failures.

    Attributes:
        message: Human-readable error description.
        model: Logical model id the invocation resolved to.  ``None`` when the
            failure happened before resolution.
        state: Name of the invocation state the failure occurred in (e.g.
            ``"invoking"``).  Filled in by the gateway.
        original_error: The upstream exception that caused this error, if any.
    """

    kind = "gateway_error"

    def __init__(
        self,
        message: str,
        model: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        self.message = message
        self.model = model
        self.state: str | None = None
        self.original_error = original_error
        super().__init__(message)


class InvalidRequestError(GatewayError):
    """Raised for requests rejected before any provider call (empty conversation,
    out-of-range temperature or token budget, malformed attachments)."""

    kind = "invalid_request"


class UnsupportedProviderError(GatewayError):
    """Raised when a catalog entry references a provider with no encoder/decoder."""

    kind = "unsupported_provider"


class AccessDeniedError(GatewayError):
    """Raised when Bedrock refuses the call (IAM permissions, model access)."""

    kind = "access_denied"


class ValidationRejectedError(GatewayError):
    """Raised when Bedrock rejects the wire payload as invalid."""

    kind = "validation_rejected"


class RateLimitedError(GatewayError):
    """Raised when Bedrock throttles the call.

    Attributes:
        retry_after: Seconds to wait before retrying, when known.  ``None`` if
            unavailable.
    """

    kind = "rate_limited"

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        model: str | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, model=model, original_error=original_error)
        self.retry_after = retry_after


class ModelNotFoundError(GatewayError):
    """Raised when the wire model id cannot be invoked as configured.

    Also covers the "use an inference profile" and "model not available"
    configuration failures, which Bedrock reports under other error codes.
    """

    kind = "model_not_found"


class TransportFailureError(GatewayError):
    """Raised for network, connection or service-side failures."""

    kind = "transport_failure"


class TimeoutError(TransportFailureError):  # noqa: A001 – intentionally shadows the built-in
    """Raised when a Bedrock call exceeds the connect/read timeout."""

    kind = "timeout"


class DecodeFailureError(GatewayError):
    """Raised when response bytes match none of the provider's known shapes."""

    kind = "decode_failure"


class EmptyResponseError(GatewayError):
    """Raised when a call succeeds but the decoded content is blank."""

    kind = "empty_response"
