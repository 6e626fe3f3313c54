"""Transport adapter for the Bedrock model-invocation service.

:class:`ModelTransport` is the contract the gateway depends on: one request to
one response body, or one request to an ordered stream of byte chunks.
:class:`BedrockTransport` implements it on ``aioboto3``.  Tests pass their own
implementation to :class:`~chatgateway.providers.gateway.ChatGateway`.

Streams are handed out through an async context manager so the Bedrock client
and the response body are released on every exit path: normal completion, an
error while decoding, or the consumer abandoning the stream.

:func:`map_transport_error` turns ``botocore`` failures into the gateway's
typed errors.
"""

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, Protocol

import aioboto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

from chatgateway.providers.errors import (
    AccessDeniedError,
    GatewayError,
    ModelNotFoundError,
    RateLimitedError,
    TimeoutError,
    TransportFailureError,
    ValidationRejectedError,
)

_log = structlog.get_logger(__name__)

_CONTENT_TYPE = "application/json"


class ModelTransport(Protocol):
    async def invoke(self, model_id: str, body: bytes) -> bytes:
        """Send *body* to *model_id* and return the complete response body."""
        ...

    def open_stream(
        self, model_id: str, body: bytes
    ) -> AbstractAsyncContextManager[AsyncIterator[bytes]]:
        """Start a streamed invocation; the context yields the chunk iterator."""
        ...


class BedrockTransport:
    """``bedrock-runtime`` client wrapper.

    A client is opened per call from a shared :class:`aioboto3.Session`;
    aioboto3 clients are not meant to be shared across concurrent tasks.

    Args:
        region: AWS region hosting the inference profiles.
        timeout: Read timeout in seconds for a single call.
        session: Pre-configured session (credentials, profile).  A default
            session reading the standard AWS environment is used when omitted.
    """

    def __init__(
        self,
        region: str,
        timeout: int = 60,
        session: aioboto3.Session | None = None,
    ) -> None:
        self._region = region
        self._session = session or aioboto3.Session()
        # The gateway never retries; retry policy belongs to the caller.
        self._config = Config(
            read_timeout=timeout,
            connect_timeout=min(timeout, 10),
            retries={"max_attempts": 1, "mode": "standard"},
        )

    def _client(self) -> Any:
        return self._session.client(
            "bedrock-runtime",
            region_name=self._region,
            config=self._config,
        )

    async def invoke(self, model_id: str, body: bytes) -> bytes:
        async with self._client() as client:
            response = await client.invoke_model(
                modelId=model_id,
                body=body,
                contentType=_CONTENT_TYPE,
                accept=_CONTENT_TYPE,
            )
            return await response["body"].read()

    @asynccontextmanager
    async def open_stream(
        self, model_id: str, body: bytes
    ) -> AsyncIterator[AsyncIterator[bytes]]:
        async with self._client() as client:
            response = await client.invoke_model_with_response_stream(
                modelId=model_id,
                body=body,
                contentType=_CONTENT_TYPE,
                accept=_CONTENT_TYPE,
            )
            event_stream = response["body"]
            try:
                yield _iter_chunks(event_stream)
            finally:
                event_stream.close()
                _log.debug("bedrock_stream_closed", model_id=model_id)


async def _iter_chunks(event_stream: Any) -> AsyncIterator[bytes]:
    """Yield the payload bytes of each ``chunk`` event, in arrival order.

    Modelled exceptions inside the stream (throttling, validation, model
    errors) are raised by botocore as ``EventStreamError`` while iterating.
    """
    async for event in event_stream:
        chunk = event.get("chunk")
        if chunk and chunk.get("bytes"):
            yield chunk["bytes"]


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

_ERROR_CODES: dict[str, type[GatewayError]] = {
    "AccessDeniedException": AccessDeniedError,
    "UnrecognizedClientException": AccessDeniedError,
    "ValidationException": ValidationRejectedError,
    "ThrottlingException": RateLimitedError,
    "ServiceQuotaExceededException": RateLimitedError,
    "TooManyRequestsException": RateLimitedError,
    "ResourceNotFoundException": ModelNotFoundError,
    "ModelTimeoutException": TimeoutError,
}

# Message fragments Bedrock uses when a model id is not invocable as configured.
_CONFIGURATION_HINTS = ("inference profile", "model not available")


def _retry_after(response: dict[str, Any]) -> float | None:
    headers = response.get("ResponseMetadata", {}).get("HTTPHeaders", {})
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


def map_transport_error(error: Exception, model: str) -> GatewayError:
    """Map a transport exception to a typed :class:`GatewayError`.

    Mapping table:

    ======================================================  ==========================
    botocore error                                          Gateway exception
    ======================================================  ==========================
    ``AccessDeniedException``, ``UnrecognizedClient...``    :class:`AccessDeniedError`
    ``ValidationException``                                 :class:`ValidationRejectedError`
    ``ThrottlingException``, ``ServiceQuotaExceeded...``    :class:`RateLimitedError`
    ``ResourceNotFoundException``                           :class:`ModelNotFoundError`
    message mentions "inference profile"                    :class:`ModelNotFoundError`
    ``ModelTimeoutException``, read/connect timeouts        :class:`TimeoutError`
    any other ``ClientError`` / ``BotoCoreError``           :class:`TransportFailureError`
    ======================================================  ==========================

    Event-stream error codes arrive in lowerCamelCase (``throttlingException``)
    and are matched case-insensitively on the first letter.
    """
    # Already mapped.
    if isinstance(error, GatewayError):
        return error

    if isinstance(error, ReadTimeoutError | ConnectTimeoutError):
        return TimeoutError(
            message=f"Request to {model} timed out: {error}",
            model=model,
            original_error=error,
        )

    if isinstance(error, ClientError):
        details = error.response.get("Error", {})
        code = details.get("Code", "")
        code = code[:1].upper() + code[1:]
        message = details.get("Message") or str(error)
        error_type = _ERROR_CODES.get(code, TransportFailureError)

        if error_type is not AccessDeniedError and any(
            hint in message.lower() for hint in _CONFIGURATION_HINTS
        ):
            return ModelNotFoundError(
                message=(
                    f"{model} cannot be invoked as configured: {message}. "
                    "Check model access and the inference profile id."
                ),
                model=model,
                original_error=error,
            )

        if error_type is RateLimitedError:
            return RateLimitedError(
                message=f"Rate limit reached for {model}: {message}",
                retry_after=_retry_after(error.response),
                model=model,
                original_error=error,
            )

        return error_type(
            message=f"Bedrock {code or 'error'} for {model}: {message}",
            model=model,
            original_error=error,
        )

    if isinstance(error, BotoCoreError):
        return TransportFailureError(
            message=f"Could not reach Bedrock for {model}: {error}",
            model=model,
            original_error=error,
        )

    return TransportFailureError(
        message=f"Unexpected error invoking {model}: {error}",
        model=model,
        original_error=error,
    )
