"""POST /v1/chat and GET /v1/models endpoints.

Translates the camelCase JSON wire format into the gateway's internal
:class:`~chatgateway.providers.InvocationRequest`, streams Server-Sent Events
for streaming requests, and maps gateway errors to HTTP status codes.
"""

import json
import uuid
from collections.abc import AsyncGenerator
from contextlib import aclosing
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from opentelemetry import trace
from opentelemetry.trace import StatusCode
from pydantic import BaseModel, ConfigDict, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from chatgateway.config import settings
from chatgateway.providers import (
    AccessDeniedError,
    ChatGateway,
    ConversationMessage,
    DecodeFailureError,
    EmptyResponseError,
    FileAttachment,
    GatewayError,
    InvalidRequestError,
    InvocationRequest,
    InvocationResult,
    ModelNotFoundError,
    RateLimitedError,
    TimeoutError,
    TransportFailureError,
    UnsupportedProviderError,
    ValidationRejectedError,
    catalog,
)

router = APIRouter(prefix="/v1", tags=["chat"])

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)

# ---------------------------------------------------------------------------
# HTTP status codes for each gateway error type
# ---------------------------------------------------------------------------
_ERROR_STATUS: dict[type[GatewayError], int] = {
    InvalidRequestError: 400,
    ValidationRejectedError: 400,
    AccessDeniedError: 403,
    ModelNotFoundError: 404,
    RateLimitedError: 429,
    UnsupportedProviderError: 501,
    TransportFailureError: 502,
    DecodeFailureError: 502,
    EmptyResponseError: 502,
    TimeoutError: 504,
}

# Failures worth another attempt for buffered calls.  Streams are never retried.
_RETRYABLE = (RateLimitedError, TimeoutError, TransportFailureError)
_RETRY_WAIT = wait_exponential(multiplier=1, min=1, max=10)


# ---------------------------------------------------------------------------
# Request models (camelCase wire format)
# ---------------------------------------------------------------------------


class _Attachment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    media_type: str = Field(alias="mediaType")
    data_base64: str = Field(alias="dataBase64")
    size_bytes: int = Field(alias="sizeBytes", ge=0)


class _Message(BaseModel):
    role: str
    content: str
    attachments: list[_Attachment] = Field(default_factory=list)


class ChatRequest(BaseModel):
    """Chat request body.

    Range checks (temperature, token budget) are left to the gateway so that
    they fail with the same typed errors as any other caller gets.
    """

    model_config = ConfigDict(populate_by_name=True)

    messages: list[_Message]
    model_id: str | None = Field(default=None, alias="modelId")
    temperature: float | None = None
    max_tokens: int | None = Field(default=None, alias="maxTokens")
    enable_thinking: bool = Field(default=False, alias="enableThinking")
    stream: bool = False


# ---------------------------------------------------------------------------
# Dependency
# ---------------------------------------------------------------------------


def get_gateway(request: Request) -> ChatGateway:
    """Return the shared :class:`ChatGateway` from ``app.state``."""
    gateway: ChatGateway | None = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Gateway not initialised")
    return gateway


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/chat", response_model=None)
async def chat(
    body: ChatRequest,
    gateway: ChatGateway = Depends(get_gateway),
) -> StreamingResponse | JSONResponse:
    """Send a conversation to a catalog model.

    Args:
        body: camelCase request body.
        gateway: Injected :class:`ChatGateway` instance.

    Returns:
        A ``text/event-stream`` :class:`StreamingResponse` when ``body.stream``
        is ``True``, otherwise a :class:`JSONResponse` with the full answer,
        usage and cost.
    """
    request_id = str(uuid.uuid4())
    entry = catalog.resolve(body.model_id) or gateway.default_entry

    headers: dict[str, str] = {
        "X-Request-ID": request_id,
        "X-Model": entry.logical_id,
        "X-Provider": entry.provider.value,
    }
    log = _log.bind(
        request_id=request_id,
        model=entry.logical_id,
        stream=body.stream,
    )

    with _tracer.start_as_current_span("api.chat") as span:
        span.set_attribute("gen_ai.request.model", entry.logical_id)
        span.set_attribute("llm.stream", body.stream)
        log.info("chat_request_start", message_count=len(body.messages))

        try:
            invocation = _to_invocation(body)

            if body.stream:
                stream = gateway.invoke_stream(invocation)
                # Pull the first item before committing to a 200 so that request
                # and connection failures still get a proper status code.
                first = await anext(stream)
                return StreamingResponse(
                    _stream_sse(first, stream, log),
                    media_type="text/event-stream",
                    headers={
                        **headers,
                        "Cache-Control": "no-cache",
                        "Connection": "keep-alive",
                    },
                )

            result = await _invoke_with_retry(gateway, invocation, settings.llm_max_retries)

        except GatewayError as exc:
            span.record_exception(exc)
            span.set_status(StatusCode.ERROR, exc.message)
            log.error(
                "chat_request_error",
                error_type=type(exc).__name__,
                error=exc.message,
                state=exc.state,
            )
            raise _http_error(exc, headers) from exc

        log.info(
            "chat_request_complete",
            duration_ms=result.duration_ms,
            cost_usd=str(result.cost_usd),
        )
        return JSONResponse(content=_result_payload(result), headers=headers)


@router.get("/models")
async def list_models(gateway: ChatGateway = Depends(get_gateway)) -> JSONResponse:
    """List every invocable model and the default model id."""
    return JSONResponse(
        content={
            "models": [
                {
                    "id": entry.logical_id,
                    "name": entry.name,
                    "provider": entry.provider.value,
                    "description": entry.description,
                    "maxTokens": entry.max_tokens,
                    "supportsStreaming": entry.supports_streaming,
                    "supportsThinking": entry.supports_thinking,
                    "inputPricePerThousand": str(entry.input_price_per_thousand),
                    "outputPricePerThousand": str(entry.output_price_per_thousand),
                }
                for entry in catalog.list_models()
            ],
            "defaultModelId": gateway.default_model_id,
        }
    )


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _to_invocation(body: ChatRequest) -> InvocationRequest:
    """Build the internal request; raises :class:`InvalidRequestError`."""
    messages = [
        ConversationMessage(
            role=m.role,
            content=m.content,
            attachments=tuple(
                FileAttachment(
                    name=a.name,
                    media_type=a.media_type,
                    data_base64=a.data_base64,
                    size_bytes=a.size_bytes,
                )
                for a in m.attachments
            ),
        )
        for m in body.messages
    ]
    return InvocationRequest(
        model_id=body.model_id,
        messages=messages,
        temperature=body.temperature,
        max_tokens=body.max_tokens,
        enable_thinking=body.enable_thinking,
    )


def _before_sleep(retry_state: RetryCallState) -> None:
    """Tenacity ``before_sleep`` hook that emits a structured warning."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    next_action = retry_state.next_action
    wait_seconds = next_action.sleep if next_action is not None else 0.0
    _log.warning(
        "chat_request_retry",
        attempt=retry_state.attempt_number,
        wait_seconds=round(wait_seconds, 2),
        error_type=type(exc).__name__ if exc else None,
        error=str(exc) if exc else None,
    )


async def _invoke_with_retry(
    gateway: ChatGateway, invocation: InvocationRequest, max_attempts: int
) -> InvocationResult:
    """Call :meth:`ChatGateway.invoke`, retrying transient failures.

    Only :data:`_RETRYABLE` errors are retried; everything else is re-raised
    immediately.  ``max_attempts=1`` disables retrying.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        retry=retry_if_exception_type(_RETRYABLE),
        wait=_RETRY_WAIT,
        before_sleep=_before_sleep,
        reraise=True,
    ):
        with attempt:
            return await gateway.invoke(invocation)
    raise AssertionError("unreachable")  # pragma: no cover


async def _stream_sse(
    first: str | InvocationResult,
    stream: AsyncGenerator[str | InvocationResult, None],
    log: Any,
) -> AsyncGenerator[str, None]:
    """Yield Server-Sent Event lines for each item from the gateway.

    Errors during streaming are surfaced as a final SSE ``error`` event so the
    client can detect them even though the HTTP 200 header has already been
    sent.
    """
    result: InvocationResult | None = None

    async with aclosing(stream):
        try:
            item = first
            while True:
                if isinstance(item, InvocationResult):
                    result = item
                    yield f"data: {json.dumps(_summary_payload(item))}\n\n"
                else:
                    yield f"data: {json.dumps({'content': item})}\n\n"
                try:
                    item = await anext(stream)
                except StopAsyncIteration:
                    break

            yield "data: [DONE]\n\n"

        except GatewayError as exc:
            log.error(
                "chat_stream_error",
                error_type=type(exc).__name__,
                error=exc.message,
                state=exc.state,
            )
            error_payload = {"error": {"message": exc.message, "type": exc.kind}}
            yield f"data: {json.dumps(error_payload)}\n\n"
            yield "data: [DONE]\n\n"

        finally:
            log.info(
                "chat_request_complete",
                duration_ms=result.duration_ms if result else None,
                cost_usd=str(result.cost_usd) if result else None,
            )


def _usage_payload(result: InvocationResult) -> dict[str, int]:
    return {
        "inputTokens": result.usage.input_tokens,
        "outputTokens": result.usage.output_tokens,
    }


def _summary_payload(result: InvocationResult) -> dict[str, Any]:
    """Final SSE event: everything except the content already streamed."""
    return {
        "usage": _usage_payload(result),
        "costUSD": float(result.cost_usd),
        "thinking": result.thinking,
        "durationMillis": result.duration_ms,
        "model": result.model_id,
        "modelName": result.model_name,
        "provider": result.provider.value,
    }


def _result_payload(result: InvocationResult) -> dict[str, Any]:
    return {
        "content": result.content,
        "thinking": result.thinking,
        "usage": _usage_payload(result),
        "costUSD": float(result.cost_usd),
        "durationMillis": result.duration_ms,
        "model": result.model_id,
        "modelName": result.model_name,
        "provider": result.provider.value,
    }


def _http_error(exc: GatewayError, headers: dict[str, str]) -> HTTPException:
    # Most specific class wins (TimeoutError before TransportFailureError).
    status_code = next(
        (
            status
            for error_type in type(exc).__mro__
            if (status := _ERROR_STATUS.get(error_type)) is not None
        ),
        500,
    )
    error_headers = dict(headers)
    if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
        error_headers["Retry-After"] = str(int(exc.retry_after))
    return HTTPException(
        status_code=status_code,
        detail={"message": exc.message, "type": exc.kind},
        headers=error_headers,
    )
