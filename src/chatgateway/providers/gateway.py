"""Invocation orchestrator.

:class:`ChatGateway` takes a provider-agnostic :class:`InvocationRequest`,
resolves the catalog entry, encodes the wire payload, drives the transport
(buffered or streamed, as the catalog entry dictates), decodes the response and
prices the usage.

Each invocation moves through :class:`InvocationState`::

    validating -> resolving -> encoding -> invoking -> decoding -> costing -> done

and ends in ``failed`` from any earlier state.  Every failure surfaces as a
:class:`~chatgateway.providers.errors.GatewayError` subclass whose ``state``
names where it happened.  The gateway never retries; that is a caller decision.

On top of that it adds what the pure encode/decode functions do not do:

* OpenTelemetry spans using GenAI semantic conventions
* Structured logging via structlog with a per-invocation correlation ID
* Prometheus counters for outcomes, tokens and cost
"""

import json
import time
import uuid
from collections.abc import AsyncGenerator
from contextlib import aclosing
from enum import Enum
from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.trace import StatusCode

from chatgateway import metrics
from chatgateway.providers import catalog
from chatgateway.providers.catalog import ModelCatalogEntry
from chatgateway.providers.cost import cost
from chatgateway.providers.decoders import StreamState, decode_buffered, decode_stream_chunk
from chatgateway.providers.encoders import EncodeOptions, encode
from chatgateway.providers.errors import (
    EmptyResponseError,
    GatewayError,
    InvalidRequestError,
)
from chatgateway.providers.models import (
    DecodedResponse,
    InvocationRequest,
    InvocationResult,
)
from chatgateway.providers.transport import ModelTransport, map_transport_error

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)


class InvocationState(str, Enum):
    VALIDATING = "validating"
    RESOLVING = "resolving"
    ENCODING = "encoding"
    INVOKING = "invoking"
    DECODING = "decoding"
    COSTING = "costing"
    DONE = "done"
    FAILED = "failed"


class _Progress:
    """Mutable per-invocation bookkeeping shared by the pipeline steps."""

    def __init__(self) -> None:
        self.state = InvocationState.VALIDATING
        self.entry: ModelCatalogEntry | None = None

    @property
    def model(self) -> str:
        return self.entry.logical_id if self.entry else "unknown"

    @property
    def mode(self) -> str:
        if self.entry is None:
            return "unknown"
        return "stream" if self.entry.supports_streaming else "buffered"


class ChatGateway:
    """Uniform entry point to every catalog model.

    Example::

        gateway = ChatGateway(BedrockTransport(region="us-east-1"))
        request = InvocationRequest(
            model_id="llama-4-maverick",
            messages=[ConversationMessage(role="user", content="Hello")],
        )
        async for item in gateway.invoke_stream(request):
            if isinstance(item, str):
                print(item, end="", flush=True)
            else:
                print(f"\\n{item.usage} ${item.cost_usd}")

    Args:
        transport: Anything implementing
            :class:`~chatgateway.providers.transport.ModelTransport`.
        default_model_id: Model used when a request names no model or an
            unknown one.  Defaults to the catalog default.
        thinking_budget_tokens: Extended-reasoning budget for models that
            support it.
        attachment_text_limit: Character limit for inlined non-image
            attachments.  ``None`` disables truncation.

    Raises:
        ValueError: *default_model_id* is not in the catalog.
    """

    def __init__(
        self,
        transport: ModelTransport,
        default_model_id: str | None = None,
        thinking_budget_tokens: int = 5000,
        attachment_text_limit: int | None = 50_000,
    ) -> None:
        default_model_id = default_model_id or catalog.default_model_id()
        default_entry = catalog.resolve(default_model_id)
        if default_entry is None:
            raise ValueError(f"default model '{default_model_id}' is not in the catalog")
        self._transport = transport
        self._default_entry = default_entry
        self._thinking_budget_tokens = thinking_budget_tokens
        self._attachment_text_limit = attachment_text_limit

    @property
    def default_model_id(self) -> str:
        return self._default_entry.logical_id

    @property
    def default_entry(self) -> ModelCatalogEntry:
        return self._default_entry

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def invoke(self, request: InvocationRequest) -> InvocationResult:
        """Run an invocation to completion and return its result.

        Streaming-capable models are still called through the stream transport;
        the deltas are consumed internally.

        Raises:
            GatewayError: Any request, transport or decode failure (see
                :mod:`chatgateway.providers.errors`).
        """
        async with aclosing(self._run(request, "invoke")) as items:
            async for item in items:
                if isinstance(item, InvocationResult):
                    return item
        raise GatewayError("invocation ended without a result", model=request.model_id)

    def invoke_stream(
        self, request: InvocationRequest
    ) -> AsyncGenerator[str | InvocationResult, None]:
        """Stream an invocation.

        Yields text deltas (``str``) in the order the provider produced them,
        then exactly one :class:`InvocationResult` carrying final usage and
        cost.  Models without streaming support yield their whole answer as a
        single delta.  Closing the generator early stops the transport read
        and releases the connection.

        Raises:
            GatewayError: Any request, transport or decode failure.
        """
        return self._run(request, "invoke_stream")

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _run(
        self, request: InvocationRequest, operation: str
    ) -> AsyncGenerator[str | InvocationResult, None]:
        progress = _Progress()
        log = _log.bind(
            request_id=str(uuid.uuid4()),
            operation=operation,
            requested_model=request.model_id,
        )

        with _tracer.start_as_current_span("gateway.invoke") as span:
            span.set_attribute("gateway.operation", operation)
            try:
                entry, body = self._prepare(request, progress, log)
                log = log.bind(model=entry.logical_id, provider=entry.provider.value)
                span.set_attribute("gen_ai.system", entry.provider.value)
                span.set_attribute("gen_ai.request.model", entry.wire_model_id)
                span.set_attribute("llm.stream", entry.supports_streaming)
                if request.max_tokens is not None:
                    span.set_attribute("gen_ai.request.max_tokens", request.max_tokens)
                if request.temperature is not None:
                    span.set_attribute("gen_ai.request.temperature", request.temperature)
                log.info(
                    "invocation_start",
                    mode=progress.mode,
                    message_count=len(request.messages),
                    enable_thinking=request.enable_thinking,
                )

                progress.state = InvocationState.INVOKING
                start_time = time.monotonic()

                if entry.supports_streaming:
                    stream_state = StreamState()
                    async with aclosing(self._stream(entry, body, stream_state)) as deltas:
                        async for delta in deltas:
                            yield delta
                    progress.state = InvocationState.DECODING
                    decoded = stream_state.finalize()
                else:
                    raw = await self._call(entry, body)
                    progress.state = InvocationState.DECODING
                    decoded = decode_buffered(raw, entry.provider)
                    if decoded.content.strip():
                        yield decoded.content

                if not decoded.content.strip():
                    raise EmptyResponseError(
                        f"{entry.name} returned no content; "
                        "the model may be unavailable or rate limited",
                        model=entry.logical_id,
                    )

                progress.state = InvocationState.COSTING
                result = self._result(entry, decoded, start_time)
                progress.state = InvocationState.DONE
                self._record_success(result, progress, span, log)
                yield result

            except GatewayError as exc:
                self._record_failure(exc, progress, span, log)
                raise

            except Exception as exc:
                mapped = GatewayError(
                    f"Unexpected failure while {progress.state.value}: {exc}",
                    model=progress.entry.logical_id if progress.entry else None,
                    original_error=exc,
                )
                self._record_failure(mapped, progress, span, log)
                raise mapped from exc

            finally:
                if progress.state not in (InvocationState.DONE, InvocationState.FAILED):
                    # Consumer closed the stream or the task was cancelled.
                    log.info("invocation_abandoned", state=progress.state.value)

    def _prepare(
        self, request: InvocationRequest, progress: _Progress, log: Any
    ) -> tuple[ModelCatalogEntry, bytes]:
        """Validate, resolve and encode; returns the entry and JSON wire body."""
        progress.state = InvocationState.VALIDATING
        self._validate(request)

        progress.state = InvocationState.RESOLVING
        entry = self._resolve(request.model_id, log)
        progress.entry = entry
        if request.max_tokens is not None and request.max_tokens > entry.max_tokens:
            raise InvalidRequestError(
                f"max_tokens {request.max_tokens} exceeds the {entry.max_tokens} "
                f"token limit of {entry.logical_id}",
                model=entry.logical_id,
            )
        if request.enable_thinking and not entry.supports_thinking:
            log.info("thinking_not_supported", model=entry.logical_id)

        progress.state = InvocationState.ENCODING
        options = EncodeOptions(
            temperature=request.temperature,
            max_tokens=request.max_tokens,
            enable_thinking=request.enable_thinking,
            thinking_budget_tokens=self._thinking_budget_tokens,
            attachment_text_limit=self._attachment_text_limit,
        )
        payload = encode(request.messages, entry, options)
        return entry, json.dumps(payload).encode("utf-8")

    def _validate(self, request: InvocationRequest) -> None:
        if not request.messages:
            raise InvalidRequestError("messages must not be empty")

        if request.temperature is not None and not 0.0 <= request.temperature <= 2.0:
            raise InvalidRequestError(
                f"temperature must be in [0.0, 2.0], got {request.temperature}"
            )

        if request.max_tokens is not None and (
            isinstance(request.max_tokens, bool) or request.max_tokens <= 0
        ):
            raise InvalidRequestError(
                f"max_tokens must be a positive integer, got {request.max_tokens}"
            )

    def _resolve(self, model_id: str | None, log: Any) -> ModelCatalogEntry:
        entry = catalog.resolve(model_id)
        if entry is not None:
            return entry
        # Unknown ids are served by the default model rather than rejected.
        if model_id is not None:
            log.warning(
                "unknown_model_fallback",
                requested_model=model_id,
                fallback_model=self._default_entry.logical_id,
            )
        return self._default_entry

    async def _call(self, entry: ModelCatalogEntry, body: bytes) -> bytes:
        with _tracer.start_as_current_span("llm.api_call") as span:
            span.set_attribute("call_type", "buffered")
            try:
                return await self._transport.invoke(entry.wire_model_id, body)
            except Exception as exc:
                raise map_transport_error(exc, entry.logical_id) from exc

    async def _stream(
        self, entry: ModelCatalogEntry, body: bytes, state: StreamState
    ) -> AsyncGenerator[str, None]:
        """Yield decoded deltas while holding the transport stream open.

        Errors raised mid-stream are mapped but never retried; resuming a
        partial stream is unsafe.
        """
        with _tracer.start_as_current_span("llm.api_call") as span:
            span.set_attribute("call_type", "streaming")
            try:
                async with self._transport.open_stream(entry.wire_model_id, body) as chunks:
                    async for raw in chunks:
                        for delta in decode_stream_chunk(raw, entry.provider, state):
                            yield delta
                tail = state.flush()
                if tail:
                    yield tail
            except GatewayError:
                raise
            except Exception as exc:
                raise map_transport_error(exc, entry.logical_id) from exc

    def _result(
        self, entry: ModelCatalogEntry, decoded: DecodedResponse, start_time: float
    ) -> InvocationResult:
        usage = decoded.usage
        return InvocationResult(
            content=decoded.content,
            thinking=decoded.thinking,
            usage=usage,
            cost_usd=cost(usage.input_tokens, usage.output_tokens, entry),
            duration_ms=int((time.monotonic() - start_time) * 1000),
            model_id=entry.logical_id,
            model_name=entry.name,
            provider=entry.provider,
        )

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def _record_success(
        self, result: InvocationResult, progress: _Progress, span: Any, log: Any
    ) -> None:
        span.set_attribute("gen_ai.usage.input_tokens", result.usage.input_tokens)
        span.set_attribute("gen_ai.usage.output_tokens", result.usage.output_tokens)
        span.set_attribute("gateway.cost_usd", float(result.cost_usd))

        metrics.INVOCATIONS.labels(result.model_id, progress.mode, "success").inc()
        metrics.INVOCATION_DURATION.labels(result.model_id, progress.mode).observe(
            result.duration_ms / 1000
        )
        metrics.TOKENS.labels(result.model_id, "input").inc(result.usage.input_tokens)
        metrics.TOKENS.labels(result.model_id, "output").inc(result.usage.output_tokens)
        metrics.COST_USD.labels(result.model_id).inc(float(result.cost_usd))

        log.info(
            "invocation_complete",
            duration_ms=result.duration_ms,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
            cost_usd=str(result.cost_usd),
            response_length=len(result.content),
            has_thinking=result.thinking is not None,
        )

    def _record_failure(
        self, exc: GatewayError, progress: _Progress, span: Any, log: Any
    ) -> None:
        if exc.state is None:
            exc.state = progress.state.value
        if exc.model is None and progress.entry is not None:
            exc.model = progress.entry.logical_id
        progress.state = InvocationState.FAILED

        span.record_exception(exc)
        span.set_status(StatusCode.ERROR, exc.message)
        metrics.INVOCATIONS.labels(progress.model, progress.mode, exc.kind).inc()
        log.error(
            "invocation_error",
            error_type=type(exc).__name__,
            kind=exc.kind,
            state=exc.state,
            error=exc.message,
        )
