"""Response decoders: provider response bytes to a uniform result.

Buffered responses are decoded in one go by :func:`decode_buffered`.  Streamed
responses are decoded one transport chunk at a time by
:func:`decode_stream_chunk`, which returns the text deltas found in the chunk
(in receipt order) and folds thinking text and usage into a per-stream
:class:`StreamState`.

Usage handling while streaming
------------------------------
Bedrock reports *cumulative* token counts, so every usage field seen in a chunk
overwrites the running total instead of adding to it.  A chunk (or, for
DeepSeek, a line) that is not valid JSON is skipped and the stream continues;
only buffered responses can fail with :class:`DecodeFailureError`.
"""

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from chatgateway.providers.errors import DecodeFailureError, UnsupportedProviderError
from chatgateway.providers.models import DecodedResponse, Provider, Usage

_log = structlog.get_logger(__name__)

BEDROCK_METRICS_KEY = "amazon-bedrock-invocationMetrics"


@dataclass
class StreamState:
    """Running accumulator for a single streamed invocation.

    ``inside_think`` and ``pending`` track DeepSeek ``<think>`` tags across
    chunk boundaries: ``pending`` holds a trailing fragment that may still turn
    out to be the start of a tag.
    """

    content: list[str] = field(default_factory=list)
    thinking: list[str] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    inside_think: bool = False
    pending: str = ""

    def flush(self) -> str | None:
        """Release the held-back tag fragment; returns it when it is answer text."""
        text, self.pending = self.pending, ""
        if not text:
            return None
        if self.inside_think:
            self.thinking.append(text)
            return None
        self.content.append(text)
        return text

    def finalize(self) -> DecodedResponse:
        """Snapshot the last-known totals as a :class:`DecodedResponse`."""
        self.flush()
        return DecodedResponse(
            content="".join(self.content),
            thinking="".join(self.thinking) or None,
            usage=Usage(input_tokens=self.input_tokens, output_tokens=self.output_tokens),
        )


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _count(value: Any) -> int | None:
    """Token count as a non-negative int, or ``None`` when absent/unusable."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return max(0, int(value))


def _load_event(raw: bytes) -> dict[str, Any] | None:
    try:
        event = json.loads(raw)
    except ValueError:
        _log.debug("stream_chunk_skipped", size=len(raw))
        return None
    if not isinstance(event, dict):
        _log.debug("stream_chunk_skipped", size=len(raw))
        return None
    return event


def _overwrite_usage(state: StreamState, input_tokens: Any, output_tokens: Any) -> None:
    input_count = _count(input_tokens)
    output_count = _count(output_tokens)
    if input_count is not None:
        state.input_tokens = input_count
    if output_count is not None:
        state.output_tokens = output_count


def _apply_invocation_metrics(event: dict[str, Any], state: StreamState) -> None:
    metrics = event.get(BEDROCK_METRICS_KEY)
    if isinstance(metrics, dict):
        _overwrite_usage(state, metrics.get("inputTokenCount"), metrics.get("outputTokenCount"))


def _first_choice(event: dict[str, Any]) -> dict[str, Any]:
    choices = event.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _usage(input_tokens: Any, output_tokens: Any) -> Usage:
    return Usage(
        input_tokens=_count(input_tokens) or 0,
        output_tokens=_count(output_tokens) or 0,
    )


THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


def _partial_tag_start(text: str, tag: str) -> int:
    """Index of a trailing prefix of *tag* in *text*, or ``len(text)``."""
    for size in range(min(len(tag) - 1, len(text)), 0, -1):
        if text.endswith(tag[:size]):
            return len(text) - size
    return len(text)


def _split_think_tags(text: str, state: StreamState) -> str:
    """Route ``<think>`` content to ``state.thinking``; return the answer text.

    DeepSeek R1 writes its reasoning inline as ``<think>...</think>``.  A tag
    may be split across calls, so a trailing fragment that could begin the next
    tag is kept in ``state.pending`` until more text arrives.
    """
    buffer = state.pending + text
    state.pending = ""
    answer: list[str] = []
    while buffer:
        tag = THINK_CLOSE if state.inside_think else THINK_OPEN
        index = buffer.find(tag)
        if index < 0:
            cut = _partial_tag_start(buffer, tag)
            segment, state.pending, buffer = buffer[:cut], buffer[cut:], ""
        else:
            segment, buffer = buffer[:index], buffer[index + len(tag):]
        if segment:
            (state.thinking if state.inside_think else answer).append(segment)
        if index >= 0:
            state.inside_think = not state.inside_think

    visible = "".join(answer)
    if visible:
        state.content.append(visible)
    return visible


# ---------------------------------------------------------------------------
# Buffered decoders
# ---------------------------------------------------------------------------


def _decode_anthropic(body: dict[str, Any]) -> DecodedResponse:
    blocks = body.get("content")
    if isinstance(blocks, list):
        text: list[str] = []
        thinking: list[str] = []
        for block in blocks:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "thinking":
                thinking.append(block.get("thinking") or "")
            elif block.get("type") == "text":
                text.append(block.get("text") or "")
        content = "".join(text)
        thinking_text = "".join(thinking) or None
    elif isinstance(body.get("completion"), str):
        # Legacy Text Completions shape.
        content, thinking_text = body["completion"], None
    elif isinstance(blocks, str):
        content, thinking_text = blocks, None
    else:
        raise DecodeFailureError("unrecognised Anthropic response shape")

    usage = _as_dict(body.get("usage"))
    return DecodedResponse(
        content=content,
        thinking=thinking_text,
        usage=_usage(usage.get("input_tokens"), usage.get("output_tokens")),
    )


def _decode_llama(body: dict[str, Any]) -> DecodedResponse:
    for key in ("generation", "completion"):
        if isinstance(body.get(key), str):
            content = body[key]
            break
    else:
        raise DecodeFailureError("unrecognised Llama response shape")

    usage = _as_dict(body.get("usage"))
    return DecodedResponse(
        content=content,
        usage=_usage(
            body.get("prompt_token_count", usage.get("prompt_tokens")),
            body.get("generation_token_count", usage.get("completion_tokens")),
        ),
    )


def _decode_deepseek(body: dict[str, Any]) -> DecodedResponse:
    usage = _as_dict(body.get("usage"))
    usage_counts = _usage(usage.get("prompt_tokens"), usage.get("completion_tokens"))

    choice = _first_choice(body)
    if choice:
        message = _as_dict(choice.get("message"))
        text = message.get("content") or choice.get("text") or ""
        reasoning = message.get("reasoning_content")
    else:
        for key in ("output", "generation"):
            if isinstance(body.get(key), str):
                text, reasoning = body[key], None
                break
        else:
            raise DecodeFailureError("unrecognised DeepSeek response shape")
    if not isinstance(text, str):
        raise DecodeFailureError("DeepSeek response content is not text")

    state = StreamState()
    if isinstance(reasoning, str) and reasoning:
        state.thinking.append(reasoning)
    _split_think_tags(text, state)
    decoded = state.finalize()
    return DecodedResponse(
        content=decoded.content.strip(), thinking=decoded.thinking, usage=usage_counts
    )


_BUFFERED_DECODERS: dict[Provider, Callable[[dict[str, Any]], DecodedResponse]] = {
    Provider.ANTHROPIC: _decode_anthropic,
    Provider.META: _decode_llama,
    Provider.DEEPSEEK: _decode_deepseek,
}


def decode_buffered(raw: bytes, provider: Provider) -> DecodedResponse:
    """Decode a complete response body.

    Raises:
        DecodeFailureError: *raw* is not a JSON object or matches none of the
            provider's known response shapes.
        UnsupportedProviderError: No decoder is registered for *provider*.
    """
    decoder = _BUFFERED_DECODERS.get(provider)
    if decoder is None:
        raise UnsupportedProviderError(f"no response decoder for provider '{provider}'")

    try:
        body = json.loads(raw)
    except ValueError as exc:
        raise DecodeFailureError(f"response body is not valid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise DecodeFailureError("response body is not a JSON object")
    return decoder(body)


# ---------------------------------------------------------------------------
# Stream chunk decoders
# ---------------------------------------------------------------------------


def _stream_anthropic(raw: bytes, state: StreamState) -> list[str]:
    event = _load_event(raw)
    if event is None:
        return []
    _apply_invocation_metrics(event, state)

    event_type = event.get("type")
    if event_type == "message_start":
        usage = _as_dict(_as_dict(event.get("message")).get("usage"))
        _overwrite_usage(state, usage.get("input_tokens"), usage.get("output_tokens"))
    elif event_type == "message_delta":
        usage = _as_dict(event.get("usage"))
        _overwrite_usage(state, usage.get("input_tokens"), usage.get("output_tokens"))
    elif event_type == "content_block_delta":
        delta = _as_dict(event.get("delta"))
        if delta.get("type") == "text_delta" and delta.get("text"):
            state.content.append(delta["text"])
            return [delta["text"]]
        if delta.get("type") == "thinking_delta" and delta.get("thinking"):
            state.thinking.append(delta["thinking"])
    return []


def _stream_llama(raw: bytes, state: StreamState) -> list[str]:
    event = _load_event(raw)
    if event is None:
        return []
    _overwrite_usage(
        state, event.get("prompt_token_count"), event.get("generation_token_count")
    )
    _apply_invocation_metrics(event, state)

    text = event.get("generation")
    if not isinstance(text, str) or not text:
        # OpenAI-compatible chunk shape.
        text = _as_dict(_first_choice(event).get("delta")).get("content")
    if isinstance(text, str) and text:
        state.content.append(text)
        return [text]
    return []


def _deepseek_line(event: dict[str, Any], state: StreamState) -> str | None:
    usage = _as_dict(event.get("usage"))
    _overwrite_usage(state, usage.get("prompt_tokens"), usage.get("completion_tokens"))
    _apply_invocation_metrics(event, state)

    choice = _first_choice(event)
    delta = _as_dict(choice.get("delta"))
    message = _as_dict(choice.get("message"))

    reasoning = delta.get("reasoning_content") or message.get("reasoning_content")
    if isinstance(reasoning, str) and reasoning:
        state.thinking.append(reasoning)

    # Native Bedrock chunks carry the text on the choice itself.
    text = delta.get("content") or choice.get("text")
    if isinstance(text, str) and text:
        return _split_think_tags(text, state) or None
    return None


def _stream_deepseek(raw: bytes, state: StreamState) -> list[str]:
    deltas: list[str] = []
    for line in raw.splitlines():
        line = line.strip()
        if not line:
            continue
        event = _load_event(line)
        if event is None:
            continue
        text = _deepseek_line(event, state)
        if text is not None:
            deltas.append(text)
    return deltas


_STREAM_DECODERS: dict[Provider, Callable[[bytes, StreamState], list[str]]] = {
    Provider.ANTHROPIC: _stream_anthropic,
    Provider.META: _stream_llama,
    Provider.DEEPSEEK: _stream_deepseek,
}


def decode_stream_chunk(raw: bytes, provider: Provider, state: StreamState) -> list[str]:
    """Decode one transport chunk, returning its text deltas in order.

    Raises:
        UnsupportedProviderError: No stream decoder is registered for *provider*.
    """
    decoder = _STREAM_DECODERS.get(provider)
    if decoder is None:
        raise UnsupportedProviderError(f"no stream decoder for provider '{provider}'")
    return decoder(raw, state)
