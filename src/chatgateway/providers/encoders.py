"""Payload encoders: uniform conversation to provider wire payload.

One pure function per provider family.  :func:`encode` picks the function from
``_ENCODERS``, which is keyed by :class:`~chatgateway.providers.models.Provider`;
a provider with no entry is reported as unsupported rather than falling through
to another family's format.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from chatgateway.providers.catalog import ModelCatalogEntry
from chatgateway.providers.errors import UnsupportedProviderError
from chatgateway.providers.models import ConversationMessage, FileAttachment, Provider

_log = structlog.get_logger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"

ANTHROPIC_DEFAULT_TEMPERATURE = 0.7
# Smallest thinking budget Bedrock accepts.
ANTHROPIC_MIN_THINKING_BUDGET = 1024
LLAMA_DEFAULT_TEMPERATURE = 0.5
LLAMA_DEFAULT_TOP_P = 0.9
LLAMA_DEFAULT_MAX_GEN_LEN = 4096
DEEPSEEK_DEFAULT_TEMPERATURE = 0.6
DEEPSEEK_DEFAULT_TOP_P = 0.9

DEEPSEEK_SYSTEM_PREFIX = "[System]: "
DEEPSEEK_SYSTEM_ACK = "Understood."

_LLAMA_BEGIN = "<|begin_of_text|>"
_LLAMA_HEADER = "<|start_header_id|>{role}<|end_header_id|>\n"
_LLAMA_EOT = "<|eot_id|>"


@dataclass(frozen=True)
class EncodeOptions:
    """Generation options shared by every encoder.

    Args:
        temperature: ``None`` selects the provider family default.
        max_tokens: ``None`` selects the provider family default.
        enable_thinking: Honoured only by entries with ``supports_thinking``.
        thinking_budget_tokens: Extended-reasoning budget; kept below
            ``max_tokens``.
        attachment_text_limit: Character limit for inlined non-image
            attachments.  ``None`` disables truncation.
    """

    temperature: float | None = None
    max_tokens: int | None = None
    enable_thinking: bool = False
    thinking_budget_tokens: int = 5000
    attachment_text_limit: int | None = 50_000


WirePayload = dict[str, Any]
Encoder = Callable[[Sequence[ConversationMessage], ModelCatalogEntry, EncodeOptions], WirePayload]


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _split_system(
    messages: Sequence[ConversationMessage],
) -> tuple[ConversationMessage | None, list[ConversationMessage]]:
    """Separate a leading system message from the rest of the conversation.

    System messages anywhere else are dropped; none of the provider formats
    accept a system role mid-conversation.
    """
    system: ConversationMessage | None = None
    rest = list(messages)
    if rest and rest[0].role == "system":
        system = rest.pop(0)

    conversation = [m for m in rest if m.role != "system"]
    dropped = len(rest) - len(conversation)
    if dropped:
        _log.warning("system_messages_dropped", count=dropped)
    return system, conversation


def _file_block(attachment: FileAttachment, limit: int | None) -> str:
    return (
        f"\n\n--- File: {attachment.name} ---\n"
        f"{attachment.decoded_text(limit)}\n"
        f"--- End of file: {attachment.name} ---"
    )


def _inline_text(
    message: ConversationMessage,
    limit: int | None,
    include_images: bool,
) -> str:
    """Message text with non-image attachments appended as delimited blocks.

    When *include_images* is true, image attachments are replaced by a short
    marker because the target format cannot carry image data.
    """
    text = message.content
    for attachment in message.attachments:
        if attachment.is_image:
            if include_images:
                text += f"\n\n[Image attachment: {attachment.name}]"
            continue
        text += _file_block(attachment, limit)
    return text


# ---------------------------------------------------------------------------
# Anthropic (Claude Messages API on Bedrock)
# ---------------------------------------------------------------------------


def _anthropic_content(
    message: ConversationMessage, limit: int | None
) -> str | list[dict[str, Any]]:
    text = _inline_text(message, limit, include_images=False)
    images = [a for a in message.attachments if a.is_image]
    if not images:
        return text

    blocks: list[dict[str, Any]] = [
        {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": image.media_type,
                "data": image.data_base64,
            },
        }
        for image in images
    ]
    blocks.append({"type": "text", "text": text})
    return blocks


def encode_anthropic(
    messages: Sequence[ConversationMessage],
    entry: ModelCatalogEntry,
    options: EncodeOptions,
) -> WirePayload:
    system, conversation = _split_system(messages)
    max_tokens = options.max_tokens or entry.max_tokens

    payload: WirePayload = {
        "anthropic_version": ANTHROPIC_VERSION,
        "max_tokens": max_tokens,
        "messages": [
            {"role": m.role, "content": _anthropic_content(m, options.attachment_text_limit)}
            for m in conversation
        ],
    }
    if system is not None:
        payload["system"] = system.content

    budget = min(options.thinking_budget_tokens, max_tokens - 1)
    thinking = options.enable_thinking and entry.supports_thinking
    if thinking and budget < ANTHROPIC_MIN_THINKING_BUDGET:
        _log.warning(
            "thinking_skipped",
            model=entry.logical_id,
            max_tokens=max_tokens,
            budget_tokens=budget,
        )
        thinking = False

    if thinking:
        # Bedrock requires the budget to be strictly below max_tokens, and
        # rejects a temperature alongside thinking.
        payload["thinking"] = {"type": "enabled", "budget_tokens": budget}
    else:
        payload["temperature"] = (
            options.temperature
            if options.temperature is not None
            else ANTHROPIC_DEFAULT_TEMPERATURE
        )
    return payload


# ---------------------------------------------------------------------------
# Meta Llama (native prompt format)
# ---------------------------------------------------------------------------


def build_llama_prompt(messages: Sequence[ConversationMessage], limit: int | None) -> str:
    system, conversation = _split_system(messages)
    ordered = ([system] if system is not None else []) + conversation

    prompt = _LLAMA_BEGIN
    for message in ordered:
        prompt += (
            _LLAMA_HEADER.format(role=message.role)
            + _inline_text(message, limit, include_images=True)
            + _LLAMA_EOT
        )
    # Open an assistant turn so the model continues from here.
    return prompt + _LLAMA_HEADER.format(role="assistant")


def encode_llama(
    messages: Sequence[ConversationMessage],
    entry: ModelCatalogEntry,
    options: EncodeOptions,
) -> WirePayload:
    return {
        "prompt": build_llama_prompt(messages, options.attachment_text_limit),
        "max_gen_len": options.max_tokens or LLAMA_DEFAULT_MAX_GEN_LEN,
        "temperature": (
            options.temperature if options.temperature is not None else LLAMA_DEFAULT_TEMPERATURE
        ),
        "top_p": LLAMA_DEFAULT_TOP_P,
    }


# ---------------------------------------------------------------------------
# DeepSeek (OpenAI-style messages, no system role)
# ---------------------------------------------------------------------------


def encode_deepseek(
    messages: Sequence[ConversationMessage],
    entry: ModelCatalogEntry,
    options: EncodeOptions,
) -> WirePayload:
    system, conversation = _split_system(messages)
    limit = options.attachment_text_limit

    wire_messages: list[dict[str, str]] = []
    if system is not None:
        wire_messages.append(
            {"role": "user", "content": DEEPSEEK_SYSTEM_PREFIX + system.content}
        )
        wire_messages.append({"role": "assistant", "content": DEEPSEEK_SYSTEM_ACK})
    wire_messages.extend(
        {"role": m.role, "content": _inline_text(m, limit, include_images=True)}
        for m in conversation
    )

    return {
        "messages": wire_messages,
        "max_tokens": options.max_tokens or entry.max_tokens,
        "temperature": (
            options.temperature
            if options.temperature is not None
            else DEEPSEEK_DEFAULT_TEMPERATURE
        ),
        "top_p": DEEPSEEK_DEFAULT_TOP_P,
    }


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

_ENCODERS: dict[Provider, Encoder] = {
    Provider.ANTHROPIC: encode_anthropic,
    Provider.META: encode_llama,
    Provider.DEEPSEEK: encode_deepseek,
}


def encoder_for(provider: Provider) -> Encoder:
    """Return the encoder for *provider*.

    Raises:
        UnsupportedProviderError: No encoder is registered for *provider*.
    """
    try:
        return _ENCODERS[provider]
    except KeyError:
        name = getattr(provider, "value", provider)
        raise UnsupportedProviderError(f"no payload encoder for provider '{name}'") from None


def encode(
    messages: Sequence[ConversationMessage],
    entry: ModelCatalogEntry,
    options: EncodeOptions,
) -> WirePayload:
    return encoder_for(entry.provider)(messages, entry, options)
