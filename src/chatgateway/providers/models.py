"""Request and response dataclasses for the gateway.

These types form the public contract between the HTTP layer and
:class:`~chatgateway.providers.gateway.ChatGateway`.  They are created per
request and discarded once the response is returned.  Structural invariants
(valid roles, attachment sizes) are checked at construction time; checks that
need the catalog (token budget against the model maximum) belong to the
gateway.
"""

import base64
import binascii
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from chatgateway.providers.errors import InvalidRequestError

_VALID_ROLES: frozenset[str] = frozenset({"system", "user", "assistant"})

_TRUNCATION_MARKER = "\n\n[Content truncated...]"


class Provider(str, Enum):
    """Provider families the gateway can encode for and decode from."""

    ANTHROPIC = "anthropic"
    META = "meta"
    DEEPSEEK = "deepseek"


@dataclass(frozen=True)
class FileAttachment:
    """A file uploaded alongside a message.

    Args:
        name: Original file name, used in the inline text marker.
        media_type: MIME type, e.g. ``"image/png"`` or ``"text/plain"``.
        data_base64: File bytes, base64-encoded.
        size_bytes: Decoded byte length of ``data_base64``.

    Raises:
        InvalidRequestError: If the payload is not valid base64 or its decoded
            length disagrees with ``size_bytes``.
    """

    name: str
    media_type: str
    data_base64: str
    size_bytes: int

    def __post_init__(self) -> None:
        try:
            decoded = base64.b64decode(self.data_base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidRequestError(
                f"attachment '{self.name}' is not valid base64"
            ) from exc
        if len(decoded) != self.size_bytes:
            raise InvalidRequestError(
                f"attachment '{self.name}' declares {self.size_bytes} bytes "
                f"but decodes to {len(decoded)}"
            )

    @property
    def is_image(self) -> bool:
        return self.media_type.lower().startswith("image/")

    def decoded_text(self, limit: int | None = None) -> str:
        """Return the attachment as UTF-8 text, truncated to *limit* characters."""
        text = base64.b64decode(self.data_base64).decode("utf-8", errors="replace")
        if limit is not None and len(text) > limit:
            return text[:limit] + _TRUNCATION_MARKER
        return text


@dataclass(frozen=True)
class ConversationMessage:
    """One turn of the conversation.

    Raises:
        InvalidRequestError: If ``role`` is not one of system, user, assistant.
    """

    role: str
    content: str
    attachments: tuple[FileAttachment, ...] = ()

    def __post_init__(self) -> None:
        if self.role not in _VALID_ROLES:
            raise InvalidRequestError(
                f"invalid role '{self.role}'; must be one of {sorted(_VALID_ROLES)}"
            )


@dataclass(frozen=True)
class InvocationRequest:
    """Provider-agnostic parameters for one gateway call.

    Args:
        model_id: Logical model id from the catalog.  ``None`` or an unknown id
            resolves to the default model.
        messages: Conversation in order, ending with the new user turn.
        temperature: Sampling temperature in ``[0.0, 2.0]``.  ``None`` uses the
            provider family default.
        max_tokens: Generation budget.  ``None`` uses the provider default.
        enable_thinking: Request extended reasoning when the model supports it.
    """

    model_id: str | None
    messages: list[ConversationMessage]
    temperature: float | None = None
    max_tokens: int | None = None
    enable_thinking: bool = False


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class DecodedResponse:
    """Uniform shape every decoder produces."""

    content: str
    thinking: str | None = None
    usage: Usage = field(default_factory=Usage)


@dataclass(frozen=True)
class InvocationResult:
    """Final outcome of a successful invocation.

    Attributes:
        content: Generated answer text.
        thinking: Extended-reasoning text, when the model produced any.
        usage: Token counts reported by the provider (zero when absent).
        cost_usd: Cost computed from ``usage`` and catalog pricing.
        duration_ms: Wall time from the start of the provider call to completion.
        model_id: Logical id of the model that actually answered.
        model_name: Display name of that model.
        provider: Provider family of that model.
    """

    content: str
    thinking: str | None
    usage: Usage
    cost_usd: Decimal
    duration_ms: int
    model_id: str
    model_name: str
    provider: Provider
