"""Static model catalog: single source of truth for invocable models.

Maps the logical ids callers use to the Bedrock wire model id, capability flags
and per-1000-token pricing.  The table is built once at import and exposed
read-only, so it is safe to share across concurrent invocations.

Wire ids are cross-region inference profile ids; Bedrock rejects on-demand
calls to these models by their bare model id.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType

from chatgateway.providers.models import Provider


@dataclass(frozen=True)
class ModelCatalogEntry:
    logical_id: str
    name: str
    provider: Provider
    wire_model_id: str
    max_tokens: int
    supports_streaming: bool
    supports_thinking: bool
    input_price_per_thousand: Decimal
    output_price_per_thousand: Decimal
    description: str = ""

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError(f"{self.logical_id}: max_tokens must be positive")
        if self.input_price_per_thousand < 0 or self.output_price_per_thousand < 0:
            raise ValueError(f"{self.logical_id}: prices must be non-negative")


_ENTRIES: tuple[ModelCatalogEntry, ...] = (
    ModelCatalogEntry(
        logical_id="claude-opus-4-6",
        name="Claude Opus 4.6",
        provider=Provider.ANTHROPIC,
        wire_model_id="us.anthropic.claude-opus-4-6-v1",
        max_tokens=4096,
        supports_streaming=True,
        supports_thinking=True,
        input_price_per_thousand=Decimal("0.015"),
        output_price_per_thousand=Decimal("0.075"),
        description="Maximum reasoning & coding capabilities",
    ),
    ModelCatalogEntry(
        logical_id="claude-sonnet-4",
        name="Claude Sonnet 4",
        provider=Provider.ANTHROPIC,
        wire_model_id="us.anthropic.claude-sonnet-4-20250514-v1:0",
        max_tokens=4096,
        supports_streaming=True,
        supports_thinking=False,
        input_price_per_thousand=Decimal("0.003"),
        output_price_per_thousand=Decimal("0.015"),
        description="Balanced performance for most tasks",
    ),
    ModelCatalogEntry(
        logical_id="llama-4-maverick",
        name="Llama 4 Maverick",
        provider=Provider.META,
        wire_model_id="us.meta.llama4-maverick-17b-instruct-v1:0",
        max_tokens=8192,
        supports_streaming=True,
        supports_thinking=False,
        input_price_per_thousand=Decimal("0.00022"),
        output_price_per_thousand=Decimal("0.00088"),
        description="Open source, efficient for general tasks",
    ),
    ModelCatalogEntry(
        logical_id="deepseek-r1",
        name="DeepSeek R1",
        provider=Provider.DEEPSEEK,
        wire_model_id="us.deepseek.r1-v1:0",
        max_tokens=8192,
        supports_streaming=True,
        supports_thinking=False,
        input_price_per_thousand=Decimal("0.00055"),
        output_price_per_thousand=Decimal("0.00219"),
        description="Chain-of-thought reasoning model",
    ),
)

MODEL_CATALOG: Mapping[str, ModelCatalogEntry] = MappingProxyType(
    {entry.logical_id: entry for entry in _ENTRIES}
)

DEFAULT_MODEL_ID = "claude-sonnet-4"


def resolve(logical_id: str | None) -> ModelCatalogEntry | None:
    """Return the catalog entry for *logical_id*, or ``None`` when unknown."""
    if logical_id is None:
        return None
    return MODEL_CATALOG.get(logical_id)


def is_valid(logical_id: str | None) -> bool:
    return resolve(logical_id) is not None


def default_model_id() -> str:
    return DEFAULT_MODEL_ID


def list_models() -> list[ModelCatalogEntry]:
    """All entries in catalog order (the order the model picker shows them)."""
    return list(MODEL_CATALOG.values())
