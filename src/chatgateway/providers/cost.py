"""Usage-based cost calculation.

Uses :class:`~decimal.Decimal` throughout so summing many small per-request
costs in billing reports stays exact.
"""

from decimal import ROUND_HALF_UP, Decimal

from chatgateway.providers.catalog import ModelCatalogEntry

_THOUSAND = Decimal(1000)
_QUANTUM = Decimal("0.000001")


def cost(input_tokens: int, output_tokens: int, entry: ModelCatalogEntry) -> Decimal:
    """Return the USD cost of a call, rounded to 6 decimal places.

    Negative counts are treated as zero.  Callers map missing usage to zero
    before calling.
    """
    input_tokens = max(0, input_tokens)
    output_tokens = max(0, output_tokens)
    total = (Decimal(input_tokens) / _THOUSAND) * entry.input_price_per_thousand + (
        Decimal(output_tokens) / _THOUSAND
    ) * entry.output_price_per_thousand
    return total.quantize(_QUANTUM, rounding=ROUND_HALF_UP)
