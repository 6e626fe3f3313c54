"""Prometheus metrics for gateway invocations.

Exposed through the ``/metrics`` ASGI app mounted in :mod:`chatgateway.main`.
"""

from prometheus_client import Counter, Histogram

INVOCATIONS = Counter(
    "gateway_invocations_total",
    "Model invocations by model, transport mode and outcome.",
    ["model", "mode", "outcome"],
)

INVOCATION_DURATION = Histogram(
    "gateway_invocation_duration_seconds",
    "Time from the provider call to a complete result.",
    ["model", "mode"],
)

TOKENS = Counter(
    "gateway_tokens_total",
    "Tokens consumed and produced, as reported by the provider.",
    ["model", "direction"],
)

COST_USD = Counter(
    "gateway_cost_usd_total",
    "Accumulated invocation cost in USD.",
    ["model"],
)
