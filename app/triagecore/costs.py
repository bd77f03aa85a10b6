"""Token pricing and per-run cost summaries."""

from __future__ import annotations

from dataclasses import dataclass

from triagecore.schemas import CallRecord, CostMetrics, ExecutionMode, TokenUsage


@dataclass(frozen=True)
class ModelPricing:
    input_per_mtok: float
    output_per_mtok: float


PRICING: dict[str, ModelPricing] = {
    "claude-3-5-haiku-20241022": ModelPricing(0.25, 1.25),
    "claude-3-5-sonnet-20241022": ModelPricing(3.00, 15.00),
    "gpt-4o-mini": ModelPricing(0.15, 0.60),
    "gpt-4o": ModelPricing(2.50, 10.00),
}
ECONOMY_FALLBACK = ModelPricing(0.25, 1.25)
PREMIUM_FALLBACK = ModelPricing(3.00, 15.00)

BATCH_DISCOUNT = 0.5
CACHE_READ_MULTIPLIER = 0.10
CACHE_WRITE_MULTIPLIER = 1.25


def pricing_for(model: str) -> ModelPricing:
    if model in PRICING:
        return PRICING[model]
    return PREMIUM_FALLBACK if "sonnet" in model or "opus" in model else ECONOMY_FALLBACK


def _raw_cost(usage: TokenUsage, price: ModelPricing, mode: ExecutionMode) -> tuple[float, float]:
    """Return (actual, undiscounted) cost in USD."""
    per_input = price.input_per_mtok / 1_000_000
    per_output = price.output_per_mtok / 1_000_000
    undiscounted = (
        (usage.input_tokens + usage.cache_read_input_tokens + usage.cache_creation_input_tokens) * per_input
        + usage.output_tokens * per_output
    )
    actual = (
        usage.input_tokens * per_input
        + usage.cache_read_input_tokens * per_input * CACHE_READ_MULTIPLIER
        + usage.cache_creation_input_tokens * per_input * CACHE_WRITE_MULTIPLIER
        + usage.output_tokens * per_output
    )
    if mode == "batch":
        actual *= BATCH_DISCOUNT
    return actual, undiscounted


def estimate_call_cost(model: str, usage: TokenUsage, mode: ExecutionMode = "direct") -> float:
    actual, _ = _raw_cost(usage, pricing_for(model), mode)
    return round(actual, 8)


def summarize_costs(records: list[CallRecord]) -> CostMetrics:
    metrics = CostMetrics()
    actual_total = 0.0
    undiscounted_total = 0.0
    for record in records:
        actual, undiscounted = _raw_cost(record.usage, pricing_for(record.model), record.mode)
        actual_total += actual
        undiscounted_total += undiscounted
        metrics.calls += 1
        metrics.premium_calls += int(record.tier == "premium")
        metrics.batched_calls += int(record.mode == "batch")
        metrics.input_tokens += record.usage.input_tokens
        metrics.output_tokens += record.usage.output_tokens
        metrics.cache_read_tokens += record.usage.cache_read_input_tokens
        metrics.cache_write_tokens += record.usage.cache_creation_input_tokens
    metrics.estimated_cost_usd = round(actual_total, 8)
    metrics.estimated_savings_usd = round(max(0.0, undiscounted_total - actual_total), 8)
    return metrics
