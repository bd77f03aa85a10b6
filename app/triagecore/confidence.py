"""Confidence aggregation across pipeline stages."""

from __future__ import annotations

from collections.abc import Sequence

DEFAULT_WEIGHTS: tuple[float, float, float, float] = (0.30, 0.30, 0.25, 0.15)

CONFIDENCE_FLOOR = 0.1
CONFIDENCE_CEILING = 0.95
_STAGE_EPSILON = 1e-3

CLARIFICATION_CONFIDENCE = 0.4
EMERGENCY_CONFIDENCE = 0.95
FAILSAFE_CONFIDENCE = 0.2
FAILSAFE_CONFIDENCE_WITH_RISK = 0.3


def clamp_confidence(value: float) -> float:
    return max(CONFIDENCE_FLOOR, min(CONFIDENCE_CEILING, value))


def aggregate_confidence(
    values: Sequence[float],
    weights: Sequence[float] = DEFAULT_WEIGHTS,
) -> float:
    """Weighted harmonic mean of stage confidences, clamped to [0.1, 0.95].

    A weak stage drags the result down far more than an arithmetic mean would.
    Non-numeric entries are skipped; with nothing usable the result is 0.5.
    """
    if len(values) != len(weights):
        raise ValueError(f"expected {len(weights)} confidences, got {len(values)}")

    weight_sum = 0.0
    denominator = 0.0
    for value, weight in zip(values, weights):
        if value is None or isinstance(value, bool) or value != value:
            continue
        bounded = max(_STAGE_EPSILON, min(1.0, float(value)))
        weight_sum += weight
        denominator += weight / bounded

    if weight_sum <= 0.0 or denominator <= 0.0:
        return 0.5
    return clamp_confidence(weight_sum / denominator)
