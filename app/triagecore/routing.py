"""Complexity scoring and economy/premium model selection."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from triagecore.schemas import ChatRequest, ModelTier

COMPLEXITY_PATTERNS: tuple[tuple[re.Pattern[str], int, str], ...] = (
    (re.compile(r"differential diagnos", re.IGNORECASE), 3, "differential_diagnosis"),
    (re.compile(r"complex medical reasoning", re.IGNORECASE), 3, "complex_reasoning"),
    (re.compile(r"multiple comorbidit", re.IGNORECASE), 2, "multiple_comorbidities"),
    (re.compile(r"uncertain diagnosis", re.IGNORECASE), 2, "uncertain_diagnosis"),
    (re.compile(r"contraindication", re.IGNORECASE), 2, "contraindication"),
    (re.compile(r"drug interaction", re.IGNORECASE), 2, "drug_interaction"),
    (re.compile(r"multiple symptoms", re.IGNORECASE), 1, "multiple_symptoms"),
    (re.compile(r"chronic condition", re.IGNORECASE), 1, "chronic_condition"),
    (re.compile(r"medication history", re.IGNORECASE), 1, "medication_history"),
    (re.compile(r"risk stratification", re.IGNORECASE), 1, "risk_stratification"),
)

# Stages whose reasoning benefits from the stronger model.
REASONING_STAGES = frozenset({"risk", "plan", "emergency_plan"})


@dataclass(frozen=True)
class ModelSelection:
    model: str
    tier: ModelTier
    score: int = 0
    reasons: list[str] = field(default_factory=list)


class ModelRouter:
    def __init__(
        self,
        *,
        economy_model: str,
        premium_model: str,
        enabled: bool = True,
        threshold: int = 3,
        length_threshold: int = 2000,
    ):
        self.economy_model = economy_model
        self.premium_model = premium_model
        self.enabled = enabled
        self.threshold = threshold
        self.length_threshold = length_threshold

    def score(self, request: ChatRequest) -> tuple[int, list[str]]:
        text = request.joined_text()
        score = 0
        reasons: list[str] = []
        for pattern, weight, label in COMPLEXITY_PATTERNS:
            if pattern.search(text):
                score += weight
                reasons.append(f"{label}+{weight}")
        if len(text) > self.length_threshold:
            score += 1
            reasons.append("long_context+1")
        if request.stage in REASONING_STAGES:
            score += 1
            reasons.append(f"stage_{request.stage}+1")
        return score, reasons

    def tier_of(self, model: str) -> ModelTier:
        return "premium" if model == self.premium_model else "economy"

    def select(self, request: ChatRequest, requested_model: str | None = None) -> ModelSelection:
        if requested_model:
            return ModelSelection(
                model=requested_model,
                tier=self.tier_of(requested_model),
                reasons=["requested_model"],
            )
        if not self.enabled:
            return ModelSelection(model=self.economy_model, tier="economy", reasons=["smart_routing_disabled"])

        score, reasons = self.score(request)
        if score >= self.threshold:
            return ModelSelection(model=self.premium_model, tier="premium", score=score, reasons=reasons)
        return ModelSelection(model=self.economy_model, tier="economy", score=score, reasons=reasons)
