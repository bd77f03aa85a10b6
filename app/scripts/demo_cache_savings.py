#!/usr/bin/env python3
"""Show prompt-cache eligibility, model routing and estimated savings per stage."""

from __future__ import annotations

import argparse

from triagecore.caching import CacheClassifier
from triagecore.config import get_settings
from triagecore.prompts import PIPELINE_STAGES, PromptLibrary
from triagecore.routing import ModelRouter
from triagecore.schemas import ChatMessage, ChatRequest

SAMPLE_VALUES = {
    "patient_id": "demo-001",
    "mode": "patient",
    "band": "urgent",
    "patient_context": '{"age": 54, "existing_conditions": ["type 2 diabetes"]}',
    "text": "chest tightness on exertion for a week, multiple symptoms including fatigue",
    "evidence": '{"presenting_complaint": "chest tightness", "features": {"severity": 6}}',
    "risk": '{"band": "urgent", "p_urgent": 0.7}',
    "plan": '{"disposition": "Urgent care today"}',
}


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Estimate prompt-cache savings for each pipeline stage")
    parser.add_argument("--calls", type=int, default=1000, help="Calls per stage to project savings for")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    settings = get_settings()
    prompts = PromptLibrary()
    classifier = CacheClassifier(enabled=True, min_chars=settings.cache_min_chars)
    router = ModelRouter(
        economy_model=settings.economy_model,
        premium_model=settings.premium_model,
        threshold=settings.complexity_threshold,
        length_threshold=settings.complexity_length_threshold,
    )

    total_saved = 0
    for stage in PIPELINE_STAGES:
        template = prompts.get(stage)
        if template is None:
            print(f"{stage:<15} missing template")
            continue
        messages = [
            ChatMessage(role="system", content=template.system),
            ChatMessage(role="user", content=template.render(**SAMPLE_VALUES)),
        ]
        estimate = classifier.estimate_savings(messages)
        selection = router.select(ChatRequest(stage=stage, messages=messages))
        saved = estimate.potential_savings_tokens * args.calls
        total_saved += saved
        print(
            f"{stage:<15} tier={selection.tier:<8} score={selection.score} "
            f"cacheable={estimate.cacheable_tokens}/{estimate.total_tokens} tokens "
            f"({estimate.cacheable_ratio:.0%}) saved_over_{args.calls}_calls={saved}"
        )

    print(f"\nTotal input tokens saved across stages: {total_saved}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
