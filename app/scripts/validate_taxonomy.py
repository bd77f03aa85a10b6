#!/usr/bin/env python3
"""Check that tagged test scenarios land in the risk band their category implies."""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import replace

from triagecore.conductor import build_conductor
from triagecore.config import configure_logging, get_settings
from triagecore.mock_backend import MockBackend
from triagecore.schemas import OperationalContext, TriageRequest
from triagecore.taxonomy import SUGGESTED_RISK_BY_TEST, check_test_category

SCENARIOS: list[tuple[str, str]] = [
    ("emergency", "severe crushing chest pain for 20 minutes with shortness of breath"),
    ("emergency", "worst headache of my life, came on suddenly"),
    ("emergency", "my throat is swelling after a bee sting"),
    ("urgent", "severe abdominal pain 8/10 since this morning"),
    ("urgent", "pain rated 7/10 in my lower back after lifting"),
    ("routine", "mild headache for 2 hours"),
    ("routine", "mild cough for 3 days, no fever"),
    ("edge-case", "mild itch on my arm for a week"),
]


async def _run(args: argparse.Namespace) -> int:
    settings = replace(get_settings(), mock_llm_responses=True)
    configure_logging(settings)
    conductor = build_conductor(settings, MockBackend())

    mismatches = 0
    for index, (category, text) in enumerate(SCENARIOS):
        request = TriageRequest(
            request_id=f"taxonomy-{index}",
            patient_id="taxonomy-check",
            text=text,
            context=OperationalContext(test_category=category),
        )
        response = await conductor.triage(request)
        band = response.risk.band if response.risk else None
        ok = band is not None and check_test_category(band, category)
        mismatches += not ok
        marker = "ok  " if ok else "FAIL"
        print(f"{marker} {category:<10} expected={SUGGESTED_RISK_BY_TEST[category]:<9} got={band} :: {text}")

    print(f"\n{len(SCENARIOS) - mismatches}/{len(SCENARIOS)} scenarios consistent")
    return 1 if mismatches and args.strict else 0


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Validate test-category tags against assigned risk bands")
    parser.add_argument("--strict", action="store_true", help="Exit non-zero on any mismatch")
    return parser.parse_args()


def main() -> int:
    return asyncio.run(_run(parse_args()))


if __name__ == "__main__":
    raise SystemExit(main())
