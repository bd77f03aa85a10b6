#!/usr/bin/env python3
"""Run demo symptom descriptions through the triage pipeline.

Uses the deterministic mock backend unless --live is given (which needs
ANTHROPIC_API_KEY).
"""

from __future__ import annotations

import argparse
import asyncio
import json
from dataclasses import replace
from typing import Any

from triagecore.conductor import build_conductor
from triagecore.config import configure_logging, get_settings
from triagecore.mock_backend import MockBackend
from triagecore.schemas import TriageRequest


def _default_cases() -> list[dict[str, Any]]:
    return [
        {
            "request_id": "demo-chest-pain",
            "patient_id": "demo-001",
            "text": "severe crushing chest pain for 20 minutes with shortness of breath",
        },
        {
            "request_id": "demo-headache",
            "patient_id": "demo-002",
            "text": "mild headache for 2 hours",
        },
        {
            "request_id": "demo-vague",
            "patient_id": "demo-003",
            "text": "I just feel off today",
        },
        {
            "request_id": "demo-after-hours",
            "patient_id": "demo-004",
            "text": "mild rash on my forearm for 3 days",
            "context": {"is_after_hours": True},
        },
        {
            "request_id": "demo-high-load",
            "patient_id": "demo-005",
            "text": "severe abdominal pain 8/10 since this morning",
            "context": {"system_load": "high"},
            "mode": "clinician",
        },
    ]


def _summary_line(response) -> str:
    band = response.risk.band if response.risk else "-"
    return (
        f"{response.request_id:<20} status={response.status:<13} band={band:<9} "
        f"priority={response.routing.priority:<9} confidence={response.confidence:.2f} "
        f"calls={response.cost.calls} overrides={len(response.safety_overrides)}"
    )


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    if not args.live:
        settings = replace(settings, mock_llm_responses=True)
    configure_logging(settings)
    conductor = build_conductor(settings, None if args.live else MockBackend())

    cases = [{"patient_id": "demo-cli", "text": args.text}] if args.text else _default_cases()
    failures = 0
    for case in cases:
        response = await conductor.triage(TriageRequest.model_validate(case))
        if args.json:
            print(json.dumps(response.model_dump(mode="json"), indent=2))
        else:
            print(_summary_line(response))
        failures += response.status == "failsafe"

    if conductor.executor.scheduler is not None:
        await conductor.executor.scheduler.aclose()
    return 1 if failures else 0


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run demo cases through the triage pipeline")
    parser.add_argument("--text", help="Single free-text symptom description to triage")
    parser.add_argument("--live", action="store_true", help="Call the configured inference backend")
    parser.add_argument("--json", action="store_true", help="Print full responses as JSON")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
