"""Deterministic offline backend for demos, health probes and tests."""

from __future__ import annotations

import json
import re
import uuid
from collections import Counter
from typing import Any

from triagecore.schemas import (
    BatchJob,
    BatchRequestCounts,
    BatchRequestItem,
    ChatRequest,
    ChatResult,
    TokenUsage,
)

_RED_FLAG_RULES: tuple[tuple[tuple[str, ...], str], ...] = (
    (("crushing chest pain", "crushing pain in my chest"), "crushing chest pain"),
    (("shortness of breath", "can't breathe", "cannot breathe", "difficulty breathing"), "difficulty breathing"),
    (("worst headache",), "worst headache of life"),
    (("suicid", "kill myself"), "suicidal ideation"),
    (("anaphyla", "throat swelling", "throat is swelling"), "anaphylaxis"),
    (("unconscious", "passed out"), "loss of consciousness"),
    (("severe bleeding",), "severe bleeding"),
)
_VAGUE_MARKERS = ("not sure", "feel off", "feel weird", "something wrong", "unwell")
_SEVERITY_SCALE = re.compile(r"(\d{1,2})\s*(?:/|out of)\s*10")
_ONSET = re.compile(r"\bfor (?:the (?:last|past) )?(\d+\s+\w+|a few \w+|an? \w+)")


def _section(text: str, header: str) -> str:
    marker = f"{header}:\n"
    if marker not in text:
        return ""
    return text.split(marker, 1)[1].split("\n", 1)[0].strip()


def _line_value(text: str, label: str) -> str:
    for line in text.splitlines():
        if line.startswith(f"{label}:"):
            return line.split(":", 1)[1].strip()
    return ""


def _load(fragment: str) -> dict[str, Any]:
    try:
        value = json.loads(fragment)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


class MockBackend:
    def __init__(self, *, polls_until_complete: int = 0):
        self.polls_until_complete = polls_until_complete
        self.calls: Counter[str] = Counter()
        self._batches: dict[str, dict[str, Any]] = {}

    # Stage answers

    def _parse(self, request: ChatRequest) -> dict[str, Any]:
        text = request.joined_text()
        description = text.split("Symptom description:\n", 1)[-1].strip()
        lowered = description.lower()

        red_flags = [flag for needles, flag in _RED_FLAG_RULES if any(n in lowered for n in needles)]
        severity: float | None = None
        scale = _SEVERITY_SCALE.search(lowered)
        if scale:
            severity = float(scale.group(1))
        elif "severe" in lowered:
            severity = 8.0
        elif "moderate" in lowered:
            severity = 5.0
        elif "mild" in lowered:
            severity = 3.0
        onset = _ONSET.search(lowered)

        vague = len(description.split()) < 3 or any(marker in lowered for marker in _VAGUE_MARKERS)
        questions = (
            [
                "Where exactly is the discomfort?",
                "When did it start?",
                "How severe is it on a scale of 0 to 10?",
            ]
            if vague
            else []
        )
        return {
            "evidence": {
                "patient_id": _line_value(text, "Patient id") or None,
                "presenting_complaint": description[:160],
                "features": {
                    "onset": onset.group(1) if onset else None,
                    "severity": severity,
                    "associated": [],
                    "vitals": {},
                    "red_flags": red_flags,
                },
                "codes": [],
                "medications": [],
                "allergies": [],
            },
            "confidence": 0.4 if vague else 0.85,
            "clarifying_questions": questions,
        }

    def _risk(self, request: ChatRequest) -> dict[str, Any]:
        evidence = _load(_section(request.joined_text(), "Clinical evidence"))
        features = evidence.get("features") or {}
        red_flags = features.get("red_flags") or []
        severity = features.get("severity") or 0
        if red_flags or severity >= 7:
            band, probability = "urgent", 0.7
            explanation = ["Reported findings need same-day clinical assessment"]
        else:
            band, probability = "routine", 0.2
            explanation = ["No red flags and low reported severity"]
        return {
            "band": band,
            "p_urgent": probability,
            "explanation": explanation,
            "required_investigations": [],
            "differentials": [],
            "confidence": 0.8,
        }

    def _plan(self, request: ChatRequest, *, emergency: bool) -> dict[str, Any]:
        risk = _load(_section(request.joined_text(), "Risk assessment"))
        band = "immediate" if emergency else str(risk.get("band") or "urgent")
        plans = {
            "immediate": ("Emergency Department immediately", "Immediate - call 911"),
            "urgent": ("Urgent care or Emergency Department today", "Within 4 hours"),
            "routine": ("Primary care appointment", "Within 2-3 days"),
        }
        disposition, timeframe = plans.get(band, plans["urgent"])
        return {
            "plan": {
                "disposition": disposition,
                "rationale": [f"Assessed as {band} risk"],
                "what_to_expect": "A clinician will review your symptoms and examine you.",
                "safety_net": [
                    "Call 911 if you develop chest pain, difficulty breathing or collapse",
                    "Seek care sooner if symptoms get worse",
                ],
                "timeframe": timeframe,
                "follow_up": None if emergency else "Follow up with your doctor if not improving",
            },
            "citations": [{"source": "NICE CKS", "snippet": "Safety-netting advice", "guideline": None}],
            "confidence": 0.9 if emergency else 0.8,
            "alternatives": [],
        }

    def _adapt(self, request: ChatRequest) -> dict[str, Any]:
        text = request.joined_text()
        mode = _line_value(text, "Audience") or "patient"
        band = _line_value(text, "Risk band") or "urgent"
        plan = _load(_section(text, "Care plan")).get("disposition") or "See a clinician"
        tone = {"immediate": "urgent", "urgent": "calm"}.get(band, "reassuring")
        return {
            "response": {
                "disposition": plan,
                "explanation": f"Based on what you described, this is {band} priority.",
                "what_to_expect": "A clinician will assess you.",
                "safety_net": ["Call 911 if symptoms suddenly worsen"],
                "next_steps": [plan],
                "reassurance": "You did the right thing by checking." if mode == "patient" else None,
            },
            "tone": tone,
            "confidence": 0.85,
        }

    def answer(self, request: ChatRequest) -> dict[str, Any]:
        if request.stage == "parse":
            return self._parse(request)
        if request.stage == "risk":
            return self._risk(request)
        if request.stage in {"plan", "emergency_plan"}:
            return self._plan(request, emergency=request.stage == "emergency_plan")
        if request.stage == "adapt":
            return self._adapt(request)
        return {}

    # Backend protocol

    async def chat(self, request: ChatRequest) -> ChatResult:
        self.calls[request.stage] += 1
        text = json.dumps(self.answer(request))
        return ChatResult(
            text=text,
            model=request.model or "mock",
            usage=TokenUsage(
                input_tokens=len(request.joined_text()) // 4,
                output_tokens=len(text) // 4,
            ),
            stop_reason="end_turn",
        )

    async def create_batch(self, items: list[BatchRequestItem]) -> BatchJob:
        batch_id = f"msgbatch_mock_{uuid.uuid4().hex[:12]}"
        self._batches[batch_id] = {"items": list(items), "polls": 0}
        return BatchJob(
            id=batch_id,
            status="in_progress",
            request_counts=BatchRequestCounts(processing=len(items)),
        )

    async def retrieve_batch(self, batch_id: str) -> BatchJob:
        state = self._batches[batch_id]
        state["polls"] += 1
        count = len(state["items"])
        if state["polls"] <= self.polls_until_complete:
            return BatchJob(id=batch_id, status="in_progress", request_counts=BatchRequestCounts(processing=count))
        return BatchJob(
            id=batch_id,
            status="completed",
            request_counts=BatchRequestCounts(succeeded=count),
            results_url=f"mock://batches/{batch_id}/results",
        )

    async def fetch_results(self, results_url: str) -> str:
        batch_id = results_url.split("/")[-2]
        lines = []
        for item in self._batches[batch_id]["items"]:
            result = await self.chat(item.params)
            message = {
                "type": "message",
                "role": "assistant",
                "model": result.model,
                "content": [{"type": "text", "text": result.text}],
                "stop_reason": result.stop_reason,
                "usage": result.usage.model_dump(),
            }
            lines.append(
                json.dumps({"custom_id": item.custom_id, "result": {"type": "succeeded", "message": message}})
            )
        return "\n".join(lines)
