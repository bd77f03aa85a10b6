"""The four inference stages plus the emergency planner and their deterministic fallbacks."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Generic, TypeVar

from pydantic import BaseModel

from triagecore.decoding import decode_json
from triagecore.errors import TriageError
from triagecore.inference import InferenceExecutor
from triagecore.prompts import PromptLibrary
from triagecore.schemas import (
    AdaptedResponse,
    AdaptStageOutput,
    AudienceMode,
    CallRecord,
    CarePlan,
    ChatMessage,
    ChatRequest,
    ClinicalEvidence,
    OpsPriority,
    ParseStageOutput,
    PlanStageOutput,
    RiskAssessment,
    RiskBand,
    TriageRequest,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

PATIENT_REASSURANCE = "We are here to help you get the right care"
EMERGENCY_SAFETY_LINE = "Call 911 or go to the nearest Emergency Department if symptoms become severe"
WORSENING_SAFETY_LINE = "Seek medical care sooner if your symptoms get worse or you develop new symptoms"
FOLLOW_UP_SAFETY_LINE = "Follow up with your healthcare provider if symptoms do not improve"

_FAILSAFE_PATHWAYS: dict[str, tuple[str, str]] = {
    "immediate": ("Emergency Department immediately", "Immediate - call 911"),
    "urgent": ("Emergency Department or urgent care within 4 hours", "Within 4 hours"),
    "routine": ("Primary care appointment within 2-3 days", "Within 2-3 days"),
}


@dataclass(frozen=True)
class CallOptions:
    priority: OpsPriority
    requested_model: str | None = None
    use_batching: bool | None = None
    use_caching: bool | None = None

    @classmethod
    def for_request(cls, request: TriageRequest, priority: OpsPriority) -> "CallOptions":
        prefs = request.preferences
        return cls(
            priority=priority,
            requested_model=prefs.model if prefs else None,
            use_batching=prefs.enable_batching if prefs else None,
            use_caching=prefs.enable_caching if prefs else None,
        )

    def with_priority(self, priority: OpsPriority) -> "CallOptions":
        return replace(self, priority=priority)


@dataclass(frozen=True)
class StageResult(Generic[T]):
    value: T
    record: CallRecord


def _context_json(request: TriageRequest) -> str:
    if request.patient_context is None:
        return "none provided"
    return request.patient_context.model_dump_json(exclude_none=True, exclude_defaults=True) or "{}"


class _Stage:
    stage = ""
    temperature = 0.1
    max_tokens = 2000

    def __init__(self, executor: InferenceExecutor, prompts: PromptLibrary):
        self._executor = executor
        self._prompts = prompts

    async def _call(self, options: CallOptions, output: type[T], **values: str) -> StageResult[T]:
        template = self._prompts.get(self.stage)
        if template is None:
            raise TriageError(f"no prompt template for stage {self.stage!r}", code="missing_template")

        request = ChatRequest(
            stage=self.stage,
            messages=[
                ChatMessage(role="system", content=template.system),
                ChatMessage(role="user", content=template.render(**values)),
            ],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            metadata={"prompt_version": template.version},
        )
        result = await self._executor.execute(
            request,
            priority=options.priority,
            requested_model=options.requested_model,
            use_batching=options.use_batching,
            use_caching=options.use_caching,
        )
        decoded = decode_json(result.text, output, stage=self.stage)
        if not decoded.ok:
            logger.warning("stage_decode_failed stage=%s model=%s", self.stage, result.record.model)
        return StageResult(value=decoded.unwrap(), record=result.record)


class SymptomParser(_Stage):
    stage = "parse"
    temperature = 0.1
    max_tokens = 2000

    async def parse(self, request: TriageRequest, options: CallOptions) -> StageResult[ParseStageOutput]:
        result = await self._call(
            options,
            ParseStageOutput,
            patient_id=request.patient_id or "unknown",
            mode=request.mode,
            patient_context=_context_json(request),
            text=request.text.strip(),
        )
        parsed = result.value
        if not parsed.evidence.patient_id:
            parsed = parsed.model_copy(
                update={"evidence": parsed.evidence.model_copy(update={"patient_id": request.patient_id})}
            )
        return StageResult(value=parsed, record=result.record)


class RiskStratifier(_Stage):
    stage = "risk"
    temperature = 0.05
    max_tokens = 2500

    async def assess(
        self,
        evidence: ClinicalEvidence,
        request: TriageRequest,
        options: CallOptions,
    ) -> StageResult[RiskAssessment]:
        return await self._call(
            options,
            RiskAssessment,
            evidence=evidence.model_dump_json(),
            patient_context=_context_json(request),
        )


def validate_pathway(output: PlanStageOutput, band: RiskBand) -> PlanStageOutput:
    """Align the plan's disposition with the band and ensure safety netting is present."""
    plan = output.plan
    disposition = plan.disposition
    timeframe = plan.timeframe
    lowered = disposition.lower()

    if band == "immediate" and "emergency" not in lowered:
        disposition, timeframe = _FAILSAFE_PATHWAYS["immediate"]
    elif band == "urgent" and "routine" in lowered:
        timeframe = "Within 4 hours"
        if "urgent" not in lowered and "emergency" not in lowered:
            disposition = "Urgent care or Emergency Department today"

    safety_net = list(plan.safety_net)
    joined = " ".join(safety_net).lower()
    if "911" not in joined and "emergency" not in joined:
        safety_net.append(EMERGENCY_SAFETY_LINE)
    if "worse" not in joined and "worsen" not in joined:
        safety_net.append(WORSENING_SAFETY_LINE)
    if band != "immediate" and "follow" not in joined:
        safety_net.append(FOLLOW_UP_SAFETY_LINE)

    if disposition != plan.disposition:
        logger.warning("pathway_corrected band=%s", band)
    return output.model_copy(
        update={
            "plan": plan.model_copy(
                update={"disposition": disposition, "timeframe": timeframe, "safety_net": safety_net}
            )
        }
    )


class CarePlanner(_Stage):
    stage = "plan"
    temperature = 0.1
    max_tokens = 3000

    async def plan(
        self,
        risk: RiskAssessment,
        evidence: ClinicalEvidence,
        request: TriageRequest,
        options: CallOptions,
    ) -> StageResult[PlanStageOutput]:
        result = await self._call(
            options,
            PlanStageOutput,
            risk=risk.model_dump_json(),
            evidence=evidence.model_dump_json(),
            patient_context=_context_json(request),
        )
        return StageResult(value=validate_pathway(result.value, risk.band), record=result.record)


class EmergencyPlanner(_Stage):
    stage = "emergency_plan"
    temperature = 0.05
    max_tokens = 2000

    async def plan(
        self,
        risk: RiskAssessment,
        evidence: ClinicalEvidence,
        options: CallOptions,
    ) -> StageResult[PlanStageOutput]:
        result = await self._call(
            options,
            PlanStageOutput,
            risk=risk.model_dump_json(),
            evidence=evidence.model_dump_json(),
        )
        return StageResult(value=validate_pathway(result.value, "immediate"), record=result.record)


def apply_audience_rules(output: AdaptStageOutput, plan: CarePlan, mode: AudienceMode) -> AdaptStageOutput:
    response = output.response
    updates: dict[str, object] = {}
    if mode == "patient" and not (response.reassurance or "").strip():
        updates["reassurance"] = PATIENT_REASSURANCE
    if mode == "clinician" and response.reassurance is not None:
        updates["reassurance"] = None
    if not response.safety_net:
        updates["safety_net"] = list(plan.safety_net)
    if not updates:
        return output
    return output.model_copy(update={"response": response.model_copy(update=updates)})


class EmpathyCoach(_Stage):
    stage = "adapt"
    temperature = 0.3
    max_tokens = 2000

    async def adapt(
        self,
        plan: CarePlan,
        band: RiskBand,
        request: TriageRequest,
        options: CallOptions,
    ) -> StageResult[AdaptStageOutput]:
        result = await self._call(
            options,
            AdaptStageOutput,
            mode=request.mode,
            band=band,
            plan=plan.model_dump_json(),
            patient_context=_context_json(request),
        )
        return StageResult(value=apply_audience_rules(result.value, plan, request.mode), record=result.record)


def failsafe_plan(band: RiskBand, note: str = "Automated care planning unavailable") -> CarePlan:
    disposition, timeframe = _FAILSAFE_PATHWAYS[band]
    safety_net = [EMERGENCY_SAFETY_LINE, WORSENING_SAFETY_LINE]
    if band != "immediate":
        safety_net.append(FOLLOW_UP_SAFETY_LINE)
    return CarePlan(
        disposition=disposition,
        rationale=[note, "Conservative pathway applied"],
        what_to_expect="A clinician will assess your symptoms in person.",
        safety_net=safety_net,
        timeframe=timeframe,
    )


def failsafe_adaptation(plan: CarePlan, mode: AudienceMode, explanation: str) -> AdaptStageOutput:
    return AdaptStageOutput(
        response=AdaptedResponse(
            disposition=plan.disposition,
            explanation=explanation,
            what_to_expect=plan.what_to_expect,
            safety_net=list(plan.safety_net),
            next_steps=[f"{plan.disposition} ({plan.timeframe})"],
            reassurance=PATIENT_REASSURANCE if mode == "patient" else None,
        ),
        tone="urgent" if plan.disposition.lower().startswith("emergency") else "calm",
        confidence=0.5,
    )
