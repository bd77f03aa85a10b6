"""Pipeline conductor: Validate -> Parse -> [Clarify] -> RiskAssess -> [Emergency] -> Plan -> Adapt."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from triagecore.caching import CacheClassifier
from triagecore.config import Settings, get_settings
from triagecore.confidence import (
    CLARIFICATION_CONFIDENCE,
    CONFIDENCE_FLOOR,
    EMERGENCY_CONFIDENCE,
    FAILSAFE_CONFIDENCE,
    FAILSAFE_CONFIDENCE_WITH_RISK,
    aggregate_confidence,
)
from triagecore.costs import summarize_costs
from triagecore.errors import ClarificationNeeded, TriageError, TriageValidationError, to_envelope
from triagecore.gateway import AnthropicGateway, InferenceBackend, OpenAIGateway
from triagecore.inference import InferenceExecutor
from triagecore.mock_backend import MockBackend
from triagecore.prompts import PIPELINE_STAGES, PromptLibrary
from triagecore.risk import apply_safety_overrides, audit_evidence
from triagecore.routing import ModelRouter
from triagecore.scheduler import BatchOptions, BatchScheduler, Clock, PollPolicy
from triagecore.schemas import (
    AdaptedResponse,
    BatchItemError,
    BatchTriageResponse,
    BatchTriageSummary,
    CallRecord,
    ClinicalEvidence,
    HealthCheckResponse,
    OpsPriority,
    RiskAssessment,
    RoutingMeta,
    SafetyOverride,
    StageAvailability,
    StageConfidences,
    TriageRequest,
    TriageResponse,
)
from triagecore.stages import (
    EMERGENCY_SAFETY_LINE,
    CallOptions,
    CarePlanner,
    EmergencyPlanner,
    EmpathyCoach,
    RiskStratifier,
    SymptomParser,
    failsafe_adaptation,
    failsafe_plan,
)
from triagecore.taxonomy import derive_routing, max_band
from triagecore.utils import chunked, elapsed_ms, new_trace_id, now_ms, utc_now

logger = logging.getLogger(__name__)

EmitFn = Callable[[str, dict[str, Any]], Awaitable[None]]

EMERGENCY_KEYWORDS: tuple[str, ...] = (
    "suicide",
    "kill myself",
    "overdose",
    "poisoning",
    "severe chest pain",
    "can't breathe",
    "unconscious",
)
SYSTEM_ERROR_NOTE = "System error - clinical assessment recommended"
HEALTH_PROBE_TEXT = "test headache"


class PipelineState(str, Enum):
    VALIDATE = "validate"
    PARSE = "parse"
    CLARIFY = "clarify"
    RISK_ASSESS = "risk_assess"
    EMERGENCY_FAST_PATH = "emergency_fast_path"
    PLAN = "plan"
    ADAPT = "adapt"
    DONE = "done"
    FAILED = "failed"


async def _noop_emit(event_name: str, payload: dict[str, Any]) -> None:
    return None


@dataclass
class _Run:
    request: TriageRequest
    priority: OpsPriority
    emit: EmitFn
    trace_id: str = field(default_factory=new_trace_id)
    started_ms: float = field(default_factory=now_ms)
    state: PipelineState = PipelineState.VALIDATE
    trace: list[str] = field(default_factory=list)
    records: list[CallRecord] = field(default_factory=list)
    confidences: StageConfidences = field(default_factory=StageConfidences)
    evidence: ClinicalEvidence | None = None
    risk: RiskAssessment | None = None
    overrides: list[SafetyOverride] = field(default_factory=list)

    async def notify(self, event_name: str, payload: dict[str, Any]) -> None:
        # Listener failures never change the triage outcome.
        try:
            await self.emit(event_name, payload)
        except Exception as exc:
            logger.warning(
                "emit_failed trace_id=%s event=%s error=%s",
                self.trace_id,
                event_name,
                exc.__class__.__name__,
            )

    async def enter(self, state: PipelineState) -> None:
        self.state = state
        self.trace.append(state.value)
        await self.notify(
            "pipeline.stage",
            {"trace_id": self.trace_id, "request_id": self.request.request_id, "stage": state.value},
        )


class PipelineConductor:
    def __init__(
        self,
        settings: Settings,
        executor: InferenceExecutor,
        *,
        prompts: PromptLibrary | None = None,
        emit: EmitFn | None = None,
    ):
        self.settings = settings
        self.executor = executor
        self.prompts = prompts or PromptLibrary()
        self._emit = emit or _noop_emit
        self._provider_executors: dict[str, InferenceExecutor] = {}

        self.parser = SymptomParser(executor, self.prompts)
        self.stratifier = RiskStratifier(executor, self.prompts)
        self.planner = CarePlanner(executor, self.prompts)
        self.emergency_planner = EmergencyPlanner(executor, self.prompts)
        self.coach = EmpathyCoach(executor, self.prompts)

    # Wiring

    def _executor_for(self, provider: str | None) -> InferenceExecutor:
        """Executor for a per-request provider override; the configured one otherwise."""
        if provider is None or provider == self.settings.model_provider:
            return self.executor
        if provider != "mock":
            if self.settings.mock_llm_responses or not self.settings.key_for(provider):
                logger.warning("provider_override_ignored provider=%s reason=not_configured", provider)
                return self.executor
        if provider not in self._provider_executors:
            self._provider_executors[provider] = build_executor(
                self.settings, build_backend(self.settings, provider), provider=provider
            )
        return self._provider_executors[provider]

    def _stages_for(
        self, request: TriageRequest
    ) -> tuple[SymptomParser, RiskStratifier, CarePlanner, EmergencyPlanner, EmpathyCoach]:
        provider = request.preferences.provider if request.preferences else None
        executor = self._executor_for(provider)
        if executor is self.executor:
            return self.parser, self.stratifier, self.planner, self.emergency_planner, self.coach
        return (
            SymptomParser(executor, self.prompts),
            RiskStratifier(executor, self.prompts),
            CarePlanner(executor, self.prompts),
            EmergencyPlanner(executor, self.prompts),
            EmpathyCoach(executor, self.prompts),
        )

    # Entry points

    async def triage(
        self,
        request: TriageRequest,
        emit: EmitFn | None = None,
        *,
        default_priority: OpsPriority = "urgent",
    ) -> TriageResponse:
        """Run one request through the pipeline. Never raises for pipeline failures."""
        run = _Run(request=request, priority=request.priority_hint or default_priority, emit=emit or self._emit)
        await run.notify(
            "pipeline.started",
            {"trace_id": run.trace_id, "request_id": request.request_id, "mode": request.mode},
        )
        try:
            response = await self._run(run)
        except TriageValidationError as exc:
            response = await self._rejected(run, exc)
        except ClarificationNeeded as exc:
            response = await self._clarification(run, exc)
        except Exception as exc:
            response = await self._failsafe(run, exc)

        await run.notify("pipeline.completed", response.model_dump(mode="json"))
        return response

    async def _run(self, run: _Run) -> TriageResponse:
        request = run.request
        parser, stratifier, planner, emergency_planner, coach = self._stages_for(request)

        await run.enter(PipelineState.VALIDATE)
        self._validate(run)
        options = CallOptions.for_request(request, run.priority)

        await run.enter(PipelineState.PARSE)
        parsed = await parser.parse(request, options)
        run.records.append(parsed.record)
        evidence = parsed.value.evidence
        run.evidence = evidence
        run.confidences.parse = parsed.value.confidence
        if (
            parsed.value.confidence < self.settings.clarification_threshold
            or parsed.value.clarifying_questions
        ):
            raise ClarificationNeeded(parsed.value.clarifying_questions, parsed.value.confidence)

        await run.enter(PipelineState.RISK_ASSESS)
        assessed = await stratifier.assess(evidence, request, options)
        run.records.append(assessed.record)
        risk, overrides = apply_safety_overrides(assessed.value, evidence)
        run.risk = risk
        run.overrides = overrides
        run.confidences.risk = risk.confidence
        for override in overrides:
            await run.notify("safety.override", {"trace_id": run.trace_id, **override.model_dump(mode="json")})

        routing = derive_routing(risk.band, request.context, production=self.settings.is_production)
        run.priority = routing.priority
        options = options.with_priority(routing.priority)
        warnings = audit_evidence(evidence)

        if risk.band == "immediate":
            return await self._emergency(
                run, evidence, risk, routing, warnings, emergency_planner, coach, options
            )

        await run.enter(PipelineState.PLAN)
        planned = await planner.plan(risk, evidence, request, options)
        run.records.append(planned.record)
        run.confidences.plan = planned.value.confidence

        await run.enter(PipelineState.ADAPT)
        adapted = await coach.adapt(planned.value.plan, risk.band, request, options)
        run.records.append(adapted.record)
        run.confidences.adapt = adapted.value.confidence

        confidence = aggregate_confidence(
            [run.confidences.parse, run.confidences.risk, run.confidences.plan, run.confidences.adapt],
            self.settings.confidence_weights,
        )
        await run.enter(PipelineState.DONE)
        return self._response(
            run,
            status="completed",
            confidence=confidence,
            routing=routing,
            plan=planned.value.plan,
            citations=planned.value.citations,
            alternatives=planned.value.alternatives,
            response=adapted.value.response,
            tone=adapted.value.tone,
            safety_warnings=warnings,
        )

    def _validate(self, run: _Run) -> None:
        text = run.request.text.strip()
        problems: list[str] = []
        if len(text) < self.settings.min_text_length:
            problems.append(f"text must be at least {self.settings.min_text_length} characters")
        if len(text) > self.settings.max_input_length:
            problems.append(f"text must be at most {self.settings.max_input_length} characters")
        if not (run.request.patient_id or "").strip():
            problems.append("patient_id is required")
        if problems:
            raise TriageValidationError(
                "Invalid triage request", code="invalid_request", details={"problems": problems}
            )

        lowered = text.lower()
        detected = [keyword for keyword in EMERGENCY_KEYWORDS if keyword in lowered]
        if detected:
            logger.warning("emergency_keywords_detected trace_id=%s keywords=%s", run.trace_id, ",".join(detected))

    async def _emergency(
        self,
        run: _Run,
        evidence: ClinicalEvidence,
        risk: RiskAssessment,
        routing: RoutingMeta,
        warnings: list[str],
        planner: EmergencyPlanner,
        coach: EmpathyCoach,
        options: CallOptions,
    ) -> TriageResponse:
        await run.enter(PipelineState.EMERGENCY_FAST_PATH)
        logger.warning("emergency_fast_path trace_id=%s p_urgent=%.2f", run.trace_id, risk.p_urgent)

        # The band is already guaranteed; a failed call here degrades to a static emergency plan.
        try:
            planned = await planner.plan(risk, evidence, options)
            run.records.append(planned.record)
            plan, citations = planned.value.plan, planned.value.citations
        except TriageError as exc:
            logger.error("emergency_plan_fallback trace_id=%s error=%s", run.trace_id, exc.error_type)
            plan, citations = failsafe_plan("immediate", "Emergency plan generation unavailable"), []

        try:
            adapted = await coach.adapt(plan, "immediate", run.request, options)
            run.records.append(adapted.record)
            adaptation = adapted.value
        except TriageError as exc:
            logger.error("emergency_adapt_fallback trace_id=%s error=%s", run.trace_id, exc.error_type)
            adaptation = failsafe_adaptation(plan, run.request.mode, "Your symptoms need emergency care now.")

        await run.enter(PipelineState.DONE)
        return self._response(
            run,
            status="emergency",
            confidence=EMERGENCY_CONFIDENCE,
            routing=routing,
            plan=plan,
            citations=citations,
            response=adaptation.response,
            tone="urgent",
            safety_warnings=warnings,
        )

    # Early exits and failure

    async def _rejected(self, run: _Run, exc: TriageValidationError) -> TriageResponse:
        await run.enter(PipelineState.FAILED)
        logger.info("request_rejected trace_id=%s problems=%s", run.trace_id, len(exc.details.get("problems", [])))
        return self._response(
            run,
            status="rejected",
            confidence=CONFIDENCE_FLOOR,
            routing=RoutingMeta(priority=run.priority, test_category=run.request.context.test_category),
            response=AdaptedResponse(
                disposition="Unable to assess - please describe your symptoms in more detail",
                explanation=exc.message,
                safety_net=[EMERGENCY_SAFETY_LINE],
            ),
            error=to_envelope(exc, production=self.settings.is_production),
        )

    async def _clarification(self, run: _Run, exc: ClarificationNeeded) -> TriageResponse:
        await run.enter(PipelineState.CLARIFY)
        logger.info(
            "clarification_requested trace_id=%s parse_confidence=%.2f questions=%s",
            run.trace_id,
            exc.confidence,
            len(exc.questions),
        )
        questions = exc.questions or ["Can you describe your symptoms in more detail?"]
        return self._response(
            run,
            status="clarification",
            confidence=CLARIFICATION_CONFIDENCE,
            routing=RoutingMeta(priority=run.priority, test_category=run.request.context.test_category),
            response=AdaptedResponse(
                disposition="More information needed",
                explanation="We need a little more detail before we can recommend next steps.",
                safety_net=[EMERGENCY_SAFETY_LINE],
                next_steps=questions,
            ),
            clarifying_questions=questions,
            safety_warnings=audit_evidence(run.evidence) if run.evidence else [],
        )

    async def _failsafe(self, run: _Run, exc: BaseException) -> TriageResponse:
        failed_at = run.state.value
        await run.enter(PipelineState.FAILED)
        logger.error(
            "pipeline_failed trace_id=%s stage=%s error=%s: %s",
            run.trace_id,
            failed_at,
            exc.__class__.__name__,
            exc,
        )

        known = run.risk
        band = max_band("urgent", known.band) if known else "urgent"
        risk = RiskAssessment(
            band=band,
            p_urgent=max(0.8, known.p_urgent) if known else 0.8,
            explanation=[SYSTEM_ERROR_NOTE, "Manual clinical evaluation advised"],
            confidence=FAILSAFE_CONFIDENCE,
        )
        run.risk = risk
        plan = failsafe_plan(band, SYSTEM_ERROR_NOTE)
        adaptation = failsafe_adaptation(plan, run.request.mode, SYSTEM_ERROR_NOTE)
        routing = derive_routing(band, run.request.context, production=self.settings.is_production)
        return self._response(
            run,
            status="failsafe",
            confidence=FAILSAFE_CONFIDENCE_WITH_RISK if known else FAILSAFE_CONFIDENCE,
            routing=routing,
            plan=plan,
            response=adaptation.response,
            tone=adaptation.tone,
            error=to_envelope(exc, production=self.settings.is_production),
        )

    def _response(self, run: _Run, **fields: Any) -> TriageResponse:
        response = TriageResponse(
            trace_id=run.trace_id,
            request_id=run.request.request_id,
            timestamp=utc_now(),
            mode=run.request.mode,
            evidence=run.evidence,
            risk=run.risk,
            safety_overrides=run.overrides,
            stage_confidences=run.confidences,
            stage_trace=list(run.trace),
            calls=list(run.records),
            cost=summarize_costs(run.records),
            processing_ms=elapsed_ms(run.started_ms),
            **fields,
        )
        logger.info(
            "pipeline_finished trace_id=%s status=%s band=%s priority=%s confidence=%.2f calls=%s ms=%s",
            response.trace_id,
            response.status,
            response.risk.band if response.risk else None,
            response.routing.priority,
            response.confidence,
            len(response.calls),
            response.processing_ms,
        )
        return response

    # Batch and health

    async def batch_triage(
        self,
        requests: Sequence[TriageRequest],
        *,
        batch_id: str | None = None,
        priority: OpsPriority = "batch",
    ) -> BatchTriageResponse:
        started = now_ms()
        batch_id = batch_id or f"batch_{uuid.uuid4().hex[:12]}"
        logger.info("batch_triage_started batch_id=%s size=%s", batch_id, len(requests))

        responses: list[TriageResponse] = []
        for chunk in chunked(requests, self.settings.max_concurrency):
            settled = await asyncio.gather(
                *(self.triage(request, default_priority=priority) for request in chunk),
                return_exceptions=True,
            )
            for request, outcome in zip(chunk, settled):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    run = _Run(request=request, priority=request.priority_hint or priority, emit=_noop_emit)
                    outcome = await self._failsafe(run, outcome)
                responses.append(outcome)

        results: list[TriageResponse] = []
        errors: list[BatchItemError] = []
        for index, response in enumerate(responses):
            if response.status in {"failsafe", "rejected"} and response.error is not None:
                errors.append(
                    BatchItemError(
                        index=index,
                        request_id=response.request_id,
                        trace_id=response.trace_id,
                        error=response.error,
                        response=response,
                    )
                )
            else:
                results.append(response)

        summary = BatchTriageSummary(
            total=len(requests),
            succeeded=len(results),
            failed=len(errors),
            processing_ms=elapsed_ms(started),
        )
        logger.info(
            "batch_triage_finished batch_id=%s succeeded=%s failed=%s",
            batch_id,
            summary.succeeded,
            summary.failed,
        )
        return BatchTriageResponse(batch_id=batch_id, results=results, errors=errors, summary=summary)

    async def health_check(self) -> HealthCheckResponse:
        stages = [
            StageAvailability(
                stage=stage,
                available=self.prompts.get(stage) is not None,
                detail=None if self.prompts.get(stage) is not None else "prompt template missing",
            )
            for stage in PIPELINE_STAGES
        ]

        probe = TriageRequest(text=HEALTH_PROBE_TEXT, patient_id="health-check")
        try:
            await self.parser.parse(probe, CallOptions(priority="urgent", use_batching=False, use_caching=False))
        except Exception as exc:
            logger.warning("health_probe_failed stage=parse error=%s", exc.__class__.__name__)
            stages[0] = StageAvailability(stage="parse", available=False, detail=str(exc)[:200])

        available = sum(1 for stage in stages if stage.available)
        ratio = available / len(stages)
        if ratio == 1.0:
            status = "healthy"
        elif ratio >= 0.75:
            status = "degraded"
        else:
            status = "unhealthy"

        scheduler = self.executor.scheduler
        problems = self.settings.problems() + [
            f"missing prompt template: {stage}" for stage in self.prompts.missing()
        ]
        return HealthCheckResponse(
            status=status,
            timestamp=utc_now(),
            stages=stages,
            scheduler=scheduler.stats() if scheduler else {},
            cost_optimization={
                "provider": self.settings.model_provider,
                "caching": self.executor.cache.enabled,
                "smart_routing": self.executor.router.enabled,
                "batching": bool(scheduler and scheduler.options.enable_batching),
                "economy_model": self.executor.router.economy_model,
                "premium_model": self.executor.router.premium_model,
            },
            problems=problems,
        )


def build_backend(settings: Settings, provider: str | None = None) -> InferenceBackend:
    provider = provider or settings.model_provider
    if provider == "mock" or settings.mock_llm_responses:
        return MockBackend()
    if provider == "openai":
        return OpenAIGateway(settings)
    return AnthropicGateway(settings)


def build_executor(
    settings: Settings,
    backend: InferenceBackend,
    *,
    provider: str | None = None,
    scheduler: BatchScheduler | None = None,
) -> InferenceExecutor:
    provider = provider or settings.model_provider
    if provider == "openai":
        # One configured model, no prompt-cache markers.
        model = settings.openai_model
        router = ModelRouter(economy_model=model, premium_model=model, enabled=False)
        cache = CacheClassifier(enabled=False)
    else:
        router = ModelRouter(
            economy_model=settings.economy_model,
            premium_model=settings.premium_model,
            enabled=settings.enable_smart_routing,
            threshold=settings.complexity_threshold,
            length_threshold=settings.complexity_length_threshold,
        )
        cache = CacheClassifier(enabled=settings.enable_caching, min_chars=settings.cache_min_chars)
    return InferenceExecutor(backend, router=router, cache=cache, scheduler=scheduler)


def build_conductor(
    settings: Settings | None = None,
    backend: InferenceBackend | None = None,
    *,
    clock: Clock | None = None,
    prompts: PromptLibrary | None = None,
    emit: EmitFn | None = None,
) -> PipelineConductor:
    settings = settings or get_settings()
    backend = backend or build_backend(settings)
    scheduler = BatchScheduler(
        backend,
        options=BatchOptions(
            enable_batching=settings.enable_batching and settings.model_provider != "openai",
            batch_size=settings.batch_size,
            max_wait_ms=settings.batch_max_wait_ms,
            batching_threshold=settings.batching_threshold,
            straggler_wait_ms=settings.batch_straggler_wait_ms,
        ),
        poll=PollPolicy(
            interval_sec=settings.batch_poll_interval_sec,
            max_wait_sec=settings.batch_max_poll_wait_sec,
        ),
        clock=clock,
    )
    executor = build_executor(settings, backend, scheduler=scheduler)
    return PipelineConductor(settings, executor, prompts=prompts, emit=emit)
