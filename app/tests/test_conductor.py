import asyncio
import json
from collections import Counter

from triagecore.conductor import PipelineConductor, build_backend, build_conductor
from triagecore.config import Settings
from triagecore.errors import ProviderError
from triagecore.gateway import AnthropicGateway, OpenAIGateway
from triagecore.mock_backend import MockBackend
from triagecore.prompts import PromptLibrary, default_templates
from triagecore.schemas import ChatResult, OperationalContext, TokenUsage, TriageRequest

PARSE_OK = {
    "evidence": {
        "presenting_complaint": "headache",
        "features": {"onset": "2 hours", "severity": 3, "red_flags": []},
    },
    "confidence": 0.9,
    "clarifying_questions": [],
}
PARSE_CHEST = {
    "evidence": {
        "presenting_complaint": "chest pain",
        "features": {"severity": 9, "red_flags": ["crushing chest pain", "shortness of breath"]},
    },
    "confidence": 0.95,
    "clarifying_questions": [],
}
PARSE_VAGUE = {
    "evidence": {"presenting_complaint": "feels off"},
    "confidence": 0.4,
    "clarifying_questions": ["Where is the pain?"],
}
RISK_ROUTINE = {"band": "routine", "p_urgent": 0.15, "explanation": ["benign"], "confidence": 0.85}
RISK_URGENT = {"band": "urgent", "p_urgent": 0.7, "explanation": ["needs review"], "confidence": 0.8}
PLAN_OK = {
    "plan": {
        "disposition": "Primary care appointment",
        "rationale": ["no red flags"],
        "what_to_expect": "examination",
        "safety_net": ["Call 911 if you collapse", "Return if symptoms worsen", "Follow up in a week"],
        "timeframe": "Within 2-3 days",
    },
    "citations": [{"source": "NICE CKS", "snippet": "headache"}],
    "confidence": 0.8,
}
ADAPT_OK = {
    "response": {"disposition": "See your GP", "explanation": "Likely tension headache"},
    "tone": "reassuring",
    "confidence": 0.8,
}


class ScriptedBackend:
    def __init__(self, **responses):
        self.responses = {"parse": PARSE_OK, "risk": RISK_ROUTINE, "plan": PLAN_OK, "adapt": ADAPT_OK, **responses}
        self.calls = Counter()
        self.requests = []

    async def chat(self, request):
        self.calls[request.stage] += 1
        self.requests.append(request)
        answer = self.responses[request.stage]
        if isinstance(answer, Exception):
            raise answer
        text = answer if isinstance(answer, str) else json.dumps(answer)
        return ChatResult(
            text=text,
            model=request.model or "stub",
            usage=TokenUsage(input_tokens=100, output_tokens=50),
        )

    async def create_batch(self, items):
        raise NotImplementedError

    async def retrieve_batch(self, batch_id):
        raise NotImplementedError

    async def fetch_results(self, results_url):
        raise NotImplementedError


def _settings(**overrides) -> Settings:
    values = {"api_key": "test-key", "mock_llm_responses": False, "enable_batching": False}
    values.update(overrides)
    return Settings(**values)


def _conductor(backend, **overrides) -> PipelineConductor:
    return build_conductor(_settings(**overrides), backend)


def _request(text: str, **kwargs) -> TriageRequest:
    return TriageRequest(text=text, patient_id=kwargs.pop("patient_id", "patient-1"), **kwargs)


def test_crushing_chest_pain_takes_emergency_fast_path():
    backend = MockBackend()
    conductor = _conductor(backend)

    response = asyncio.run(
        conductor.triage(_request("severe crushing chest pain for 20 minutes with shortness of breath"))
    )

    assert response.status == "emergency"
    assert response.risk.band == "immediate"
    assert response.risk.p_urgent >= 0.95
    assert response.routing.priority == "immediate"
    assert response.confidence == 0.95
    assert "emergency_fast_path" in response.stage_trace
    assert backend.calls["emergency_plan"] == 1
    assert backend.calls["plan"] == 0
    assert response.safety_overrides[0].rule == "critical_red_flag"
    assert "emergency" in response.plan.disposition.lower()


def test_mild_headache_is_routine_in_business_hours():
    backend = MockBackend()
    conductor = _conductor(backend)

    response = asyncio.run(conductor.triage(_request("mild headache for 2 hours")))

    assert response.status == "completed"
    assert response.risk.band == "routine"
    assert response.routing.priority == "routine"
    assert 0.1 <= response.confidence <= 0.95
    assert response.stage_trace == ["validate", "parse", "risk_assess", "plan", "adapt", "done"]
    assert response.response.reassurance


def test_low_parse_confidence_returns_clarification_without_further_calls():
    backend = ScriptedBackend(parse=PARSE_VAGUE)
    conductor = _conductor(backend)

    response = asyncio.run(conductor.triage(_request("I just feel off today")))

    assert response.status == "clarification"
    assert response.confidence == 0.4
    assert response.clarifying_questions == ["Where is the pain?"]
    assert response.evidence.presenting_complaint == "feels off"
    assert backend.calls["parse"] == 1
    assert backend.calls["risk"] == 0
    assert backend.calls["plan"] == 0
    assert backend.calls["adapt"] == 0


def test_clarifying_questions_exit_even_with_high_confidence():
    backend = ScriptedBackend(parse={**PARSE_OK, "clarifying_questions": ["Any fever?"]})

    response = asyncio.run(_conductor(backend).triage(_request("headache since this morning")))

    assert response.status == "clarification"
    assert backend.calls["risk"] == 0


def test_model_routine_with_critical_red_flag_is_overridden():
    backend = ScriptedBackend(parse=PARSE_CHEST, risk=RISK_ROUTINE, emergency_plan=PLAN_OK)

    response = asyncio.run(_conductor(backend).triage(_request("chest pain and breathless")))

    assert response.risk.band == "immediate"
    assert response.routing.priority == "immediate"
    assert response.status == "emergency"
    assert response.plan.disposition == "Emergency Department immediately"
    assert backend.calls["plan"] == 0


def test_emergency_plan_failure_falls_back_to_static_plan():
    backend = ScriptedBackend(
        parse=PARSE_CHEST,
        risk=RISK_URGENT,
        emergency_plan=ProviderError("timeout"),
        adapt="not json at all",
    )

    response = asyncio.run(_conductor(backend).triage(_request("crushing chest pain")))

    assert response.status == "emergency"
    assert response.confidence == 0.95
    assert response.plan.disposition == "Emergency Department immediately"
    assert response.response.safety_net


def test_validation_rejects_before_any_inference_call():
    backend = ScriptedBackend()
    conductor = _conductor(backend)

    short = asyncio.run(conductor.triage(_request("ow")))
    missing_id = asyncio.run(conductor.triage(TriageRequest(text="headache for two days")))

    assert short.status == "rejected"
    assert short.error.type == "ValidationError"
    assert missing_id.status == "rejected"
    assert "patient_id is required" in missing_id.error.details["problems"]
    assert sum(backend.calls.values()) == 0


def test_over_long_text_is_rejected():
    response = asyncio.run(_conductor(ScriptedBackend(), max_input_length=50).triage(_request("a" * 51)))

    assert response.status == "rejected"


def test_provider_failure_becomes_urgent_failsafe():
    backend = ScriptedBackend(risk=ProviderError("upstream 529", status_code=529))

    response = asyncio.run(_conductor(backend).triage(_request("headache for two days")))

    assert response.status == "failsafe"
    assert response.risk.band == "urgent"
    assert response.confidence == 0.2
    assert response.error.type == "ProviderError"
    assert response.error.code == "http_529"
    assert response.routing.priority == "urgent"
    assert "System error - clinical assessment recommended" in response.risk.explanation
    assert response.stage_trace[-1] == "failed"


def test_malformed_plan_output_keeps_band_at_least_urgent():
    backend = ScriptedBackend(plan="Sure! The patient should rest.")

    response = asyncio.run(_conductor(backend).triage(_request("headache for two days")))

    assert response.status == "failsafe"
    assert response.risk.band == "urgent"
    assert response.confidence == 0.3
    assert response.error.type == "ParseError"


def test_production_error_envelope_has_no_stack():
    backend = ScriptedBackend(parse=ProviderError("down"))

    response = asyncio.run(_conductor(backend, environment="production").triage(_request("headache for days")))

    assert response.error.details is None


def test_development_error_envelope_includes_stack():
    backend = ScriptedBackend(parse=ProviderError("down"))

    response = asyncio.run(_conductor(backend).triage(_request("headache for days")))

    assert "ProviderError" in response.error.details["stack"]


def test_after_hours_routine_is_batch_priority_and_high_load_urgent_is_immediate():
    conductor = _conductor(ScriptedBackend())
    routine = asyncio.run(
        conductor.triage(_request("headache for two days", context=OperationalContext(is_after_hours=True)))
    )

    urgent_backend = ScriptedBackend(risk=RISK_URGENT)
    urgent = asyncio.run(
        _conductor(urgent_backend).triage(
            _request("headache for two days", context=OperationalContext(system_load="high"))
        )
    )

    assert routine.routing.priority == "batch"
    assert urgent.routing.priority == "immediate"
    assert urgent.risk.band == "urgent"


def test_post_risk_calls_use_computed_priority():
    backend = ScriptedBackend()

    response = asyncio.run(_conductor(backend).triage(_request("headache for two days")))

    priorities = {record.stage: record.priority for record in response.calls}
    assert priorities == {"parse": "urgent", "risk": "urgent", "plan": "routine", "adapt": "routine"}
    assert response.cost.calls == 4


def test_routine_plan_is_corrected_for_urgent_band():
    plan = {**PLAN_OK, "plan": {**PLAN_OK["plan"], "disposition": "Routine GP review", "safety_net": []}}
    backend = ScriptedBackend(risk=RISK_URGENT, plan=plan)

    response = asyncio.run(_conductor(backend).triage(_request("headache for two days")))

    assert response.plan.disposition == "Urgent care or Emergency Department today"
    assert response.plan.timeframe == "Within 4 hours"
    assert len(response.plan.safety_net) == 3


def test_clinician_mode_drops_reassurance():
    backend = ScriptedBackend(adapt={**ADAPT_OK, "response": {**ADAPT_OK["response"], "reassurance": "All good"}})

    response = asyncio.run(_conductor(backend).triage(_request("headache for two days", mode="clinician")))

    assert response.response.reassurance is None


def test_events_are_emitted_in_stage_order():
    events = []

    async def emit(event_name, payload):
        events.append((event_name, payload.get("stage")))

    asyncio.run(_conductor(ScriptedBackend()).triage(_request("headache for two days"), emit))

    assert events[0][0] == "pipeline.started"
    assert [stage for name, stage in events if name == "pipeline.stage"] == [
        "validate",
        "parse",
        "risk_assess",
        "plan",
        "adapt",
        "done",
    ]
    assert events[-1][0] == "pipeline.completed"


def test_mock_provider_preference_bypasses_configured_backend():
    backend = ScriptedBackend(parse=ProviderError("should not be called"))

    response = asyncio.run(
        _conductor(backend).triage(_request("mild headache for 2 hours", preferences={"provider": "mock"}))
    )

    assert response.status == "completed"
    assert backend.calls["parse"] == 0


class ConcurrencyBackend(ScriptedBackend):
    def __init__(self):
        super().__init__()
        self.active = 0
        self.peak = 0

    async def chat(self, request):
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(0.001)
            return await super().chat(request)
        finally:
            self.active -= 1


def test_batch_triage_is_bounded_and_one_to_one():
    backend = ConcurrencyBackend()
    conductor = _conductor(backend, max_concurrency=5)
    requests = [_request(f"headache number {i}") for i in range(11)]
    requests.insert(3, _request("no"))

    result = asyncio.run(conductor.batch_triage(requests, batch_id="b-1"))

    assert result.batch_id == "b-1"
    assert len(result.results) + len(result.errors) == len(requests)
    assert result.summary.total == 12
    assert [error.index for error in result.errors] == [3]
    assert result.errors[0].error.type == "ValidationError"
    assert backend.peak <= 5
    assert all(call.priority in {"batch", "routine"} for r in result.results for call in r.calls)


def _batching_conductor(backend) -> PipelineConductor:
    return _conductor(
        backend,
        enable_batching=True,
        batch_size=100,
        batching_threshold=1,
        batch_max_wait_ms=0,
        batch_straggler_wait_ms=None,
        batch_poll_interval_sec=0,
    )


def test_batch_priority_calls_go_through_the_batch_scheduler():
    backend = MockBackend()
    conductor = _batching_conductor(backend)
    requests = [_request("mild headache for 2 hours"), _request("mild sore throat for 3 days")]

    result = asyncio.run(conductor.batch_triage(requests, batch_id="b-2"))

    assert result.summary.succeeded == 2
    parse_calls = [call for r in result.results for call in r.calls if call.stage == "parse"]
    assert [call.mode for call in parse_calls] == ["batch", "batch"]
    assert all(call.priority == "batch" for call in parse_calls)
    assert conductor.executor.scheduler.stats()["batches_completed"] >= 1


class FailingBatchBackend(MockBackend):
    async def create_batch(self, items):
        raise ProviderError("batch endpoint unavailable", status_code=503)


def test_failed_batch_outcome_becomes_urgent_failsafe():
    conductor = _batching_conductor(FailingBatchBackend())

    result = asyncio.run(conductor.batch_triage([_request("mild headache for 2 hours")]))

    assert result.results == []
    failed = result.errors[0]
    assert failed.error.type == "BatchProcessingError"
    assert failed.error.code == "batch_failed"
    assert failed.response.status == "failsafe"
    assert failed.response.risk.band == "urgent"
    assert failed.response.routing.priority == "urgent"


def test_raising_emit_callback_does_not_escape_triage():
    async def emit(event_name, payload):
        raise RuntimeError("listener went away")

    response = asyncio.run(_conductor(ScriptedBackend()).triage(_request("headache for two days"), emit))

    assert response.status == "completed"
    assert response.stage_trace[-1] == "done"


def test_health_check_statuses():
    healthy = asyncio.run(_conductor(MockBackend()).health_check())
    degraded = asyncio.run(_conductor(ScriptedBackend(parse=ProviderError("down"))).health_check())

    templates = default_templates()
    del templates["plan"]
    del templates["adapt"]
    broken = build_conductor(
        _settings(),
        ScriptedBackend(parse=ProviderError("down")),
        prompts=PromptLibrary(templates),
    )
    unhealthy = asyncio.run(broken.health_check())

    assert healthy.status == "healthy"
    assert degraded.status == "degraded"
    assert unhealthy.status == "unhealthy"
    assert "missing prompt template: plan" in unhealthy.problems
    assert healthy.cost_optimization["economy_model"]
    assert "pending_requests" in healthy.scheduler


def test_openai_provider_builds_direct_only_single_model_executor():
    settings = _settings(model_provider="openai", openai_api_key="sk-openai", enable_batching=True)

    conductor = build_conductor(settings)

    assert isinstance(conductor.executor.backend, OpenAIGateway)
    assert not conductor.executor.scheduler.options.enable_batching
    assert not conductor.executor.cache.enabled
    assert conductor.executor.router.economy_model == conductor.executor.router.premium_model == "gpt-4o-mini"
    assert isinstance(build_backend(settings, "anthropic"), AnthropicGateway)


def test_unconfigured_provider_override_falls_back_to_configured_backend():
    backend = ScriptedBackend()

    response = asyncio.run(
        _conductor(backend, openai_api_key=None).triage(
            _request("headache for two days", preferences={"provider": "openai"})
        )
    )

    assert response.status == "completed"
    assert backend.calls["parse"] == 1
