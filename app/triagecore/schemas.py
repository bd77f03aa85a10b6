"""Pydantic schemas for triage endpoints, stage boundaries and backend contracts."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator


AudienceMode = Literal["patient", "clinician"]
RiskBand = Literal["immediate", "urgent", "routine"]
OpsPriority = Literal["immediate", "urgent", "routine", "batch"]
TestCategory = Literal["emergency", "urgent", "routine", "edge-case"]
SystemLoad = Literal["normal", "high"]
Tone = Literal["urgent", "calm", "reassuring"]
BatchStatus = Literal["in_progress", "completed", "failed", "expired"]
PipelineStatus = Literal["completed", "clarification", "emergency", "failsafe", "rejected"]
ExecutionMode = Literal["direct", "batch"]
ModelTier = Literal["economy", "premium"]
ProviderName = Literal["anthropic", "openai", "mock"]
HealthStatus = Literal["healthy", "degraded", "unhealthy"]

RISK_BANDS: tuple[str, ...] = ("immediate", "urgent", "routine")
BAND_PROBABILITY: dict[str, float] = {"immediate": 0.95, "urgent": 0.75, "routine": 0.25}


def _as_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return value


def _unit_or_none(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number != number or number < 0.0 or number > 1.0:
        return None
    return number


def _clamped_unit(value: Any, default: float) -> float:
    if isinstance(value, bool) or value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:
        return default
    return max(0.0, min(1.0, number))


# Request side


class PatientContext(BaseModel):
    age: int | None = Field(default=None, ge=0, le=130)
    gender: str | None = None
    existing_conditions: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("existing_conditions", "existingConditions", "conditions"),
    )
    medications: list[str] = Field(default_factory=list)
    allergies: list[str] = Field(default_factory=list)
    anxiety_level: Literal["low", "medium", "high"] | None = Field(
        default=None, validation_alias=AliasChoices("anxiety_level", "anxietyLevel")
    )
    health_literacy: Literal["basic", "intermediate", "advanced"] | None = Field(
        default=None, validation_alias=AliasChoices("health_literacy", "healthLiteracy")
    )
    cultural_considerations: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("cultural_considerations", "culturalConsiderations"),
    )
    preferred_language: str | None = Field(
        default=None, validation_alias=AliasChoices("preferred_language", "preferredLanguage")
    )


class ProviderPreference(BaseModel):
    # None keeps the configured provider.
    provider: ProviderName | None = None
    model: str | None = None
    enable_batching: bool | None = Field(
        default=None, validation_alias=AliasChoices("enable_batching", "enableBatching")
    )
    enable_caching: bool | None = Field(
        default=None, validation_alias=AliasChoices("enable_caching", "enableCaching")
    )


class OperationalContext(BaseModel):
    is_after_hours: bool = Field(
        default=False, validation_alias=AliasChoices("is_after_hours", "isAfterHours")
    )
    system_load: SystemLoad = Field(
        default="normal", validation_alias=AliasChoices("system_load", "systemLoad")
    )
    test_category: TestCategory | None = Field(
        default=None, validation_alias=AliasChoices("test_category", "testCategory")
    )


class TriageRequest(BaseModel):
    request_id: str | None = Field(
        default=None, validation_alias=AliasChoices("request_id", "requestId")
    )
    mode: AudienceMode = "patient"
    text: str = Field(default="", validation_alias=AliasChoices("text", "input", "symptoms"))
    patient_id: str | None = Field(
        default=None, validation_alias=AliasChoices("patient_id", "patientId")
    )
    patient_context: PatientContext | None = Field(
        default=None, validation_alias=AliasChoices("patient_context", "patientContext")
    )
    preferences: ProviderPreference | None = None
    context: OperationalContext = Field(default_factory=OperationalContext)
    priority_hint: OpsPriority | None = Field(
        default=None, validation_alias=AliasChoices("priority_hint", "priority")
    )


# Stage outputs


class VitalSigns(BaseModel):
    bp: str | None = None
    hr: float | None = None
    spo2: float | None = None
    rr: float | None = None
    temp: float | None = None


class SymptomFeatures(BaseModel):
    onset: str | None = None
    severity: float | None = None
    radiation: str | None = None
    associated: list[str] = Field(default_factory=list)
    vitals: VitalSigns = Field(default_factory=VitalSigns)
    red_flags: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("red_flags", "redFlags")
    )

    @field_validator("severity", mode="before")
    @classmethod
    def _severity_in_scale(cls, value: Any) -> float | None:
        if isinstance(value, bool) or value is None:
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        if number != number or number < 0 or number > 10:
            return None
        return number

    @field_validator("associated", "red_flags", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        return _as_list(value)

    @field_validator("vitals", mode="before")
    @classmethod
    def _vitals_default(cls, value: Any) -> Any:
        return value or {}


class CodedTerm(BaseModel):
    system: str
    code: str
    term: str = ""


class ClinicalEvidence(BaseModel):
    patient_id: str | None = Field(
        default=None, validation_alias=AliasChoices("patient_id", "patientId")
    )
    presenting_complaint: str = Field(
        default="", validation_alias=AliasChoices("presenting_complaint", "presentingComplaint")
    )
    features: SymptomFeatures = Field(default_factory=SymptomFeatures)
    codes: list[CodedTerm] = Field(default_factory=list)
    medications: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("medications", "meds")
    )
    allergies: list[str] = Field(default_factory=list)

    @field_validator("medications", "allergies", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        return _as_list(value)


class ParseStageOutput(BaseModel):
    evidence: ClinicalEvidence
    confidence: float = 0.5
    clarifying_questions: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("clarifying_questions", "clarifyingQuestions"),
    )

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        return _clamped_unit(value, 0.5)

    @field_validator("clarifying_questions", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        return _as_list(value)


class RiskAssessment(BaseModel):
    band: RiskBand
    p_urgent: float = Field(ge=0.0, le=1.0)
    explanation: list[str] = Field(default_factory=list)
    required_investigations: list[str] = Field(default_factory=list)
    differentials: list[str] = Field(default_factory=list)
    confidence: float = 0.5

    @model_validator(mode="before")
    @classmethod
    def _normalise_band_and_probability(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        payload = dict(data)
        band = str(payload.get("band") or "").strip().lower()
        if band not in RISK_BANDS:
            band = "urgent"
        payload["band"] = band

        raw = payload.pop("pUrgent", None)
        if "p_urgent" in payload:
            raw = payload["p_urgent"]
        probability = _unit_or_none(raw)
        payload["p_urgent"] = BAND_PROBABILITY[band] if probability is None else probability

        for camel, snake in (
            ("requiredInvestigations", "required_investigations"),
            ("differentialDiagnoses", "differentials"),
        ):
            if camel in payload and snake not in payload:
                payload[snake] = payload.pop(camel)
        for key in ("explanation", "required_investigations", "differentials"):
            payload[key] = _as_list(payload.get(key))
        payload["confidence"] = _clamped_unit(payload.get("confidence"), 0.5)
        return payload


class CarePlan(BaseModel):
    disposition: str
    rationale: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("rationale", "why")
    )
    what_to_expect: str = Field(
        default="", validation_alias=AliasChoices("what_to_expect", "whatToExpect")
    )
    safety_net: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("safety_net", "safetyNet")
    )
    timeframe: str = ""
    follow_up: str | None = Field(
        default=None, validation_alias=AliasChoices("follow_up", "followUp")
    )

    @field_validator("rationale", "safety_net", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        return _as_list(value)


class Citation(BaseModel):
    source: str
    snippet: str = ""
    guideline: str | None = None


class PlanStageOutput(BaseModel):
    plan: CarePlan
    citations: list[Citation] = Field(default_factory=list)
    confidence: float = 0.7
    alternatives: list[str] = Field(default_factory=list)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence_or_default(cls, value: Any) -> float:
        probability = _unit_or_none(value)
        return 0.7 if probability is None else probability

    @field_validator("alternatives", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        return _as_list(value)


class AdaptedResponse(BaseModel):
    disposition: str
    explanation: str = ""
    what_to_expect: str = Field(
        default="", validation_alias=AliasChoices("what_to_expect", "whatToExpect")
    )
    safety_net: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("safety_net", "safetyNet")
    )
    next_steps: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("next_steps", "nextSteps")
    )
    reassurance: str | None = None

    @field_validator("safety_net", "next_steps", mode="before")
    @classmethod
    def _listify(cls, value: Any) -> Any:
        return _as_list(value)


class AdaptStageOutput(BaseModel):
    response: AdaptedResponse = Field(
        validation_alias=AliasChoices("response", "adapted_response", "adaptedResponse")
    )
    tone: Tone = "calm"
    confidence: float = 0.8

    @field_validator("tone", mode="before")
    @classmethod
    def _tone_or_calm(cls, value: Any) -> str:
        token = str(value or "").strip().lower()
        return token if token in {"urgent", "calm", "reassuring"} else "calm"

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence_or_default(cls, value: Any) -> float:
        probability = _unit_or_none(value)
        return 0.8 if probability is None else probability


class SafetyOverride(BaseModel):
    rule: Literal["critical_red_flag", "high_severity"]
    trigger: str
    previous_band: RiskBand
    new_band: RiskBand
    previous_p_urgent: float
    new_p_urgent: float


class RoutingMeta(BaseModel):
    priority: OpsPriority
    test_category: TestCategory | None = None


# Inference backend contracts


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str
    cache: bool = False


class ChatRequest(BaseModel):
    stage: str
    model: str | None = None
    messages: list[ChatMessage]
    temperature: float = 0.1
    max_tokens: int = 2000
    metadata: dict[str, Any] = Field(default_factory=dict)

    def joined_text(self) -> str:
        return "\n".join(message.content for message in self.messages)


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0


class ChatResult(BaseModel):
    text: str
    model: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    stop_reason: str | None = None


class ErrorEnvelope(BaseModel):
    type: str
    message: str
    code: str | None = None
    details: dict[str, Any] | None = None


class BatchRequestItem(BaseModel):
    custom_id: str
    params: ChatRequest


class BatchRequestCounts(BaseModel):
    processing: int = 0
    succeeded: int = 0
    errored: int = 0
    canceled: int = 0
    expired: int = 0


class BatchJob(BaseModel):
    id: str
    status: BatchStatus
    request_counts: BatchRequestCounts = Field(default_factory=BatchRequestCounts)
    results_url: str | None = None
    created_at: datetime | None = None


class BatchOutcome(BaseModel):
    custom_id: str
    result: ChatResult | None = None
    error: ErrorEnvelope | None = None

    @property
    def ok(self) -> bool:
        return self.result is not None and self.error is None


# Audit and response side


class CallRecord(BaseModel):
    stage: str
    model: str
    tier: ModelTier
    complexity_score: int = 0
    routing_reasons: list[str] = Field(default_factory=list)
    mode: ExecutionMode = "direct"
    priority: OpsPriority
    cached_message_indexes: list[int] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    estimated_cost_usd: float = 0.0
    latency_ms: int = 0


class CostMetrics(BaseModel):
    calls: int = 0
    premium_calls: int = 0
    batched_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    estimated_cost_usd: float = 0.0
    estimated_savings_usd: float = 0.0


class StageConfidences(BaseModel):
    parse: float | None = None
    risk: float | None = None
    plan: float | None = None
    adapt: float | None = None


class TriageResponse(BaseModel):
    trace_id: str
    request_id: str | None = None
    timestamp: datetime
    status: PipelineStatus
    mode: AudienceMode = "patient"
    evidence: ClinicalEvidence | None = None
    risk: RiskAssessment | None = None
    plan: CarePlan | None = None
    response: AdaptedResponse | None = None
    tone: Tone | None = None
    confidence: float
    citations: list[Citation] = Field(default_factory=list)
    alternatives: list[str] = Field(default_factory=list)
    routing: RoutingMeta
    clarifying_questions: list[str] = Field(default_factory=list)
    safety_overrides: list[SafetyOverride] = Field(default_factory=list)
    safety_warnings: list[str] = Field(default_factory=list)
    stage_confidences: StageConfidences = Field(default_factory=StageConfidences)
    stage_trace: list[str] = Field(default_factory=list)
    cost: CostMetrics = Field(default_factory=CostMetrics)
    calls: list[CallRecord] = Field(default_factory=list)
    processing_ms: int = 0
    error: ErrorEnvelope | None = None


class BatchTriageRequest(BaseModel):
    batch_id: str | None = Field(default=None, validation_alias=AliasChoices("batch_id", "batchId"))
    requests: list[TriageRequest] = Field(min_length=1, max_length=100)
    priority: OpsPriority = "batch"


class BatchItemError(BaseModel):
    index: int
    request_id: str | None = None
    trace_id: str
    error: ErrorEnvelope
    response: TriageResponse


class BatchTriageSummary(BaseModel):
    total: int
    succeeded: int
    failed: int
    processing_ms: int = 0


class BatchTriageResponse(BaseModel):
    batch_id: str
    results: list[TriageResponse] = Field(default_factory=list)
    errors: list[BatchItemError] = Field(default_factory=list)
    summary: BatchTriageSummary


class StageAvailability(BaseModel):
    stage: str
    available: bool
    detail: str | None = None


class HealthCheckResponse(BaseModel):
    status: HealthStatus
    timestamp: datetime
    stages: list[StageAvailability] = Field(default_factory=list)
    scheduler: dict[str, Any] = Field(default_factory=dict)
    cost_optimization: dict[str, Any] = Field(default_factory=dict)
    problems: list[str] = Field(default_factory=list)


class SchedulerOptionsUpdate(BaseModel):
    enable_batching: bool | None = None
    batch_size: int | None = Field(default=None, ge=1)
    max_wait_ms: int | None = Field(default=None, ge=0)
    batching_threshold: int | None = Field(default=None, ge=1)
    straggler_wait_ms: int | None = Field(default=None, ge=0)
