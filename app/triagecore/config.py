"""Runtime settings for the triage orchestration core."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

PROVIDERS = ("anthropic", "openai")


def _as_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _first_env(*names: str) -> str | None:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


def _optional_int(value: str | None, default: int | None) -> int | None:
    if value is None:
        return default
    token = value.strip().lower()
    if token in {"", "none", "off", "0"}:
        return None
    return int(token)


def _weights(value: str | None) -> tuple[float, float, float, float]:
    if not value:
        return (0.30, 0.30, 0.25, 0.15)
    parts = tuple(float(item) for item in value.split(",") if item.strip())
    if len(parts) != 4:
        raise ValueError("TRIAGE_CONFIDENCE_WEIGHTS must hold four comma-separated numbers")
    return parts  # type: ignore[return-value]


@dataclass(frozen=True)
class Settings:
    app_name: str = field(default_factory=lambda: os.getenv("TRIAGE_APP_NAME", "triagecore-api"))
    environment: str = field(
        default_factory=lambda: os.getenv("TRIAGE_ENVIRONMENT", os.getenv("ENVIRONMENT", "development"))
    )
    log_level: str = field(default_factory=lambda: os.getenv("TRIAGE_LOG_LEVEL", "INFO"))

    # Inference backend. model_provider is "anthropic" or "openai".
    model_provider: str = field(
        default_factory=lambda: (_first_env("TRIAGE_MODEL_PROVIDER", "MODEL_PROVIDER") or "anthropic").lower()
    )
    api_key: str | None = field(
        default_factory=lambda: _first_env("TRIAGE_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY")
    )
    base_url: str = field(
        default_factory=lambda: os.getenv("TRIAGE_ANTHROPIC_BASE_URL", "https://api.anthropic.com")
    )
    api_version: str = field(default_factory=lambda: os.getenv("TRIAGE_ANTHROPIC_VERSION", "2023-06-01"))
    economy_model: str = field(
        default_factory=lambda: os.getenv("TRIAGE_ECONOMY_MODEL", "claude-3-5-haiku-20241022")
    )
    premium_model: str = field(
        default_factory=lambda: os.getenv("TRIAGE_PREMIUM_MODEL", "claude-3-5-sonnet-20241022")
    )
    request_timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("TRIAGE_REQUEST_TIMEOUT_SEC", "60"))
    )
    openai_api_key: str | None = field(
        default_factory=lambda: _first_env("TRIAGE_OPENAI_API_KEY", "OPENAI_API_KEY")
    )
    openai_base_url: str = field(
        default_factory=lambda: os.getenv("TRIAGE_OPENAI_BASE_URL", "https://api.openai.com")
    )
    openai_model: str = field(default_factory=lambda: os.getenv("TRIAGE_OPENAI_MODEL", "gpt-4o-mini"))
    openai_org_id: str | None = field(
        default_factory=lambda: _first_env("TRIAGE_OPENAI_ORG_ID", "OPENAI_ORG_ID")
    )
    mock_llm_responses: bool = field(
        default_factory=lambda: _as_bool(os.getenv("TRIAGE_MOCK_LLM_RESPONSES"), default=False)
    )

    # Cost optimisation toggles.
    enable_caching: bool = field(
        default_factory=lambda: _as_bool(os.getenv("TRIAGE_ENABLE_CACHING"), default=True)
    )
    enable_smart_routing: bool = field(
        default_factory=lambda: _as_bool(os.getenv("TRIAGE_ENABLE_SMART_ROUTING"), default=True)
    )
    enable_batching: bool = field(
        default_factory=lambda: _as_bool(
            _first_env("TRIAGE_ENABLE_BATCHING", "ANTHROPIC_ENABLE_BATCHING"), default=False
        )
    )
    cache_min_chars: int = field(default_factory=lambda: int(os.getenv("TRIAGE_CACHE_MIN_CHARS", "500")))
    complexity_threshold: int = field(
        default_factory=lambda: int(os.getenv("TRIAGE_COMPLEXITY_THRESHOLD", "3"))
    )
    complexity_length_threshold: int = field(
        default_factory=lambda: int(os.getenv("TRIAGE_COMPLEXITY_LENGTH_THRESHOLD", "2000"))
    )

    # Batch scheduler.
    batch_size: int = field(default_factory=lambda: int(os.getenv("TRIAGE_BATCH_SIZE", "100")))
    batch_max_wait_ms: int = field(default_factory=lambda: int(os.getenv("TRIAGE_BATCH_MAX_WAIT_MS", "5000")))
    batching_threshold: int = field(default_factory=lambda: int(os.getenv("TRIAGE_BATCHING_THRESHOLD", "5")))
    # Flushes a below-threshold queue; None leaves stragglers until a manual flush.
    batch_straggler_wait_ms: int | None = field(
        default_factory=lambda: _optional_int(os.getenv("TRIAGE_BATCH_STRAGGLER_WAIT_MS"), 30000)
    )
    batch_poll_interval_sec: float = field(
        default_factory=lambda: float(os.getenv("TRIAGE_BATCH_POLL_INTERVAL_SEC", "10"))
    )
    batch_max_poll_wait_sec: float = field(
        default_factory=lambda: float(os.getenv("TRIAGE_BATCH_MAX_POLL_WAIT_SEC", "3600"))
    )

    # Pipeline.
    max_concurrency: int = field(default_factory=lambda: int(os.getenv("TRIAGE_MAX_CONCURRENT_AGENTS", "5")))
    max_input_length: int = field(default_factory=lambda: int(os.getenv("TRIAGE_MAX_INPUT_LENGTH", "2000")))
    min_text_length: int = 5
    clarification_threshold: float = field(
        default_factory=lambda: float(os.getenv("TRIAGE_MIN_CONFIDENCE_THRESHOLD", "0.6"))
    )
    # Empirical, not clinically derived. Order: parse, risk, plan, adapt.
    confidence_weights: tuple[float, float, float, float] = field(
        default_factory=lambda: _weights(os.getenv("TRIAGE_CONFIDENCE_WEIGHTS"))
    )

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    def key_for(self, provider: str) -> str | None:
        if provider == "openai":
            return self.openai_api_key
        if provider == "anthropic":
            return self.api_key
        return None

    def problems(self) -> list[str]:
        issues: list[str] = []
        if self.model_provider not in PROVIDERS:
            issues.append(f"model_provider must be one of {PROVIDERS}, got {self.model_provider!r}")
        elif not self.mock_llm_responses and not self.key_for(self.model_provider):
            key_name = "OPENAI_API_KEY" if self.model_provider == "openai" else "ANTHROPIC_API_KEY"
            issues.append(f"{key_name} is not set and mock responses are disabled")
        if len(self.confidence_weights) != 4 or any(w <= 0 for w in self.confidence_weights):
            issues.append("confidence_weights must be four positive numbers")
        if not 0.0 < self.clarification_threshold <= 1.0:
            issues.append("clarification_threshold must be within (0, 1]")
        if self.batch_size < 1:
            issues.append("batch_size must be >= 1")
        if self.batching_threshold < 1 or self.batching_threshold > self.batch_size:
            issues.append("batching_threshold must be between 1 and batch_size")
        if self.max_concurrency < 1:
            issues.append("max_concurrency must be >= 1")
        if self.max_input_length <= self.min_text_length:
            issues.append("max_input_length must exceed the minimum text length")
        return issues


def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.strip().upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    logging.getLogger("triagecore").setLevel(level)
