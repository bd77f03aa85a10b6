import pytest

from triagecore.config import Settings


def test_settings_read_prefixed_env(monkeypatch):
    monkeypatch.setenv("TRIAGE_ENABLE_BATCHING", "yes")
    monkeypatch.setenv("TRIAGE_BATCH_SIZE", "40")
    monkeypatch.setenv("TRIAGE_CONFIDENCE_WEIGHTS", "0.4,0.3,0.2,0.1")
    monkeypatch.setenv("TRIAGE_BATCH_STRAGGLER_WAIT_MS", "off")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")

    settings = Settings()

    assert settings.enable_batching is True
    assert settings.batch_size == 40
    assert settings.confidence_weights == (0.4, 0.3, 0.2, 0.1)
    assert settings.batch_straggler_wait_ms is None
    assert settings.api_key == "sk-test"


def test_legacy_batching_env_name_is_honoured(monkeypatch):
    monkeypatch.delenv("TRIAGE_ENABLE_BATCHING", raising=False)
    monkeypatch.setenv("ANTHROPIC_ENABLE_BATCHING", "true")

    assert Settings().enable_batching is True


def test_bad_weight_count_raises(monkeypatch):
    monkeypatch.setenv("TRIAGE_CONFIDENCE_WEIGHTS", "0.5,0.5")

    with pytest.raises(ValueError):
        Settings()


def test_problems_reported_for_startup_validation():
    settings = Settings(api_key=None, mock_llm_responses=False, batch_size=3, batching_threshold=5)

    problems = settings.problems()

    assert any("ANTHROPIC_API_KEY" in problem for problem in problems)
    assert any("batching_threshold" in problem for problem in problems)


def test_mock_mode_needs_no_api_key():
    assert Settings(api_key=None, mock_llm_responses=True).problems() == []


def test_production_flag():
    assert Settings(environment="Production").is_production
    assert not Settings(environment="development").is_production


def test_openai_provider_needs_its_own_key():
    settings = Settings(model_provider="openai", openai_api_key=None, api_key="sk-ant", mock_llm_responses=False)

    assert any("OPENAI_API_KEY" in problem for problem in settings.problems())
    assert settings.key_for("anthropic") == "sk-ant"


def test_unknown_provider_is_reported():
    problems = Settings(model_provider="azure", mock_llm_responses=True).problems()

    assert any("model_provider" in problem for problem in problems)


def test_provider_read_from_env(monkeypatch):
    monkeypatch.setenv("TRIAGE_MODEL_PROVIDER", "OpenAI")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")

    settings = Settings()

    assert settings.model_provider == "openai"
    assert settings.openai_api_key == "sk-openai"
