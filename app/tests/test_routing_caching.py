from triagecore.caching import CacheClassifier
from triagecore.gateway import MAX_CACHE_MARKERS, encode_messages
from triagecore.routing import ModelRouter
from triagecore.schemas import ChatMessage, ChatRequest

ECONOMY = "claude-3-5-haiku-20241022"
PREMIUM = "claude-3-5-sonnet-20241022"


def _router(**kwargs) -> ModelRouter:
    return ModelRouter(economy_model=ECONOMY, premium_model=PREMIUM, **kwargs)


def _request(stage: str, *texts: str) -> ChatRequest:
    return ChatRequest(stage=stage, messages=[ChatMessage(role="user", content=text) for text in texts])


def test_simple_parse_call_uses_economy_model():
    selection = _router().select(_request("parse", "mild headache for 2 hours"))

    assert selection.model == ECONOMY
    assert selection.tier == "economy"
    assert selection.score == 0


def test_differential_diagnosis_in_risk_stage_uses_premium():
    selection = _router().select(_request("risk", "Provide a differential diagnosis"))

    assert selection.model == PREMIUM
    assert selection.score == 4
    assert "differential_diagnosis+3" in selection.reasons
    assert "stage_risk+1" in selection.reasons


def test_medium_patterns_accumulate_to_threshold():
    below = _router().select(_request("parse", "multiple symptoms with a chronic condition"))
    above = _router().select(
        _request("parse", "multiple symptoms with a chronic condition and relevant medication history")
    )

    assert below.tier == "economy"
    assert below.score == 2
    assert above.tier == "premium"
    assert above.score == 3


def test_length_bonus_applies_over_threshold():
    score, reasons = _router(length_threshold=100).score(_request("adapt", "x" * 101))

    assert score == 1
    assert reasons == ["long_context+1"]


def test_requested_model_wins_and_disabled_routing_is_economy():
    request = _request("risk", "complex medical reasoning about drug interaction")

    assert _router().select(request, requested_model=PREMIUM).reasons == ["requested_model"]
    assert _router().select(request, requested_model=PREMIUM).tier == "premium"
    assert _router(enabled=False).select(request).model == ECONOMY


def test_cache_eligibility_rules():
    classifier = CacheClassifier()
    messages = [
        ChatMessage(role="system", content="short"),
        ChatMessage(role="user", content="short too"),
        ChatMessage(role="user", content="y" * 501),
        ChatMessage(role="user", content="Guidelines: be concise"),
        ChatMessage(role="user", content="a late short message"),
    ]

    tagged = classifier.classify(messages)

    assert [message.cache for message in tagged] == [True, True, True, True, False]
    assert all(message.cache is False for message in messages)


def test_disabled_cache_classifier_marks_nothing():
    tagged = CacheClassifier(enabled=False).classify([ChatMessage(role="system", content="You are a parser")])

    assert tagged[0].cache is False


def test_cache_savings_estimate():
    classifier = CacheClassifier()
    messages = [
        ChatMessage(role="system", content="a" * 400),
        ChatMessage(role="user", content="b" * 40),
        ChatMessage(role="user", content="c" * 40),
    ]

    estimate = classifier.estimate_savings(messages)

    assert estimate.total_tokens == 120
    assert estimate.cacheable_tokens == 110
    assert estimate.cacheable_messages == 2
    assert estimate.potential_savings_tokens == 99


def test_encoder_caps_cache_markers_and_splits_system():
    messages = [ChatMessage(role="system", content="You are X", cache=True)] + [
        ChatMessage(role="user", content=f"m{i}", cache=True) for i in range(6)
    ]
    body = encode_messages(ChatRequest(stage="parse", model=ECONOMY, messages=messages))

    blocks = body["system"] + [message["content"][0] for message in body["messages"]]
    marked = [block for block in blocks if "cache_control" in block]

    assert len(body["system"]) == 1
    assert len(body["messages"]) == 6
    assert len(marked) == MAX_CACHE_MARKERS
    assert body["model"] == ECONOMY


def test_requested_model_tier_is_reported():
    router = _router()

    assert router.tier_of(PREMIUM) == "premium"
    assert router.tier_of("some-other-model") == "economy"


def test_short_late_user_block_is_not_cache_eligible():
    classifier = CacheClassifier(enabled=True)

    assert classifier.is_eligible(ChatMessage(role="system", content="You are a triage nurse."), 0)
    assert not classifier.is_eligible(ChatMessage(role="user", content="mild cough"), 5)
    assert not CacheClassifier(enabled=False).is_eligible(ChatMessage(role="user", content="x" * 900), 0)
