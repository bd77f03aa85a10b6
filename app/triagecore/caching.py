"""Prompt-cache eligibility for stage messages."""

from __future__ import annotations

from dataclasses import dataclass

from triagecore.schemas import ChatMessage

INSTRUCTION_MARKERS: tuple[str, ...] = ("You are", "Guidelines:", "Instructions:")
CHARS_PER_TOKEN = 4
CACHED_TOKEN_DISCOUNT = 0.9


@dataclass(frozen=True)
class CacheSavingsEstimate:
    cacheable_messages: int
    cacheable_tokens: int
    total_tokens: int
    potential_savings_tokens: int

    @property
    def cacheable_ratio(self) -> float:
        if self.total_tokens == 0:
            return 0.0
        return self.cacheable_tokens / self.total_tokens


class CacheClassifier:
    def __init__(self, *, enabled: bool = True, min_chars: int = 500, early_positions: int = 2):
        self.enabled = enabled
        self.min_chars = min_chars
        self.early_positions = early_positions

    def is_eligible(self, message: ChatMessage, index: int) -> bool:
        if not self.enabled:
            return False
        content = message.content
        if len(content) > self.min_chars:
            return True
        if any(marker in content for marker in INSTRUCTION_MARKERS):
            return True
        return index < self.early_positions

    def classify(self, messages: list[ChatMessage]) -> list[ChatMessage]:
        return [
            message.model_copy(update={"cache": self.is_eligible(message, index)})
            for index, message in enumerate(messages)
        ]

    def estimate_savings(self, messages: list[ChatMessage]) -> CacheSavingsEstimate:
        cacheable_messages = 0
        cacheable_tokens = 0
        total_tokens = 0
        for index, message in enumerate(messages):
            tokens = len(message.content) // CHARS_PER_TOKEN
            total_tokens += tokens
            if self.is_eligible(message, index):
                cacheable_messages += 1
                cacheable_tokens += tokens
        return CacheSavingsEstimate(
            cacheable_messages=cacheable_messages,
            cacheable_tokens=cacheable_tokens,
            total_tokens=total_tokens,
            potential_savings_tokens=int(cacheable_tokens * CACHED_TOKEN_DISCOUNT),
        )
