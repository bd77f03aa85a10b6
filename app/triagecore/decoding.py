"""Strict, schema-validated decoding of model output."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Generic, TypeVar

from pydantic import BaseModel, ValidationError

from triagecore.errors import ParseError

T = TypeVar("T", bound=BaseModel)

_FENCE = re.compile(r"^```(?:json)?[ \t]*\n(.*)\n```$", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class Decoded(Generic[T]):
    value: T | None = None
    error: ParseError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.value is not None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        if self.value is None:
            raise ParseError("decoded value is missing", code="empty_output")
        return self.value


def strip_code_fence(text: str) -> str:
    stripped = text.strip()
    match = _FENCE.match(stripped)
    return match.group(1).strip() if match else stripped


def decode_json(text: str, model: type[T], *, stage: str) -> Decoded[T]:
    """Validate the whole output as one JSON document.

    A single surrounding code fence is tolerated; prose around the JSON is not.
    """
    body = strip_code_fence(text or "")
    if not body:
        return Decoded(error=ParseError(f"{stage} stage returned empty output", code="empty_output"))
    try:
        return Decoded(value=model.model_validate_json(body))
    except ValidationError as exc:
        problems = [
            f"{'.'.join(str(part) for part in item['loc']) or '<root>'}: {item['msg']}"
            for item in exc.errors()[:5]
        ]
        return Decoded(
            error=ParseError(
                f"{stage} stage output failed validation ({exc.error_count()} errors)",
                code="schema_validation",
                details={"stage": stage, "errors": problems},
            )
        )
