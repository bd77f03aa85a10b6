"""Error taxonomy for the triage pipeline."""

from __future__ import annotations

import traceback
from typing import Any

from triagecore.schemas import ErrorEnvelope


class TriageError(Exception):
    error_type = "TriageError"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class TriageValidationError(TriageError):
    """Malformed input, rejected before any inference call."""

    error_type = "ValidationError"


class ClarificationNeeded(TriageError):
    """Designed low-confidence exit; not a failure."""

    error_type = "ClarificationNeeded"

    def __init__(self, questions: list[str], confidence: float):
        super().__init__("More information needed before assessment", code="clarification")
        self.questions = questions
        self.confidence = confidence


class ProviderError(TriageError):
    """Network, timeout or auth failure talking to the inference backend."""

    error_type = "ProviderError"

    def __init__(self, message: str, *, status_code: int | None = None, code: str | None = None):
        super().__init__(message, code=code or (f"http_{status_code}" if status_code else None))
        self.status_code = status_code


class BatchProcessingError(TriageError):
    error_type = "BatchProcessingError"


class ParseError(TriageError):
    """Model output failed schema validation."""

    error_type = "ParseError"


def to_envelope(exc: BaseException, *, production: bool = False) -> ErrorEnvelope:
    if isinstance(exc, TriageError):
        details: dict[str, Any] = dict(exc.details)
        envelope_type = exc.error_type
        code = exc.code
        message = exc.message
    else:
        details = {}
        envelope_type = "InternalError"
        code = "internal_error"
        message = str(exc) or exc.__class__.__name__

    if not production:
        details["exception"] = exc.__class__.__name__
        details["stack"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    return ErrorEnvelope(type=envelope_type, message=message, code=code, details=details or None)
