"""Per-stage inference execution: route the model, tag cache hints, pick direct or batch."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

from triagecore.caching import CacheClassifier
from triagecore.costs import estimate_call_cost
from triagecore.errors import BatchProcessingError
from triagecore.gateway import InferenceBackend
from triagecore.routing import ModelRouter
from triagecore.scheduler import BatchScheduler
from triagecore.schemas import CallRecord, ChatRequest, ChatResult, ExecutionMode, OpsPriority
from triagecore.utils import elapsed_ms, now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InferenceResult:
    text: str
    record: CallRecord


class InferenceExecutor:
    def __init__(
        self,
        backend: InferenceBackend,
        *,
        router: ModelRouter,
        cache: CacheClassifier,
        scheduler: BatchScheduler | None = None,
    ):
        self.backend = backend
        self.router = router
        self.cache = cache
        self.scheduler = scheduler

    def uses_batch(self, priority: OpsPriority, use_batching: bool | None = None) -> bool:
        if use_batching is False or self.scheduler is None:
            return False
        return self.scheduler.admits(priority)

    async def execute(
        self,
        request: ChatRequest,
        *,
        priority: OpsPriority,
        requested_model: str | None = None,
        use_batching: bool | None = None,
        use_caching: bool | None = None,
    ) -> InferenceResult:
        selection = self.router.select(request, requested_model)
        if use_caching is False:
            messages = [message.model_copy(update={"cache": False}) for message in request.messages]
        else:
            messages = self.cache.classify(request.messages)
        call = request.model_copy(update={"model": selection.model, "messages": messages})

        started = now_ms()
        mode: ExecutionMode
        scheduler = self.scheduler if self.uses_batch(priority, use_batching) else None
        if scheduler is not None:
            outcome = await scheduler.submit(
                custom_id=f"{request.stage}-{uuid.uuid4().hex[:16]}",
                body=call,
                model=selection.model,
            )
            if not outcome.ok or outcome.result is None:
                error = outcome.error
                raise BatchProcessingError(
                    error.message if error else "batch returned no result",
                    code=error.code if error else "missing_result",
                    details={"stage": request.stage, "custom_id": outcome.custom_id},
                )
            result: ChatResult = outcome.result
            mode = "batch"
        else:
            result = await self.backend.chat(call)
            mode = "direct"

        record = CallRecord(
            stage=request.stage,
            model=selection.model,
            tier=selection.tier,
            complexity_score=selection.score,
            routing_reasons=list(selection.reasons),
            mode=mode,
            priority=priority,
            cached_message_indexes=[i for i, message in enumerate(messages) if message.cache],
            usage=result.usage,
            estimated_cost_usd=estimate_call_cost(selection.model, result.usage, mode),
            latency_ms=elapsed_ms(started),
        )
        logger.info(
            "inference_call stage=%s model=%s tier=%s score=%s mode=%s priority=%s cached=%s latency_ms=%s",
            record.stage,
            record.model,
            record.tier,
            record.complexity_score,
            record.mode,
            record.priority,
            len(record.cached_message_indexes),
            record.latency_ms,
        )
        return InferenceResult(text=result.text, record=record)
