"""Batch scheduler: accumulate admitted calls, submit one batch job, poll, dispatch.

All state lives in this process. Running several schedulers against one
logical queue needs external coordination (a dedicated scheduler process or a
distributed lock); this class does not provide it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Protocol

from triagecore.errors import BatchProcessingError
from triagecore.gateway import InferenceBackend, decode_message
from triagecore.schemas import (
    BatchJob,
    BatchOutcome,
    BatchRequestItem,
    BatchStatus,
    ChatRequest,
    ErrorEnvelope,
    OpsPriority,
)

logger = logging.getLogger(__name__)

DIRECT_PRIORITIES = frozenset({"immediate", "urgent"})
TERMINAL_STATUSES = frozenset({"completed", "failed", "expired"})


class Clock(Protocol):
    def monotonic(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


@dataclass(frozen=True)
class BatchOptions:
    enable_batching: bool = False
    batch_size: int = 100
    max_wait_ms: int = 5000
    batching_threshold: int = 5
    straggler_wait_ms: int | None = 30000

    def validate(self) -> None:
        if self.batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if self.max_wait_ms < 0:
            raise ValueError("max_wait_ms must be >= 0")
        if not 1 <= self.batching_threshold <= self.batch_size:
            raise ValueError("batching_threshold must be between 1 and batch_size")
        if self.straggler_wait_ms is not None and self.straggler_wait_ms < 0:
            raise ValueError("straggler_wait_ms must be >= 0")


@dataclass(frozen=True)
class PollPolicy:
    interval_sec: float = 10.0
    max_wait_sec: float = 3600.0


BatchCallback = Callable[[BatchOutcome], None]


@dataclass
class PendingBatchRequest:
    custom_id: str
    body: ChatRequest
    model: str
    callback: BatchCallback
    enqueued_at: float = 0.0
    delivered: bool = False


@dataclass
class PollState:
    batch_id: str
    started_at: float
    attempts: int = 0
    last_status: BatchStatus = "in_progress"
    history: list[str] = field(default_factory=list)

    def elapsed(self, now: float) -> float:
        return now - self.started_at


def _failure(custom_id: str, message: str, code: str) -> BatchOutcome:
    return BatchOutcome(
        custom_id=custom_id,
        error=ErrorEnvelope(type="batch_failed", message=message, code=code),
    )


def parse_results_archive(archive: str) -> list[BatchOutcome]:
    """Parse a newline-delimited results archive into per-call outcomes."""
    outcomes: list[BatchOutcome] = []
    for line_no, raw in enumerate(archive.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
            custom_id = str(entry["custom_id"])
            result = entry.get("result") or {}
        except (ValueError, KeyError, TypeError):
            logger.warning("batch_archive_bad_line line=%s", line_no)
            continue

        result_type = str(result.get("type") or "errored")
        if result_type == "succeeded":
            outcomes.append(BatchOutcome(custom_id=custom_id, result=decode_message(result.get("message") or {})))
            continue

        error = result.get("error") or {}
        if isinstance(error.get("error"), dict):
            error = error["error"]
        outcomes.append(
            BatchOutcome(
                custom_id=custom_id,
                error=ErrorEnvelope(
                    type=f"batch_{result_type}",
                    message=str(error.get("message") or f"request {result_type} in batch"),
                    code=error.get("type"),
                ),
            )
        )
    return outcomes


class BatchScheduler:
    def __init__(
        self,
        backend: InferenceBackend,
        *,
        options: BatchOptions | None = None,
        poll: PollPolicy | None = None,
        clock: Clock | None = None,
    ):
        self._backend = backend
        self.options = options or BatchOptions()
        self.options.validate()
        self.poll = poll or PollPolicy()
        self._clock = clock or SystemClock()

        self._pending: dict[str, PendingBatchRequest] = {}
        self._wait_timer: asyncio.Task[None] | None = None
        self._straggler_timer: asyncio.Task[None] | None = None
        self._inflight: dict[asyncio.Task[None], list[PendingBatchRequest]] = {}
        self._counters = {
            "batches_submitted": 0,
            "batches_completed": 0,
            "batches_failed": 0,
            "results_dispatched": 0,
            "errors_dispatched": 0,
        }

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    def admits(self, priority: OpsPriority) -> bool:
        return self.options.enable_batching and priority not in DIRECT_PRIORITIES

    # Accumulation

    async def submit(self, custom_id: str, body: ChatRequest, model: str) -> BatchOutcome:
        future: asyncio.Future[BatchOutcome] = asyncio.get_running_loop().create_future()

        def _deliver(outcome: BatchOutcome) -> None:
            if not future.done():
                future.set_result(outcome)

        self.enqueue(PendingBatchRequest(custom_id=custom_id, body=body, model=model, callback=_deliver))
        return await future

    def enqueue(self, request: PendingBatchRequest) -> None:
        if request.custom_id in self._pending:
            raise ValueError(f"duplicate custom_id {request.custom_id!r}")
        request.enqueued_at = self._clock.monotonic()
        self._pending[request.custom_id] = request
        self.schedule_check()

    def schedule_check(self) -> None:
        """Re-evaluate flush triggers; the wait timer restarts on every call."""
        self._cancel_timer("_wait_timer")
        count = len(self._pending)
        if count == 0:
            self._cancel_timer("_straggler_timer")
            return

        if count >= self.options.batch_size:
            self._start_flush("size")
            return

        if count >= self.options.batching_threshold:
            self._wait_timer = asyncio.create_task(
                self._flush_after("_wait_timer", self.options.max_wait_ms / 1000.0, "wait_timer")
            )
        if self._straggler_timer is None and self.options.straggler_wait_ms is not None:
            self._straggler_timer = asyncio.create_task(
                self._flush_after("_straggler_timer", self.options.straggler_wait_ms / 1000.0, "straggler")
            )

    def _cancel_timer(self, attr: str) -> None:
        timer: asyncio.Task[None] | None = getattr(self, attr)
        setattr(self, attr, None)
        if timer is not None and timer is not asyncio.current_task() and not timer.done():
            timer.cancel()

    async def _flush_after(self, attr: str, delay: float, reason: str) -> None:
        await self._clock.sleep(delay)
        if getattr(self, attr) is asyncio.current_task():
            setattr(self, attr, None)
        self._start_flush(reason)

    # Flush

    def _drain(self) -> list[PendingBatchRequest]:
        # Must stay synchronous: a second trigger has to see an empty map.
        batch = list(self._pending.values())
        self._pending.clear()
        self._cancel_timer("_wait_timer")
        self._cancel_timer("_straggler_timer")
        return batch

    def _start_flush(self, reason: str) -> asyncio.Task[None] | None:
        batch = self._drain()
        if not batch:
            return None
        logger.info("batch_flush reason=%s size=%s", reason, len(batch))
        task = asyncio.create_task(self._process(batch))
        self._inflight[task] = batch
        task.add_done_callback(self._finish_inflight)
        return task

    def _finish_inflight(self, task: asyncio.Task[None]) -> None:
        batch = self._inflight.pop(task, [])
        if not task.cancelled():
            return
        # Cancelled before _process started, so its own handler never ran.
        undelivered = [item for item in batch if not item.delivered]
        if undelivered:
            self._counters["batches_failed"] += 1
            logger.warning("batch_cancelled size=%s started=false", len(undelivered))
            self._fail_all(undelivered, "Batch processing was cancelled", "batch_cancelled")

    async def flush(self) -> int:
        """Process whatever is pending now and wait for its outcomes."""
        size = len(self._pending)
        task = self._start_flush("manual")
        if task is None:
            return 0
        await task
        return size

    async def _process(self, batch: list[PendingBatchRequest]) -> None:
        waiting = {item.custom_id: item for item in batch}
        items = [
            BatchRequestItem(custom_id=item.custom_id, params=item.body.model_copy(update={"model": item.model}))
            for item in batch
        ]
        try:
            job = await self._backend.create_batch(items)
            self._counters["batches_submitted"] += 1
            logger.info("batch_submitted batch_id=%s size=%s", job.id, len(items))
            job = await self._poll_until_done(job)
            if not job.results_url:
                raise BatchProcessingError(f"batch {job.id} completed without a results archive")
            outcomes = parse_results_archive(await self._backend.fetch_results(job.results_url))
        except asyncio.CancelledError:
            self._counters["batches_failed"] += 1
            logger.warning("batch_cancelled size=%s", len(batch))
            self._fail_all(waiting.values(), "Batch processing was cancelled", "batch_cancelled")
            raise
        except Exception as exc:
            self._counters["batches_failed"] += 1
            logger.error("batch_failed size=%s error=%s", len(batch), exc)
            self._fail_all(waiting.values(), f"Batch processing failed: {exc}", "batch_failed")
            return

        self._counters["batches_completed"] += 1
        self._dispatch(waiting, outcomes)

    async def _poll_until_done(self, job: BatchJob) -> BatchJob:
        state = PollState(batch_id=job.id, started_at=self._clock.monotonic(), last_status=job.status)
        while state.last_status not in TERMINAL_STATUSES:
            if state.elapsed(self._clock.monotonic()) >= self.poll.max_wait_sec:
                raise BatchProcessingError(
                    f"batch {job.id} timed out after {state.attempts} polls",
                    code="batch_timeout",
                )
            await self._clock.sleep(self.poll.interval_sec)
            state.attempts += 1
            job = await self._backend.retrieve_batch(job.id)
            state.last_status = job.status
            state.history.append(job.status)
            logger.debug("batch_poll batch_id=%s attempt=%s status=%s", job.id, state.attempts, job.status)

        if state.last_status != "completed":
            raise BatchProcessingError(f"batch {job.id} ended with status {state.last_status}")
        return job

    def _dispatch(self, waiting: dict[str, PendingBatchRequest], outcomes: list[BatchOutcome]) -> None:
        for outcome in outcomes:
            item = waiting.pop(outcome.custom_id, None)
            if item is None:
                logger.warning("batch_unknown_result custom_id=%s", outcome.custom_id)
                continue
            self._deliver(item, outcome)
        for item in waiting.values():
            self._deliver(item, _failure(item.custom_id, "No result returned for request", "missing_result"))

    def _fail_all(self, items: Any, message: str, code: str) -> None:
        for item in list(items):
            self._deliver(item, _failure(item.custom_id, message, code))

    def _deliver(self, item: PendingBatchRequest, outcome: BatchOutcome) -> None:
        if item.delivered:
            return
        item.delivered = True
        key = "results_dispatched" if outcome.ok else "errors_dispatched"
        self._counters[key] += 1
        item.callback(outcome)

    # Control

    def update_options(self, **changes: Any) -> BatchOptions:
        updated = replace(self.options, **changes)
        updated.validate()
        self.options = updated
        logger.info("batch_options_updated %s", " ".join(f"{k}={v}" for k, v in changes.items()))
        self.schedule_check()
        return updated

    def cancel(self) -> int:
        """Cancel all pending and in-flight work; every caller gets an error outcome."""
        pending = self._drain()
        self._fail_all(pending, "Batch processing was cancelled", "batch_cancelled")
        inflight = list(self._inflight)
        for task in inflight:
            task.cancel()
        return len(pending) + len(inflight)

    async def aclose(self) -> None:
        await self.flush()
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def stats(self) -> dict[str, Any]:
        now = self._clock.monotonic()
        oldest = min((item.enqueued_at for item in self._pending.values()), default=None)
        return {
            "pending_requests": len(self._pending),
            "inflight_batches": len(self._inflight),
            "oldest_pending_age_sec": None if oldest is None else round(now - oldest, 3),
            "wait_timer_armed": self._wait_timer is not None,
            "options": asdict(self.options),
            "poll": asdict(self.poll),
            **self._counters,
        }
