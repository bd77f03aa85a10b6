"""HTTP entrypoint for the triage orchestration API."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import ValidationError

from triagecore.conductor import build_conductor
from triagecore.config import Settings, configure_logging, get_settings
from triagecore.errors import TriageValidationError, to_envelope
from triagecore.gateway import InferenceBackend
from triagecore.scheduler import Clock
from triagecore.schemas import BatchTriageRequest, SchedulerOptionsUpdate, TriageRequest
from triagecore.sse import StreamEvent, pump_events
from triagecore.utils import new_trace_id, utc_now

logger = logging.getLogger("triagecore.api")


def _error_response(exc: Exception, settings: Settings, status_code: int = 422) -> JSONResponse:
    envelope = to_envelope(exc, production=settings.is_production)
    return JSONResponse(
        status_code=status_code,
        content={
            "error": envelope.model_dump(mode="json"),
            "trace_id": new_trace_id(),
            "timestamp": utc_now().isoformat(),
        },
    )


def _invalid_body(exc: ValidationError) -> TriageValidationError:
    problems = [
        f"{'.'.join(str(part) for part in item['loc']) or '<body>'}: {item['msg']}" for item in exc.errors()
    ]
    return TriageValidationError(
        "Request body failed validation", code="invalid_body", details={"problems": problems}
    )


def create_app(
    settings: Settings | None = None,
    backend: InferenceBackend | None = None,
    *,
    clock: Clock | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)
    for problem in settings.problems():
        logger.warning("config_problem %s", problem)

    conductor = build_conductor(settings, backend, clock=clock)
    scheduler = conductor.executor.scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if scheduler is not None:
            logger.info("shutdown_drain pending=%s", scheduler.pending_count)
            await scheduler.aclose()

    app = FastAPI(title="Triage Orchestration API", version="1.0.0", lifespan=lifespan)
    app.state.conductor = conductor
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        problems = [str(item.get("msg")) for item in exc.errors()]
        return _error_response(
            TriageValidationError("Request failed validation", code="invalid_body", details={"problems": problems}),
            settings,
        )

    @app.get("/health")
    async def health() -> JSONResponse:
        result = await conductor.health_check()
        return JSONResponse(
            status_code=503 if result.status == "unhealthy" else 200,
            content={"service": settings.app_name, **result.model_dump(mode="json")},
        )

    @app.post("/v1/triage")
    async def triage(payload: dict[str, Any] = Body(...)) -> JSONResponse:
        try:
            request = TriageRequest.model_validate(payload)
        except ValidationError as exc:
            return _error_response(_invalid_body(exc), settings)

        response = await conductor.triage(request)
        headers = {"X-Trace-ID": response.trace_id, "X-Priority": response.routing.priority}
        if response.risk is not None:
            headers["X-Risk-Band"] = response.risk.band
        return JSONResponse(
            status_code=422 if response.status == "rejected" else 200,
            content=response.model_dump(mode="json"),
            headers=headers,
        )

    @app.post("/v1/triage/stream")
    async def triage_stream(payload: dict[str, Any] = Body(...)):
        try:
            request = TriageRequest.model_validate(payload)
        except ValidationError as exc:
            return _error_response(_invalid_body(exc), settings)

        queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        done = asyncio.Event()

        async def emit(event_name: str, event_payload: dict[str, Any]) -> None:
            await queue.put((event_name, {"event": event_name, "timestamp": utc_now().isoformat(), **event_payload}))

        async def runner() -> None:
            try:
                await conductor.triage(request, emit)
            finally:
                done.set()

        task = asyncio.create_task(runner())

        async def event_gen():
            async for frame in pump_events(queue, done):
                yield frame
            await task

        return StreamingResponse(event_gen(), media_type="text/event-stream")

    @app.post("/v1/triage/batch")
    async def triage_batch(payload: dict[str, Any] = Body(...)) -> JSONResponse:
        try:
            batch = BatchTriageRequest.model_validate(payload)
        except ValidationError as exc:
            return _error_response(_invalid_body(exc), settings)

        result = await conductor.batch_triage(batch.requests, batch_id=batch.batch_id, priority=batch.priority)
        return JSONResponse(content=result.model_dump(mode="json"), headers={"X-Batch-ID": result.batch_id})

    @app.get("/v1/scheduler/stats")
    async def scheduler_stats() -> dict[str, Any]:
        return scheduler.stats() if scheduler is not None else {}

    @app.post("/v1/scheduler/flush")
    async def scheduler_flush() -> dict[str, Any]:
        flushed = await scheduler.flush() if scheduler is not None else 0
        return {"flushed": flushed, "stats": scheduler.stats() if scheduler is not None else {}}

    @app.patch("/v1/scheduler/options")
    async def scheduler_options(payload: dict[str, Any] = Body(...)) -> JSONResponse:
        try:
            update = SchedulerOptionsUpdate.model_validate(payload)
        except ValidationError as exc:
            return _error_response(_invalid_body(exc), settings)
        if scheduler is None:
            return JSONResponse(content={})
        try:
            scheduler.update_options(**update.model_dump(exclude_unset=True))
        except ValueError as exc:
            return _error_response(TriageValidationError(str(exc), code="invalid_options"), settings)
        return JSONResponse(content={"options": scheduler.stats()["options"]})

    return app


app = create_app()
