"""Inference backend contract and the Anthropic and OpenAI HTTP implementations."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from triagecore.config import Settings
from triagecore.errors import BatchProcessingError, ProviderError
from triagecore.schemas import (
    BatchJob,
    BatchRequestCounts,
    BatchRequestItem,
    BatchStatus,
    ChatRequest,
    ChatResult,
    TokenUsage,
)

logger = logging.getLogger(__name__)

MAX_CACHE_MARKERS = 4
OPENAI_NO_BATCH = "batch execution is not supported for the openai provider"


class InferenceBackend(Protocol):
    async def chat(self, request: ChatRequest) -> ChatResult: ...

    async def create_batch(self, items: list[BatchRequestItem]) -> BatchJob: ...

    async def retrieve_batch(self, batch_id: str) -> BatchJob: ...

    async def fetch_results(self, results_url: str) -> str: ...


def encode_messages(request: ChatRequest) -> dict[str, Any]:
    """Build the Messages API body, marking cache-eligible blocks as ephemeral."""
    markers = 0
    system_blocks: list[dict[str, Any]] = []
    messages: list[dict[str, Any]] = []
    for message in request.messages:
        block: dict[str, Any] = {"type": "text", "text": message.content}
        if message.cache and markers < MAX_CACHE_MARKERS:
            block["cache_control"] = {"type": "ephemeral"}
            markers += 1
        if message.role == "system":
            system_blocks.append(block)
        else:
            messages.append({"role": message.role, "content": [block]})

    body: dict[str, Any] = {
        "model": request.model,
        "max_tokens": request.max_tokens,
        "temperature": request.temperature,
        "messages": messages,
    }
    if system_blocks:
        body["system"] = system_blocks
    return body


def decode_message(payload: dict[str, Any]) -> ChatResult:
    text = "".join(
        block.get("text", "")
        for block in payload.get("content") or []
        if isinstance(block, dict) and block.get("type") == "text"
    )
    usage = payload.get("usage") or {}
    return ChatResult(
        text=text,
        model=str(payload.get("model") or ""),
        usage=TokenUsage(
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
            cache_creation_input_tokens=int(usage.get("cache_creation_input_tokens") or 0),
            cache_read_input_tokens=int(usage.get("cache_read_input_tokens") or 0),
        ),
        stop_reason=payload.get("stop_reason"),
    )


def _batch_status(payload: dict[str, Any]) -> BatchStatus:
    status = str(payload.get("processing_status") or "").lower()
    counts = payload.get("request_counts") or {}
    if status == "ended":
        total = sum(int(counts.get(key) or 0) for key in ("succeeded", "errored", "canceled", "expired"))
        if total and int(counts.get("expired") or 0) == total:
            return "expired"
        return "completed"
    if status in {"failed", "expired", "completed"}:
        return status  # type: ignore[return-value]
    return "in_progress"


def decode_batch(payload: dict[str, Any]) -> BatchJob:
    counts = payload.get("request_counts") or {}
    known = BatchRequestCounts.model_fields
    return BatchJob(
        id=str(payload["id"]),
        status=_batch_status(payload),
        request_counts=BatchRequestCounts(**{k: int(v or 0) for k, v in counts.items() if k in known}),
        results_url=payload.get("results_url"),
        created_at=payload.get("created_at"),
    )


def encode_chat_completion(request: ChatRequest) -> dict[str, Any]:
    """Build a Chat Completions body; cache hints are dropped since OpenAI caches prefixes itself."""
    return {
        "model": request.model,
        "max_tokens": request.max_tokens,
        "temperature": request.temperature,
        "messages": [{"role": message.role, "content": message.content} for message in request.messages],
    }


def decode_chat_completion(payload: dict[str, Any]) -> ChatResult:
    choices = payload.get("choices") or []
    first = choices[0] if choices and isinstance(choices[0], dict) else {}
    message = first.get("message") or {}
    usage = payload.get("usage") or {}
    cached = int((usage.get("prompt_tokens_details") or {}).get("cached_tokens") or 0)
    return ChatResult(
        text=str(message.get("content") or ""),
        model=str(payload.get("model") or ""),
        usage=TokenUsage(
            input_tokens=max(int(usage.get("prompt_tokens") or 0) - cached, 0),
            output_tokens=int(usage.get("completion_tokens") or 0),
            cache_read_input_tokens=cached,
        ),
        stop_reason=first.get("finish_reason"),
    )


class _HttpGateway:
    provider = "http"

    def __init__(self, settings: Settings, base_url: str):
        self._settings = settings
        self._base_url = base_url

    def _headers(self) -> dict[str, str]:
        return {"content-type": "application/json"}

    async def _request(self, method: str, url: str, payload: dict[str, Any] | None = None) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.request_timeout_sec,
                follow_redirects=True,
            ) as client:
                response = await client.request(method, url, json=payload, headers=self._headers())
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.error("provider_http_error provider=%s method=%s status=%s", self.provider, method, status_code)
            raise ProviderError(
                f"{self.provider} backend returned HTTP {status_code}",
                status_code=status_code,
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "provider_transport_error provider=%s method=%s error=%s",
                self.provider,
                method,
                exc.__class__.__name__,
            )
            raise ProviderError(f"{self.provider} backend unreachable: {exc}", code="transport_error") from exc

    def _url(self, path: str) -> str:
        return f"{self._base_url.rstrip('/')}{path}"

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"{self.provider} backend returned invalid JSON", code="invalid_json") from exc
        if not isinstance(payload, dict):
            raise ProviderError(f"{self.provider} backend returned an unexpected payload", code="invalid_json")
        return payload


class AnthropicGateway(_HttpGateway):
    provider = "anthropic"

    def __init__(self, settings: Settings):
        super().__init__(settings, settings.base_url)

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self._settings.api_key or "",
            "anthropic-version": self._settings.api_version,
            "content-type": "application/json",
        }

    async def chat(self, request: ChatRequest) -> ChatResult:
        response = await self._request("POST", self._url("/v1/messages"), encode_messages(request))
        return decode_message(self._json(response))

    async def create_batch(self, items: list[BatchRequestItem]) -> BatchJob:
        body = {
            "requests": [
                {"custom_id": item.custom_id, "params": encode_messages(item.params)}
                for item in items
            ]
        }
        response = await self._request("POST", self._url("/v1/messages/batches"), body)
        return decode_batch(self._json(response))

    async def retrieve_batch(self, batch_id: str) -> BatchJob:
        response = await self._request("GET", self._url(f"/v1/messages/batches/{batch_id}"))
        return decode_batch(self._json(response))

    async def fetch_results(self, results_url: str) -> str:
        response = await self._request("GET", results_url)
        return response.text


class OpenAIGateway(_HttpGateway):
    """Chat Completions backend. Direct calls only; the scheduler is never enabled for it."""

    provider = "openai"

    def __init__(self, settings: Settings):
        super().__init__(settings, settings.openai_base_url)

    def _headers(self) -> dict[str, str]:
        headers = {
            "authorization": f"Bearer {self._settings.openai_api_key or ''}",
            "content-type": "application/json",
        }
        if self._settings.openai_org_id:
            headers["openai-organization"] = self._settings.openai_org_id
        return headers

    async def chat(self, request: ChatRequest) -> ChatResult:
        body = encode_chat_completion(request)
        response = await self._request("POST", self._url("/v1/chat/completions"), body)
        result = decode_chat_completion(self._json(response))
        logger.info(
            "openai_usage model=%s input_tokens=%s output_tokens=%s",
            result.model,
            result.usage.input_tokens,
            result.usage.output_tokens,
        )
        return result

    async def create_batch(self, items: list[BatchRequestItem]) -> BatchJob:
        raise BatchProcessingError(OPENAI_NO_BATCH, code="unsupported")

    async def retrieve_batch(self, batch_id: str) -> BatchJob:
        raise BatchProcessingError(OPENAI_NO_BATCH, code="unsupported")

    async def fetch_results(self, results_url: str) -> str:
        raise BatchProcessingError(OPENAI_NO_BATCH, code="unsupported")
