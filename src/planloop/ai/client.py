"""Async model client for OpenAI-compatible endpoints (Ollama by default)."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping

import httpx
from openai import (
    APIConnectionError,
    APIError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import BackendUnavailable
from .orchestration.types import ModelBackend, ModelInput, ModelOutput, ParsedToolCall
from .tokens import ApproxByteCounter, estimate_tokens

__all__ = [
    "AIClient",
    "ApproxByteCounter",
    "ClientSettings",
    "ModelBackend",
    "classify_backend_error",
    "estimate_tokens",
]

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIConnectionError,
    RateLimitError,
    InternalServerError,
    httpx.TimeoutException,
    httpx.TransportError,
)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str = "http://localhost:11434/v1"
    api_key: str = "ollama"
    model: str = "deepseek-coder-v2:16b"
    request_timeout: float | None = 60.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    temperature: float | None = 0.2
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


def classify_backend_error(exc: BaseException, *, base_url: str = "") -> BackendUnavailable:
    """Map a transport or SDK failure onto :class:`BackendUnavailable`."""

    if isinstance(exc, BackendUnavailable):
        return exc
    if isinstance(exc, (APITimeoutError, httpx.TimeoutException, asyncio.TimeoutError)):
        return BackendUnavailable("Model request timed out", kind="timeout")
    if isinstance(exc, (APIConnectionError, httpx.TransportError)):
        target = f" at {base_url}" if base_url else ""
        return BackendUnavailable(f"Cannot connect to the model server{target}. Is Ollama running?", kind="unreachable")
    if isinstance(exc, APIStatusError):
        return BackendUnavailable(
            f"Model server returned HTTP {exc.status_code}: {exc.message}",
            kind="http",
            status_code=exc.status_code,
        )
    return BackendUnavailable(f"Model request failed: {exc}", kind="unknown")


class AIClient:
    """Non-streaming chat client with retry semantics.

    Transient failures (connection errors, timeouts, 429 and 5xx) are retried
    with exponential backoff; whatever is left is raised as
    :class:`BackendUnavailable`.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def complete(self, model_input: ModelInput) -> ModelOutput:
        """Send ``model_input`` and return the normalized response.

        Raises:
            BackendUnavailable: when the request fails after retries.
        """

        payload = self._build_chat_payload(model_input)
        LOGGER.debug(
            "Chat completion via %s with %s message(s) (phase=%s, %s chars)",
            self._settings.model,
            len(payload["messages"]),
            model_input.phase or "-",
            model_input.size,
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.chat.completions.create(**payload)
        except (APIError, httpx.HTTPError, asyncio.TimeoutError) as exc:
            error = classify_backend_error(exc, base_url=self._settings.base_url)
            LOGGER.error("Model backend unavailable (%s): %s", error.kind, error.message)
            raise error from exc
        return self._normalize_response(response)

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return a list of model identifiers served by the endpoint."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)
            try:
                response = await self._client.models.list()
            except (APIError, httpx.HTTPError) as exc:
                raise classify_backend_error(exc, base_url=self._settings.base_url) from exc
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
        )

    def _build_chat_payload(self, model_input: ModelInput) -> Dict[str, Any]:
        if not model_input.messages:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": model_input.to_chat_params(),
        }
        if model_input.tools:
            payload["tools"] = [dict(tool) for tool in model_input.tools]
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        return payload

    def _normalize_response(self, response: Any) -> ModelOutput:
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ModelOutput(text="", model=getattr(response, "model", None))
        choice = choices[0]
        message = getattr(choice, "message", None)
        text = getattr(message, "content", None) or ""
        calls: list[ParsedToolCall] = []
        for index, raw in enumerate(getattr(message, "tool_calls", None) or []):
            function = getattr(raw, "function", None)
            name = getattr(function, "name", None)
            if not name:
                continue
            calls.append(
                ParsedToolCall(
                    call_id=getattr(raw, "id", None) or f"call_{index}",
                    name=name,
                    arguments=getattr(function, "arguments", None) or "{}",
                    index=index,
                )
            )
        usage = getattr(response, "usage", None)
        return ModelOutput(
            text=text,
            tool_calls=tuple(calls),
            finish_reason=getattr(choice, "finish_reason", None),
            prompt_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            completion_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
            model=getattr(response, "model", None),
        )

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result
