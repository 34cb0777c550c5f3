"""Streaming chat-completions client utilities."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator, Iterable, Sequence

import httpx
from fastapi import status

from .config import Settings

logger = logging.getLogger(__name__)


class LLMError(Exception):
    """Wrap transport or API failures when communicating with the model API."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail


class ChatCompletionClient:
    """Client responsible for streaming chat completions token by token."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(self, settings: Settings):
        self._settings = settings
        if not settings.openai_api_key:
            logger.warning("OPENAI_API_KEY is not set. Reply generation is unavailable.")

    def _client_key(self) -> tuple[str, float]:
        return (self._base_url, float(self._settings.request_timeout))

    async def _get_http_client(self) -> httpx.AsyncClient:
        key = self._client_key()
        pool = self.__class__._client_pool
        if key in pool:
            return pool[key]

        async with self.__class__._client_lock:
            if key not in pool:
                pool[key] = httpx.AsyncClient(
                    timeout=httpx.Timeout(self._settings.request_timeout, connect=10.0),
                    limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                    http2=True,
                )
        return pool[key]

    @property
    def _base_url(self) -> str:
        return str(self._settings.llm_base_url).rstrip("/")

    def build_payload(self, messages: Sequence[dict[str, Any]]) -> dict[str, Any]:
        return {
            "model": self._settings.llm_model,
            "messages": list(messages),
            "stream": True,
            "max_tokens": self._settings.llm_max_tokens,
            "temperature": self._settings.llm_temperature,
        }

    async def stream_tokens(
        self, messages: Sequence[dict[str, Any]]
    ) -> AsyncGenerator[str, None]:
        """Yield content deltas of a streamed completion as they arrive.

        Raises:
            LLMError: when the model API is unconfigured, unreachable, answers
                with an error status or reports an error mid-stream.
        """

        api_key = self._settings.openai_api_key
        if not api_key:
            raise LLMError(status.HTTP_503_SERVICE_UNAVAILABLE, "Language model is not configured")

        headers = {
            "Authorization": f"Bearer {api_key.get_secret_value()}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        client = await self._get_http_client()
        try:
            async with client.stream(
                "POST",
                f"{self._base_url}/chat/completions",
                headers=headers,
                json=self.build_payload(messages),
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise LLMError(response.status_code, self._extract_error_detail(body))

                async for data in self._iter_event_data(response):
                    if data == "[DONE]":
                        return
                    token = self._extract_delta(data)
                    if token:
                        yield token
        except httpx.HTTPError as exc:
            raise LLMError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

    async def aclose(self) -> None:
        await self.__class__.aclose_shared()

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception as exc:  # pragma: no cover - best effort cleanup
                logger.debug(f"Error closing HTTP client: {exc}")

    async def _iter_event_data(self, response: httpx.Response) -> AsyncGenerator[str, None]:
        """Yield the ``data`` payload of each server-sent event."""

        block: list[str] = []
        async for line in response.aiter_lines():
            if line:
                if not line.startswith(":"):
                    block.append(line)
                continue
            if block:
                yield self._event_data(block)
                block = []
        if block:
            yield self._event_data(block)

    @staticmethod
    def _event_data(lines: Iterable[str]) -> str:
        values = []
        for line in lines:
            field, _, value = line.partition(":")
            if field == "data":
                values.append(value.lstrip(" "))
        return "\n".join(values)

    @staticmethod
    def _extract_delta(data: str) -> str:
        if not data:
            return ""
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON stream event")
            return ""
        if isinstance(chunk, dict) and chunk.get("error"):
            raise LLMError(status.HTTP_502_BAD_GATEWAY, chunk["error"])
        try:
            content = chunk["choices"][0]["delta"].get("content")
        except (KeyError, IndexError, TypeError, AttributeError):
            return ""
        return content if isinstance(content, str) else ""

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "Model API returned an empty error response."
        text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload


__all__ = ["ChatCompletionClient", "LLMError"]
