"""Generation backend client for native (Ollama-style) and OpenAI-compatible APIs."""
from __future__ import annotations

import json
import time
from typing import Any, AsyncIterator

import httpx
from loguru import logger

from freshcontext.config import settings
from freshcontext.exceptions import BackendProtocolError, TransientNetworkError
from freshcontext.models.stream import ChatChunk
from freshcontext.services import logger as log_service

CONNECT_TIMEOUT_SECONDS = 10.0


def _load_json(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise BackendProtocolError(f"Malformed chunk from generation backend: {raw[:120]!r}") from exc
    if not isinstance(parsed, dict):
        raise BackendProtocolError("Generation backend chunk is not a JSON object")
    if parsed.get("error"):
        error = parsed["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise BackendProtocolError(f"Generation backend reported an error: {message}")
    return parsed


def decode_native_line(line: str) -> ChatChunk | None:
    """One newline-delimited JSON chunk of the native streaming API."""
    line = line.strip()
    if not line:
        return None
    parsed = _load_json(line)
    message = parsed.get("message") or {}
    if not isinstance(message, dict):
        message = {}
    reasoning = message.get("thinking") or message.get("reasoning") or parsed.get("reasoning") or ""
    return ChatChunk(
        content=str(message.get("content") or ""),
        reasoning=str(reasoning),
        done=bool(parsed.get("done")),
    )


def decode_openai_line(line: str) -> ChatChunk | None:
    """One ``data:`` line of an OpenAI-compatible event stream."""
    line = line.strip()
    if not line or line.startswith(":") or not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if data == "[DONE]":
        return ChatChunk(done=True)
    parsed = _load_json(data)
    choices = parsed.get("choices") or []
    if not isinstance(choices, list):
        raise BackendProtocolError("Generation backend chunk has a non-list 'choices' field")
    if not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta") or {}
    if not isinstance(delta, dict):
        raise BackendProtocolError("Generation backend chunk has a non-object 'delta' field")
    reasoning = delta.get("reasoning_content") or delta.get("reasoning") or ""
    return ChatChunk(content=str(delta.get("content") or ""), reasoning=str(reasoning))


class GenerationClient:
    """Talks to the generation backend without the caller knowing the wire shape."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_style: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        side_call_timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        openai_client: Any | None = None,
    ):
        self.base_url = (base_url or settings.llm_base_url).rstrip("/")
        self.api_style = (api_style or settings.llm_api_style).lower().strip()
        self.api_key = api_key if api_key is not None else settings.llm_api_key
        self.timeout = float(timeout if timeout is not None else settings.generation_timeout_seconds)
        self.side_call_timeout = float(
            side_call_timeout if side_call_timeout is not None else settings.side_call_timeout_seconds
        )
        self._transport = transport
        self._openai_client = openai_client

    @property
    def uses_openai_api(self) -> bool:
        return self.api_style == "openai"

    @property
    def openai_base_url(self) -> str:
        return self.base_url if self.base_url.endswith("/v1") else f"{self.base_url}/v1"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _http(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=httpx.Timeout(timeout, connect=min(CONNECT_TIMEOUT_SECONDS, timeout)),
        )

    async def stream_chat(self, messages: list[dict[str, str]], model: str) -> AsyncIterator[ChatChunk]:
        """Yield decoded chunks until the backend signals completion.

        Raises ``BackendProtocolError`` on non-2xx responses or malformed chunks;
        transport failures surface as ``httpx.HTTPError``.
        """
        if self.uses_openai_api:
            url = f"{self.openai_base_url}/chat/completions"
            decode = decode_openai_line
        else:
            url = f"{self.base_url}/api/chat"
            decode = decode_native_line
        payload = {"model": model, "messages": messages, "stream": True}

        async with self._http(self.timeout) as client:
            async with client.stream("POST", url, json=payload, headers=self._headers()) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise BackendProtocolError(
                        f"Generation backend error: HTTP {response.status_code} {body[:200]}".strip(),
                        status_code=response.status_code,
                    )
                async for line in response.aiter_lines():
                    chunk = decode(line)
                    if chunk is None:
                        continue
                    yield chunk
                    if chunk.done:
                        return

    async def complete(
        self,
        messages: list[dict[str, str]],
        model: str,
        *,
        caller: str = "side_call",
        timeout: float | None = None,
    ) -> str:
        """Non-streaming completion used for structured side-calls."""
        budget = float(timeout if timeout is not None else self.side_call_timeout)
        started = time.monotonic()
        try:
            if self.uses_openai_api:
                text = await self._complete_openai(messages, model, budget)
            else:
                text = await self._complete_native(messages, model, budget)
        except (BackendProtocolError, TransientNetworkError) as exc:
            log_service.log_llm_call(
                model=model,
                caller=caller,
                duration_ms=int((time.monotonic() - started) * 1000),
                status="failed",
                error=str(exc),
            )
            raise
        log_service.log_llm_call(
            model=model,
            caller=caller,
            approx_tokens=len(text.split()),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return text

    async def _complete_native(self, messages: list[dict[str, str]], model: str, timeout: float) -> str:
        payload = {"model": model, "messages": messages, "stream": False}
        try:
            async with self._http(timeout) as client:
                response = await client.post(f"{self.base_url}/api/chat", json=payload, headers=self._headers())
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"Generation backend unreachable: {exc!r}") from exc
        if response.status_code >= 400:
            raise BackendProtocolError(
                f"Generation backend error: HTTP {response.status_code}",
                status_code=response.status_code,
            )
        parsed = _load_json(response.text)
        message = parsed.get("message") or {}
        return str(message.get("content") or "").strip() if isinstance(message, dict) else ""

    def _get_openai(self, timeout: float) -> Any:
        if self._openai_client is not None:
            return self._openai_client
        from openai import AsyncOpenAI

        return AsyncOpenAI(
            api_key=self.api_key or "not-needed",
            base_url=self.openai_base_url,
            timeout=timeout,
        )

    async def _complete_openai(self, messages: list[dict[str, str]], model: str, timeout: float) -> str:
        import openai

        client = self._get_openai(timeout)
        try:
            response = await client.chat.completions.create(model=model, messages=messages, stream=False)
        except openai.APIStatusError as exc:
            raise BackendProtocolError(
                f"Generation backend error: HTTP {exc.status_code}", status_code=exc.status_code
            ) from exc
        except (openai.APIConnectionError, openai.APITimeoutError) as exc:
            raise TransientNetworkError(f"Generation backend unreachable: {exc!r}") from exc
        choices = getattr(response, "choices", None) or []
        if not choices:
            raise BackendProtocolError("Generation backend returned no choices")
        return str(getattr(choices[0].message, "content", "") or "").strip()

    async def list_models(self) -> list[str]:
        """Model names offered by the backend; empty when it cannot be reached."""
        try:
            if self.uses_openai_api:
                page = await self._get_openai(self.side_call_timeout).models.list()
                return [m.id for m in getattr(page, "data", [])]
            async with self._http(self.side_call_timeout) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                response.raise_for_status()
                data = response.json()
        except Exception as exc:
            logger.error(f"Error fetching models: {exc!r}")
            return []
        models = data.get("models") if isinstance(data, dict) else None
        return [m["name"] for m in models or [] if isinstance(m, dict) and m.get("name")]


def get_model() -> str:
    """Get the configured default model id."""
    return settings.default_model


_client: GenerationClient | None = None


def client() -> GenerationClient:
    """Get or create the shared generation client."""
    global _client
    if _client is None:
        _client = GenerationClient()
    return _client
