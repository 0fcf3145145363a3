"""OpenAI-compatible chat completions over httpx, with timeout, retry and backoff."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Sequence, Tuple

import httpx

from ..types import (
    GenerationConfig,
    Message,
    ProviderError,
    ProviderExhaustedRetries,
    ProviderHTTPError,
    ProviderTimeout,
    ProviderTransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.siliconflow.cn/v1"
DEFAULT_MODEL = "deepseek-ai/DeepSeek-V2.5"
BACKOFF_BASE_MS = 1000
BACKOFF_CAP_MS = 10000
DONE_SENTINEL = "[DONE]"


def backoff_delay(attempt: int) -> float:
    """Seconds to wait after failed ``attempt`` (1-based) before the next one."""
    return min(BACKOFF_BASE_MS * 2 ** (attempt - 1), BACKOFF_CAP_MS) / 1000.0


def _message_content(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message") or {}
    return str(message.get("content") or "")


def _delta_content(payload: str) -> Optional[str]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug(f"Skipping malformed stream line: {payload[:100]}")
        return None
    if not isinstance(data, dict):
        return None
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return str(content) if content else None


def _parse_event_line(line: str) -> Tuple[bool, Optional[str]]:
    """Returns ``(done, fragment)`` for one line of the event feed."""
    line = line.strip()
    if not line.startswith("data:"):
        return False, None
    payload = line[len("data:"):].strip()
    if payload == DONE_SENTINEL:
        return True, None
    return False, _delta_content(payload)


class ResilientHTTPProvider:
    """
    Chat completions client for OpenAI-compatible gateways.

    Every network attempt is bounded by ``timeout_seconds`` and cancelled when
    it runs over. Timeouts and transport failures are retried up to
    ``max_retries`` attempts with capped exponential backoff; HTTP error
    statuses fail at once with the status and body attached.
    """

    name = "resilient-http"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        max_retries: int = 3,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self._owns_client = client is None
        # asyncio.wait_for owns the deadline, so httpx gets no timeout of its own.
        self._client = client or httpx.AsyncClient(transport=transport, timeout=None)

    async def __aenter__(self) -> "ResilientHTTPProvider":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _payload(
        self, messages: Sequence[Message], config: Optional[GenerationConfig], stream: bool
    ) -> Dict[str, Any]:
        config = config or GenerationConfig()
        payload: Dict[str, Any] = {
            "model": config.model or self.model,
            "messages": [m.as_dict() for m in messages],
            "temperature": config.temperature,
            "stream": stream,
        }
        if config.max_tokens:
            payload["max_tokens"] = config.max_tokens
        return payload

    async def _send_with_retry(self, payload: Dict[str, Any], stream: bool) -> httpx.Response:
        last_error: ProviderError | None = None
        for attempt in range(1, self.max_retries + 1):
            request = self._client.build_request(
                "POST", self.endpoint, json=payload, headers=self._headers()
            )
            try:
                return await asyncio.wait_for(
                    self._client.send(request, stream=stream),
                    timeout=self.timeout_seconds,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException):
                last_error = ProviderTimeout(f"No response within {self.timeout_seconds}s")
            except httpx.TransportError as exc:
                last_error = ProviderTransportError(str(exc) or exc.__class__.__name__)

            logger.warning(
                f"{self.name} request failed (attempt {attempt}/{self.max_retries}): {last_error}"
            )
            if attempt < self.max_retries:
                delay = backoff_delay(attempt)
                logger.info(f"Retrying {self.name} request in {delay:.1f}s")
                await self._sleep(delay)

        raise ProviderExhaustedRetries(self.max_retries, last_error) from last_error

    @staticmethod
    async def _raise_for_status(response: httpx.Response) -> None:
        if response.is_success:
            return
        await response.aread()
        body = response.text
        await response.aclose()
        raise ProviderHTTPError(response.status_code, body)

    async def invoke(
        self, messages: Sequence[Message], config: Optional[GenerationConfig] = None
    ) -> str:
        response = await self._send_with_retry(self._payload(messages, config, stream=False), stream=False)
        await self._raise_for_status(response)
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(f"Invalid JSON in {self.name} response: {exc}") from exc
        return _message_content(data).strip()

    async def stream(
        self, messages: Sequence[Message], config: Optional[GenerationConfig] = None
    ) -> AsyncIterator[str]:
        response = await self._send_with_retry(self._payload(messages, config, stream=True), stream=True)
        try:
            await self._raise_for_status(response)
            buffer = ""
            async for chunk in response.aiter_text():
                buffer += chunk
                *lines, buffer = buffer.split("\n")
                for line in lines:
                    done, fragment = _parse_event_line(line)
                    if done:
                        return
                    if fragment:
                        yield fragment

            # body ended without a trailing newline
            done, fragment = _parse_event_line(buffer)
            if fragment and not done:
                yield fragment
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"Stream stalled: {exc}") from exc
        except httpx.TransportError as exc:
            raise ProviderTransportError(f"Stream interrupted: {exc}") from exc
        finally:
            await response.aclose()
