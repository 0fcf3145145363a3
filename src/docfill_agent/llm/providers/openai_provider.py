"""OpenAI Chat Completions provider without retry or backoff.

Used where the caller already owns resilience, or against gateways whose
retry semantics differ from ours. The SDK's own retries are switched off.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, AsyncIterator, Dict, Iterator, Optional, Sequence

import httpx
import openai

from ..types import (
    GenerationConfig,
    Message,
    ProviderError,
    ProviderHTTPError,
    ProviderTimeout,
    ProviderTransportError,
)


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except openai.APITimeoutError as exc:
        raise ProviderTimeout(str(exc)) from exc
    except openai.APIConnectionError as exc:
        raise ProviderTransportError(str(exc)) from exc
    except openai.APIStatusError as exc:
        raise ProviderHTTPError(exc.status_code, exc.response.text) from exc
    except openai.OpenAIError as exc:
        raise ProviderError(str(exc)) from exc


class OpenAIProvider:
    name = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-4.1-mini",
        base_url: str | None = None,
        timeout_seconds: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.model = model
        self._client = None
        if api_key:
            self._client = openai.AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                timeout=timeout_seconds,
                max_retries=0,
                http_client=http_client,
            )

    def _request(
        self, messages: Sequence[Message], config: Optional[GenerationConfig], stream: bool
    ) -> Dict[str, Any]:
        if self._client is None:
            raise ProviderError("OpenAI API key missing")
        config = config or GenerationConfig()
        request: Dict[str, Any] = {
            "model": config.model or self.model,
            "messages": [m.as_dict() for m in messages],
            "temperature": config.temperature,
            "stream": stream,
        }
        if config.max_tokens:
            request["max_tokens"] = config.max_tokens
        return request

    async def invoke(
        self, messages: Sequence[Message], config: Optional[GenerationConfig] = None
    ) -> str:
        request = self._request(messages, config, stream=False)
        with _translate_errors():
            response = await self._client.chat.completions.create(**request)
        if not response.choices:
            return ""
        return (response.choices[0].message.content or "").strip()

    async def stream(
        self, messages: Sequence[Message], config: Optional[GenerationConfig] = None
    ) -> AsyncIterator[str]:
        request = self._request(messages, config, stream=True)
        with _translate_errors():
            chunks = await self._client.chat.completions.create(**request)
            async for chunk in chunks:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.close()
