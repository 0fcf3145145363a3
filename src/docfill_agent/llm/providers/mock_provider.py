"""Deterministic provider for tests and offline runs."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from ..types import GenerationConfig, Message

DEFAULTS: Dict[str, Any] = {
    "response": "This is a mock response.",
    "stream_response": "This is a mock stream response.",
    "stream_delay": 0.01,
    "invoke_delay": 0.1,
    "enable_stream": True,
}


class MockProvider:
    name = "mock"

    def __init__(
        self,
        response: Optional[str] = None,
        stream_response: Optional[str] = None,
        stream_delay: Optional[float] = None,
        invoke_delay: Optional[float] = None,
        enable_stream: bool = True,
        model: str = "mock-model",
    ) -> None:
        self.model = model
        self.calls: List[List[Message]] = []
        self.reset()
        self.configure(
            response=response,
            stream_response=stream_response,
            stream_delay=stream_delay,
            invoke_delay=invoke_delay,
            enable_stream=enable_stream,
        )

    def configure(self, **options: Any) -> None:
        """Overrides settings in place; ``None`` values leave a setting unchanged."""
        for key, value in options.items():
            if key not in DEFAULTS:
                raise TypeError(f"Unknown mock option: {key}")
            if value is not None:
                setattr(self, key, value)

    def set_response(self, response: str) -> None:
        self.response = response

    def set_stream_response(self, response: str) -> None:
        self.stream_response = response

    def reset(self) -> None:
        for key, value in DEFAULTS.items():
            setattr(self, key, value)

    async def invoke(
        self, messages: Sequence[Message], config: Optional[GenerationConfig] = None
    ) -> str:
        self.calls.append(list(messages))
        if self.invoke_delay:
            await asyncio.sleep(self.invoke_delay)
        return self.response

    async def stream(
        self, messages: Sequence[Message], config: Optional[GenerationConfig] = None
    ) -> AsyncIterator[str]:
        self.calls.append(list(messages))
        if not self.enable_stream:
            return
        for char in self.stream_response:
            if self.stream_delay:
                await asyncio.sleep(self.stream_delay)
            yield char
