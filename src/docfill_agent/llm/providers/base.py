"""LLM provider interface."""

from __future__ import annotations

from typing import AsyncIterator, Optional, Protocol, Sequence

from ..types import GenerationConfig, Message


class LLMProvider(Protocol):
    name: str
    model: str

    async def invoke(
        self, messages: Sequence[Message], config: Optional[GenerationConfig] = None
    ) -> str:
        ...

    def stream(
        self, messages: Sequence[Message], config: Optional[GenerationConfig] = None
    ) -> AsyncIterator[str]:
        ...
