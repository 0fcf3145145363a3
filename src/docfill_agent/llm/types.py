"""Shared LLM data structures and the provider error taxonomy."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

ROLES = ("system", "user", "assistant")


@dataclass
class Message:
    role: str
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Invalid message role: {self.role}")

    def as_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class GenerationConfig:
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: Optional[int] = None


class ProviderError(RuntimeError):
    """Provider failed to return a valid generation."""


class ProviderTimeout(ProviderError):
    """A single network attempt ran past its timeout and was cancelled."""


class ProviderTransportError(ProviderError):
    """Connection-level failure (DNS, refused, reset, broken stream)."""


class ProviderHTTPError(ProviderError):
    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"HTTP {status}: {body}")
        self.status = status
        self.body = body


class ProviderExhaustedRetries(ProviderError):
    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(f"Request failed after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error
