"""Provider selection by configuration."""

from __future__ import annotations

import os
from typing import Any, Callable, Dict

from .providers.base import LLMProvider
from .providers.mock_provider import MockProvider
from .providers.openai_provider import OpenAIProvider
from .providers.resilient_provider import ResilientHTTPProvider


def _api_key(provider_cfg: Dict[str, Any]) -> str | None:
    env_name = provider_cfg.get("api_key_env")
    return os.getenv(env_name) if env_name else None


def _build_mock(provider_cfg: Dict[str, Any]) -> LLMProvider:
    mock_cfg = provider_cfg.get("mock", {}) or {}
    return MockProvider(
        response=mock_cfg.get("response"),
        stream_response=mock_cfg.get("stream_response"),
        stream_delay=mock_cfg.get("stream_delay"),
        invoke_delay=mock_cfg.get("invoke_delay"),
        enable_stream=bool(mock_cfg.get("enable_stream", True)),
    )


def _build_resilient(provider_cfg: Dict[str, Any]) -> LLMProvider:
    kwargs: Dict[str, Any] = {
        "api_key": _api_key(provider_cfg),
        "max_retries": int(provider_cfg.get("max_retries", 3)),
        "timeout_seconds": float(provider_cfg.get("timeout_seconds", 60)),
    }
    if provider_cfg.get("model"):
        kwargs["model"] = provider_cfg["model"]
    if provider_cfg.get("base_url"):
        kwargs["base_url"] = provider_cfg["base_url"]
    return ResilientHTTPProvider(**kwargs)


def _build_openai(provider_cfg: Dict[str, Any]) -> LLMProvider:
    kwargs: Dict[str, Any] = {
        "api_key": _api_key(provider_cfg),
        "base_url": provider_cfg.get("base_url"),
        "timeout_seconds": float(provider_cfg.get("timeout_seconds", 60)),
    }
    if provider_cfg.get("model"):
        kwargs["model"] = provider_cfg["model"]
    return OpenAIProvider(**kwargs)


PROVIDER_KINDS: Dict[str, Callable[[Dict[str, Any]], LLMProvider]] = {
    "mock": _build_mock,
    "resilient": _build_resilient,
    "openai": _build_openai,
}


def create_provider(config: Dict[str, Any]) -> LLMProvider:
    """Builds the provider variant named by ``provider.kind``."""
    provider_cfg = config.get("provider", {}) or {}
    kind = str(provider_cfg.get("kind", "mock")).strip().lower()
    builder = PROVIDER_KINDS.get(kind)
    if builder is None:
        known = ", ".join(sorted(PROVIDER_KINDS))
        raise ValueError(f"Unknown provider kind '{kind}' (expected one of: {known})")
    return builder(provider_cfg)
