"""Configuration loading and defaults."""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml

DEFAULT_SETTINGS: Dict[str, Any] = {
    "paths": {
        "prompts_dir": "prompts",
    },
    "provider": {
        "kind": "mock",
        "model": None,
        "base_url": None,
        "api_key_env": None,
        "max_retries": 3,
        "timeout_seconds": 60,
    },
    "llm": {
        "temperature": 0.7,
        "max_tokens": None,
        "repair_attempts": 1,
    },
    "limiter": {
        "max_concurrent": 5,
    },
    "logging": {
        "level": "INFO",
    },
    "documents": {
        "weekly-plan": {
            "multi_line_fields": ["集体活动", "学习区", "运动区", "公共区域", "班级区域", "过渡环节"],
        },
    },
}


def overlay(defaults: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy of ``defaults`` with ``overrides`` laid over it, section by section."""
    result = deepcopy(defaults)
    for key, value in overrides.items():
        current = result.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            result[key] = overlay(current, value)
        else:
            result[key] = deepcopy(value)
    return result


def _check_documents(documents: Any, source: str) -> None:
    if not isinstance(documents, Mapping):
        raise ValueError(f"'documents' must be a mapping of template names: {source}")
    for name, doc_cfg in documents.items():
        if doc_cfg is None:
            continue
        if not isinstance(doc_cfg, Mapping):
            raise ValueError(f"documents.{name} must be a mapping: {source}")
        fields = doc_cfg.get("multi_line_fields") or []
        if not isinstance(fields, list) or not all(isinstance(f, str) for f in fields):
            raise ValueError(f"documents.{name}.multi_line_fields must be a list of field names: {source}")


def load_settings(settings_path: str | Path = "config/settings.yaml") -> Dict[str, Any]:
    """
    Settings for one pipeline: ``DEFAULT_SETTINGS`` overlaid with the YAML file.

    A missing file yields the defaults. A file that is not a mapping, or whose
    ``documents`` section is malformed, raises ``ValueError``.
    """
    path = Path(settings_path)
    overrides: Any = {}
    if path.exists():
        overrides = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        if not isinstance(overrides, Mapping):
            raise ValueError(f"Settings file must contain a mapping: {settings_path}")

    settings = overlay(DEFAULT_SETTINGS, overrides)
    _check_documents(settings.get("documents") or {}, str(settings_path))
    return settings


def multi_line_fields_for(config: Mapping[str, Any], template_name: str) -> List[str]:
    doc_cfg = (config.get("documents") or {}).get(template_name) or {}
    return list(doc_cfg.get("multi_line_fields") or [])
