"""Prompt template store: YAML loading, caching and rendering.

Templates use two constructs:

* ``{{name}}`` substitutes a variable (``None`` and unknown names render empty).
* ``{% if cond %}...{% else %}...{% endif %}`` keeps one branch. ``cond`` is a
  bare variable name (truthy test) or ``name == literal`` / ``name != literal``
  where literal is a quoted string, ``true``, ``false`` or ``null``.

Conditionals are resolved innermost first and re-applied until the text stops
changing, so blocks may nest.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .llm.types import Message

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[\w.-]+$")
_VARIABLE_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_MARKER_RE = re.compile(r"\{\{[^{}]*\}\}")
_BODY = r"(?:(?!\{%\s*if\b)[\s\S])*?"
_CONDITIONAL_RE = re.compile(
    r"\{%\s*if\s+(?P<cond>[^%]+?)\s*%\}"
    rf"(?P<then>{_BODY})"
    rf"(?:\{{%\s*else\s*%\}}(?P<otherwise>{_BODY}))?"
    r"\{%\s*endif\s*%\}"
)
_COMPARISON_RE = re.compile(r"^(\w+)\s*(==|!=)\s*(.+)$")


class TemplateError(Exception):
    """Base class for template load failures."""


class TemplateNotFound(TemplateError):
    pass


class TemplateMalformed(TemplateError):
    pass


@dataclass(frozen=True)
class TemplateVariable:
    name: str
    description: str = ""
    required: bool = False


@dataclass(frozen=True)
class Template:
    name: str
    system_prompt: str
    user_template: str
    fields: Optional[Tuple[str, ...]] = None
    variables: Tuple[TemplateVariable, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class RenderedPrompt:
    system_prompt: str
    user_prompt: str
    fields: Optional[Tuple[str, ...]] = None

    def to_messages(self) -> List[Message]:
        messages = []
        if self.system_prompt.strip():
            messages.append(Message(role="system", content=self.system_prompt))
        messages.append(Message(role="user", content=self.user_prompt))
        return messages


def stringify_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def is_truthy(value: Any) -> bool:
    if value is None or value == "false":
        return False
    return bool(value)


def _parse_literal(raw: str) -> Any:
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in ("'", '"'):
        return raw[1:-1]
    if raw == "true":
        return True
    if raw == "false":
        return False
    if raw == "null":
        return None
    return raw


def evaluate_condition(condition: str, variables: Mapping[str, Any]) -> bool:
    condition = condition.strip()
    comparison = _COMPARISON_RE.match(condition)
    if not comparison:
        return is_truthy(variables.get(condition))

    name, operator, raw = comparison.groups()
    expected = _parse_literal(raw.strip())
    actual = variables.get(name)
    if isinstance(expected, bool):
        equal = is_truthy(actual) == expected
    else:
        equal = stringify_value(actual) == stringify_value(expected)
    return equal if operator == "==" else not equal


def substitute_variables(text: str, variables: Mapping[str, Any]) -> str:
    def _replace(match: re.Match) -> str:
        key = match.group(1)
        if key not in variables:
            return match.group(0)
        return stringify_value(variables[key])

    return _VARIABLE_RE.sub(_replace, text)


def resolve_conditionals(text: str, variables: Mapping[str, Any]) -> str:
    def _replace(match: re.Match) -> str:
        if evaluate_condition(match.group("cond"), variables):
            return match.group("then")
        return match.group("otherwise") or ""

    previous = None
    while previous != text:
        previous = text
        text = _CONDITIONAL_RE.sub(_replace, text)
    return text


def strip_markers(text: str) -> str:
    previous = None
    while previous != text:
        previous = text
        text = _MARKER_RE.sub("", text)
    return text


def render(text: str, variables: Mapping[str, Any] | None = None) -> str:
    variables = variables or {}
    text = substitute_variables(text, variables)
    text = resolve_conditionals(text, variables)
    return strip_markers(text)


def _parse_template(name: str, raw: Any) -> Template:
    if not isinstance(raw, Mapping):
        raise TemplateMalformed(f"Template '{name}' must be a mapping")

    system_prompt = raw.get("system_prompt", raw.get("systemPrompt"))
    user_template = raw.get("user_template", raw.get("userTemplate"))
    if not isinstance(system_prompt, str) or not system_prompt.strip():
        raise TemplateMalformed(f"Template '{name}' is missing system_prompt")
    if not isinstance(user_template, str) or not user_template.strip():
        raise TemplateMalformed(f"Template '{name}' is missing user_template")

    fields = raw.get("fields")
    if fields is not None:
        if not isinstance(fields, list) or not all(isinstance(f, str) for f in fields):
            raise TemplateMalformed(f"Template '{name}' fields must be a list of strings")
        fields = tuple(fields)

    variables = []
    for item in raw.get("variables") or []:
        if isinstance(item, Mapping) and item.get("name"):
            variables.append(
                TemplateVariable(
                    name=str(item["name"]),
                    description=str(item.get("description", "")),
                    required=bool(item.get("required", False)),
                )
            )

    return Template(
        name=name,
        system_prompt=system_prompt,
        user_template=user_template,
        fields=fields,
        variables=tuple(variables),
    )


class TemplateStore:
    """Loads named templates from ``<prompts_dir>/<name>.yaml`` and caches them."""

    def __init__(
        self,
        prompts_dir: str | Path = "prompts",
        builtin: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> None:
        self.prompts_dir = Path(prompts_dir)
        self._builtin = dict(builtin or {})
        self._cache: Dict[str, Template] = {}

    def _read_source(self, name: str) -> Any:
        path = self.prompts_dir / f"{name}.yaml"
        if path.exists():
            try:
                with path.open("r", encoding="utf-8") as f:
                    return yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise TemplateMalformed(f"Template '{name}' is not valid YAML: {exc}") from exc
        if name in self._builtin:
            return self._builtin[name]
        raise TemplateNotFound(f"Template not found: {path}")

    def load(self, name: str) -> Template:
        cached = self._cache.get(name)
        if cached is not None:
            return cached
        if not _NAME_RE.match(name):
            raise TemplateNotFound(f"Invalid template name: {name!r}")

        template = _parse_template(name, self._read_source(name))
        self._cache[name] = template
        logger.debug(f"Loaded template '{name}'")
        return template

    def render(self, text: str, variables: Mapping[str, Any] | None = None) -> str:
        return render(text, variables)

    def get(self, name: str, variables: Mapping[str, Any] | None = None) -> RenderedPrompt:
        template = self.load(name)
        return RenderedPrompt(
            system_prompt=render(template.system_prompt, variables),
            user_prompt=render(template.user_template, variables),
            fields=template.fields,
        )

    def clear_cache(self) -> None:
        self._cache.clear()

    def list_loaded(self) -> List[str]:
        return list(self._cache)

    def list_available(self) -> List[str]:
        names = set(self._builtin)
        if self.prompts_dir.is_dir():
            names.update(path.stem for path in self.prompts_dir.glob("*.yaml"))
        return sorted(names)
