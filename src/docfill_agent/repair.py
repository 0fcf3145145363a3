"""JSON extraction and repair for LLM output.

LLM replies wrap JSON in markdown fences, add prose around it, leave trailing
commas and swap ASCII quotes for typographic ones. ``repair_and_parse`` undoes
the common cases and parses; it either returns parsed data or raises
``RepairExhausted``, never partial data.
"""

from __future__ import annotations

import json
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping

_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_DOUBLED_QUOTES_RE = re.compile(r'""([^"]*)""')
_CORNER_BRACKETS_RE = re.compile(r"「([^」]*)」")
_NEWLINE_RE = re.compile(r"\\r\\n|\\n|\\r|\r\n|\r")
_ENTRY_START_RE = re.compile(r"(?<!\d)(?=\d{1,2}[.、])")
_WHITESPACE_RE = re.compile(r"\s+")


class RepairExhausted(ValueError):
    def __init__(self, last_error: Exception | None, cleaned_text: str) -> None:
        super().__init__(f"Could not parse JSON: {last_error}\n\nCleaned content:\n{cleaned_text}")
        self.last_error = last_error
        self.cleaned_text = cleaned_text


def extract_structured_text(text: str) -> str:
    """Fenced block first, then the outermost ``{...}`` span, then the whole text."""
    fenced = _FENCED_RE.search(text)
    if fenced:
        extracted = fenced.group(1).strip()
        if extracted.startswith(("{", "[")):
            return extracted

    obj = _OBJECT_RE.search(text)
    if obj:
        return obj.group(0).strip()

    return text.strip()


def basic_clean(text: str) -> str:
    cleaned = _CONTROL_CHARS_RE.sub("", text)
    return _TRAILING_COMMA_RE.sub(r"\1", cleaned)


def normalize_quotes(text: str) -> str:
    # Lossy: quotation marks inside string values get rewritten too.
    fixed = _DOUBLED_QUOTES_RE.sub(r'"\1"', text)
    fixed = _CORNER_BRACKETS_RE.sub(r'"\1"', fixed)
    fixed = fixed.replace("“", '"').replace("”", '"')
    return fixed.replace("‘", "'").replace("’", "'")


def _parse(text: str) -> Any:
    return json.loads(text, strict=False)


_STRATEGIES: List[Callable[[str], Any]] = [
    _parse,
    lambda text: _parse(normalize_quotes(text)),
]


def repair_and_parse(text: str) -> Any:
    cleaned = basic_clean(extract_structured_text(text or ""))

    last_error: Exception | None = None
    for strategy in _STRATEGIES:
        try:
            return strategy(cleaned)
        except json.JSONDecodeError as exc:
            last_error = exc
    raise RepairExhausted(last_error, cleaned)


def normalize_newlines(text: str) -> str:
    """Collapses escaped and literal CRLF/CR/LF forms to a single ``\\n``."""
    return _NEWLINE_RE.sub("\n", text)


def apply_to_every_string_field(value: Any) -> Any:
    if isinstance(value, str):
        return normalize_newlines(value)
    if isinstance(value, list):
        return [apply_to_every_string_field(item) for item in value]
    if isinstance(value, dict):
        return {key: apply_to_every_string_field(item) for key, item in value.items()}
    return value


def clean_multi_line_field(text: str) -> str:
    """
    Puts each numbered entry of a field on its own line.

    Text that already has line breaks is split on them; otherwise a break is
    inferred before every ``1.``-style or ``1、``-style numeral.
    """
    if "\n" in text:
        parts = text.split("\n")
    else:
        parts = _ENTRY_START_RE.split(text)

    lines = [_WHITESPACE_RE.sub(" ", part).strip() for part in parts]
    return "\n".join(line for line in lines if line)


def clean_multi_line_fields(data: Mapping[str, Any], field_names: Iterable[str]) -> Dict[str, Any]:
    cleaned = dict(data)
    for name in field_names:
        value = cleaned.get(name)
        if isinstance(value, str):
            cleaned[name] = clean_multi_line_field(value)
    return cleaned


def stringify(value: Any, indent: int = 2) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, indent=indent)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Could not serialize to JSON: {exc}") from exc
