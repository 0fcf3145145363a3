"""Shape validation of repaired output and coercion into a fill payload."""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type

from pydantic import BaseModel, Field, ValidationError, create_model


class ShapeValidationError(ValueError):
    def __init__(self, message: str, errors: List[Dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


def model_for_fields(fields: Sequence[str]) -> Type[BaseModel]:
    """Builds a model requiring every declared field as a string."""
    definitions: Dict[str, Any] = {
        f"field_{idx}": (str, Field(alias=name)) for idx, name in enumerate(fields)
    }
    return create_model("DeclaredFields", **definitions)


def validate_shape(
    value: Any,
    shape: Optional[Type[BaseModel]] = None,
    fields: Optional[Sequence[str]] = None,
) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise ShapeValidationError(f"Expected a JSON object, got {type(value).__name__}")

    model = shape or (model_for_fields(fields) if fields else None)
    if model is None:
        return dict(value)

    try:
        parsed = model.model_validate(value)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise ShapeValidationError(
            f"Output does not match {model.__name__}: {problems}", exc.errors()
        ) from exc
    return parsed.model_dump(by_alias=True)


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return "\n".join(value)
    return json.dumps(value, ensure_ascii=False)


def to_fill_payload(value: Dict[str, Any], field_names: Iterable[str] | None = None) -> Dict[str, str]:
    """Flat ``field -> str`` mapping for the document renderer; missing fields become ``""``."""
    names = list(value)
    for name in field_names or ():
        if name not in value:
            names.append(name)
    return {name: _to_text(value.get(name)) for name in names}
