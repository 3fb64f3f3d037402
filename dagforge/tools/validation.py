from __future__ import annotations

import json
import re
from typing import Any, Mapping

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)

_TYPE_CHECKS: dict[str, Any] = {
    "object": lambda value: isinstance(value, Mapping),
    "array": lambda value: isinstance(value, list),
    "string": lambda value: isinstance(value, str),
    "integer": lambda value: isinstance(value, int) and not isinstance(value, bool),
    "number": lambda value: isinstance(value, (int, float)) and not isinstance(value, bool),
    "boolean": lambda value: isinstance(value, bool),
    "null": lambda value: value is None,
}


class SchemaValidationError(ValueError):
    """Raised when a payload violates a tool's declared schema."""

    def __init__(self, message: str, *, path: str = "<root>") -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


class ToolSchemaValidator:
    """Checks payloads against the JSON-schema subset used by tool definitions.

    Supported keywords: ``type`` (single or list), ``required``, ``properties``,
    ``additionalProperties: false``, ``items``, ``enum``, ``minItems`` and ``minLength``.
    Unknown keywords are ignored.
    """

    def missing_inputs(self, parameters: Mapping[str, Any], schema: Mapping[str, Any] | None) -> list[str]:
        if not isinstance(schema, Mapping):
            return []
        required = schema.get("required") if isinstance(schema.get("required"), list) else []
        return sorted({field for field in required if parameters.get(field) is None})

    def validate(self, value: Any, schema: Mapping[str, Any] | None, *, path: str = "<root>") -> None:
        if not isinstance(schema, Mapping) or not schema:
            return
        self._check_type(value, schema.get("type"), path)

        enum = schema.get("enum")
        if isinstance(enum, list) and value not in enum:
            raise SchemaValidationError(f"value {value!r} not in {enum!r}", path=path)

        if isinstance(value, str):
            min_length = schema.get("minLength")
            if isinstance(min_length, int) and len(value) < min_length:
                raise SchemaValidationError(f"expected at least {min_length} characters", path=path)

        if isinstance(value, Mapping):
            self._validate_object(value, schema, path)
        elif isinstance(value, list):
            min_items = schema.get("minItems")
            if isinstance(min_items, int) and len(value) < min_items:
                raise SchemaValidationError(f"expected at least {min_items} items", path=path)
            items = schema.get("items")
            if isinstance(items, Mapping):
                for index, item in enumerate(value):
                    self.validate(item, items, path=f"{path}[{index}]")

    def _check_type(self, value: Any, declared: Any, path: str) -> None:
        if declared is None:
            return
        names = declared if isinstance(declared, list) else [declared]
        checks = [_TYPE_CHECKS[name] for name in names if name in _TYPE_CHECKS]
        if checks and not any(check(value) for check in checks):
            raise SchemaValidationError(
                f"expected {' or '.join(names)}, got {type(value).__name__}",
                path=path,
            )

    def _validate_object(self, value: Mapping[str, Any], schema: Mapping[str, Any], path: str) -> None:
        properties = schema.get("properties") if isinstance(schema.get("properties"), Mapping) else {}
        required = schema.get("required") if isinstance(schema.get("required"), list) else []

        missing = [field for field in required if field not in value]
        if missing:
            raise SchemaValidationError(f"missing required fields: {', '.join(sorted(set(missing)))}", path=path)

        if schema.get("additionalProperties", True) is False:
            extraneous = [field for field in value if field not in properties]
            if extraneous:
                raise SchemaValidationError(
                    f"unsupported fields: {', '.join(sorted(set(map(str, extraneous))))}",
                    path=path,
                )

        for name, subschema in properties.items():
            if name in value and isinstance(subschema, Mapping):
                child = f"{path}.{name}" if path != "<root>" else name
                self.validate(value[name], subschema, path=child)


def extract_json(text: str) -> Any:
    """Parse model output that should contain a JSON document.

    Accepts plain JSON, a fenced code block, or prose wrapping a single object or array.
    Raises ``ValueError`` when nothing parseable is found.
    """
    candidate = text.strip()
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    fenced = _FENCED_BLOCK.search(candidate)
    if fenced:
        try:
            return json.loads(fenced.group(1).strip())
        except json.JSONDecodeError:
            pass

    for opener, closer in (("{", "}"), ("[", "]")):
        start = candidate.find(opener)
        end = candidate.rfind(closer)
        if start != -1 and end > start:
            try:
                return json.loads(candidate[start : end + 1])
            except json.JSONDecodeError:
                continue
    raise ValueError("response does not contain a JSON document")


def parse_structured_output(text: str, schema: Mapping[str, Any] | None, *, validator: ToolSchemaValidator) -> Any:
    """Turn raw provider text into a value conforming to ``schema``."""
    if not schema or schema.get("type") == "string":
        validator.validate(text, schema)
        return text
    try:
        payload = extract_json(text)
    except ValueError as exc:
        raise SchemaValidationError(str(exc)) from exc
    validator.validate(payload, schema)
    return payload


tool_schema_validator = ToolSchemaValidator()
