"""JSON Schema helpers for operation arguments."""

from typing import Any, Optional

from jsonschema import Draft7Validator


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))

    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages


TYPE_MAPPING = {
    "string": "string",
    "str": "string",
    "integer": "integer",
    "int": "integer",
    "number": "number",
    "float": "number",
    "boolean": "boolean",
    "bool": "boolean",
    "array": "array",
    "list": "array",
    "object": "object",
    "dict": "object",
}


def build_input_schema(
    parameters: list[dict[str, Any]],
    required: Optional[list[str]] = None
) -> dict[str, Any]:
    """
    Create an operation input schema from compact parameter definitions.

    Each parameter is a dict with ``name``, ``type`` and ``description``
    and optionally ``enum``, ``default``, ``items``, ``minimum``,
    ``maximum`` and ``required``.

    Args:
        parameters: Parameter definitions
        required: Explicit list of required names. When omitted, every
            parameter without a default and not marked ``required: False``
            is required.

    Returns:
        JSON Schema dictionary
    """
    properties = {}

    for param in parameters:
        param_schema: dict[str, Any] = {
            "type": TYPE_MAPPING.get(param.get("type", "string"), "string"),
            "description": param.get("description", ""),
        }

        for key in ("enum", "default", "minimum", "maximum"):
            if key in param:
                param_schema[key] = param[key]

        if param_schema["type"] == "array" and "items" in param:
            param_schema["items"] = param["items"]

        properties[param["name"]] = param_schema

    if required is None:
        required = [
            p["name"] for p in parameters
            if p.get("required", True) and "default" not in p
        ]

    schema: dict[str, Any] = {
        "type": "object",
        "properties": properties,
    }
    if required:
        schema["required"] = required

    return schema
