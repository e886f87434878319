# Parameter & schema validation
from typing import Any, Dict, List, NamedTuple

import jsonschema
from jsonschema import Draft7Validator


class ValidationResult(NamedTuple):
    is_valid: bool
    errors: List[str]


class ToolParameterValidator:
    @staticmethod
    def check_schema(schema: Dict[str, Any]) -> None:
        """Raise jsonschema.SchemaError when a tool declares a broken schema"""
        Draft7Validator.check_schema(schema)

    @staticmethod
    def validate(schema: Dict[str, Any], payload: Any) -> ValidationResult:
        if not isinstance(payload, dict):
            return ValidationResult(False, [f"Expected an object, got {type(payload).__name__}"])

        validator = Draft7Validator(schema)
        errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))
        if errors:
            return ValidationResult(False, [_format_error(e) for e in errors])
        return ValidationResult(True, [])


def _format_error(error: jsonschema.ValidationError) -> str:
    location = "/".join(str(p) for p in error.path)
    if location:
        return f"Schema validation failed at '{location}': {error.message}"
    return f"Schema validation failed: {error.message}"
