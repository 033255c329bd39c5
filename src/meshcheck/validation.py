"""
JSON Schema validation with readable error messages.

Used for scenario files, OpenAPI document structure and live response bodies.
"""

from typing import Any, Dict, List, Optional, Type

import jsonschema
from jsonschema.protocols import Validator


class SchemaValidationError(Exception):
    """Raised when a document fails schema validation."""

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


class SchemaValidator:
    """
    Formats jsonschema errors into one message per problem.

    The validator class is picked from the schema's ``$schema`` keyword,
    falling back to Draft 2020-12.
    """

    def __init__(self, default_validator: Type[Validator] = jsonschema.Draft202012Validator):
        self._default_validator = default_validator

    def validator_for(self, schema: Dict[str, Any]) -> Validator:
        validator_class = jsonschema.validators.validator_for(schema, default=self._default_validator)
        return validator_class(schema)

    def get_schema_errors(self, instance: Any, schema: Dict[str, Any]) -> List[str]:
        """
        Get list of validation errors without raising an exception.

        Returns:
            List of error messages, empty if validation passes
        """
        validator = self.validator_for(schema)
        errors = sorted(validator.iter_errors(instance), key=lambda e: [str(p) for p in e.absolute_path])
        return [self._format_error(error) for error in errors]

    def validate(self, instance: Any, schema: Dict[str, Any], subject: str) -> None:
        """
        Validate ``instance`` and raise with every problem listed.

        Raises:
            SchemaValidationError: If validation fails or the schema itself is invalid
        """
        try:
            messages = self.get_schema_errors(instance, schema)
        except jsonschema.SchemaError as e:
            raise SchemaValidationError(f"{subject} has invalid JSON schema: {e.message}")
        except jsonschema.exceptions.RefResolutionError as e:
            raise SchemaValidationError(f"{subject} schema reference cannot be resolved: {e}")

        if messages:
            raise SchemaValidationError(
                f"{subject} validation failed: {'; '.join(messages)}", messages
            )

    @staticmethod
    def _format_error(error: jsonschema.ValidationError) -> str:
        field_path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"

        if error.validator == "required":
            missing_field = error.message.split("'")[1] if "'" in error.message else "unknown"
            if field_path == "root":
                return f"Missing required field: {missing_field}"
            return f"Missing required field: {field_path}.{missing_field}"
        if error.validator == "type":
            expected_type = error.schema.get("type", "unknown")
            return (
                f"Field '{field_path}' has invalid type. "
                f"Expected {expected_type}, got {type(error.instance).__name__}: {error.instance!r}"
            )
        if error.validator == "pattern":
            return (
                f"Field '{field_path}' does not match required pattern "
                f"'{error.schema.get('pattern', 'unknown')}'. Got: {error.instance!r}"
            )
        if error.validator == "enum":
            return f"Field '{field_path}' must be one of {error.validator_value}. Got: {error.instance!r}"
        if error.validator == "minItems":
            return (
                f"Field '{field_path}' must have at least {error.validator_value} items. "
                f"Got {len(error.instance)} items"
            )
        if error.validator == "additionalProperties":
            return f"Field '{field_path}' contains unexpected properties: {error.message}"
        return f"Field '{field_path}': {error.message}"
