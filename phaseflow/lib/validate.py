"""
Schema validation for phaseflow.

Every persisted document (phase state, registry, memory log, config) has a
JSON Schema under phaseflow/schemas/. Validation collects all violations so
the caller can report them together; writers use validate_before_write() so
an invalid document never reaches disk.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path

import jsonschema

from phaseflow.lib.constants import SCHEMA_PHASE_STATE
from phaseflow.lib.errors import ValidationFailure


@dataclass
class ValidationResult:
    """Outcome of validating one document."""
    valid: bool
    errors: list[dict] = field(default_factory=list)  # [{"path": ..., "reason": ...}]

    def summary(self) -> str:
        return "; ".join(f"{e['path']}: {e['reason']}" for e in self.errors)


# Cache loaded schemas
_schema_cache: dict[str, dict] = {}


def _get_schemas_dir() -> Path:
    """Get path to schemas directory."""
    return Path(__file__).parent.parent / "schemas"


def _load_schema(schema_name: str) -> dict:
    """Load schema by name, with caching."""
    if schema_name not in _schema_cache:
        schema_path = _get_schemas_dir() / f"{schema_name}.schema.json"
        if not schema_path.exists():
            raise ValidationFailure(schema_name, f"Schema file not found: {schema_path}")
        _schema_cache[schema_name] = json.loads(schema_path.read_text())
    return _schema_cache[schema_name]


def _format_path(error: jsonschema.ValidationError) -> str:
    return ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "(root)"


def validate(document, schema_name: str = SCHEMA_PHASE_STATE) -> ValidationResult:
    """
    Validate a document against a named schema.

    Args:
        document: Parsed document (normally a dict)
        schema_name: Schema name (e.g., "phase_state", "registry")

    Returns:
        ValidationResult listing every violation. Input that is not a
        mapping at all is reported as a single error at (root).
    """
    if not isinstance(document, dict):
        return ValidationResult(
            valid=False,
            errors=[{
                "path": "(root)",
                "reason": f"document must be a mapping, got {type(document).__name__}",
            }],
        )

    schema = _load_schema(schema_name)
    validator = jsonschema.Draft7Validator(schema)

    errors = [
        {"path": _format_path(e), "reason": e.message}
        for e in sorted(validator.iter_errors(document), key=lambda e: list(map(str, e.absolute_path)))
    ]
    return ValidationResult(valid=not errors, errors=errors)


def validate_before_write(data: dict, schema_name: str, filepath: Path) -> None:
    """
    Validate data before writing to file. Ensures we never write invalid data.

    Raises:
        ValidationFailure: If data doesn't match schema
    """
    result = validate(data, schema_name)
    if not result.valid:
        raise ValidationFailure(
            schema_name,
            f"Refusing to write invalid data to {filepath}: {result.summary()}",
            result.errors,
            phase_id=data.get("id") if isinstance(data, dict) else None,
        )
