"""Loading and validation of the structured-extraction response schema."""

from __future__ import annotations

import json
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

import jsonschema

from core.errors import SchemaValidationError
from core.models import FieldDescriptor

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SCHEMAS_DIR = PROJECT_ROOT / "schemas"
EXTRACTION_SCHEMA_FILE = "requirements_extraction.schema.json"

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?(.*?)\n?\s*```$", re.DOTALL)


@lru_cache(maxsize=None)
def _load_schema_text(name: str) -> str:
    return (SCHEMAS_DIR / name).read_text(encoding="utf-8")


def load_schema(name: str = EXTRACTION_SCHEMA_FILE) -> dict[str, Any]:
    """Return a fresh copy of a JSON schema from the schemas directory."""
    return json.loads(_load_schema_text(name))


def strip_markdown_fences(text: str) -> str:
    """Remove an optional ```json ... ``` wrapper around a response."""
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def parse_response(raw_output: str) -> Any:
    """Parse raw provider output as JSON.

    Raises:
        SchemaValidationError: stage "json_parse" when the text is not JSON.
    """
    cleaned = strip_markdown_fences(raw_output or "")
    try:
        return json.loads(cleaned)
    except (json.JSONDecodeError, TypeError) as exc:
        raise SchemaValidationError("json_parse", [str(exc)]) from exc


def _format_error(error: jsonschema.ValidationError) -> str:
    location = "/".join(str(part) for part in error.absolute_path) or "<root>"
    return f"{location}: {error.message}"


def validate_payload(payload: Any, expected_schema: dict[str, Any]) -> None:
    """Validate a parsed payload; collects every violation, not just the first.

    Raises:
        SchemaValidationError: stage "schema" listing each violation.
    """
    validator_cls = jsonschema.validators.validator_for(expected_schema)
    validator = validator_cls(expected_schema)
    errors = sorted(validator.iter_errors(payload), key=lambda item: list(item.absolute_path))
    if errors:
        raise SchemaValidationError("schema", [_format_error(item) for item in errors])


def _entries(payload: dict[str, Any], key: str, errors: list[str]) -> list[dict[str, Any]]:
    value = payload.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        errors.append(f"{key}: expected a list, got {type(value).__name__}")
        return []
    entries: list[dict[str, Any]] = []
    for index, item in enumerate(value):
        if not isinstance(item, dict):
            errors.append(f"{key}/{index}: expected an object, got {type(item).__name__}")
        elif not item.get("name"):
            errors.append(f"{key}/{index}: 'name' is a required property")
        elif item.get("constraints") is not None and not isinstance(item["constraints"], dict):
            errors.append(f"{key}/{index}/constraints: expected an object")
        else:
            entries.append(item)
    return entries


def fields_from_payload(payload: Any) -> list[FieldDescriptor]:
    """Build field descriptors from a validated payload, in response order.

    A caller may validate against a looser schema than the bundled one, so the
    field lists are checked here as well.

    Raises:
        SchemaValidationError: stage "schema" when the field lists are malformed.
    """
    if not isinstance(payload, dict):
        raise SchemaValidationError(
            "schema", [f"<root>: expected an object, got {type(payload).__name__}"]
        )
    errors: list[str] = []
    items = _entries(payload, "fields", errors)
    uploads = _entries(payload, "document_uploads", errors)
    if errors:
        raise SchemaValidationError("schema", errors)

    fields: list[FieldDescriptor] = []
    for item in items:
        fields.append(
            FieldDescriptor(
                name=str(item["name"]),
                type=str(item.get("type") or "text"),
                required=bool(item.get("required", False)),
                constraints=dict(item.get("constraints") or {}),
                category=item.get("category"),
                label=item.get("label"),
            )
        )
    for upload in uploads:
        fields.append(
            FieldDescriptor(
                name=str(upload["name"]),
                type="file",
                required=bool(upload.get("required", False)),
                constraints={"accept": upload["type"]} if upload.get("type") else {},
                category="documents",
            )
        )
    return fields
