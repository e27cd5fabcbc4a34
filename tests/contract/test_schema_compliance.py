"""
Contract tests for schema compliance.

Ensures that audit rows match their export schemas (fetch_attempt.schema.json,
extraction_attempt.schema.json) and that the extraction response schema
accepts and rejects the right provider payloads.
"""

import json
from pathlib import Path

import pytest
import jsonschema

from core.models import ExtractionAttempt, FetchAttempt
from extractor.logging import extraction_attempt_to_dict
from extractor.schema import load_schema
from fetcher.logging import fetch_attempt_to_dict


# Load schemas
SCHEMAS_DIR = Path(__file__).parent.parent.parent / "schemas"
FETCH_SCHEMA = json.loads((SCHEMAS_DIR / "fetch_attempt.schema.json").read_text())
EXTRACTION_ATTEMPT_SCHEMA = json.loads((SCHEMAS_DIR / "extraction_attempt.schema.json").read_text())
REQUIREMENTS_SCHEMA = json.loads((SCHEMAS_DIR / "requirements_extraction.schema.json").read_text())


# ============================================================================
# Schema Files
# ============================================================================

@pytest.mark.contract
@pytest.mark.parametrize(
    "schema",
    [FETCH_SCHEMA, EXTRACTION_ATTEMPT_SCHEMA, REQUIREMENTS_SCHEMA],
    ids=["fetch_attempt", "extraction_attempt", "requirements_extraction"],
)
def test_schema_files_are_valid_draft_2020_12(schema):
    jsonschema.Draft202012Validator.check_schema(schema)


def test_load_schema_returns_independent_copies():
    first = load_schema()
    first["required"].append("mutated")

    assert "mutated" not in load_schema()["required"]


# ============================================================================
# FetchAttempt Schema Tests
# ============================================================================

@pytest.mark.contract
class TestFetchAttemptSchema:
    """Fetch audit rows must conform to fetch_attempt.schema.json."""

    def test_allowed_attempt_against_schema(self, sample_fetch_attempt: FetchAttempt):
        jsonschema.validate(fetch_attempt_to_dict(sample_fetch_attempt), FETCH_SCHEMA)

    def test_blocked_attempt_against_schema(self, sample_blocked_attempt: FetchAttempt):
        row = fetch_attempt_to_dict(sample_blocked_attempt)

        jsonschema.validate(row, FETCH_SCHEMA)
        assert row["response_code"] is None
        assert row["status"] == "blocked"

    def test_rejects_extra_fields(self, sample_fetch_attempt: FetchAttempt):
        row = fetch_attempt_to_dict(sample_fetch_attempt)
        row["body"] = "<html>"

        with pytest.raises(jsonschema.ValidationError):
            jsonschema.validate(row, FETCH_SCHEMA)

    def test_rejects_unknown_status(self, sample_fetch_attempt: FetchAttempt):
        row = fetch_attempt_to_dict(sample_fetch_attempt)
        row["status"] = "skipped"

        with pytest.raises(jsonschema.ValidationError):
            jsonschema.validate(row, FETCH_SCHEMA)


# ============================================================================
# ExtractionAttempt Schema Tests
# ============================================================================

@pytest.mark.contract
class TestExtractionAttemptSchema:
    """Extraction audit rows must conform to extraction_attempt.schema.json."""

    def test_attempt_against_schema(self, sample_extraction_attempt: ExtractionAttempt):
        jsonschema.validate(
            extraction_attempt_to_dict(sample_extraction_attempt), EXTRACTION_ATTEMPT_SCHEMA
        )

    def test_trap_hits_are_unique_and_sorted(self):
        attempt = ExtractionAttempt(
            url="https://register.example.org/camp",
            model="extract-small",
            schema_ok=True,
            retry_count=1,
            trap_hit=("honeypot_name", "hidden_input", "honeypot_name"),
        )
        row = extraction_attempt_to_dict(attempt)

        jsonschema.validate(row, EXTRACTION_ATTEMPT_SCHEMA)
        assert row["trap_hit"] == ["hidden_input", "honeypot_name"]

    def test_rejects_negative_retry_count(self, sample_extraction_attempt: ExtractionAttempt):
        row = extraction_attempt_to_dict(sample_extraction_attempt)
        row["retry_count"] = -1

        with pytest.raises(jsonschema.ValidationError):
            jsonschema.validate(row, EXTRACTION_ATTEMPT_SCHEMA)

    def test_rejects_unknown_failure_stage(self, sample_extraction_attempt: ExtractionAttempt):
        row = extraction_attempt_to_dict(sample_extraction_attempt)
        row["failure_stage"] = "network"

        with pytest.raises(jsonschema.ValidationError):
            jsonschema.validate(row, EXTRACTION_ATTEMPT_SCHEMA)


# ============================================================================
# Requirements Extraction Schema Tests
# ============================================================================

@pytest.mark.contract
class TestRequirementsExtractionSchema:
    """Provider responses are checked against requirements_extraction.schema.json."""

    def test_accepts_full_payload(self):
        payload = {
            "fields": [
                {
                    "name": "child_birthdate",
                    "type": "date",
                    "required": True,
                    "label": "Child's date of birth",
                    "category": "participant",
                    "constraints": {"min_age": 5, "max_age": 12},
                },
                {"name": "guardian_email", "type": "email", "required": True},
            ],
            "authentication_required": False,
            "payment_required": True,
            "captcha_likely": False,
            "document_uploads": [{"name": "immunization_record", "required": True, "type": "pdf"}],
        }

        jsonschema.validate(payload, REQUIREMENTS_SCHEMA)

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"fields": []},
            {"fields": [{"name": "x", "type": "text"}]},
            {"fields": [{"name": "", "type": "text", "required": True}]},
            {"fields": [{"name": "x", "type": "color", "required": True}]},
            {"fields": [{"name": "x", "type": "text", "required": "yes"}]},
        ],
        ids=["missing-fields", "empty-fields", "missing-required", "empty-name", "bad-type", "bad-flag"],
    )
    def test_rejects_invalid_payloads(self, payload):
        with pytest.raises(jsonschema.ValidationError):
            jsonschema.validate(payload, REQUIREMENTS_SCHEMA)
