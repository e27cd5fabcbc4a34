"""Structured logging helpers for extraction attempts."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from core.models import ExtractionAttempt
from core.structured_logging import emit_json_event


def _isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def extraction_attempt_to_dict(attempt: ExtractionAttempt) -> dict[str, Any]:
    """Convert an ExtractionAttempt to a JSON-safe dictionary (one audit row)."""
    return {
        "id": attempt.id,
        "campaign_id": attempt.campaign_id,
        "url": attempt.url,
        "model": attempt.model,
        "tokens_in": attempt.tokens_in,
        "tokens_out": attempt.tokens_out,
        "schema_ok": attempt.schema_ok,
        "retry_count": attempt.retry_count,
        "trap_hit": list(attempt.trap_hit),
        "failure_stage": attempt.failure_stage,
        "errors": list(attempt.errors),
        "raw_output": attempt.raw_output,
        "created_at": _isoformat(attempt.created_at),
    }


def emit_extraction_attempt(attempt: ExtractionAttempt) -> str:
    """Emit a structured JSON log line for one extraction attempt.

    raw_output is left out of the log line; it lives only in the audit row.
    """
    payload = extraction_attempt_to_dict(attempt)
    payload["attempt_id"] = payload.pop("id")
    payload.pop("campaign_id")
    payload.pop("raw_output")
    return emit_json_event(
        "extraction_attempt",
        run_id=attempt.campaign_id,
        level="info" if attempt.schema_ok else "warning",
        component="extractor",
        **payload,
    )
