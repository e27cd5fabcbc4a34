"""Structured logging helpers for fetch attempts."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from core.models import FetchAttempt
from core.structured_logging import emit_json_event


def _isoformat(value: datetime | None) -> str | None:
    """Serialize datetimes for logs."""
    if value is None:
        return None
    return value.isoformat()


def fetch_attempt_to_dict(attempt: FetchAttempt) -> dict[str, Any]:
    """Convert a FetchAttempt to a JSON-safe dictionary (one audit row)."""
    return {
        "id": attempt.id,
        "campaign_id": attempt.campaign_id,
        "url": attempt.url,
        "host": attempt.host,
        "status": attempt.status.value,
        "reason": attempt.reason,
        "robots_allowed": attempt.robots_allowed,
        "rate_limited": attempt.rate_limited,
        "response_code": attempt.response_code,
        "content_length": attempt.content_length,
        "duration_ms": attempt.duration_ms,
        "user_agent": attempt.user_agent,
        "source_ip": attempt.source_ip,
        "created_at": _isoformat(attempt.created_at),
    }


def emit_fetch_attempt(attempt: FetchAttempt) -> str:
    """Emit a structured JSON log line for one fetch attempt."""
    payload = fetch_attempt_to_dict(attempt)
    payload["attempt_id"] = payload.pop("id")
    payload.pop("campaign_id")
    level = "info" if attempt.status.value == "allowed" else "warning"
    return emit_json_event(
        "fetch_attempt",
        run_id=attempt.campaign_id,
        level=level,
        component="fetcher",
        **payload,
    )
