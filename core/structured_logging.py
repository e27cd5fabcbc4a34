"""Shared structured JSON logging helpers."""

from __future__ import annotations

import json
import sys
import threading
from datetime import UTC, datetime
from typing import Any

_write_lock = threading.Lock()


def emit_json_event(
    event_type: str,
    *,
    run_id: str | None,
    level: str = "info",
    component: str | None = None,
    **payload: Any,
) -> str:
    """Emit one JSON event line to stdout and return the rendered line.

    `run_id` carries the campaign id for pipeline events. Lines are written
    under a lock so concurrent campaigns never interleave partial lines.
    """
    event: dict[str, Any] = {
        "event_type": event_type,
        "level": level,
        "timestamp": datetime.now(UTC).isoformat(),
        "run_id": run_id,
    }
    if component:
        event["component"] = component
    event.update(payload)
    line = json.dumps(event, ensure_ascii=True, sort_keys=True, default=str)
    with _write_lock:
        sys.stdout.write(line + "\n")
        sys.stdout.flush()
    return line
