"""Data hygiene utilities: PII redaction, URL scrubbing and truncation."""

from quality.redaction import redact_pii, scrub_url, truncate

__all__ = ["redact_pii", "scrub_url", "truncate"]
