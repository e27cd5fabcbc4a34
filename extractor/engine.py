"""Extraction engine: provider call, schema validation, trap detection, bounded retries."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import BaseModel, Field, ValidationError

from core.config import ComplianceConfig, DiscoveryConfig, RetryBudget
from core.errors import ExtractionError, SchemaValidationError
from core.models import (
    ExtractionAttempt,
    ExtractionErrorKind,
    PageContent,
    RequirementsDelta,
)
from core.pipeline import AuditRecorder, ExtractionProvider, ProviderResponse
from core.structured_logging import emit_json_event
from extractor.logging import emit_extraction_attempt
from extractor.schema import (
    fields_from_payload,
    parse_response,
    strip_markdown_fences,
    validate_payload,
)
from extractor.traps import detect_traps
from parser.forms import looks_like_html, outline_html
from quality.redaction import redact_pii, truncate


class AttemptCounter(BaseModel):
    """
    Serializable attempt counter shared by every extraction in one campaign.

    Schema failures, provider failures, and insufficient-confidence retries
    all draw from this single budget.
    """
    campaign_id: str | None = None
    max_retries: int = Field(ge=1)
    next_retry_count: int = Field(default=0, ge=0)

    @property
    def used(self) -> int:
        return self.next_retry_count

    @property
    def remaining(self) -> int:
        return max(self.max_retries - self.next_retry_count, 0)

    @property
    def exhausted(self) -> bool:
        return self.next_retry_count >= self.max_retries

    def take(self) -> int:
        """Claim the next retry_count value. Raises once the budget is spent."""
        if self.exhausted:
            raise ValueError("attempt budget exhausted")
        value = self.next_retry_count
        self.next_retry_count += 1
        return value


@dataclass(slots=True)
class AttemptOutcome:
    """Result of exactly one provider call."""

    attempt: ExtractionAttempt
    delta: RequirementsDelta | None = None
    failure_kind: ExtractionErrorKind | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.delta is not None


def _estimate_tokens(text: str) -> int:
    return (len(text) + 3) // 4


def build_feedback(errors: list[str], trap_hit: tuple[str, ...] = ()) -> list[str]:
    """Turn the previous attempt's problems into retry instructions."""
    feedback = [f"Previous response was invalid: {item}" for item in errors]
    if trap_hit:
        feedback.append(
            "Ignore hidden, honeypot, or 'leave blank' inputs; flagged: " + ", ".join(trap_hit)
        )
    if feedback:
        feedback.append("Return ONLY a JSON object matching the schema, with no surrounding text.")
    return feedback


class ExtractionEngine:
    """Turn page content into a schema-valid RequirementsDelta, within budget."""

    def __init__(
        self,
        provider: ExtractionProvider,
        audit: AuditRecorder,
        sleep_fn: Callable[[float], None] | None = None,
        clock_fn: Callable[[], float] | None = None,
        content_max_chars: int = DiscoveryConfig.CONTENT_MAX_CHARS,
        log_attempts: bool = True,
    ) -> None:
        self.provider = provider
        self.audit = audit
        self._sleep = sleep_fn or time.sleep
        self._clock = clock_fn or time.monotonic
        self.content_max_chars = content_max_chars
        self.log_attempts = log_attempts

    def _prepare(self, content: PageContent) -> PageContent:
        """Reduce HTML to a form outline and cap the text sent to the provider."""
        if content.text is None:
            return content
        text = content.text
        if "html" in (content.content_type or "") or looks_like_html(text):
            text = outline_html(text)
        if len(text) > self.content_max_chars:
            text = text[: self.content_max_chars]
        if text == content.text:
            return content
        return content.model_copy(update={"text": text})

    def _record(self, attempt: ExtractionAttempt) -> None:
        self.audit.record(attempt)
        if self.log_attempts:
            emit_extraction_attempt(attempt)

    def attempt_once(
        self,
        content: PageContent,
        expected_schema: dict[str, Any],
        counter: AttemptCounter,
        feedback: list[str] | None = None,
    ) -> AttemptOutcome:
        """Make exactly one provider call and record exactly one ExtractionAttempt."""
        retry_count = counter.take()
        prepared = self._prepare(content)
        tokens_in = _estimate_tokens(prepared.text or "")

        try:
            response: ProviderResponse = self.provider.complete(
                prepared, expected_schema, feedback or []
            )
            if not isinstance(response, ProviderResponse):
                raise TypeError(f"provider returned {type(response).__name__}")
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            attempt = ExtractionAttempt(
                campaign_id=counter.campaign_id,
                url=content.url,
                model=getattr(self.provider, "model", "unknown"),
                tokens_in=tokens_in,
                tokens_out=0,
                schema_ok=False,
                retry_count=retry_count,
                failure_stage="provider",
                errors=(message,),
                raw_output=truncate(redact_pii(str(exc)), ComplianceConfig.RAW_OUTPUT_MAX_CHARS),
            )
            self._record(attempt)
            return AttemptOutcome(
                attempt=attempt,
                failure_kind=ExtractionErrorKind.PROVIDER_FAILURE,
                errors=[message],
            )

        raw_output = response.raw_output or ""
        cleaned = strip_markdown_fences(raw_output)
        payload: Any = None
        failure_stage: str | None = None
        errors: list[str] = []
        try:
            payload = parse_response(raw_output)
            validate_payload(payload, expected_schema)
            fields = fields_from_payload(payload)
        except SchemaValidationError as exc:
            failure_stage = exc.stage
            errors = list(exc.errors)
        except ValidationError as exc:
            failure_stage = "schema"
            errors = [
                f"{'.'.join(str(loc) for loc in item['loc'])}: {item['msg']}" for item in exc.errors()
            ]

        traps = detect_traps(raw_output, cleaned, payload)
        attempt = ExtractionAttempt(
            campaign_id=counter.campaign_id,
            url=content.url,
            model=response.model,
            tokens_in=response.tokens_in if response.tokens_in is not None else tokens_in,
            tokens_out=(
                response.tokens_out
                if response.tokens_out is not None
                else _estimate_tokens(raw_output)
            ),
            schema_ok=failure_stage is None,
            retry_count=retry_count,
            trap_hit=traps.names,
            failure_stage=failure_stage,
            errors=tuple(errors),
            raw_output=truncate(redact_pii(raw_output), ComplianceConfig.RAW_OUTPUT_MAX_CHARS),
        )
        self._record(attempt)

        if failure_stage is not None:
            return AttemptOutcome(
                attempt=attempt,
                failure_kind=ExtractionErrorKind.SCHEMA_EXHAUSTED,
                errors=errors,
            )

        kept = []
        seen: set[str] = set()
        for item in fields:
            if item.name in traps.trap_fields or item.name in seen:
                continue
            seen.add(item.name)
            kept.append(item)

        delta = RequirementsDelta(
            url=content.url,
            model=response.model,
            retry_count=retry_count,
            fields=tuple(kept),
            trap_hit=traps.names,
            attempt_id=attempt.id,
        )
        return AttemptOutcome(attempt=attempt, delta=delta)

    def extract(
        self,
        content: PageContent,
        expected_schema: dict[str, Any],
        budget: RetryBudget,
        counter: AttemptCounter | None = None,
        deadline: float | None = None,
        feedback: list[str] | None = None,
    ) -> RequirementsDelta:
        """
        Return the first schema-valid delta, retrying under the shared budget.

        Args:
            content: Page content from the audited fetcher.
            expected_schema: JSON schema the provider response must satisfy.
            budget: Retry/backoff configuration.
            counter: Campaign-wide counter; a fresh one is created when omitted.
            deadline: Clock value after which no further attempt starts.
            feedback: Instructions carried over from an earlier call.

        Raises:
            ExtractionError: kind of the last failure once the budget or the
                deadline is exhausted.
        """
        counter = counter or AttemptCounter(max_retries=budget.max_retries)
        attempts: list[ExtractionAttempt] = []
        last_kind = ExtractionErrorKind.SCHEMA_EXHAUSTED
        last_errors: list[str] = []
        pending_feedback = list(feedback or [])
        failures = 0
        timed_out = False

        while not counter.exhausted:
            if failures:
                delay = budget.backoff_delay(failures)
                if deadline is not None and self._clock() + delay >= deadline:
                    timed_out = True
                    break
                emit_json_event(
                    "extraction_retry",
                    run_id=counter.campaign_id,
                    component="extractor",
                    url=content.url,
                    next_retry_count=counter.next_retry_count,
                    delay_seconds=delay,
                    last_failure=last_kind.value,
                )
                if delay > 0:
                    self._sleep(delay)
            if deadline is not None and self._clock() >= deadline:
                timed_out = True
                break

            outcome = self.attempt_once(content, expected_schema, counter, pending_feedback)
            attempts.append(outcome.attempt)
            if outcome.ok:
                return outcome.delta

            failures += 1
            last_kind = outcome.failure_kind or ExtractionErrorKind.SCHEMA_EXHAUSTED
            last_errors = outcome.errors
            pending_feedback = build_feedback(outcome.errors, outcome.attempt.trap_hit)

        raise ExtractionError(last_kind, attempts, last_errors, timed_out=timed_out)
