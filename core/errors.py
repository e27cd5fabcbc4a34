"""Error taxonomy for fetch, extraction, audit, and campaign failures."""

from __future__ import annotations

from core.models import (
    ExtractionAttempt,
    ExtractionErrorKind,
    FetchAttempt,
    FetchErrorKind,
)


class FetchError(Exception):
    """
    Raised by the audited fetcher when a fetch does not produce content.

    Attributes:
        kind: PolicyBlocked, NetworkFailure or HttpStatus.
        attempt: The FetchAttempt recorded for this call.
        status_code: HTTP status for HttpStatus failures.
    """

    def __init__(
        self,
        kind: FetchErrorKind,
        attempt: FetchAttempt,
        message: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.kind = kind
        self.attempt = attempt
        self.status_code = status_code
        label = kind.value
        if kind is FetchErrorKind.HTTP_STATUS and status_code is not None:
            label = f"{label}({status_code})"
        super().__init__(f"{label}: {message or attempt.reason or attempt.url}")

    @property
    def retryable(self) -> bool:
        return self.kind is not FetchErrorKind.POLICY_BLOCKED


class ProviderError(Exception):
    """Raised by an extraction provider (timeout, transport, malformed payload)."""


class SchemaValidationError(Exception):
    """
    Raised when a provider response fails parsing or schema validation.

    Attributes:
        stage: "json_parse" or "schema".
        errors: Human-readable messages, one per violation.
    """

    def __init__(self, stage: str, errors: list[str]) -> None:
        self.stage = stage
        self.errors = errors
        super().__init__(f"validation failed at stage '{stage}': " + "; ".join(errors))


class ExtractionError(Exception):
    """
    Raised when the shared retry budget is exhausted without a valid response.

    Attributes:
        kind: Kind of the last failure (SchemaExhausted or ProviderFailure).
        attempts: Every ExtractionAttempt made under the budget by this call.
        last_errors: Messages from the final failure.
        timed_out: True when the campaign deadline, not the attempt budget,
            ended the loop.
    """

    def __init__(
        self,
        kind: ExtractionErrorKind,
        attempts: list[ExtractionAttempt],
        last_errors: list[str] | None = None,
        timed_out: bool = False,
    ) -> None:
        self.kind = kind
        self.attempts = attempts
        self.last_errors = last_errors or []
        self.timed_out = timed_out
        detail = "; ".join(self.last_errors) or "no detail"
        super().__init__(f"{kind.value} after {len(attempts)} attempt(s): {detail}")


class AuditWriteFailure(Exception):
    """Audit persistence failed. Handled inside the audit sink only."""


class IllegalTransition(Exception):
    """Raised when a campaign attempts a transition its state machine forbids."""


class TicketAlreadyResolved(Exception):
    """Raised when resolving a manual-backup ticket that is already terminal."""
