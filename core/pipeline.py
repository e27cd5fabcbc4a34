"""
Pipeline interface for signup-discovery.

Defines the collaborator contracts and the campaign state machine that moves
one session through the stages:
gate → fetch → extract (bounded retries) → confidence → {sufficient | escalate}

The campaign is an explicit bounded state machine:
- Only the transitions in LEGAL_TRANSITIONS are allowed
- Every attempt draws from one serializable AttemptCounter
- Every campaign ends in exactly one of Sufficient, Blocked, Escalated
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional, Sequence
from uuid import uuid4

from core.config import DiscoveryConfig, RetryBudget
from core.errors import FetchError, IllegalTransition
from core.models import (
    TERMINAL_STATES,
    CampaignState,
    ExtractionAttempt,
    ExtractionErrorKind,
    FetchAttempt,
    FetchErrorKind,
    ManualBackupTicket,
    PageContent,
    RequirementsRecord,
)
from core.structured_logging import emit_json_event

if TYPE_CHECKING:
    from confidence.model import ConfidenceModel
    from escalation.fallback import FallbackEscalator
    from extractor.engine import ExtractionEngine
    from fetcher.http import AuditedFetcher


# ============================================================================
# Collaborator Interfaces
# ============================================================================

@dataclass(slots=True)
class PageResponse:
    """Raw response handed back by a PageSource."""

    status_code: int
    final_url: str
    content_type: Optional[str] = None
    body: bytes = b""
    encoding: Optional[str] = None
    source_ip: Optional[str] = None


class PageSource(ABC):
    """
    Browser/fetch collaborator: supplies raw page content or a screenshot.

    Example:
      source.retrieve("https://register.example.org/camp")
      → PageResponse(status_code=200, content_type="text/html", body=b"<form>...")
    """

    @abstractmethod
    def retrieve(self, url: str) -> PageResponse:
        """
        Retrieve one URL.

        Raises:
            Exception: Any transport failure (treated as NetworkFailure)
        """


@dataclass(slots=True)
class ProviderResponse:
    """Candidate structured response from an extraction provider."""

    raw_output: str
    model: str
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None


class ExtractionProvider(ABC):
    """
    AI-extraction collaborator: accepts (content, schema hint) and returns a
    candidate response or raises.
    """

    model: str = "unknown"

    @abstractmethod
    def complete(
        self,
        content: PageContent,
        schema_hint: dict[str, Any],
        feedback: list[str],
    ) -> ProviderResponse:
        """
        Run one extraction call.

        Args:
            content: Page text or screenshot
            schema_hint: JSON schema the response must satisfy
            feedback: Problems with the previous attempt, empty on the first

        Raises:
            ProviderError: timeout, transport failure, malformed payload
        """


class AuditRecorder(ABC):
    """Receives every FetchAttempt and ExtractionAttempt. Must not block."""

    @abstractmethod
    def record(self, event: FetchAttempt | ExtractionAttempt) -> None:
        """Hand off one audit record; never raises."""


class AuditWriter(ABC):
    """Durable, append-only audit persistence. One row per record, atomically."""

    @abstractmethod
    def write_fetch_attempt(self, attempt: FetchAttempt) -> None:
        pass

    @abstractmethod
    def write_extraction_attempt(self, attempt: ExtractionAttempt) -> None:
        pass


class RequirementsStore(ABC):
    """Read/write access to the requirements slice of a session."""

    @abstractmethod
    def get_requirements(self, session_id: str) -> Optional[RequirementsRecord]:
        pass

    @abstractmethod
    def upsert_requirements(self, record: RequirementsRecord) -> RequirementsRecord:
        """Insert or update; an existing row keeps its id and created_at."""


class TicketStore(ABC):
    """Persistence for manual-backup tickets, unique per (session_id, campaign_id)."""

    @abstractmethod
    def insert_or_get_ticket(self, ticket: ManualBackupTicket) -> ManualBackupTicket:
        """Insert the ticket, or return the existing one for the same campaign."""

    @abstractmethod
    def get_ticket(self, ticket_id: str) -> Optional[ManualBackupTicket]:
        pass

    @abstractmethod
    def update_ticket(self, ticket: ManualBackupTicket) -> None:
        pass

    @abstractmethod
    def list_tickets(self, include_resolved: bool = False) -> list[ManualBackupTicket]:
        pass


# ============================================================================
# Campaign State Machine
# ============================================================================

LEGAL_TRANSITIONS: dict[CampaignState, frozenset[CampaignState]] = {
    CampaignState.IDLE: frozenset({CampaignState.FETCHING}),
    CampaignState.FETCHING: frozenset(
        {
            CampaignState.EXTRACTING,
            CampaignState.BLOCKED,
            CampaignState.RETRYING,
            CampaignState.EXHAUSTED,
        }
    ),
    CampaignState.EXTRACTING: frozenset(
        {CampaignState.SUFFICIENT, CampaignState.RETRYING, CampaignState.EXHAUSTED}
    ),
    CampaignState.RETRYING: frozenset(
        {CampaignState.EXTRACTING, CampaignState.FETCHING, CampaignState.EXHAUSTED}
    ),
    CampaignState.EXHAUSTED: frozenset({CampaignState.ESCALATED}),
    CampaignState.SUFFICIENT: frozenset(),
    CampaignState.BLOCKED: frozenset(),
    CampaignState.ESCALATED: frozenset(),
}


@dataclass(frozen=True, slots=True)
class Transition:
    """One recorded state change."""

    source: CampaignState
    target: CampaignState
    reason: Optional[str] = None
    at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(slots=True)
class CampaignResult:
    """Terminal outcome of one campaign."""

    campaign_id: str
    session_id: str
    state: CampaignState
    record: Optional[RequirementsRecord] = None
    ticket: Optional[ManualBackupTicket] = None
    block_reason: Optional[str] = None
    fetch_attempts: list[FetchAttempt] = field(default_factory=list)
    extraction_attempts: list[ExtractionAttempt] = field(default_factory=list)
    transitions: list[Transition] = field(default_factory=list)

    @property
    def confidence_level(self) -> float:
        return self.record.confidence_level if self.record else 0.0

    @property
    def state_path(self) -> list[CampaignState]:
        if not self.transitions:
            return [self.state]
        return [self.transitions[0].source] + [item.target for item in self.transitions]


class _CampaignExhausted(Exception):
    """Internal signal: budget or deadline spent, escalate with this reason."""

    def __init__(self, reason: str, detail: str) -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}")


class DiscoveryCampaign:
    """
    One end-to-end discovery attempt for a single session.

    Usage:
        campaign = DiscoveryCampaign(
            session_id="sess-1",
            targets=["https://register.example.org/camp"],
            fetcher=fetcher,
            engine=engine,
            model=ConfidenceModel(),
            escalator=escalator,
        )
        result = campaign.run()

    Retry policy:
    - Fetch failures (NetworkFailure/HttpStatus) retry up to
      budget.max_fetch_attempts per URL; PolicyBlocked skips to the next URL
    - Schema failures, provider failures, and insufficient confidence share
      one AttemptCounter bounded by budget.max_retries
    - The time budget is checked before every attempt and every backoff sleep
    """

    def __init__(
        self,
        session_id: str,
        targets: Sequence[str] | str,
        fetcher: "AuditedFetcher",
        engine: "ExtractionEngine",
        model: "ConfidenceModel",
        escalator: "FallbackEscalator",
        requirements_store: RequirementsStore | None = None,
        budget: RetryBudget | None = None,
        threshold: float = DiscoveryConfig.CONFIDENCE_THRESHOLD,
        expected_schema: dict[str, Any] | None = None,
        campaign_id: str | None = None,
        clock_fn: Callable[[], float] | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        from extractor.engine import AttemptCounter
        from extractor.schema import load_schema

        if isinstance(targets, str):
            targets = [targets]
        if not targets:
            raise ValueError("campaign needs at least one target URL")
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("threshold must be in [0, 1]")

        self.session_id = session_id
        self.targets = list(targets)
        self.campaign_id = campaign_id or str(uuid4())
        self.fetcher = fetcher
        self.engine = engine
        self.model = model
        self.escalator = escalator
        self.requirements_store = requirements_store
        self.budget = budget or RetryBudget()
        self.threshold = threshold
        self.expected_schema = expected_schema or load_schema()
        self._clock = clock_fn or time.monotonic
        self._sleep = sleep_fn or time.sleep

        self.state = CampaignState.IDLE
        self.counter = AttemptCounter(
            campaign_id=self.campaign_id, max_retries=self.budget.max_retries
        )
        self.record: RequirementsRecord | None = None
        self.transitions: list[Transition] = []
        self.fetch_attempts: list[FetchAttempt] = []
        self.extraction_attempts: list[ExtractionAttempt] = []
        self._deadline: float | None = None
        self._target_url: str | None = None
        self.block_reason: str | None = None

    # ------------------------------------------------------------------
    # State handling
    # ------------------------------------------------------------------

    def transition(self, target: CampaignState, reason: str | None = None) -> None:
        """Move to `target`; raises IllegalTransition for any other edge."""
        if target not in LEGAL_TRANSITIONS[self.state]:
            raise IllegalTransition(f"{self.state.value} -> {target.value}")
        step = Transition(source=self.state, target=target, reason=reason)
        self.transitions.append(step)
        self.state = target
        emit_json_event(
            "campaign_transition",
            run_id=self.campaign_id,
            component="pipeline",
            session_id=self.session_id,
            source=step.source.value,
            target=step.target.value,
            reason=reason,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def _time_left(self) -> float:
        if self._deadline is None:
            return self.budget.time_budget_seconds
        return self._deadline - self._clock()

    def _check_deadline(self, reason: str, upcoming_delay: float = 0.0) -> None:
        if self._time_left() - upcoming_delay <= 0:
            raise _CampaignExhausted(
                reason, f"time budget of {self.budget.time_budget_seconds}s exhausted"
            )

    def _backoff(self, retry_number: int, reason: str) -> None:
        delay = self.budget.backoff_delay(retry_number)
        self._check_deadline(reason, delay)
        if delay > 0:
            self._sleep(delay)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _fetch_content(self) -> PageContent | None:
        """Return page content, or None when every target was policy-blocked."""
        last_error: FetchError | None = None
        block_reasons: list[str] = []

        for url in self.targets:
            for fetch_number in range(1, self.budget.max_fetch_attempts + 1):
                self._check_deadline(
                    last_error.kind.value if last_error else FetchErrorKind.NETWORK_FAILURE.value
                )
                try:
                    result = self.fetcher.fetch(url, campaign_id=self.campaign_id)
                except FetchError as exc:
                    self.fetch_attempts.append(exc.attempt)
                    if exc.kind is FetchErrorKind.POLICY_BLOCKED:
                        block_reasons.append(exc.attempt.reason or "policy-blocked")
                        emit_json_event(
                            "compliance_block",
                            run_id=self.campaign_id,
                            level="warning",
                            component="pipeline",
                            session_id=self.session_id,
                            url=url,
                            reason=exc.attempt.reason,
                        )
                        break
                    last_error = exc
                    if fetch_number < self.budget.max_fetch_attempts:
                        self.transition(CampaignState.RETRYING, str(exc))
                        self._backoff(fetch_number, exc.kind.value)
                        self.transition(CampaignState.FETCHING, f"fetch retry {fetch_number}")
                    continue

                self.fetch_attempts.append(result.attempt)
                self._target_url = url
                return result.content

        if last_error is None:
            self.block_reason = block_reasons[-1] if block_reasons else None
            return None
        raise _CampaignExhausted(last_error.kind.value, str(last_error))

    def _extract_until_sufficient(self, content: PageContent) -> RequirementsRecord:
        from extractor.engine import build_feedback

        feedback: list[str] = []
        failures = 0
        last_kind = ExtractionErrorKind.SCHEMA_EXHAUSTED
        last_detail = "no attempt made"

        while True:
            self._check_deadline(last_kind.value)
            outcome = self.engine.attempt_once(
                content, self.expected_schema, self.counter, feedback
            )
            self.extraction_attempts.append(outcome.attempt)

            if outcome.ok:
                self.record = self.model.update(
                    self.record,
                    outcome.delta,
                    session_id=self.session_id,
                    campaign_id=self.campaign_id,
                )
                if self.requirements_store is not None:
                    self.record = self.requirements_store.upsert_requirements(self.record)
                if self.model.is_sufficient(self.record, self.threshold):
                    return self.record
                last_kind = ExtractionErrorKind.SCHEMA_EXHAUSTED
                last_detail = (
                    f"confidence {self.record.confidence_level:.2f} below "
                    f"threshold {self.threshold:.2f}"
                )
                feedback = []
            else:
                last_kind = outcome.failure_kind or ExtractionErrorKind.SCHEMA_EXHAUSTED
                last_detail = "; ".join(outcome.errors) or last_kind.value
                feedback = build_feedback(outcome.errors, outcome.attempt.trap_hit)

            if self.counter.exhausted:
                raise _CampaignExhausted(last_kind.value, last_detail)

            failures += 1
            self.transition(CampaignState.RETRYING, last_detail)
            self._backoff(failures, last_kind.value)
            self.transition(CampaignState.EXTRACTING, f"retry {self.counter.next_retry_count}")

    def _escalate(self, reason: str, detail: str) -> ManualBackupTicket:
        self.transition(CampaignState.EXHAUSTED, detail)
        ticket = self.escalator.escalate(
            self.session_id,
            reason,
            campaign_id=self.campaign_id,
            final_confidence=self.record.confidence_level if self.record else 0.0,
            detail=detail,
            target_url=self._target_url or self.targets[0],
        )
        self.transition(CampaignState.ESCALATED, reason)
        return ticket

    def _result(self, ticket: ManualBackupTicket | None = None) -> CampaignResult:
        emit_json_event(
            "campaign_completed",
            run_id=self.campaign_id,
            component="pipeline",
            session_id=self.session_id,
            state=self.state.value,
            confidence_level=self.record.confidence_level if self.record else 0.0,
            fetch_attempts=len(self.fetch_attempts),
            extraction_attempts=len(self.extraction_attempts),
            ticket_id=ticket.id if ticket else None,
        )
        return CampaignResult(
            campaign_id=self.campaign_id,
            session_id=self.session_id,
            state=self.state,
            record=self.record,
            ticket=ticket,
            block_reason=self.block_reason,
            fetch_attempts=list(self.fetch_attempts),
            extraction_attempts=list(self.extraction_attempts),
            transitions=list(self.transitions),
        )

    def run(self) -> CampaignResult:
        """
        Drive the campaign to exactly one terminal state.

        Returns:
            CampaignResult in Sufficient, Blocked or Escalated

        Raises:
            IllegalTransition: If run() is called on a campaign that already ran
        """
        if self.state is not CampaignState.IDLE:
            raise IllegalTransition(f"campaign already in {self.state.value}")

        # Later campaigns build on what earlier ones stored for the session.
        if self.requirements_store is not None:
            self.record = self.requirements_store.get_requirements(self.session_id)

        self._deadline = self._clock() + self.budget.time_budget_seconds
        self.transition(CampaignState.FETCHING, f"{len(self.targets)} target(s)")

        try:
            content = self._fetch_content()
            if content is None:
                self.transition(CampaignState.BLOCKED, self.block_reason)
                return self._result()

            self.transition(CampaignState.EXTRACTING, self._target_url)
            self._extract_until_sufficient(content)
            self.transition(
                CampaignState.SUFFICIENT,
                f"confidence {self.record.confidence_level:.2f}",
            )
            return self._result()

        except _CampaignExhausted as exc:
            return self._result(self._escalate(exc.reason, exc.detail))

        except IllegalTransition:
            raise

        except Exception as exc:
            if self.state is CampaignState.EXHAUSTED:
                raise
            emit_json_event(
                "campaign_error",
                run_id=self.campaign_id,
                level="error",
                component="pipeline",
                session_id=self.session_id,
                state=self.state.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            if self.state in (CampaignState.FETCHING, CampaignState.RETRYING):
                reason = FetchErrorKind.NETWORK_FAILURE.value
            else:
                reason = ExtractionErrorKind.PROVIDER_FAILURE.value
            return self._result(self._escalate(reason, f"{type(exc).__name__}: {exc}"))


# ============================================================================
# Concurrent Runner
# ============================================================================

class CampaignRunner:
    """
    Runs independent campaigns concurrently on a thread pool.

    Campaigns share the fetcher's gate (rate-limit counters, robots cache) and
    nothing else.
    """

    def __init__(self, max_workers: int = 4) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers

    def run_many(self, campaigns: Iterable[DiscoveryCampaign]) -> list[CampaignResult]:
        """Run every campaign; results are returned in input order."""
        pending = list(campaigns)
        if not pending:
            return []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(pending))) as pool:
            futures = [pool.submit(campaign.run) for campaign in pending]
            return [future.result() for future in futures]
