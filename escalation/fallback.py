"""Manual-backup escalation for campaigns that cannot reach confidence."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from enum import Enum

from core.errors import TicketAlreadyResolved
from core.models import ManualBackupTicket
from core.pipeline import TicketStore
from core.structured_logging import emit_json_event


class InMemoryTicketStore(TicketStore):
    """Process-local ticket store, unique per (session_id, campaign_id)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_id: dict[str, ManualBackupTicket] = {}
        self._by_campaign: dict[tuple[str, str], str] = {}

    def insert_or_get_ticket(self, ticket: ManualBackupTicket) -> ManualBackupTicket:
        key = (ticket.session_id, ticket.campaign_id)
        with self._lock:
            existing_id = self._by_campaign.get(key)
            if existing_id is not None:
                return self._by_id[existing_id].model_copy()
            self._by_id[ticket.id] = ticket.model_copy()
            self._by_campaign[key] = ticket.id
            return ticket.model_copy()

    def get_ticket(self, ticket_id: str) -> ManualBackupTicket | None:
        with self._lock:
            ticket = self._by_id.get(ticket_id)
            return ticket.model_copy() if ticket else None

    def update_ticket(self, ticket: ManualBackupTicket) -> None:
        with self._lock:
            current = self._by_id.get(ticket.id)
            if current is None or current.is_resolved:
                raise ValueError(f"ticket {ticket.id} is missing or already resolved")
            self._by_id[ticket.id] = ticket.model_copy()

    def list_tickets(self, include_resolved: bool = False) -> list[ManualBackupTicket]:
        with self._lock:
            tickets = [
                item.model_copy()
                for item in self._by_id.values()
                if include_resolved or not item.is_resolved
            ]
        return sorted(tickets, key=lambda item: (item.created_at, item.id))


class FallbackEscalator:
    """
    Create and resolve manual-backup tickets.

    escalate() is idempotent per (session_id, campaign_id): the lock covers
    concurrent callers in this process and the store's uniqueness covers
    everything else.
    """

    def __init__(self, store: TicketStore) -> None:
        self.store = store
        self._lock = threading.Lock()

    def escalate(
        self,
        session_id: str,
        reason: str | Enum,
        campaign_id: str,
        final_confidence: float = 0.0,
        detail: str | None = None,
        target_url: str | None = None,
    ) -> ManualBackupTicket:
        """Return the campaign's ticket, creating it on the first call."""
        failure_reason = reason.value if isinstance(reason, Enum) else str(reason)
        candidate = ManualBackupTicket(
            session_id=session_id,
            campaign_id=campaign_id,
            failure_reason=failure_reason,
            final_confidence=final_confidence,
            detail=detail,
            target_url=target_url,
        )
        with self._lock:
            ticket = self.store.insert_or_get_ticket(candidate)

        created = ticket.id == candidate.id
        emit_json_event(
            "ticket_escalated" if created else "ticket_escalation_repeated",
            run_id=campaign_id,
            level="warning" if created else "info",
            component="escalation",
            ticket_id=ticket.id,
            session_id=session_id,
            failure_reason=ticket.failure_reason,
            final_confidence=ticket.final_confidence,
            target_url=ticket.target_url,
        )
        return ticket

    def resolve(
        self,
        ticket_id: str,
        resolved_by: str,
        note: str | None = None,
    ) -> ManualBackupTicket:
        """
        Mark a ticket resolved.

        Raises:
            KeyError: If the ticket does not exist
            TicketAlreadyResolved: If the ticket was resolved before
        """
        with self._lock:
            ticket = self.store.get_ticket(ticket_id)
            if ticket is None:
                raise KeyError(f"unknown ticket: {ticket_id}")
            if ticket.is_resolved:
                raise TicketAlreadyResolved(
                    f"ticket {ticket_id} was resolved at {ticket.resolved_at.isoformat()}"
                )
            resolved = ticket.model_copy(
                update={
                    "resolved_at": datetime.now(UTC),
                    "resolved_by": resolved_by,
                    "resolution_note": note,
                }
            )
            self.store.update_ticket(resolved)

        emit_json_event(
            "ticket_resolved",
            run_id=resolved.campaign_id,
            component="escalation",
            ticket_id=resolved.id,
            session_id=resolved.session_id,
            resolved_by=resolved_by,
        )
        return resolved

    def open_tickets(self) -> list[ManualBackupTicket]:
        """Unresolved tickets, oldest first."""
        return self.store.list_tickets(include_resolved=False)
