"""Manual-backup escalation."""

from escalation.fallback import FallbackEscalator, InMemoryTicketStore

__all__ = ["FallbackEscalator", "InMemoryTicketStore"]
