"""Fetcher subsystem with compliance gate, robots cache, rate limits, and HTTP safety checks."""

from fetcher.gate import ComplianceGate, GateDecision
from fetcher.http import AuditedFetcher, FetchResult, RequestsPageSource
from fetcher.logging import emit_fetch_attempt, fetch_attempt_to_dict
from fetcher.politeness import HostRateLimiter
from fetcher.robots import RobotsCache

__all__ = [
    "AuditedFetcher",
    "ComplianceGate",
    "FetchResult",
    "GateDecision",
    "HostRateLimiter",
    "RequestsPageSource",
    "RobotsCache",
    "emit_fetch_attempt",
    "fetch_attempt_to_dict",
]
