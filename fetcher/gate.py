"""Compliance gate: decides whether a fetch to a host is currently allowed."""

from __future__ import annotations

from dataclasses import dataclass

from core.config import ComplianceConfig, CompliancePolicy
from fetcher.politeness import HostRateLimiter
from fetcher.robots import RobotsCache

PUBLIC_MODE_BLOCK = "public-mode-block"
RATE_LIMITED = "rate-limited"
ROBOTS_DISALLOW = "robots-disallow"
ROBOTS_UNAVAILABLE = "robots-unavailable"
TOS_BLOCK = "tos-block"
POLICY_ERROR = "policy-error"
INVALID_HOST = "invalid-host"


@dataclass(frozen=True, slots=True)
class GateDecision:
    """Outcome of one compliance check."""

    allowed: bool
    reason: str | None = None
    robots_allowed: bool | None = None
    rate_limited: bool = False


def _host_matches(host: str, pattern: str) -> bool:
    return host == pattern or host.endswith(f".{pattern}")


class ComplianceGate:
    """Evaluate public-mode, robots, and rate-limit policy for a host.

    Checks run cheapest-first and the rate-limit allowance is consumed last,
    so a request denied for any other reason never spends a slot. Every
    ambiguity resolves to "not allowed".
    """

    def __init__(
        self,
        robots: RobotsCache,
        limiter: HostRateLimiter,
        tos_restricted_hosts: tuple[str, ...] = ComplianceConfig.TOS_RESTRICTED_HOSTS,
    ) -> None:
        self.robots = robots
        self.limiter = limiter
        self.tos_restricted_hosts = tuple(item.lower() for item in tos_restricted_hosts)

    def check_allowed(
        self,
        host: str,
        policy: CompliancePolicy | None,
        path: str = "/",
    ) -> GateDecision:
        """Return whether a request to `host`/`path` may be sent right now."""
        normalized = (host or "").strip().lower()
        if not normalized:
            return GateDecision(allowed=False, reason=INVALID_HOST)
        if not isinstance(policy, CompliancePolicy):
            return GateDecision(allowed=False, reason=POLICY_ERROR)

        if any(_host_matches(normalized, item) for item in policy.blocked_hosts) or any(
            _host_matches(normalized, item) for item in self.tos_restricted_hosts
        ):
            return GateDecision(allowed=False, reason=TOS_BLOCK)

        if policy.public_mode and not any(
            _host_matches(normalized, item) for item in policy.public_allowlist
        ):
            return GateDecision(allowed=False, reason=PUBLIC_MODE_BLOCK)

        robots_decision = self.robots.evaluate(normalized, path or "/")
        if not robots_decision.allowed:
            return GateDecision(
                allowed=False,
                reason=robots_decision.reason or ROBOTS_UNAVAILABLE,
                robots_allowed=False,
            )

        if not self.limiter.try_acquire(normalized, policy.ceiling_for(normalized)):
            return GateDecision(
                allowed=False,
                reason=RATE_LIMITED,
                robots_allowed=True,
                rate_limited=True,
            )

        return GateDecision(allowed=True, robots_allowed=True)
