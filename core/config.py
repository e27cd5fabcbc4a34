"""
Default compliance and discovery configuration for signup-discovery.

Compliance settings default to "safe + slow": every ambiguity denies the
fetch. Discovery settings bound how much a single campaign may spend on
retries and wall-clock time.

Runtime policy (public mode, per-host ceilings) is NOT read from here by the
core; it travels as a CompliancePolicy value supplied by a PolicySource.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Set, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ComplianceConfig:
    """
    Compliance settings for the fetch layer.
    """

    # ========================================================================
    # Fetch-Layer Constraints (Non-negotiable)
    # ========================================================================

    # Robots enforcement: REQUIRED, cannot be disabled
    ROBOTS_CHECK_REQUIRED: bool = True
    """Robots rules must be consulted before every fetch."""

    # Protocol whitelist: only http(s), no file://, gopher, etc.
    ALLOWED_PROTOCOLS: Set[str] = {"http", "https"}
    """Only HTTP(S) allowed."""

    # IP blocklist: private/internal IPs cannot be fetched (SSRF prevention)
    BLOCKED_IP_RANGES: list[str] = [
        # IPv4 private
        "127.0.0.1/8",          # Loopback
        "10.0.0.0/8",           # Private
        "172.16.0.0/12",        # Private
        "192.168.0.0/16",       # Private
        "169.254.0.0/16",       # Link-local
        "169.254.169.254/32",   # Cloud metadata endpoint
        "224.0.0.0/4",          # Multicast
        "255.255.255.255/32",   # Broadcast
        "0.0.0.0/8",            # This network
        # IPv6 private/link-local
        "::1/128",              # Loopback
        "fe80::/10",            # Link-local
        "fc00::/7",             # Unique local addresses (ULA)
        "ff00::/8",             # Multicast
    ]
    """IP ranges that cannot be fetched (SSRF prevention)."""

    MAX_REDIRECTS: int = 5
    """Maximum redirect hops per fetch."""

    FETCH_TIMEOUT_SECONDS: int = 10
    """Maximum time to wait for a single fetch (seconds)."""

    MAX_BODY_BYTES_BY_TYPE: dict[str, int] = {
        "text/html": 5_000_000,
        "application/xhtml+xml": 5_000_000,
        "text/plain": 2_000_000,
        "application/json": 2_000_000,
        "image/png": 8_000_000,          # screenshots
        "image/jpeg": 8_000_000,
        "image/webp": 8_000_000,
        "application/pdf": 0,             # PDFs not fetched
    }
    """Max body bytes per content-type. Unlisted types default to MAX_BODY_BYTES_DEFAULT."""

    MAX_BODY_BYTES_DEFAULT: int = 500_000
    """Fallback max body size for unknown content-types."""

    USER_AGENT: str = "SignupDiscoveryBot/1.0 (+https://example.com/bot)"
    """User-Agent header (must be descriptive)."""

    # ========================================================================
    # Rate Limiting
    # ========================================================================

    RATE_WINDOW_SECONDS: float = 60.0
    """Length of the per-host counting window."""

    DEFAULT_RATE_CEILING: int = 10
    """Requests allowed per host per window unless the policy overrides it."""

    # ========================================================================
    # Robots Cache
    # ========================================================================

    ROBOTS_TTL_SECONDS: float = 3600.0
    """Lifetime of a parsed robots.txt entry."""

    ROBOTS_TTL_NOT_FOUND_SECONDS: float = 900.0
    """Lifetime of an entry for a host without robots.txt."""

    ROBOTS_TTL_UNAVAILABLE_SECONDS: float = 900.0
    """Lifetime of a fail-closed entry after a robots.txt error."""

    TOS_RESTRICTED_HOSTS: Tuple[str, ...] = (
        "facebook.com",
        "instagram.com",
        "twitter.com",
        "x.com",
        "linkedin.com",
        "tiktok.com",
        "youtube.com",
        "amazon.com",
        "ebay.com",
    )
    """Hosts whose terms of service forbid automated access."""

    # ========================================================================
    # Audit
    # ========================================================================

    AUDIT_RETENTION_DAYS: int = 90
    """Audit rows older than this may be purged."""

    AUDIT_QUEUE_MAX: int = 10_000
    """Max audit records buffered before overflow is logged locally."""

    RAW_OUTPUT_MAX_CHARS: int = 20_000
    """Raw extraction output stored per attempt is truncated to this size."""

    @classmethod
    def validate(cls) -> None:
        """
        Validate configuration at startup.

        Raises:
            AssertionError: If any constraint is violated.
        """
        assert cls.ROBOTS_CHECK_REQUIRED is True, "ROBOTS_CHECK_REQUIRED must be True"
        assert cls.MAX_REDIRECTS >= 0, "MAX_REDIRECTS must be >= 0"
        assert cls.FETCH_TIMEOUT_SECONDS > 0, "FETCH_TIMEOUT_SECONDS must be > 0"
        assert cls.RATE_WINDOW_SECONDS > 0, "RATE_WINDOW_SECONDS must be > 0"
        assert cls.DEFAULT_RATE_CEILING >= 0, "DEFAULT_RATE_CEILING must be >= 0"
        assert cls.MAX_BODY_BYTES_DEFAULT > 0, "MAX_BODY_BYTES_DEFAULT must be > 0"
        assert (
            all(b >= 0 for b in cls.MAX_BODY_BYTES_BY_TYPE.values())
        ), "All MAX_BODY_BYTES_BY_TYPE values must be >= 0"
        assert cls.AUDIT_RETENTION_DAYS > 0, "AUDIT_RETENTION_DAYS must be > 0"


class DiscoveryConfig:
    """
    Budgets and scoring defaults for discovery campaigns.
    """

    MAX_RETRIES: int = 3
    """Total extraction attempts per campaign (schema + provider failures share it)."""

    MAX_FETCH_ATTEMPTS: int = 2
    """Physical fetch attempts per target URL before the campaign gives up."""

    BACKOFF_BASE_SECONDS: float = 1.0
    """Delay before the first retry; doubles per attempt."""

    BACKOFF_MAX_SECONDS: float = 30.0
    """Upper bound for a single backoff delay."""

    CAMPAIGN_TIME_BUDGET_SECONDS: float = 180.0
    """Wall-clock budget for one campaign."""

    CONFIDENCE_THRESHOLD: float = 0.6
    """Default bar for unblocking downstream signup preparation."""

    EXPECTED_CATEGORIES: Tuple[str, ...] = (
        "participant",
        "guardian",
        "contact",
        "emergency",
        "medical",
    )
    """Field categories a complete signup form is expected to cover."""

    WEIGHT_COVERAGE: float = 0.5
    WEIGHT_CLEAN: float = 0.25
    WEIGHT_AGREEMENT: float = 0.25
    AGREEMENT_GAIN: float = 0.6
    """Fraction of the remaining agreement gap closed by each agreeing attempt."""

    CONTENT_MAX_CHARS: int = 8000
    """Page text sent to the extraction provider is truncated to this size."""

    @classmethod
    def validate(cls) -> None:
        assert cls.MAX_RETRIES >= 1, "MAX_RETRIES must be >= 1"
        assert cls.MAX_FETCH_ATTEMPTS >= 1, "MAX_FETCH_ATTEMPTS must be >= 1"
        assert cls.BACKOFF_BASE_SECONDS >= 0, "BACKOFF_BASE_SECONDS must be >= 0"
        assert (
            cls.BACKOFF_MAX_SECONDS >= cls.BACKOFF_BASE_SECONDS
        ), "BACKOFF_MAX_SECONDS must be >= BACKOFF_BASE_SECONDS"
        assert 0.0 <= cls.CONFIDENCE_THRESHOLD <= 1.0, "CONFIDENCE_THRESHOLD must be in [0, 1]"
        assert cls.EXPECTED_CATEGORIES, "EXPECTED_CATEGORIES must not be empty"
        weights = cls.WEIGHT_COVERAGE + cls.WEIGHT_CLEAN + cls.WEIGHT_AGREEMENT
        assert abs(weights - 1.0) < 1e-9, "confidence weights must sum to 1"
        assert 0.0 < cls.AGREEMENT_GAIN <= 1.0, "AGREEMENT_GAIN must be in (0, 1]"


# Validate at module import time
ComplianceConfig.validate()
DiscoveryConfig.validate()


# ============================================================================
# Runtime Values
# ============================================================================

class CompliancePolicy(BaseModel):
    """
    Policy snapshot handed to the compliance gate at call time.

    Example:
      CompliancePolicy(
          public_mode=True,
          public_allowlist=frozenset({"register.example.org"}),
          rate_ceilings={"register.example.org": 1},
      )
    """
    model_config = ConfigDict(frozen=True)

    public_mode: bool = False
    public_allowlist: frozenset[str] = frozenset()
    default_rate_ceiling: int = Field(default=ComplianceConfig.DEFAULT_RATE_CEILING, ge=0)
    rate_ceilings: dict[str, int] = Field(default_factory=dict)
    blocked_hosts: frozenset[str] = frozenset()

    @field_validator("public_allowlist", "blocked_hosts", mode="before")
    @classmethod
    def normalize_hosts(cls, v):
        return frozenset(str(item).strip().lower() for item in (v or ()) if str(item).strip())

    @field_validator("rate_ceilings", mode="before")
    @classmethod
    def normalize_ceilings(cls, v):
        normalized = {str(host).strip().lower(): int(limit) for host, limit in (v or {}).items()}
        if any(limit < 0 for limit in normalized.values()):
            raise ValueError("rate ceilings must be >= 0")
        return normalized

    def ceiling_for(self, host: str) -> int:
        return self.rate_ceilings.get(host.lower(), self.default_rate_ceiling)


class PolicySource(ABC):
    """Collaborator supplying the current compliance policy."""

    @abstractmethod
    def current_policy(self) -> CompliancePolicy:
        """Return the policy in force right now. May raise on lookup failure."""


class StaticPolicySource(PolicySource):
    """Policy source returning one fixed policy value."""

    def __init__(self, policy: CompliancePolicy | None = None) -> None:
        self._policy = policy or CompliancePolicy()

    def current_policy(self) -> CompliancePolicy:
        return self._policy


class RetryBudget(BaseModel):
    """
    Retry and time budget for one campaign.

    max_retries counts every extraction attempt, the first included, so
    retry_count values run from 0 to max_retries - 1.
    """
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=DiscoveryConfig.MAX_RETRIES, ge=1)
    max_fetch_attempts: int = Field(default=DiscoveryConfig.MAX_FETCH_ATTEMPTS, ge=1)
    base_delay_seconds: float = Field(default=DiscoveryConfig.BACKOFF_BASE_SECONDS, ge=0.0)
    max_delay_seconds: float = Field(default=DiscoveryConfig.BACKOFF_MAX_SECONDS, ge=0.0)
    time_budget_seconds: float = Field(default=DiscoveryConfig.CAMPAIGN_TIME_BUDGET_SECONDS, gt=0.0)

    def backoff_delay(self, retry_number: int) -> float:
        """Delay before retry number `retry_number` (1-based), doubling and capped."""
        if retry_number < 1:
            return 0.0
        return min(self.base_delay_seconds * (2 ** (retry_number - 1)), self.max_delay_seconds)
