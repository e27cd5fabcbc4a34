"""Robots.txt cache with TTL expiry and a fail-closed lookup strategy.

The compliance gate only reads this cache. Network refreshes happen out of
band through `refresh()`, called by a scheduler or the operator CLI.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable
from urllib import robotparser

import requests

from core.config import ComplianceConfig
from core.structured_logging import emit_json_event


@dataclass(slots=True)
class RobotsCacheEntry:
    """Cached robots policy for a host."""

    mode: str  # "parsed", "allow_all" or "unavailable"
    expires_at: float
    parser: robotparser.RobotFileParser | None = None
    status_code: int | None = None
    warning: str | None = None


@dataclass(slots=True)
class RobotsDecision:
    """Decision payload for one path robots check."""

    allowed: bool
    reason: str | None
    mode: str
    cache_hit: bool


class RobotsCache:
    """Host-keyed robots directives; reads are lock-free, writes are lock-scoped."""

    def __init__(
        self,
        user_agent: str = ComplianceConfig.USER_AGENT,
        timeout_seconds: float = 5,
        session: requests.Session | None = None,
        clock_fn: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the cache, refresh session, and TTL defaults."""
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()
        self._clock = clock_fn or time.monotonic
        self._lock = threading.Lock()
        self._cache: dict[str, RobotsCacheEntry] = {}

        self._ttl_success_seconds = ComplianceConfig.ROBOTS_TTL_SECONDS
        self._ttl_not_found_seconds = ComplianceConfig.ROBOTS_TTL_NOT_FOUND_SECONDS
        self._ttl_unavailable_seconds = ComplianceConfig.ROBOTS_TTL_UNAVAILABLE_SECONDS

    def clear(self) -> None:
        """Clear all cached robots entries."""
        with self._lock:
            self._cache.clear()

    def lookup(self, host: str) -> RobotsCacheEntry | None:
        """Return the live entry for `host`, or None when missing or expired."""
        entry = self._cache.get(host.lower())
        if entry is None or entry.expires_at <= self._clock():
            return None
        return entry

    def evaluate(self, host: str, path: str = "/") -> RobotsDecision:
        """Decide whether `path` on `host` may be fetched. Missing data denies."""
        entry = self.lookup(host)
        if entry is None:
            return RobotsDecision(
                allowed=False,
                reason="robots-unavailable",
                mode="missing",
                cache_hit=False,
            )
        if entry.mode == "allow_all":
            return RobotsDecision(allowed=True, reason=None, mode=entry.mode, cache_hit=True)
        if entry.mode == "parsed" and entry.parser is not None:
            target = path if path.startswith("/") else f"/{path}"
            if entry.parser.can_fetch(self.user_agent, f"https://{host.lower()}{target}"):
                return RobotsDecision(allowed=True, reason=None, mode=entry.mode, cache_hit=True)
            return RobotsDecision(
                allowed=False,
                reason="robots-disallow",
                mode=entry.mode,
                cache_hit=True,
            )
        return RobotsDecision(
            allowed=False,
            reason="robots-unavailable",
            mode=entry.mode,
            cache_hit=True,
        )

    def load(self, host: str, robots_text: str, status_code: int = 200) -> RobotsCacheEntry:
        """Install directives from already-retrieved robots.txt text."""
        parser = robotparser.RobotFileParser()
        parser.set_url(f"https://{host.lower()}/robots.txt")
        parser.parse(robots_text.splitlines())
        entry = RobotsCacheEntry(
            mode="parsed",
            parser=parser,
            expires_at=self._clock() + self._ttl_success_seconds,
            status_code=status_code,
        )
        self._store(host, entry)
        return entry

    def allow_all(self, host: str, warning: str | None = None) -> RobotsCacheEntry:
        """Record that `host` publishes no robots rules."""
        entry = RobotsCacheEntry(
            mode="allow_all",
            expires_at=self._clock() + self._ttl_not_found_seconds,
            status_code=404,
            warning=warning,
        )
        self._store(host, entry)
        return entry

    def refresh(self, host: str, scheme: str = "https") -> RobotsCacheEntry:
        """Fetch robots.txt for `host` and replace its cache entry."""
        robots_url = f"{scheme}://{host.lower()}/robots.txt"
        entry = self._fetch_entry(robots_url)
        self._store(host, entry)
        emit_json_event(
            "robots_refresh",
            run_id=None,
            component="robots",
            host=host.lower(),
            robots_url=robots_url,
            robots_mode=entry.mode,
            robots_status_code=entry.status_code,
        )
        if entry.warning:
            emit_json_event(
                "robots_warning",
                run_id=None,
                level="warning",
                component="robots",
                host=host.lower(),
                message=entry.warning,
            )
        return entry

    def refresh_many(self, hosts: Iterable[str]) -> dict[str, str]:
        """Refresh several hosts; returns host -> resulting mode."""
        return {host.lower(): self.refresh(host).mode for host in hosts}

    def _store(self, host: str, entry: RobotsCacheEntry) -> None:
        with self._lock:
            self._cache[host.lower()] = entry

    def _fetch_entry(self, robots_url: str) -> RobotsCacheEntry:
        now = self._clock()

        try:
            response = self._session.get(
                robots_url,
                headers={"User-Agent": self.user_agent},
                allow_redirects=True,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            return RobotsCacheEntry(
                mode="unavailable",
                expires_at=now + self._ttl_unavailable_seconds,
                warning=f"robots.txt request error for {robots_url}: {type(exc).__name__}; denying",
            )

        if response.status_code == 200:
            parser = robotparser.RobotFileParser()
            parser.set_url(robots_url)
            parser.parse(response.text.splitlines())
            return RobotsCacheEntry(
                mode="parsed",
                parser=parser,
                expires_at=now + self._ttl_success_seconds,
                status_code=response.status_code,
            )

        if response.status_code in (404, 410):
            return RobotsCacheEntry(
                mode="allow_all",
                expires_at=now + self._ttl_not_found_seconds,
                status_code=response.status_code,
                warning=f"robots.txt not found for {robots_url}; allowing",
            )

        return RobotsCacheEntry(
            mode="unavailable",
            expires_at=now + self._ttl_unavailable_seconds,
            status_code=response.status_code,
            warning=f"robots.txt returned {response.status_code} for {robots_url}; denying",
        )
