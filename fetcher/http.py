"""Audited fetcher with compliance gating, SSRF protection, and body limits."""

from __future__ import annotations

import socket
import time
from collections.abc import Callable
from ipaddress import ip_address, ip_network
from typing import Iterable
from urllib.parse import urljoin, urlparse

import requests

from core.config import ComplianceConfig, CompliancePolicy, PolicySource
from core.errors import FetchError
from core.models import FetchAttempt, FetchErrorKind, FetchStatus, PageContent
from core.pipeline import AuditRecorder, PageResponse, PageSource
from core.structured_logging import emit_json_event
from fetcher.gate import ComplianceGate, GateDecision
from fetcher.logging import emit_fetch_attempt
from quality.redaction import redact_pii, scrub_url


class RedirectLimitExceeded(Exception):
    """Raised when a URL exceeds the configured redirect limit."""


class BodyLimitExceeded(Exception):
    """Raised when response body exceeds configured limits."""


class SecurityBlocked(Exception):
    """Raised when a URL resolves to a blocked network or uses a blocked scheme."""


def _blocked_networks() -> list:
    """Build blocked network list from compliance config."""
    return [ip_network(cidr, strict=False) for cidr in ComplianceConfig.BLOCKED_IP_RANGES]


def _resolve_ip_addresses(hostname: str) -> set[str]:
    """Resolve hostname to a set of IP addresses."""
    try:
        infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    except socket.gaierror:
        return set()
    return {item[4][0] for item in infos}


def _is_blocked_ip(ip_text: str, blocked_networks: Iterable) -> bool:
    """Check if an IP is inside blocked ranges."""
    ip_obj = ip_address(ip_text)
    return any(ip_obj in network for network in blocked_networks)


def _validate_url_scheme(url: str) -> bool:
    """Validate that URL uses allowed protocols."""
    parsed = urlparse(url)
    return parsed.scheme.lower() in ComplianceConfig.ALLOWED_PROTOCOLS


def _content_limit_for_response(content_type: str | None) -> int:
    """Compute byte limit for a response content-type."""
    if not content_type:
        return ComplianceConfig.MAX_BODY_BYTES_DEFAULT
    normalized = content_type.split(";", 1)[0].strip().lower()
    return ComplianceConfig.MAX_BODY_BYTES_BY_TYPE.get(
        normalized,
        ComplianceConfig.MAX_BODY_BYTES_DEFAULT,
    )


def _read_body_with_limit(response: requests.Response, max_bytes: int) -> bytes:
    """Read response body up to the configured maximum size."""
    if max_bytes == 0:
        raise BodyLimitExceeded("content type is disabled by policy")

    chunks: list[bytes] = []
    total = 0
    for chunk in response.iter_content(chunk_size=8192):
        if not chunk:
            continue
        total += len(chunk)
        if total > max_bytes:
            raise BodyLimitExceeded(f"response exceeds {max_bytes} bytes")
        chunks.append(chunk)
    return b"".join(chunks)


def _check_host_allowed(url: str, blocked_networks: Iterable) -> None:
    """Reject disallowed schemes and hosts resolving into blocked ranges."""
    if not _validate_url_scheme(url):
        raise SecurityBlocked(f"protocol not allowed: {urlparse(url).scheme}")
    host = urlparse(url).hostname or ""
    if not host:
        raise SecurityBlocked("missing host")
    resolved = _resolve_ip_addresses(host)
    if any(_is_blocked_ip(ip_text, blocked_networks) for ip_text in resolved):
        raise SecurityBlocked(f"{host} resolves to a blocked IP range")


def _follow_redirects(
    session: requests.Session,
    url: str,
    timeout_seconds: float,
    max_redirects: int,
    user_agent: str,
    blocked_networks: Iterable,
) -> tuple[requests.Response, str]:
    """Fetch a URL while enforcing redirect constraints."""
    current_url = url

    for hop in range(max_redirects + 1):
        response = session.get(
            current_url,
            headers={
                "User-Agent": user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "en-US,en;q=0.5",
                "DNT": "1",
            },
            timeout=timeout_seconds,
            allow_redirects=False,
            stream=True,
        )

        if 300 <= response.status_code < 400 and response.headers.get("location"):
            if hop >= max_redirects:
                response.close()
                raise RedirectLimitExceeded(f"redirects exceeded {max_redirects}")

            next_url = urljoin(current_url, response.headers["location"])
            response.close()
            try:
                _check_host_allowed(next_url, blocked_networks)
            except SecurityBlocked as exc:
                raise RedirectLimitExceeded(f"redirect rejected: {exc}") from exc
            current_url = next_url
            continue

        return response, current_url

    raise RedirectLimitExceeded(f"redirects exceeded {max_redirects}")


class RequestsPageSource(PageSource):
    """PageSource backed by `requests` with SSRF, redirect, and size limits."""

    def __init__(
        self,
        session: requests.Session | None = None,
        user_agent: str = ComplianceConfig.USER_AGENT,
        timeout_seconds: float = ComplianceConfig.FETCH_TIMEOUT_SECONDS,
        max_redirects: int = ComplianceConfig.MAX_REDIRECTS,
    ) -> None:
        self.session = session or requests.Session()
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self.max_redirects = max_redirects

    def retrieve(self, url: str) -> PageResponse:
        """Retrieve one page. Raises requests.RequestException on network failure."""
        blocked_networks = _blocked_networks()
        try:
            _check_host_allowed(url, blocked_networks)
            response, final_url = _follow_redirects(
                self.session,
                url,
                timeout_seconds=self.timeout_seconds,
                max_redirects=self.max_redirects,
                user_agent=self.user_agent,
                blocked_networks=blocked_networks,
            )
        except (SecurityBlocked, RedirectLimitExceeded) as exc:
            raise requests.ConnectionError(str(exc)) from exc

        try:
            content_type = response.headers.get("content-type")
            if 200 <= response.status_code < 300:
                limit = _content_limit_for_response(content_type)
                try:
                    body = _read_body_with_limit(response, limit)
                except BodyLimitExceeded as exc:
                    raise requests.ConnectionError(str(exc)) from exc
            else:
                body = b""
            return PageResponse(
                status_code=response.status_code,
                final_url=final_url,
                content_type=content_type,
                body=body,
            )
        finally:
            response.close()


class FetchResult:
    """Successful fetch: page content plus its audit record."""

    __slots__ = ("content", "attempt")

    def __init__(self, content: PageContent, attempt: FetchAttempt) -> None:
        self.content = content
        self.attempt = attempt


def _to_page_content(url: str, page: PageResponse, scrub_pii: bool) -> PageContent:
    content_type = (page.content_type or "").split(";", 1)[0].strip().lower()
    final_url = scrub_url(page.final_url) if scrub_pii and page.final_url else page.final_url
    if content_type.startswith("image/"):
        return PageContent(
            url=url,
            final_url=final_url,
            content_type=content_type,
            image_bytes=page.body,
        )
    text = page.body.decode(page.encoding or "utf-8", errors="replace")
    if scrub_pii:
        text = redact_pii(text)
    return PageContent(
        url=url,
        final_url=final_url,
        content_type=content_type or None,
        text=text,
    )


class AuditedFetcher:
    """Fetch pages through the compliance gate, auditing every physical call.

    Exactly one FetchAttempt is built and recorded per `fetch()` call,
    whether the call is blocked, fails, or succeeds. Retries are the
    caller's concern.
    """

    def __init__(
        self,
        gate: ComplianceGate,
        policy_source: PolicySource,
        audit: AuditRecorder,
        page_source: PageSource | None = None,
        user_agent: str = ComplianceConfig.USER_AGENT,
        source_ip: str | None = None,
        scrub_pii: bool = True,
        log_fetches: bool = True,
        clock_fn: Callable[[], float] | None = None,
    ) -> None:
        self.gate = gate
        self.policy_source = policy_source
        self.audit = audit
        self.page_source = page_source or RequestsPageSource(user_agent=user_agent)
        self.user_agent = user_agent
        self.source_ip = source_ip
        self.scrub_pii = scrub_pii
        self.log_fetches = log_fetches
        self._clock = clock_fn or time.monotonic

    def _current_policy(self, campaign_id: str | None) -> CompliancePolicy | None:
        try:
            return self.policy_source.current_policy()
        except Exception as exc:
            emit_json_event(
                "policy_lookup_error",
                run_id=campaign_id,
                level="error",
                component="fetcher",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    def _finish(self, attempt: FetchAttempt) -> FetchAttempt:
        self.audit.record(attempt)
        if self.log_fetches:
            emit_fetch_attempt(attempt)
        return attempt

    def fetch(self, url: str, campaign_id: str | None = None) -> FetchResult:
        """Fetch one URL or raise FetchError; the attempt is audited either way."""
        start = self._clock()
        parsed = urlparse(url)
        host = (parsed.hostname or "").lower()
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"
        audit_url = scrub_url(url) if self.scrub_pii else url

        def _elapsed_ms() -> int:
            return int((self._clock() - start) * 1000)

        policy = self._current_policy(campaign_id)
        decision: GateDecision = self.gate.check_allowed(host, policy, path)

        if not decision.allowed:
            attempt = self._finish(
                FetchAttempt(
                    campaign_id=campaign_id,
                    url=audit_url,
                    host=host,
                    status=FetchStatus.BLOCKED,
                    reason=decision.reason,
                    robots_allowed=decision.robots_allowed,
                    rate_limited=decision.rate_limited,
                    duration_ms=_elapsed_ms(),
                    user_agent=self.user_agent,
                    source_ip=self.source_ip,
                )
            )
            raise FetchError(FetchErrorKind.POLICY_BLOCKED, attempt)

        try:
            page = self.page_source.retrieve(url)
        except Exception as exc:
            attempt = self._finish(
                FetchAttempt(
                    campaign_id=campaign_id,
                    url=audit_url,
                    host=host,
                    status=FetchStatus.ERROR,
                    reason=f"{type(exc).__name__}: {exc}",
                    robots_allowed=True,
                    duration_ms=_elapsed_ms(),
                    user_agent=self.user_agent,
                    source_ip=self.source_ip,
                )
            )
            raise FetchError(FetchErrorKind.NETWORK_FAILURE, attempt) from exc

        if not 200 <= page.status_code < 300:
            attempt = self._finish(
                FetchAttempt(
                    campaign_id=campaign_id,
                    url=audit_url,
                    host=host,
                    status=FetchStatus.ERROR,
                    reason=f"HTTP {page.status_code}",
                    robots_allowed=True,
                    response_code=page.status_code,
                    content_length=len(page.body),
                    duration_ms=_elapsed_ms(),
                    user_agent=self.user_agent,
                    source_ip=page.source_ip or self.source_ip,
                )
            )
            raise FetchError(
                FetchErrorKind.HTTP_STATUS,
                attempt,
                status_code=page.status_code,
            )

        try:
            content = _to_page_content(audit_url, page, self.scrub_pii)
        except Exception as exc:
            attempt = self._finish(
                FetchAttempt(
                    campaign_id=campaign_id,
                    url=audit_url,
                    host=host,
                    status=FetchStatus.ERROR,
                    reason=f"unreadable content: {type(exc).__name__}: {exc}",
                    robots_allowed=True,
                    response_code=page.status_code,
                    content_length=len(page.body),
                    duration_ms=_elapsed_ms(),
                    user_agent=self.user_agent,
                    source_ip=page.source_ip or self.source_ip,
                )
            )
            raise FetchError(FetchErrorKind.NETWORK_FAILURE, attempt) from exc

        attempt = self._finish(
            FetchAttempt(
                campaign_id=campaign_id,
                url=audit_url,
                host=host,
                status=FetchStatus.ALLOWED,
                robots_allowed=True,
                response_code=page.status_code,
                content_length=len(page.body),
                duration_ms=_elapsed_ms(),
                user_agent=self.user_agent,
                source_ip=page.source_ip or self.source_ip,
            )
        )
        return FetchResult(content=content, attempt=attempt)
