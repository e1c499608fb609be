"""Rate-limit aware HTTP gateway for one remote service binding.

The gateway owns a :class:`RateBudget` that is refreshed from response headers
after every call and consulted before every call. It never retries transport
failures; it only absorbs auth expiry (one refresh + one retry) and short
overload waits (one retry when the server asks for <= ``max_retry_after``
seconds).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Protocol

import httpx

from plan_coordinator.config import GatewaySettings, HeaderStyle

logger = logging.getLogger(__name__)

HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_TOO_MANY_REQUESTS = 429
HTTP_SERVICE_UNAVAILABLE = 503
SYNTHETIC_RESPONSE_HEADER = "x-synthetic-response"
SYNTHETIC_BUDGET_LOW = "budget-low"
DEFAULT_USER_AGENT = "plan-coordinator/1.0"


@dataclass(frozen=True, slots=True)
class RateLimitHeaderNames:
    """Header names carrying the remote budget."""

    remaining: str
    limit: str
    reset: str


GITHUB_HEADER_NAMES = RateLimitHeaderNames(
    remaining="x-ratelimit-remaining",
    limit="x-ratelimit-limit",
    reset="x-ratelimit-reset",
)
ATPROTO_HEADER_NAMES = RateLimitHeaderNames(
    remaining="ratelimit-remaining",
    limit="ratelimit-limit",
    reset="ratelimit-reset",
)
HEADER_NAMES_BY_STYLE = {
    HeaderStyle.GITHUB: GITHUB_HEADER_NAMES,
    HeaderStyle.ATPROTO: ATPROTO_HEADER_NAMES,
}


@dataclass(slots=True)
class RateBudget:
    """Remote request budget as last reported by the service."""

    remaining: int
    limit: int
    reset_epoch: int = 0
    last_request_at: float = 0.0

    def is_low(self, threshold: int) -> bool:
        return self.remaining < threshold

    def roll_over(self, now_epoch: float) -> bool:
        """Restore the full budget once the reported reset time has passed."""

        if self.reset_epoch <= 0 or now_epoch < self.reset_epoch or self.remaining >= self.limit:
            return False
        self.remaining = self.limit
        return True

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset_epoch, tz=UTC)

    def update_from_headers(self, headers: httpx.Headers, names: RateLimitHeaderNames) -> None:
        """Apply whichever budget headers are present; the service is authoritative."""

        remaining = _parse_int_header(headers.get(names.remaining))
        limit = _parse_int_header(headers.get(names.limit))
        reset = _parse_int_header(headers.get(names.reset))
        if remaining is not None:
            self.remaining = remaining
        if limit is not None:
            self.limit = limit
        if reset is not None:
            self.reset_epoch = reset


@dataclass(frozen=True, slots=True)
class RateBudgetStatus:
    """Read-only budget snapshot for reporting."""

    remaining: int
    limit: int
    reset_at: datetime


class CredentialProvider(Protocol):
    """Supplies auth headers and can renew them once they expire."""

    def auth_headers(self) -> dict[str, str]:
        """Headers to attach to every outbound request."""
        raise NotImplementedError

    def refresh(self) -> bool:
        """Renew credentials; return True when fresh headers are available."""
        raise NotImplementedError


class RateLimitedGateway:
    """HTTP client wrapper enforcing budget gate, spacing, auth refresh and overload retry."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        credentials: CredentialProvider,
        budget: RateBudget | None = None,
        header_names: RateLimitHeaderNames = GITHUB_HEADER_NAMES,
        min_spacing_seconds: float = 5.0,
        low_budget_threshold: int = 100,
        max_retry_after_seconds: int = 30,
        default_retry_after_seconds: int = 60,
        timeout_seconds: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.credentials = credentials
        self.budget = budget or RateBudget(remaining=5_000, limit=5_000)
        self.header_names = header_names
        self.min_spacing_seconds = min_spacing_seconds
        self.low_budget_threshold = low_budget_threshold
        self.max_retry_after_seconds = max_retry_after_seconds
        self.default_retry_after_seconds = default_retry_after_seconds
        self._sleep = sleep
        self._clock = clock
        self._wall_clock = wall_clock
        self._client = httpx.Client(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"User-Agent": user_agent},
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: GatewaySettings,
        *,
        credentials: CredentialProvider,
        transport: httpx.BaseTransport | None = None,
    ) -> RateLimitedGateway:
        return cls(
            base_url=settings.base_url,
            credentials=credentials,
            budget=RateBudget(remaining=settings.initial_budget, limit=settings.initial_budget),
            header_names=HEADER_NAMES_BY_STYLE[settings.header_style],
            min_spacing_seconds=settings.min_spacing_seconds,
            low_budget_threshold=settings.low_budget_threshold,
            max_retry_after_seconds=settings.max_retry_after_seconds,
            default_retry_after_seconds=settings.default_retry_after_seconds,
            timeout_seconds=settings.request_timeout_seconds,
            transport=transport,
        )

    def build_request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Request:
        """Build a request carrying the current credentials."""

        return self._client.build_request(
            method,
            url,
            json=json,
            params=params,
            headers=self.credentials.auth_headers(),
        )

    def request(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        return self.send(self.build_request(method, url, json=json, params=params))

    def send(self, request: httpx.Request) -> httpx.Response:
        """Send one logical request, absorbing auth expiry and short overload waits."""

        if self.budget.roll_over(self._wall_clock()):
            logger.info("Rate budget window reset, remaining=%d", self.budget.remaining)
        if self.budget.is_low(self.low_budget_threshold):
            logger.warning(
                "Rate budget low, skipping request: remaining=%d threshold=%d reset_at=%s",
                self.budget.remaining,
                self.low_budget_threshold,
                self.budget.reset_at.isoformat(),
            )
            return self._synthetic_budget_response(request)

        self._wait_for_spacing()
        response = self._dispatch(request)

        if response.status_code == HTTP_UNAUTHORIZED:
            return self._retry_with_fresh_credentials(request, response)
        if self._is_overloaded(response):
            return self._retry_after_backoff(request, response)
        return response

    def status(self) -> RateBudgetStatus:
        return RateBudgetStatus(
            remaining=self.budget.remaining,
            limit=self.budget.limit,
            reset_at=self.budget.reset_at,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> RateLimitedGateway:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _wait_for_spacing(self) -> None:
        last = self.budget.last_request_at
        if last <= 0:
            return
        elapsed = self._clock() - last
        if elapsed < self.min_spacing_seconds:
            delay = self.min_spacing_seconds - elapsed
            logger.debug("Spacing requests: sleeping %.2fs", delay)
            self._sleep(delay)

    def _dispatch(self, request: httpx.Request) -> httpx.Response:
        self.budget.last_request_at = self._clock()
        response = self._client.send(request)
        self.budget.update_from_headers(response.headers, self.header_names)
        return response

    def _retry_with_fresh_credentials(
        self,
        request: httpx.Request,
        response: httpx.Response,
    ) -> httpx.Response:
        logger.info("Received 401 for %s %s, refreshing credentials", request.method, request.url)
        if not self.credentials.refresh():
            logger.error("Credential refresh failed after 401 for %s", request.url)
            return response

        retry_response = self._dispatch(_rebuild_with_headers(request, self.credentials))
        if retry_response.status_code == HTTP_UNAUTHORIZED:
            logger.error("401 persists after credential refresh for %s", request.url)
        return retry_response

    def _is_overloaded(self, response: httpx.Response) -> bool:
        if response.status_code == HTTP_TOO_MANY_REQUESTS:
            return True
        return response.status_code == HTTP_FORBIDDEN and self.budget.remaining == 0

    def _retry_after_backoff(
        self,
        request: httpx.Request,
        response: httpx.Response,
    ) -> httpx.Response:
        retry_seconds = retry_after_seconds(
            response.headers,
            default=self.default_retry_after_seconds,
        )
        if retry_seconds > self.max_retry_after_seconds:
            logger.warning(
                "Overload status=%d retry_after=%ds exceeds max=%ds, returning as-is",
                response.status_code,
                retry_seconds,
                self.max_retry_after_seconds,
            )
            return response

        logger.warning(
            "Overload status=%d, short retry after %ds",
            response.status_code,
            retry_seconds,
        )
        self._sleep(float(retry_seconds))
        return self._dispatch(request)

    def _synthetic_budget_response(self, request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            HTTP_SERVICE_UNAVAILABLE,
            json={"message": "Rate limit budget low, skipping request"},
            headers={
                SYNTHETIC_RESPONSE_HEADER: SYNTHETIC_BUDGET_LOW,
                "retry-after": str(self._seconds_until_reset()),
            },
            request=request,
        )

    def _seconds_until_reset(self) -> int:
        if self.budget.reset_epoch <= 0:
            return self.default_retry_after_seconds
        delta = self.budget.reset_epoch - int(self._wall_clock())
        return max(0, delta)


class StaticTokenCredentials:
    """Bearer-token credentials with an optional token source for renewal."""

    def __init__(
        self,
        token: str,
        *,
        token_source: Callable[[], str | None] | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> None:
        self.token = token
        self._token_source = token_source
        self._extra_headers = dict(extra_headers or {})

    def auth_headers(self) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.token}"}
        headers.update(self._extra_headers)
        return headers

    def refresh(self) -> bool:
        if self._token_source is None:
            return False
        fresh = self._token_source()
        if not fresh or fresh == self.token:
            return False
        self.token = fresh
        return True


def github_credentials(
    token: str,
    *,
    token_source: Callable[[], str | None] | None = None,
) -> StaticTokenCredentials:
    """Credentials with the GitHub REST API media type and version headers."""

    return StaticTokenCredentials(
        token,
        token_source=token_source,
        extra_headers={
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        },
    )


def is_synthetic_response(response: httpx.Response) -> bool:
    return response.headers.get(SYNTHETIC_RESPONSE_HEADER) == SYNTHETIC_BUDGET_LOW


def retry_after_seconds(headers: httpx.Headers, *, default: int) -> int:
    """Parse ``retry-after`` as delta seconds or HTTP date; fall back to ``default``."""

    raw = headers.get("retry-after")
    if raw is None or not raw.strip():
        return default
    value = raw.strip()
    try:
        return max(0, int(float(value)))
    except ValueError:
        pass
    try:
        target = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if target.tzinfo is None:
        target = target.replace(tzinfo=UTC)
    return max(0, int((target - datetime.now(tz=UTC)).total_seconds()))


def _rebuild_with_headers(
    request: httpx.Request,
    credentials: CredentialProvider,
) -> httpx.Request:
    headers = httpx.Headers(request.headers)
    for name in ("authorization", *(key.lower() for key in credentials.auth_headers())):
        if name in headers:
            del headers[name]
    headers.update(credentials.auth_headers())
    return httpx.Request(
        request.method,
        request.url,
        headers=headers,
        content=request.read(),
    )


def _parse_int_header(value: str | None) -> int | None:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None
