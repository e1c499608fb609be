from __future__ import annotations

import allure
import httpx
import pytest

from plan_coordinator.config import GatewaySettings, HeaderStyle
from plan_coordinator.http.gateway import (
    ATPROTO_HEADER_NAMES,
    SYNTHETIC_RESPONSE_HEADER,
    RateBudget,
    RateLimitedGateway,
    StaticTokenCredentials,
    github_credentials,
    is_synthetic_response,
    retry_after_seconds,
)

pytestmark = [
    allure.epic("Rate-Limited Gateway"),
    allure.feature("Budget, Spacing, Auth Refresh & Overload"),
]


class _FakeClock:
    def __init__(self, start: float = 100.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _gateway(handler, *, clock: _FakeClock | None = None, **kwargs) -> RateLimitedGateway:
    clock = clock or _FakeClock()
    kwargs.setdefault("credentials", StaticTokenCredentials("token-1"))
    kwargs.setdefault("min_spacing_seconds", 0.0)
    return RateLimitedGateway(
        base_url="https://api.github.test",
        transport=httpx.MockTransport(handler),
        sleep=clock.sleep,
        clock=clock,
        wall_clock=lambda: 1_000.0,
        **kwargs,
    )


def test_low_budget_returns_synthetic_503_without_network_io() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    clock = _FakeClock()
    gateway = _gateway(
        handler,
        clock=clock,
        budget=RateBudget(remaining=99, limit=5000, reset_epoch=1_600),
        low_budget_threshold=100,
    )

    response = gateway.request("GET", "/repos/acme/widgets/issues/1")

    assert response.status_code == 503
    assert calls == []
    assert clock.sleeps == []
    assert is_synthetic_response(response)
    assert response.headers[SYNTHETIC_RESPONSE_HEADER] == "budget-low"
    assert response.json() == {"message": "Rate limit budget low, skipping request"}
    assert response.headers["retry-after"] == "600"


def test_budget_at_threshold_is_allowed() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    gateway = _gateway(
        handler,
        budget=RateBudget(remaining=100, limit=5000),
        low_budget_threshold=100,
    )

    assert gateway.request("GET", "/rate").status_code == 200
    assert len(calls) == 1


def test_budget_rolls_over_after_reset_time() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    budget = RateBudget(remaining=3, limit=5000, reset_epoch=900)
    gateway = _gateway(handler, budget=budget, low_budget_threshold=100)

    assert gateway.request("GET", "/rate").status_code == 200
    assert len(calls) == 1
    assert budget.remaining == 5000


def test_budget_is_updated_from_response_headers() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={},
            headers={
                "x-ratelimit-remaining": "4321",
                "x-ratelimit-limit": "5000",
                "x-ratelimit-reset": "1700000000",
            },
        )

    gateway = _gateway(handler)
    gateway.request("GET", "/rate")

    status = gateway.status()
    assert status.remaining == 4321
    assert status.limit == 5000
    assert int(status.reset_at.timestamp()) == 1_700_000_000


def test_atproto_header_names() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={}, headers={"ratelimit-remaining": "42"})

    gateway = _gateway(handler, header_names=ATPROTO_HEADER_NAMES)
    gateway.request("GET", "/rate")

    assert gateway.budget.remaining == 42


def test_requests_are_spaced_by_min_interval() -> None:
    clock = _FakeClock(start=100.0)

    def handler(_request: httpx.Request) -> httpx.Response:
        clock.now += 2.0
        return httpx.Response(200, json={})

    gateway = _gateway(handler, clock=clock, min_spacing_seconds=5.0)

    gateway.request("GET", "/one")
    gateway.request("GET", "/two")

    assert clock.sleeps == [pytest.approx(3.0)]


def test_401_refreshes_credentials_and_retries_once() -> None:
    seen_tokens: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        token = request.headers["authorization"]
        seen_tokens.append(token)
        if token == "Bearer fresh":
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(401, json={"message": "Bad credentials"})

    credentials = StaticTokenCredentials("stale", token_source=lambda: "fresh")
    gateway = _gateway(handler, credentials=credentials)

    response = gateway.request("POST", "/repos/acme/widgets/issues", json={"title": "x"})

    assert response.status_code == 200
    assert seen_tokens == ["Bearer stale", "Bearer fresh"]


def test_401_after_refresh_is_terminal() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(401, json={"message": "Bad credentials"})

    credentials = StaticTokenCredentials("stale", token_source=lambda: "fresh")
    gateway = _gateway(handler, credentials=credentials)

    response = gateway.request("GET", "/user")

    assert response.status_code == 401
    assert len(calls) == 2


def test_401_without_refresh_is_returned_without_retry() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(401, json={"message": "Bad credentials"})

    gateway = _gateway(handler, credentials=StaticTokenCredentials("stale"))

    assert gateway.request("GET", "/user").status_code == 401
    assert len(calls) == 1


def test_429_with_short_retry_after_sleeps_and_retries_once() -> None:
    responses = [
        httpx.Response(429, headers={"retry-after": "10"}, json={"message": "slow down"}),
        httpx.Response(200, json={"ok": True}),
    ]
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return responses[len(calls) - 1]

    clock = _FakeClock()
    gateway = _gateway(handler, clock=clock)

    response = gateway.request("GET", "/repos/acme/widgets/issues/1")

    assert response.status_code == 200
    assert len(calls) == 2
    assert clock.sleeps == [10.0]


def test_429_with_long_retry_after_is_returned_unmodified() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(429, headers={"retry-after": "120"}, json={"message": "later"})

    clock = _FakeClock()
    gateway = _gateway(handler, clock=clock)

    response = gateway.request("GET", "/repos/acme/widgets/issues/1")

    assert response.status_code == 429
    assert response.headers["retry-after"] == "120"
    assert len(calls) == 1
    assert clock.sleeps == []


def test_429_without_retry_after_uses_default_and_does_not_retry() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(429, json={"message": "later"})

    gateway = _gateway(handler)

    assert gateway.request("GET", "/x").status_code == 429
    assert len(calls) == 1


def test_403_with_exhausted_budget_is_treated_as_overload() -> None:
    responses = [
        httpx.Response(
            403,
            headers={"retry-after": "5", "x-ratelimit-remaining": "0"},
            json={"message": "API rate limit exceeded"},
        ),
        httpx.Response(200, headers={"x-ratelimit-remaining": "4999"}, json={}),
    ]
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return responses[len(calls) - 1]

    clock = _FakeClock()
    gateway = _gateway(handler, clock=clock)

    assert gateway.request("GET", "/x").status_code == 200
    assert clock.sleeps == [5.0]
    assert gateway.budget.remaining == 4999


def test_plain_403_passes_through() -> None:
    def handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, headers={"x-ratelimit-remaining": "10"}, json={})

    gateway = _gateway(handler)

    assert gateway.request("GET", "/x").status_code == 403


def test_transport_errors_propagate() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway = _gateway(handler)

    with pytest.raises(httpx.ConnectError):
        gateway.request("GET", "/x")


def test_from_settings_uses_header_style_and_budget() -> None:
    settings = GatewaySettings(
        base_url="https://bsky.test",
        header_style=HeaderStyle.ATPROTO,
        initial_budget=3000,
        low_budget_threshold=10,
    )

    with RateLimitedGateway.from_settings(
        settings,
        credentials=github_credentials("t"),
        transport=httpx.MockTransport(lambda _request: httpx.Response(200, json={})),
    ) as gateway:
        assert gateway.header_names == ATPROTO_HEADER_NAMES
        assert gateway.budget.remaining == 3000
        assert gateway.low_budget_threshold == 10


def test_github_credentials_headers() -> None:
    headers = github_credentials("abc").auth_headers()

    assert headers["Authorization"] == "Bearer abc"
    assert headers["Accept"] == "application/vnd.github+json"
    assert "X-GitHub-Api-Version" in headers


def test_retry_after_parsing() -> None:
    assert retry_after_seconds(httpx.Headers({"retry-after": "7"}), default=60) == 7
    assert retry_after_seconds(httpx.Headers({"retry-after": "soon"}), default=60) == 60
    assert retry_after_seconds(httpx.Headers({}), default=60) == 60
    assert (
        retry_after_seconds(
            httpx.Headers({"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"}),
            default=60,
        )
        == 0
    )
