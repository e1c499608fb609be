"""GitHub-shaped issue tracker client built on the rate-limited gateway."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from plan_coordinator.errors import (
    AuthenticationError,
    RateLimitedError,
    TrackerRequestError,
)
from plan_coordinator.http.gateway import (
    HTTP_FORBIDDEN,
    HTTP_SERVICE_UNAVAILABLE,
    HTTP_TOO_MANY_REQUESTS,
    HTTP_UNAUTHORIZED,
    RateLimitedGateway,
    is_synthetic_response,
    retry_after_seconds,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Ticket:
    """Remote ticket state relevant to plan coordination."""

    number: int
    title: str
    body: str
    state: str
    labels: tuple[str, ...] = ()
    assignees: tuple[str, ...] = ()
    url: str = ""

    def has_assignee(self, agent_id: str) -> bool:
        wanted = agent_id.lower()
        return any(login.lower() == wanted for login in self.assignees)


@dataclass(slots=True)
class Comment:
    """Ticket comment."""

    comment_id: int
    body: str
    author: str
    created_at: str = ""


class IssueTracker(Protocol):
    """Remote API contract consumed by the coordination protocol."""

    def create_issue(self, *, title: str, body: str, labels: Sequence[str] = ()) -> Ticket:
        raise NotImplementedError

    def fetch_issue(self, number: int) -> Ticket:
        raise NotImplementedError

    def update_issue(
        self,
        number: int,
        *,
        title: str | None = None,
        body: str | None = None,
        state: str | None = None,
        labels: Sequence[str] | None = None,
    ) -> Ticket:
        raise NotImplementedError

    def add_assignees(self, number: int, assignees: Iterable[str]) -> Ticket:
        raise NotImplementedError

    def remove_assignees(self, number: int, assignees: Iterable[str]) -> Ticket:
        raise NotImplementedError

    def create_comment(self, number: int, body: str) -> Comment:
        raise NotImplementedError

    def list_comments(self, number: int) -> list[Comment]:
        raise NotImplementedError


class GithubTracker:
    """Issue endpoints of one GitHub repository."""

    def __init__(self, gateway: RateLimitedGateway, *, owner: str, repo: str) -> None:
        self.gateway = gateway
        self.owner = owner
        self.repo = repo

    @property
    def _issues_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}/issues"

    def create_issue(self, *, title: str, body: str, labels: Sequence[str] = ()) -> Ticket:
        payload = {"title": title, "body": body, "labels": list(labels)}
        return _to_ticket(self._call("POST", self._issues_path, json=payload))

    def fetch_issue(self, number: int) -> Ticket:
        return _to_ticket(self._call("GET", f"{self._issues_path}/{number}"))

    def update_issue(
        self,
        number: int,
        *,
        title: str | None = None,
        body: str | None = None,
        state: str | None = None,
        labels: Sequence[str] | None = None,
    ) -> Ticket:
        payload: dict[str, Any] = {}
        if title is not None:
            payload["title"] = title
        if body is not None:
            payload["body"] = body
        if state is not None:
            payload["state"] = state
        if labels is not None:
            payload["labels"] = list(labels)
        return _to_ticket(self._call("PATCH", f"{self._issues_path}/{number}", json=payload))

    def add_assignees(self, number: int, assignees: Iterable[str]) -> Ticket:
        payload = {"assignees": list(assignees)}
        return _to_ticket(
            self._call("POST", f"{self._issues_path}/{number}/assignees", json=payload),
        )

    def remove_assignees(self, number: int, assignees: Iterable[str]) -> Ticket:
        payload = {"assignees": list(assignees)}
        return _to_ticket(
            self._call("DELETE", f"{self._issues_path}/{number}/assignees", json=payload),
        )

    def create_comment(self, number: int, body: str) -> Comment:
        data = self._call("POST", f"{self._issues_path}/{number}/comments", json={"body": body})
        return _to_comment(data)

    def list_comments(self, number: int) -> list[Comment]:
        data = self._call(
            "GET",
            f"{self._issues_path}/{number}/comments",
            params={"per_page": 100},
        )
        return [_to_comment(item) for item in data or []]

    def _call(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        response = self.gateway.request(method, path, json=json, params=params)
        if response.is_success:
            return response.json()
        raise self._error_for(response, method=method, path=path)

    def _error_for(self, response: httpx.Response, *, method: str, path: str) -> Exception:
        message = _error_message(response)
        status = response.status_code
        if status == HTTP_UNAUTHORIZED:
            return AuthenticationError(message=f"{method} {path} unauthorized: {message}")
        if (
            status == HTTP_TOO_MANY_REQUESTS
            or (status == HTTP_FORBIDDEN and self.gateway.budget.remaining == 0)
            or (status == HTTP_SERVICE_UNAVAILABLE and is_synthetic_response(response))
        ):
            return RateLimitedError(
                message=f"{method} {path} rate limited: {message}",
                retry_after=retry_after_seconds(
                    response.headers,
                    default=self.gateway.default_retry_after_seconds,
                ),
            )
        logger.warning("Tracker request failed: %s %s status=%d", method, path, status)
        return TrackerRequestError(
            message=f"{method} {path} failed: {status} {message}",
            status_code=status,
        )


def _error_message(response: httpx.Response) -> str:
    fallback = f"HTTP {response.status_code}"
    try:
        payload = response.json()
    except ValueError:
        return fallback
    if isinstance(payload, dict):
        message = payload.get("message")
        if isinstance(message, str) and message:
            return message
    return fallback


def _to_ticket(data: dict[str, Any]) -> Ticket:
    return Ticket(
        number=int(data["number"]),
        title=data.get("title") or "",
        body=data.get("body") or "",
        state=data.get("state") or "open",
        labels=tuple(_label_name(label) for label in data.get("labels") or ()),
        assignees=tuple(
            assignee["login"] for assignee in data.get("assignees") or () if assignee.get("login")
        ),
        url=data.get("html_url") or "",
    )


def _to_comment(data: dict[str, Any]) -> Comment:
    user = data.get("user") or {}
    return Comment(
        comment_id=int(data["id"]),
        body=data.get("body") or "",
        author=user.get("login") or "",
        created_at=data.get("created_at") or "",
    )


def _label_name(label: Any) -> str:
    if isinstance(label, dict):
        return str(label.get("name", ""))
    return str(label)
