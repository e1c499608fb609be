"""Error taxonomy shared by the gateway, tracker client and coordination protocol."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class CoordinationError(Exception):
    """Base coordination error."""

    message: str
    code: str = "coordination_error"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class AuthenticationError(CoordinationError):
    """Credentials were rejected and a refresh did not help. Not retried."""

    code: str = "auth"


@dataclass(slots=True)
class RateLimitedError(CoordinationError):
    """Budget exhausted or overload signalled with a long retry-after."""

    code: str = "rate_limited"
    retry_after: int | None = None


@dataclass(slots=True)
class TrackerRequestError(CoordinationError):
    """Non-success tracker response that is neither auth nor rate limit."""

    code: str = "tracker_request"
    status_code: int = 0


@dataclass(slots=True)
class MalformedPlanError(CoordinationError):
    """Plan document is missing structure the protocol depends on."""

    code: str = "malformed_plan"
    task_number: int | None = None
    line_no: int | None = None


@dataclass(slots=True)
class ClaimConflictError(CoordinationError):
    """A verified write found the task owned by another agent."""

    code: str = "claim_conflict"
    claimed_by: str | None = None
