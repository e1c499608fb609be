"""Runtime configuration for the gateway, coordination protocol and journal."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TypeVar
from urllib.parse import urlparse

from plan_coordinator.plans.codec import is_reserved_assignee

DEFAULT_API_URL = "https://api.github.com"

E = TypeVar("E", bound=Enum)


class HeaderStyle(str, Enum):
    """Rate-limit header naming used by the remote service."""

    GITHUB = "github"
    ATPROTO = "atproto"


class MultiTaskPolicy(str, Enum):
    """Whether an agent may hold more than one task of the same plan at once."""

    PERMIT = "permit"
    BLOCK = "block"


@dataclass(slots=True)
class GatewaySettings:
    """Outbound request pacing and rate-limit budget settings."""

    base_url: str = DEFAULT_API_URL
    token: str = ""
    header_style: HeaderStyle = HeaderStyle.GITHUB
    min_spacing_seconds: float = 5.0
    low_budget_threshold: int = 100
    initial_budget: int = 5_000
    max_retry_after_seconds: int = 30
    default_retry_after_seconds: int = 60
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class CoordinationSettings:
    """Agent identity and claim protocol tuning."""

    agent_id: str = ""
    owner: str = ""
    repo: str = ""
    consensus_delay_seconds: float = 5.0
    claim_max_attempts: int = 3
    write_max_attempts: int = 3
    multi_task_policy: MultiTaskPolicy = MultiTaskPolicy.PERMIT
    post_notices: bool = True


@dataclass(slots=True)
class JournalSettings:
    """Local coordination journal settings."""

    db_path: Path = Path(".plan_coord.db")
    enabled: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    coordination: CoordinationSettings = field(default_factory=CoordinationSettings)
    journal: JournalSettings = field(default_factory=JournalSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults tuned for the GitHub API."""

        return cls(
            gateway=GatewaySettings(
                base_url=os.getenv("PLAN_COORD_API_URL", DEFAULT_API_URL).rstrip("/"),
                token=os.getenv("PLAN_COORD_GITHUB_TOKEN", os.getenv("GITHUB_TOKEN", "")),
                header_style=_env_enum(
                    "PLAN_COORD_RATE_LIMIT_HEADERS",
                    HeaderStyle,
                    default=HeaderStyle.GITHUB,
                ),
                min_spacing_seconds=float(os.getenv("PLAN_COORD_MIN_SPACING_SECONDS", "5.0")),
                low_budget_threshold=int(os.getenv("PLAN_COORD_LOW_BUDGET_THRESHOLD", "100")),
                initial_budget=int(os.getenv("PLAN_COORD_INITIAL_BUDGET", "5000")),
                max_retry_after_seconds=int(
                    os.getenv("PLAN_COORD_MAX_RETRY_AFTER_SECONDS", "30"),
                ),
                default_retry_after_seconds=int(
                    os.getenv("PLAN_COORD_DEFAULT_RETRY_AFTER_SECONDS", "60"),
                ),
                request_timeout_seconds=float(
                    os.getenv("PLAN_COORD_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
            ),
            coordination=CoordinationSettings(
                agent_id=os.getenv("PLAN_COORD_AGENT_ID", "").strip(),
                owner=os.getenv("PLAN_COORD_OWNER", "").strip(),
                repo=os.getenv("PLAN_COORD_REPO", "").strip(),
                consensus_delay_seconds=float(
                    os.getenv("PLAN_COORD_CONSENSUS_DELAY_SECONDS", "5.0"),
                ),
                claim_max_attempts=int(os.getenv("PLAN_COORD_CLAIM_MAX_ATTEMPTS", "3")),
                write_max_attempts=int(os.getenv("PLAN_COORD_WRITE_MAX_ATTEMPTS", "3")),
                multi_task_policy=_env_enum(
                    "PLAN_COORD_MULTI_TASK_POLICY",
                    MultiTaskPolicy,
                    default=MultiTaskPolicy.PERMIT,
                ),
                post_notices=_env_bool("PLAN_COORD_POST_NOTICES", default=True),
            ),
            journal=JournalSettings(
                db_path=db_path or Path(os.getenv("PLAN_COORD_DB_PATH", ".plan_coord.db")),
                enabled=_env_bool("PLAN_COORD_JOURNAL_ENABLED", default=True),
            ),
        )

    def validate_for_coordination(self) -> None:
        """Raise configuration error if identity or repository settings are unusable."""

        if not self.coordination.agent_id:
            raise ValueError("PLAN_COORD_AGENT_ID is required (a stable, globally unique id).")
        if is_reserved_assignee(self.coordination.agent_id):
            raise ValueError(
                f"PLAN_COORD_AGENT_ID {self.coordination.agent_id!r} is reserved "
                "for unassigned tasks.",
            )
        self.validate_for_tracker()
        if self.coordination.claim_max_attempts <= 0:
            raise ValueError("PLAN_COORD_CLAIM_MAX_ATTEMPTS must be > 0.")
        if self.coordination.write_max_attempts <= 0:
            raise ValueError("PLAN_COORD_WRITE_MAX_ATTEMPTS must be > 0.")
        if self.coordination.consensus_delay_seconds < 0:
            raise ValueError("PLAN_COORD_CONSENSUS_DELAY_SECONDS must be >= 0.")

    def validate_for_tracker(self) -> None:
        """Raise configuration error if the tracker cannot be reached with these settings."""

        if not self.coordination.owner or not self.coordination.repo:
            raise ValueError("PLAN_COORD_OWNER and PLAN_COORD_REPO are required.")
        if not self.gateway.token:
            raise ValueError("PLAN_COORD_GITHUB_TOKEN (or GITHUB_TOKEN) is required.")
        _validate_api_url(self.gateway.base_url)
        if self.gateway.min_spacing_seconds < 0:
            raise ValueError("PLAN_COORD_MIN_SPACING_SECONDS must be >= 0.")
        if self.gateway.low_budget_threshold < 0:
            raise ValueError("PLAN_COORD_LOW_BUDGET_THRESHOLD must be >= 0.")
        if self.gateway.max_retry_after_seconds < 0:
            raise ValueError("PLAN_COORD_MAX_RETRY_AFTER_SECONDS must be >= 0.")


def _validate_api_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid PLAN_COORD_API_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_enum(name: str, enum_type: type[E], default: E) -> E:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return enum_type(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(str(member.value) for member in enum_type)
        raise ValueError(
            f"Invalid value for {name}: {value!r} (expected one of {allowed})",
        ) from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
