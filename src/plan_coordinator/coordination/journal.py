"""Local SQLite journal of coordination events for one agent."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy import Column, DateTime, Index, Text, event
from sqlalchemy.pool import NullPool
from sqlmodel import Field, Session, SQLModel, col, create_engine, select


class JournalEventType(str, Enum):
    """Coordination events recorded by the protocol and the reporter."""

    CLAIM_ATTEMPT = "claim_attempt"
    CLAIMED = "claimed"
    CLAIM_LOST = "claim_lost"
    CLAIM_FAILED = "claim_failed"
    IN_PROGRESS = "in_progress"
    RELEASED = "released"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    FAILED = "failed"
    PLAN_COMPLETED = "plan_completed"
    NOTICE_POSTED = "notice_posted"


class CoordinationEvent(SQLModel, table=True):
    __tablename__ = "coordination_events"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_coordination_events_task_time", "ticket", "task_number", "created_at"),
    )

    id: int | None = Field(default=None, primary_key=True)
    ticket: int = Field(index=True)
    task_number: int | None = Field(default=None, index=True)
    agent_id: str = Field(index=True)
    event_type: str = Field(index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


@dataclass(slots=True)
class JournalEntry:
    """Readable journal entry."""

    event_id: int
    ticket: int
    task_number: int | None
    agent_id: str
    event_type: JournalEventType
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


class CoordinationJournal:
    """Append-only event trail backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, agent_id: str) -> None:
        self.db_path = db_path
        self.agent_id = agent_id
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False, "timeout": 5.0},
            poolclass=NullPool,
        )
        event.listen(self.engine, "connect", _apply_sqlite_pragmas)

    def init_schema(self) -> None:
        SQLModel.metadata.create_all(
            self.engine,
            tables=[CoordinationEvent.__table__],  # type: ignore[attr-defined]
        )

    def close(self) -> None:
        self.engine.dispose()

    def record(
        self,
        *,
        ticket: int,
        event_type: JournalEventType,
        task_number: int | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                CoordinationEvent(
                    ticket=ticket,
                    task_number=task_number,
                    agent_id=self.agent_id,
                    event_type=event_type.value,
                    details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                    if details
                    else None,
                    created_at=datetime.now(tz=UTC),
                ),
            )
            session.commit()

    def history(self, *, ticket: int, task_number: int | None = None) -> list[JournalEntry]:
        """Events for a ticket (optionally one task), oldest first."""

        with Session(self.engine) as session:
            query = select(CoordinationEvent).where(CoordinationEvent.ticket == ticket)
            if task_number is not None:
                query = query.where(CoordinationEvent.task_number == task_number)
            rows = session.exec(
                query.order_by(
                    col(CoordinationEvent.created_at).asc(),
                    col(CoordinationEvent.id).asc(),
                ),
            ).all()
            return [_to_entry(row) for row in rows]

    def has_notice_since_release(self, *, ticket: int, task_number: int, kind: str) -> bool:
        """True when this agent already posted ``kind`` for the task since its last release."""

        for entry in reversed(self.history(ticket=ticket, task_number=task_number)):
            if entry.agent_id != self.agent_id:
                continue
            if entry.event_type == JournalEventType.RELEASED:
                return False
            if (
                entry.event_type == JournalEventType.NOTICE_POSTED
                and entry.details.get("kind") == kind
            ):
                return True
        return False


def _to_entry(row: CoordinationEvent) -> JournalEntry:
    created_at = row.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    return JournalEntry(
        event_id=int(row.id or 0),
        ticket=row.ticket,
        task_number=row.task_number,
        agent_id=row.agent_id,
        event_type=JournalEventType(row.event_type),
        created_at=created_at,
        details=json.loads(row.details_json) if row.details_json else {},
    )


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, _: object) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute("PRAGMA busy_timeout = 5000")
    cursor.close()
