"""SQLAlchemy ORM models for forget request persistence.

forget_requests holds one row per logical "forget this user" request;
forget_request_targets holds one row per (request, shard) and tracks that
shard's progress. Together they are the single source of truth for the
request state machine.

active_user_id is set to user_id while a request is active and cleared
once it reaches a terminal state (or its confirmation token lapses). Its
unique constraint guarantees at most one active request per user even when
two initiations race.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import IntEnum, StrEnum

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from rtbf.database import Base


class RequestStatus(IntEnum):
    """Lifecycle status shared by requests and shard targets."""

    PENDING = 1  # Awaiting confirmation (request) / queued, not started (target)
    CONFIRMED_WAITING = 2
    IN_PROGRESS = 3
    FINISHED = 4
    FAILED = 5


ACTIVE_STATUSES: tuple[RequestStatus, ...] = (
    RequestStatus.PENDING,
    RequestStatus.CONFIRMED_WAITING,
    RequestStatus.IN_PROGRESS,
)


class RequestSource(StrEnum):
    WEB = "web"
    STAFF_FORCED = "staff-forced"


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes returned by backends without tz support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class ForgetRequestRecord(Base):
    """Persistent record of a forget request."""

    __tablename__ = "forget_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        index=True,
        comment="Central user ID of the data subject",
    )
    original_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Username at the time the request was made",
    )
    target_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Generated anonymous username; never changes after creation",
    )
    status: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=int(RequestStatus.PENDING),
        comment="1 pending | 2 confirmed | 3 in progress | 4 finished | 5 failed",
    )
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="web")
    token: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        unique=True,
        comment="Single-use confirmation token; NULL once consumed or for staff-forced requests",
    )
    token_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    active_user_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        unique=True,
        comment="user_id while the request is active, NULL once terminal",
    )

    def __repr__(self) -> str:
        return (
            f"<ForgetRequestRecord id={self.id} user={self.user_id} "
            f"status={self.status} source={self.source!r}>"
        )


class ShardTargetRecord(Base):
    """Progress of one request on one shard."""

    __tablename__ = "forget_request_targets"
    __table_args__ = (
        UniqueConstraint("request_id", "shard_id", name="uq_forget_request_targets_shard"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("forget_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    shard_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[int] = mapped_column(
        Integer, nullable=False, default=int(RequestStatus.PENDING)
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return (
            f"<ShardTargetRecord request={self.request_id} shard={self.shard_id!r} "
            f"status={self.status}>"
        )


# ------------------------------------------------------------------ #
# Value objects returned by the request store
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ForgetRequest:
    """Read-only view of a forget request."""

    id: int
    user_id: int
    original_name: str
    target_name: str
    status: RequestStatus
    source: RequestSource
    token: str | None
    token_expires_at: datetime | None
    created_at: datetime
    completed_at: datetime | None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def token_expired(self, now: datetime) -> bool:
        return self.token_expires_at is not None and now > self.token_expires_at

    @classmethod
    def from_record(cls, record: ForgetRequestRecord) -> ForgetRequest:
        return cls(
            id=record.id,
            user_id=record.user_id,
            original_name=record.original_name,
            target_name=record.target_name,
            status=RequestStatus(record.status),
            source=RequestSource(record.source),
            token=record.token,
            token_expires_at=as_utc(record.token_expires_at),
            created_at=as_utc(record.created_at),
            completed_at=as_utc(record.completed_at),
        )


@dataclass(frozen=True)
class ShardTarget:
    """Read-only view of one shard's progress for a request."""

    shard_id: str
    status: RequestStatus
    error_message: str | None
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @classmethod
    def from_record(cls, record: ShardTargetRecord) -> ShardTarget:
        return cls(
            shard_id=record.shard_id,
            status=RequestStatus(record.status),
            error_message=record.error_message,
            updated_at=as_utc(record.updated_at),
        )
