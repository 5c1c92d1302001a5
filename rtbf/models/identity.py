"""ORM mapping of the central identity tables on the home shard.

These tables belong to the wiki platform, not to this service: they are
mapped (not migrated) so the rename operation can update them through the
ORM. Column names follow the platform schema.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from rtbf.database import IdentityBase


class UserRecord(IdentityBase):
    __tablename__ = "user"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    user_real_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    user_email: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    user_email_authenticated: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    user_password: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    user_token: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    user_touched: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<UserRecord id={self.user_id} name={self.user_name!r}>"


class ActorRecord(IdentityBase):
    __tablename__ = "actor"

    actor_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_user: Mapped[int | None] = mapped_column(Integer, nullable=True, unique=True)
    actor_name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    def __repr__(self) -> str:
        return f"<ActorRecord id={self.actor_id} user={self.actor_user} name={self.actor_name!r}>"


@dataclass(frozen=True)
class UserIdentity:
    """The data subject as seen by the orchestrator and notifier."""

    id: int
    name: str
    email: str = ""

    @classmethod
    def from_record(cls, record: UserRecord) -> UserIdentity:
        return cls(id=record.user_id, name=record.user_name, email=record.user_email)
