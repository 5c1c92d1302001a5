"""Create forget_requests and forget_request_targets.

Revision ID: 001
Revises:
Create Date: 2026-10-19

Table: forget_requests
  - id                INTEGER PK
  - user_id           INTEGER (NOT NULL, indexed - central user id)
  - original_name     VARCHAR(255) (NOT NULL - username when requested)
  - target_name       VARCHAR(255) (NOT NULL - generated anonymous username)
  - status            INTEGER  1 pending | 2 confirmed | 3 in progress |
                               4 finished | 5 failed
  - source            VARCHAR(20)  web | staff-forced
  - token             VARCHAR(64) (nullable, unique - consumed on confirm)
  - token_expires_at  TIMESTAMP WITH TIME ZONE (nullable)
  - created_at        TIMESTAMP WITH TIME ZONE (NOT NULL)
  - completed_at      TIMESTAMP WITH TIME ZONE (nullable)
  - active_user_id    INTEGER (nullable, unique - user_id while active)

Table: forget_request_targets
  - id                INTEGER PK
  - request_id        INTEGER FK -> forget_requests.id (CASCADE, indexed)
  - shard_id          VARCHAR(64) (NOT NULL)
  - status            INTEGER  same values as forget_requests.status
  - error_message     TEXT (nullable - accumulated rule/page errors)
  - updated_at        TIMESTAMP WITH TIME ZONE (NOT NULL)
  - UNIQUE (request_id, shard_id)

Notes:
  - active_user_id is the one-active-request-per-user guarantee; it is
    cleared when a request becomes terminal or its token lapses.
  - status stored as INTEGER to match the wiki-side status codes.
"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create the request store tables."""

    op.create_table(
        "forget_requests",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            nullable=False,
            comment="Central user ID of the data subject",
        ),
        sa.Column(
            "original_name",
            sa.String(255),
            nullable=False,
            comment="Username at the time the request was made",
        ),
        sa.Column(
            "target_name",
            sa.String(255),
            nullable=False,
            comment="Generated anonymous username; never changes after creation",
        ),
        sa.Column(
            "status",
            sa.Integer(),
            nullable=False,
            server_default="1",
            comment="1 pending | 2 confirmed | 3 in progress | 4 finished | 5 failed",
        ),
        sa.Column("source", sa.String(20), nullable=False, server_default="web"),
        sa.Column(
            "token",
            sa.String(64),
            nullable=True,
            comment="Single-use confirmation token; NULL once consumed or staff-forced",
        ),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "active_user_id",
            sa.Integer(),
            nullable=True,
            comment="user_id while the request is active, NULL once terminal",
        ),
        sa.UniqueConstraint("token", name="uq_forget_requests_token"),
        sa.UniqueConstraint("active_user_id", name="uq_forget_requests_active_user_id"),
    )
    op.create_index("ix_forget_requests_user_id", "forget_requests", ["user_id"])

    op.create_table(
        "forget_request_targets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "request_id",
            sa.Integer(),
            sa.ForeignKey("forget_requests.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("shard_id", sa.String(64), nullable=False),
        sa.Column("status", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("request_id", "shard_id", name="uq_forget_request_targets_shard"),
    )
    op.create_index(
        "ix_forget_request_targets_request_id",
        "forget_request_targets",
        ["request_id"],
    )


def downgrade() -> None:
    """Drop the request store tables."""
    op.drop_index("ix_forget_request_targets_request_id", table_name="forget_request_targets")
    op.drop_table("forget_request_targets")
    op.drop_index("ix_forget_requests_user_id", table_name="forget_requests")
    op.drop_table("forget_requests")
