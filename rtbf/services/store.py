"""Request store - durable state of forget requests and their shard targets.

Every public method opens and commits its own transaction, so callers on
different processes (the orchestrator, each shard worker) never share a
session. The two sequences that need atomicity are:

- create_request(): the expired-token release, the active-request check and
  the insert run in one transaction, backed by the unique active_user_id
  column so a concurrent duplicate fails at commit
- finalize_if_done(): lock the master row, count active targets, and flip the
  master to FINISHED with a conditional update, all in one transaction
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rtbf.errors import AlreadyPendingError
from rtbf.models.request import (
    ACTIVE_STATUSES,
    ForgetRequest,
    ForgetRequestRecord,
    RequestSource,
    RequestStatus,
    ShardTarget,
    ShardTargetRecord,
)

log = structlog.get_logger(__name__)

_ACTIVE = [int(s) for s in ACTIVE_STATUSES]


class RequestStore:
    """Data access for forget_requests and forget_request_targets."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    @staticmethod
    async def _release_expired(session: AsyncSession, user_id: int, now: datetime) -> None:
        """Stop counting PENDING requests with a lapsed token as active."""
        await session.execute(
            update(ForgetRequestRecord)
            .where(
                ForgetRequestRecord.active_user_id == user_id,
                ForgetRequestRecord.status == int(RequestStatus.PENDING),
                ForgetRequestRecord.token_expires_at <= now,
            )
            .values(active_user_id=None)
        )

    async def has_active_request(self, user_id: int, now: datetime | None = None) -> bool:
        now = now or datetime.now(UTC)
        async with self._session_factory() as session, session.begin():
            await self._release_expired(session, user_id, now)
            result = await session.execute(
                select(func.count())
                .select_from(ForgetRequestRecord)
                .where(ForgetRequestRecord.active_user_id == user_id)
            )
            return bool(result.scalar_one())

    async def create_request(
        self,
        *,
        user_id: int,
        original_name: str,
        target_name: str,
        status: RequestStatus,
        source: RequestSource,
        token: str | None,
        token_expires_at: datetime | None,
        now: datetime | None = None,
    ) -> ForgetRequest:
        """Insert a new active request.

        Raises:
            AlreadyPendingError: The user already has an active request, either
                seen by the pre-check or by the unique constraint at commit.
        """
        now = now or datetime.now(UTC)
        record = ForgetRequestRecord(
            user_id=user_id,
            original_name=original_name,
            target_name=target_name,
            status=int(status),
            source=str(source),
            token=token,
            token_expires_at=token_expires_at,
            created_at=now,
            active_user_id=user_id,
        )
        try:
            async with self._session_factory() as session, session.begin():
                await self._release_expired(session, user_id, now)
                existing = await session.execute(
                    select(ForgetRequestRecord.id).where(
                        ForgetRequestRecord.active_user_id == user_id
                    )
                )
                if existing.first() is not None:
                    raise AlreadyPendingError()
                session.add(record)
                await session.flush()
        except IntegrityError as exc:
            log.warning("forget.store.duplicate_active_request", user_id=user_id)
            raise AlreadyPendingError() from exc

        log.info(
            "forget.store.request_inserted",
            request_id=record.id,
            user_id=user_id,
            status=int(status),
            source=str(source),
        )
        return ForgetRequest.from_record(record)

    async def get_by_token(self, token: str) -> ForgetRequest | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ForgetRequestRecord).where(ForgetRequestRecord.token == token)
            )
            record = result.scalar_one_or_none()
            return ForgetRequest.from_record(record) if record else None

    async def load(self, request_id: int) -> ForgetRequest | None:
        async with self._session_factory() as session:
            record = await session.get(ForgetRequestRecord, request_id)
            return ForgetRequest.from_record(record) if record else None

    async def list_all(self) -> list[ForgetRequest]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ForgetRequestRecord).order_by(ForgetRequestRecord.id.desc())
            )
            return [ForgetRequest.from_record(r) for r in result.scalars().all()]

    async def claim_pending(self, request_id: int) -> bool:
        """Move a PENDING request to IN_PROGRESS and consume its token.

        Returns False when another caller already claimed it.
        """
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(ForgetRequestRecord)
                .where(
                    ForgetRequestRecord.id == request_id,
                    ForgetRequestRecord.status == int(RequestStatus.PENDING),
                )
                .values(status=int(RequestStatus.IN_PROGRESS), token=None)
            )
            return result.rowcount == 1

    async def mark_failed(self, request_id: int) -> None:
        async with self._session_factory() as session, session.begin():
            await session.execute(
                update(ForgetRequestRecord)
                .where(ForgetRequestRecord.id == request_id)
                .values(status=int(RequestStatus.FAILED), active_user_id=None)
            )
        log.warning("forget.store.request_failed", request_id=request_id)

    # ------------------------------------------------------------------
    # Shard targets
    # ------------------------------------------------------------------

    async def insert_targets(self, request_id: int, shard_ids: Iterable[str]) -> int:
        """Insert one PENDING target per shard in a single transaction."""
        now = datetime.now(UTC)
        records = [
            ShardTargetRecord(
                request_id=request_id,
                shard_id=shard_id,
                status=int(RequestStatus.PENDING),
                updated_at=now,
            )
            for shard_id in shard_ids
        ]
        async with self._session_factory() as session, session.begin():
            session.add_all(records)
        log.info("forget.store.targets_inserted", request_id=request_id, count=len(records))
        return len(records)

    async def load_targets(self, request_id: int) -> list[ShardTarget] | None:
        """Return the shard targets of a request, or None if it has no rows.

        None is distinct from a request that legitimately needed zero shards;
        callers must branch on it.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(ShardTargetRecord)
                .where(ShardTargetRecord.request_id == request_id)
                .order_by(ShardTargetRecord.shard_id)
            )
            records = result.scalars().all()
            if not records:
                return None
            return [ShardTarget.from_record(r) for r in records]

    async def get_target(self, request_id: int, shard_id: str) -> ShardTarget | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ShardTargetRecord).where(
                    ShardTargetRecord.request_id == request_id,
                    ShardTargetRecord.shard_id == shard_id,
                )
            )
            record = result.scalar_one_or_none()
            return ShardTarget.from_record(record) if record is not None else None

    async def update_target(
        self,
        request_id: int,
        shard_id: str,
        status: RequestStatus,
        error_message: str | None = None,
    ) -> int:
        """Set one shard's status; returns the number of rows updated.

        Only an active target moves. A FINISHED or FAILED target is never
        rewritten, so a redelivered work item cannot reopen it.
        """
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(ShardTargetRecord)
                .where(
                    ShardTargetRecord.request_id == request_id,
                    ShardTargetRecord.shard_id == shard_id,
                    ShardTargetRecord.status.in_(_ACTIVE),
                )
                .values(
                    status=int(status),
                    error_message=error_message,
                    updated_at=datetime.now(UTC),
                )
            )
            return result.rowcount

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def finalize_if_done(self, request_id: int) -> ForgetRequest | None:
        """Flip the master request to FINISHED if no shard target is active.

        Returns the finalized request only to the single caller whose
        conditional update took effect; every other caller gets None.
        """
        now = datetime.now(UTC)
        async with self._session_factory() as session, session.begin():
            master = await session.execute(
                select(ForgetRequestRecord)
                .where(ForgetRequestRecord.id == request_id)
                .with_for_update()
            )
            record = master.scalar_one_or_none()
            if record is None:
                log.error("forget.store.finalize_unknown_request", request_id=request_id)
                return None
            if record.status not in _ACTIVE:
                return None

            pending = await session.execute(
                select(func.count())
                .select_from(ShardTargetRecord)
                .where(
                    ShardTargetRecord.request_id == request_id,
                    ShardTargetRecord.status.in_(_ACTIVE),
                )
            )
            pending_count = pending.scalar_one()
            if pending_count:
                log.debug(
                    "forget.store.finalize_waiting",
                    request_id=request_id,
                    pending=pending_count,
                )
                return None

            flipped = await session.execute(
                update(ForgetRequestRecord)
                .where(
                    ForgetRequestRecord.id == request_id,
                    ForgetRequestRecord.status.in_(_ACTIVE),
                )
                .values(
                    status=int(RequestStatus.FINISHED),
                    completed_at=now,
                    active_user_id=None,
                )
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount != 1:
                return None

        finished = await self.load(request_id)
        log.info("forget.store.request_finished", request_id=request_id)
        return finished
