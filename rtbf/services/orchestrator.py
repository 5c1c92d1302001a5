"""Forget request orchestrator.

ForgetService owns the request lifecycle:

    initiate_request()    -> PENDING, confirmation link sent
    confirm_and_execute() -> IN_PROGRESS, identity renamed, shards fanned out
    force_execute()       -> same as confirm, created by staff without a token
    check_and_finalize()  -> FINISHED once no shard target is active

Each shard worker calls check_and_finalize() when it is done; whichever call
observes the last active target flips the request to FINISHED and fires the
completion event, all others are no-ops.

A failed identity rename moves the request to FAILED before the error is
re-raised, so a broken request never blocks the user from trying again.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy.exc import SQLAlchemyError

from rtbf.core.events import CompletionEvents
from rtbf.errors import (
    ExpiredTokenError,
    IdentityMismatchError,
    InvalidTokenError,
    NotificationError,
    RenameFailedError,
    StoreError,
    UserNotFoundError,
)
from rtbf.infra.work_queue import WorkItem, WorkQueue
from rtbf.models.identity import UserIdentity
from rtbf.models.request import (
    ForgetRequest,
    RequestSource,
    RequestStatus,
    ShardTarget,
)
from rtbf.services.directory import Directory, attached_ids
from rtbf.services.identity import IdentityRenamer
from rtbf.services.notifier import Notifier
from rtbf.services.store import RequestStore

log = structlog.get_logger(__name__)

_STATUS_LABELS = {
    RequestStatus.PENDING: "pending",
    RequestStatus.CONFIRMED_WAITING: "confirmed",
    RequestStatus.IN_PROGRESS: "in progress",
    RequestStatus.FINISHED: "complete",
    RequestStatus.FAILED: "failed",
}


def status_label(status: RequestStatus | int) -> str:
    return _STATUS_LABELS[RequestStatus(status)]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CompletionMonitor:
    """Re-entrant finalization check shared by the orchestrator and shard workers."""

    def __init__(self, store: RequestStore, events: CompletionEvents | None = None) -> None:
        self._store = store
        self.events = events or CompletionEvents()

    async def check_and_finalize(self, request_id: int) -> bool:
        """Finish the request if no shard target is still active.

        Returns True only for the single call that performed the transition;
        that call also fires the completion event.
        """
        finished = await self._store.finalize_if_done(request_id)
        if finished is None:
            return False
        await self.events.fire(finished)
        return True


class ForgetService:
    """Creates, confirms, executes and finalizes forget requests."""

    def __init__(
        self,
        store: RequestStore,
        renamer: IdentityRenamer,
        directory: Directory,
        queue: WorkQueue,
        notifier: Notifier,
        monitor: CompletionMonitor | None = None,
        *,
        token_ttl_seconds: int = 900,
        anonymous_name_prefix: str = "Anonymous ",
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._renamer = renamer
        self._directory = directory
        self._queue = queue
        self._notifier = notifier
        self.monitor = monitor or CompletionMonitor(store)
        self._token_ttl = timedelta(seconds=token_ttl_seconds)
        self._name_prefix = anonymous_name_prefix
        self._clock = clock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initiate_request(self, user: UserIdentity) -> ForgetRequest:
        """Create a PENDING request and send its confirmation link.

        Raises:
            AlreadyPendingError: The user already has an active request.
            NotificationError: The link could not be delivered. The PENDING
                request stays stored and expires with its token.
        """
        now = self._clock()
        token = str(uuid.uuid4())
        request = await self._store.create_request(
            user_id=user.id,
            original_name=user.name,
            target_name=self._anonymous_name(),
            status=RequestStatus.PENDING,
            source=RequestSource.WEB,
            token=token,
            token_expires_at=now + self._token_ttl,
            now=now,
        )
        log.info(
            "forget.request_created",
            request_id=request.id,
            user_id=user.id,
            target_name=request.target_name,
        )

        try:
            await self._notifier.send_confirmation(user, request)
        except NotificationError:
            log.error("forget.confirmation_not_sent", request_id=request.id, user_id=user.id)
            raise
        except Exception as exc:
            log.error(
                "forget.confirmation_not_sent",
                request_id=request.id,
                user_id=user.id,
                error=str(exc),
            )
            raise NotificationError(str(exc)) from exc
        return request

    async def confirm_and_execute(self, token: str, performer: UserIdentity) -> ForgetRequest:
        """Confirm a PENDING request by token and run it.

        Raises:
            InvalidTokenError: No PENDING request has this token, or a
                concurrent confirmation claimed it first.
            ExpiredTokenError: The token is past its expiry.
            IdentityMismatchError: ``performer`` does not own the request.
            RenameFailedError: The identity rename failed; request is FAILED.
        """
        request = await self._store.get_by_token(token)
        if request is None or request.status != RequestStatus.PENDING:
            raise InvalidTokenError()
        if request.token_expired(self._clock()):
            raise ExpiredTokenError()
        if performer.id != request.user_id:
            log.warning(
                "forget.confirm_identity_mismatch",
                request_id=request.id,
                performer_id=performer.id,
            )
            raise IdentityMismatchError()

        if not await self._store.claim_pending(request.id):
            raise InvalidTokenError()
        log.info("forget.request_confirmed", request_id=request.id, user_id=request.user_id)

        return await self._anonymise(await self._require(request.id))

    async def force_execute(self, user_id: int) -> ForgetRequest:
        """Staff-forced request: no confirmation, straight to IN_PROGRESS."""
        user = await self._renamer.get_user(user_id)
        if user is None:
            raise UserNotFoundError(f"No user with id {user_id}")

        request = await self._store.create_request(
            user_id=user.id,
            original_name=user.name,
            target_name=self._anonymous_name(),
            status=RequestStatus.IN_PROGRESS,
            source=RequestSource.STAFF_FORCED,
            token=None,
            token_expires_at=None,
            now=self._clock(),
        )
        log.info(
            "forget.request_forced",
            request_id=request.id,
            user_id=user.id,
            target_name=request.target_name,
        )
        return await self._anonymise(request)

    @property
    def events(self) -> CompletionEvents:
        return self.monitor.events

    async def check_and_finalize(self, request_id: int) -> bool:
        return await self.monitor.check_and_finalize(request_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _anonymous_name(self) -> str:
        # Drawn independently of the confirmation token
        return f"{self._name_prefix}{uuid.uuid4().hex[:8]}"

    async def _require(self, request_id: int) -> ForgetRequest:
        request = await self._store.load(request_id)
        if request is None:
            raise StoreError(f"Request {request_id} vanished")
        return request

    async def _anonymise(self, request: ForgetRequest) -> ForgetRequest:
        user = await self._renamer.get_user(request.user_id)
        if user is None:
            await self._store.mark_failed(request.id)
            raise UserNotFoundError(f"No user with id {request.user_id}")

        try:
            await self._renamer.rename(user, request)
        except RenameFailedError:
            await self._store.mark_failed(request.id)
            raise

        await self._fan_out(request)
        return await self._require(request.id)

    async def _fan_out(self, request: ForgetRequest) -> None:
        try:
            shard_ids = attached_ids(await self._directory.attached_shards(request.user_id))
            if not shard_ids:
                log.info("forget.no_attached_shards", request_id=request.id)
                await self.check_and_finalize(request.id)
                return

            await self._store.insert_targets(request.id, shard_ids)
        except SQLAlchemyError as exc:
            log.error("forget.fan_out_failed", request_id=request.id, error=str(exc))
            raise StoreError(str(exc)) from exc

        for shard_id in shard_ids:
            await self._queue.enqueue(
                shard_id,
                WorkItem(
                    request_id=request.id,
                    user_id=request.user_id,
                    original_name=request.original_name,
                    target_name=request.target_name,
                    shard_id=shard_id,
                ),
            )
        log.info("forget.fanned_out", request_id=request.id, shards=len(shard_ids))

    # ------------------------------------------------------------------
    # Admin queries
    # ------------------------------------------------------------------

    async def list_requests(self) -> list[ForgetRequest]:
        return await self._store.list_all()

    async def load_request(self, request_id: int) -> ForgetRequest | None:
        return await self._store.load(request_id)

    async def load_targets(self, request_id: int) -> list[ShardTarget] | None:
        """Shard targets of a request; None when it has none at all."""
        return await self._store.load_targets(request_id)

