"""Tests for ForgetService: initiation, confirmation, forced execution, finalization."""

from __future__ import annotations

import asyncio
import re
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from rtbf.errors import (
    AlreadyPendingError,
    ExpiredTokenError,
    IdentityMismatchError,
    InvalidTokenError,
    NotificationError,
    RenameFailedError,
    UserNotFoundError,
)
from rtbf.models.identity import UserIdentity
from rtbf.models.request import RequestSource, RequestStatus
from rtbf.services.orchestrator import ForgetService, status_label


@pytest.fixture
async def alice(seed_user) -> UserIdentity:
    return await seed_user(7, "Alice", "alice@example.org")


@pytest.fixture
async def bob(seed_user) -> UserIdentity:
    return await seed_user(8, "Bob", "bob@example.org")


class TestInitiateRequest:
    async def test_creates_pending_request_and_sends_link(self, service, notifier, alice):
        before = datetime.now(UTC)
        request = await service.initiate_request(alice)

        assert request.status == RequestStatus.PENDING
        assert request.source == RequestSource.WEB
        assert request.original_name == "Alice"
        assert request.token is not None
        assert re.fullmatch(r"Anonymous [0-9a-f]{8}", request.target_name)
        # The public name must not leak any part of the live token
        assert request.token[:8] not in request.target_name
        assert request.token_expires_at >= before + timedelta(seconds=900)

        assert len(notifier.sent) == 1
        sent_user, sent_request = notifier.sent[0]
        assert sent_user == alice
        assert sent_request.token == request.token

    async def test_second_request_is_already_pending(self, service, notifier, alice):
        await service.initiate_request(alice)
        with pytest.raises(AlreadyPendingError):
            await service.initiate_request(alice)
        assert len(notifier.sent) == 1

    async def test_notification_failure_keeps_pending_request(
        self, service, notifier, store, alice
    ):
        notifier.fail = True
        with pytest.raises(NotificationError):
            await service.initiate_request(alice)

        [request] = await store.list_all()
        assert request.status == RequestStatus.PENDING
        assert await store.has_active_request(alice.id)

    async def test_unexpected_notifier_error_is_wrapped(self, service, alice, monkeypatch):
        monkeypatch.setattr(
            service, "_notifier", AsyncMock(send_confirmation=AsyncMock(side_effect=OSError("x")))
        )
        with pytest.raises(NotificationError):
            await service.initiate_request(alice)


class TestConfirmAndExecute:
    async def test_unknown_token(self, service, alice):
        with pytest.raises(InvalidTokenError):
            await service.confirm_and_execute("no-such-token", alice)

    async def test_expired_token(self, store, renamer, directory, recording_queue, notifier, alice):
        now = datetime.now(UTC)
        clock = {"now": now}
        service = ForgetService(
            store, renamer, directory, recording_queue, notifier, clock=lambda: clock["now"]
        )
        request = await service.initiate_request(alice)

        clock["now"] = now + timedelta(minutes=16)
        with pytest.raises(ExpiredTokenError):
            await service.confirm_and_execute(request.token, alice)
        assert (await store.load(request.id)).status == RequestStatus.PENDING

    async def test_other_user_cannot_confirm(self, service, store, alice, bob):
        request = await service.initiate_request(alice)
        with pytest.raises(IdentityMismatchError):
            await service.confirm_and_execute(request.token, bob)
        assert (await store.load(request.id)).status == RequestStatus.PENDING

    async def test_invalid_token_checked_before_identity(self, service, alice, bob):
        await service.initiate_request(alice)
        with pytest.raises(InvalidTokenError):
            await service.confirm_and_execute("wrong", bob)

    async def test_confirm_renames_and_fans_out(
        self, service, store, renamer, directory, recording_queue, alice
    ):
        directory.attach(alice.id, "enwiki", "dewiki")
        request = await service.initiate_request(alice)

        confirmed = await service.confirm_and_execute(request.token, alice)

        assert confirmed.status == RequestStatus.IN_PROGRESS
        assert confirmed.token is None
        assert await store.get_by_token(request.token) is None

        renamed = await renamer.get_user(alice.id)
        assert renamed.name == request.target_name

        targets = await store.load_targets(request.id)
        assert [(t.shard_id, t.status) for t in targets] == [
            ("dewiki", RequestStatus.PENDING),
            ("enwiki", RequestStatus.PENDING),
        ]
        assert [shard for shard, _ in recording_queue.items] == ["dewiki", "enwiki"]
        item = recording_queue.items[0][1]
        assert item.request_id == request.id
        assert item.user_id == alice.id
        assert item.original_name == "Alice"
        assert item.target_name == request.target_name

    async def test_detached_shards_are_not_targeted(
        self, service, store, directory, recording_queue, alice
    ):
        directory.attach(alice.id, "enwiki")
        directory._attachments[alice.id]["dewiki"] = False
        request = await service.initiate_request(alice)

        await service.confirm_and_execute(request.token, alice)

        assert [t.shard_id for t in await store.load_targets(request.id)] == ["enwiki"]
        assert len(recording_queue.items) == 1

    async def test_token_is_single_use(self, service, alice):
        request = await service.initiate_request(alice)
        await service.confirm_and_execute(request.token, alice)
        with pytest.raises(InvalidTokenError):
            await service.confirm_and_execute(request.token, alice)

    async def test_concurrent_confirmations_execute_once(
        self, service, directory, recording_queue, alice
    ):
        directory.attach(alice.id, "enwiki")
        request = await service.initiate_request(alice)

        results = await asyncio.gather(
            service.confirm_and_execute(request.token, alice),
            service.confirm_and_execute(request.token, alice),
            return_exceptions=True,
        )

        assert sum(1 for r in results if isinstance(r, InvalidTokenError)) == 1
        assert len(recording_queue.items) == 1

    async def test_zero_shards_finishes_immediately(
        self, service, store, recording_queue, alice
    ):
        fired = []
        service.events.subscribe(fired.append)
        request = await service.initiate_request(alice)

        result = await service.confirm_and_execute(request.token, alice)

        assert result.status == RequestStatus.FINISHED
        assert result.completed_at is not None
        assert await store.load_targets(request.id) is None
        assert recording_queue.items == []
        assert [r.id for r in fired] == [request.id]

    async def test_rename_failure_fails_request(
        self, service, store, renamer, directory, recording_queue, alice, monkeypatch
    ):
        directory.attach(alice.id, "enwiki")
        monkeypatch.setattr(
            renamer, "rename", AsyncMock(side_effect=RenameFailedError("db down"))
        )
        request = await service.initiate_request(alice)

        with pytest.raises(RenameFailedError):
            await service.confirm_and_execute(request.token, alice)

        assert (await store.load(request.id)).status == RequestStatus.FAILED
        assert await store.load_targets(request.id) is None
        assert recording_queue.items == []
        # A failed request does not block a new one
        await service.initiate_request(alice)


class TestForceExecute:
    async def test_unknown_user(self, service, store):
        with pytest.raises(UserNotFoundError):
            await service.force_execute(404)
        assert await store.list_all() == []

    async def test_skips_confirmation(self, service, store, notifier, directory, alice):
        directory.attach(alice.id, "enwiki")

        request = await service.force_execute(alice.id)

        assert request.status == RequestStatus.IN_PROGRESS
        assert request.source == RequestSource.STAFF_FORCED
        assert request.token is None
        assert notifier.sent == []
        assert [t.shard_id for t in await store.load_targets(request.id)] == ["enwiki"]

    async def test_rejected_while_user_has_active_request(self, service, alice):
        await service.initiate_request(alice)
        with pytest.raises(AlreadyPendingError):
            await service.force_execute(alice.id)


class TestCheckAndFinalize:
    async def test_fires_completion_once(self, service, store, directory, alice):
        fired = []
        service.events.subscribe(fired.append)
        directory.attach(alice.id, "enwiki", "dewiki")
        request = await service.force_execute(alice.id)

        await store.update_target(request.id, "enwiki", RequestStatus.FINISHED)
        assert await service.check_and_finalize(request.id) is False
        await store.update_target(request.id, "dewiki", RequestStatus.FAILED, "boom")

        results = await asyncio.gather(
            *(service.check_and_finalize(request.id) for _ in range(5))
        )

        assert results.count(True) == 1
        assert [r.id for r in fired] == [request.id]
        finished = await service.load_request(request.id)
        assert finished.status == RequestStatus.FINISHED

    async def test_subscriber_failure_does_not_undo_finalization(
        self, service, store, alice
    ):
        service.events.subscribe(AsyncMock(side_effect=RuntimeError("subscriber bug")))
        request = await service.force_execute(alice.id)
        assert (await store.load(request.id)).status == RequestStatus.FINISHED


class TestAdminQueries:
    async def test_list_newest_first(self, service, alice, bob):
        first = await service.force_execute(alice.id)
        second = await service.force_execute(bob.id)
        assert [r.id for r in await service.list_requests()] == [second.id, first.id]

    def test_status_labels(self):
        assert status_label(RequestStatus.PENDING) == "pending"
        assert status_label(2) == "confirmed"
        assert status_label(RequestStatus.FINISHED) == "complete"
        assert status_label(RequestStatus.FAILED) == "failed"
