"""End-to-end: confirm a request and let the real worker pool run every shard."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from rtbf.core.rules import Param, RuleRegistry
from rtbf.models.request import RequestStatus
from rtbf.wiring import build_container


def _extension_rules(registry: RuleRegistry) -> None:
    registry.register_replacement_rule(
        "moderation", {"mod_user": Param.USER_ID}, {"mod_user_text": Param.NEW_NAME}
    )


@pytest.fixture
async def wired(settings, session_factory, identity_engine, shards, directory, notifier, cache):
    subscriber = AsyncMock()
    container = build_container(
        settings,
        session_factory,
        identity_engine,
        shards=shards,
        directory=directory,
        notifier=notifier,
        cache=cache,
        rule_providers=[_extension_rules],
        subscribers=[subscriber],
    )
    await container.start()
    yield container, subscriber
    await container.stop()


async def test_confirmed_request_runs_on_every_shard(
    wired, seed_user, seed_shard, shard_rows, directory, notifier, cache
):
    container, subscriber = wired
    alice = await seed_user(7, "Alice Smith", "alice@example.org")
    directory.attach(7, "enwiki", "dewiki")
    await cache.set("session:user:7:abc", {"sid": "abc"}, ttl=60)
    for shard_id in ("enwiki", "dewiki"):
        await seed_shard(
            shard_id, "actor", [{"actor_id": 70, "actor_user": 7, "actor_name": "Alice Smith"}]
        )
        await seed_shard(shard_id, "block", [{"bl_by_actor": 70}])
        await seed_shard(shard_id, "page", [{"page_namespace": 2, "page_title": "Alice_Smith"}])
        await seed_shard(
            shard_id,
            "moderation",
            [{"mod_user": 7, "mod_user_text": "Alice Smith", "mod_ip": "10.0.0.7"}],
        )

    request = await container.service.initiate_request(alice)
    [(_, sent)] = notifier.sent
    confirmed = await container.service.confirm_and_execute(sent.token, alice)
    assert confirmed.id == request.id
    assert confirmed.token is None

    await container.queue.join()

    finished = await container.service.load_request(request.id)
    assert finished.status == RequestStatus.FINISHED
    targets = await container.service.load_targets(request.id)
    assert [(t.shard_id, t.status, t.error_message) for t in targets] == [
        ("dewiki", RequestStatus.FINISHED, None),
        ("enwiki", RequestStatus.FINISHED, None),
    ]
    subscriber.assert_awaited_once()
    assert subscriber.await_args.args[0].id == request.id

    assert await cache.get("session:user:7:abc") is None
    for shard_id in ("enwiki", "dewiki"):
        assert await shard_rows(shard_id, "block") == []
        assert await shard_rows(shard_id, "page") == []
        [moderation] = await shard_rows(shard_id, "moderation")
        assert moderation["mod_user_text"] == request.target_name
        assert moderation["mod_ip"] == "0.0.0.0"


async def test_failing_shard_does_not_block_completion(
    wired, seed_user, directory, monkeypatch
):
    container, subscriber = wired
    await seed_user(7, "Alice")
    directory.attach(7, "enwiki", "dewiki")
    monkeypatch.setattr(
        container.shards.get("dewiki"),
        "table_exists",
        AsyncMock(side_effect=ConnectionError("dewiki primary unreachable")),
    )

    request = await container.service.force_execute(7)
    await container.queue.join()

    finished = await container.service.load_request(request.id)
    assert finished.status == RequestStatus.FINISHED
    targets = {t.shard_id: t for t in await container.service.load_targets(request.id)}
    assert targets["enwiki"].status == RequestStatus.FINISHED
    assert targets["dewiki"].status == RequestStatus.FAILED
    assert "dewiki primary unreachable" in targets["dewiki"].error_message
    subscriber.assert_awaited_once()
