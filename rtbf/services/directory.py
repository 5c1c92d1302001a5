"""Directory service: which shards is an identity attached to.

The orchestrator only depends on the Directory protocol. Two implementations
ship with the service:
- StaticDirectory: a fixed mapping, for tests and single-wiki installs
- IdentityStoreDirectory: asks every configured shard whether it has an
  actor row for the user
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

import structlog
from sqlalchemy import column, select, table

from rtbf.db.shards import ShardRegistry

log = structlog.get_logger(__name__)

_actor = table("actor", column("actor_id"), column("actor_user"))


class Directory(Protocol):
    async def attached_shards(self, user_id: int) -> dict[str, bool]: ...


def attached_ids(shards: Mapping[str, bool]) -> list[str]:
    return sorted(shard_id for shard_id, attached in shards.items() if attached)


class StaticDirectory:
    def __init__(self, attachments: Mapping[int, Mapping[str, bool]] | None = None) -> None:
        self._attachments = {uid: dict(m) for uid, m in (attachments or {}).items()}

    def attach(self, user_id: int, *shard_ids: str) -> None:
        self._attachments.setdefault(user_id, {}).update({s: True for s in shard_ids})

    async def attached_shards(self, user_id: int) -> dict[str, bool]:
        return dict(self._attachments.get(user_id, {}))


class IdentityStoreDirectory:
    """Probes each shard's actor table for the user.

    A shard that cannot be probed is reported as attached, so its worker
    still runs (and records the failure) instead of the shard being skipped.
    """

    def __init__(self, shards: ShardRegistry) -> None:
        self._shards = shards

    async def attached_shards(self, user_id: int) -> dict[str, bool]:
        result: dict[str, bool] = {}
        for shard_id in self._shards.shard_ids:
            shard = self._shards.get(shard_id)
            try:
                if not await shard.table_exists("actor"):
                    result[shard_id] = False
                    continue
                async with shard.primary.connect() as conn:
                    found = await conn.execute(
                        select(_actor.c.actor_id).where(_actor.c.actor_user == user_id)
                    )
                    result[shard_id] = found.first() is not None
            except Exception as exc:
                log.warning(
                    "directory.shard_probe_failed",
                    shard_id=shard_id,
                    user_id=user_id,
                    error=str(exc),
                )
                result[shard_id] = True

        log.debug("directory.resolved", user_id=user_id, attached=attached_ids(result))
        return result
