"""Shard connections.

Each shard is an independently databased site. A ShardConnection wraps the
shard's primary engine plus optional replica engines and offers the two
things the shard engine needs beyond plain SQL: table existence checks and
waiting for replicas to catch up after a write.

Replication waits are PostgreSQL-only (WAL LSN comparison). For other
dialects, or shards without configured replicas, the wait returns at once.
"""

from __future__ import annotations

import asyncio
import time

import structlog
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine

from rtbf.config import Settings
from rtbf.database import build_engine

log = structlog.get_logger(__name__)


class ShardConnection:
    """Primary (and replica) engines of one shard."""

    def __init__(
        self,
        shard_id: str,
        primary: AsyncEngine,
        replicas: list[AsyncEngine] | None = None,
        *,
        replication_timeout: float = 10.0,
        poll_interval: float = 0.25,
    ) -> None:
        self.shard_id = shard_id
        self.primary = primary
        self.replicas = replicas or []
        self._replication_timeout = replication_timeout
        self._poll_interval = poll_interval
        self._table_cache: dict[str, bool] = {}

    async def table_exists(self, name: str) -> bool:
        if name not in self._table_cache:
            async with self.primary.connect() as conn:
                self._table_cache[name] = await conn.run_sync(
                    lambda sync_conn: inspect(sync_conn).has_table(name)
                )
        return self._table_cache[name]

    async def wait_for_replication(self) -> bool:
        """Block until every replica has replayed the primary's current WAL position.

        Returns False if the timeout elapsed first. Never raises: a failed lag
        probe is logged and treated as caught up.
        """
        if not self.replicas or self.primary.dialect.name != "postgresql":
            return True

        try:
            async with self.primary.connect() as conn:
                target = (await conn.execute(text("SELECT pg_current_wal_lsn()"))).scalar_one()

            deadline = time.monotonic() + self._replication_timeout
            for replica in self.replicas:
                while True:
                    async with replica.connect() as conn:
                        behind = (
                            await conn.execute(
                                text("SELECT pg_last_wal_replay_lsn() < CAST(:target AS pg_lsn)"),
                                {"target": str(target)},
                            )
                        ).scalar_one()
                    if not behind:
                        break
                    if time.monotonic() >= deadline:
                        log.warning(
                            "shard.replication_wait_timeout",
                            shard_id=self.shard_id,
                            timeout=self._replication_timeout,
                        )
                        return False
                    await asyncio.sleep(self._poll_interval)
        except Exception as exc:
            log.warning("shard.replication_probe_failed", shard_id=self.shard_id, error=str(exc))
        return True

    async def dispose(self) -> None:
        for engine in (self.primary, *self.replicas):
            await engine.dispose()


class ShardRegistry:
    """Lazily built, cached ShardConnection per configured shard."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._connections: dict[str, ShardConnection] = {}

    @property
    def shard_ids(self) -> list[str]:
        return sorted(self._settings.shard_database_urls)

    def add(self, connection: ShardConnection) -> None:
        self._connections[connection.shard_id] = connection

    def get(self, shard_id: str) -> ShardConnection:
        """Return the connection for a shard.

        Raises:
            KeyError: If the shard is not configured.
        """
        if shard_id not in self._connections:
            url = self._settings.shard_database_urls.get(shard_id)
            if url is None:
                raise KeyError(f"Unknown shard '{shard_id}'")
            cfg = self._settings
            self._connections[shard_id] = ShardConnection(
                shard_id,
                build_engine(url, echo=cfg.db_echo_sql),
                [build_engine(u) for u in cfg.shard_replica_urls.get(shard_id, [])],
                replication_timeout=cfg.replication_wait_timeout_seconds,
                poll_interval=cfg.replication_poll_interval_seconds,
            )
            log.info("shard.connection_opened", shard_id=shard_id, url=url.split("@")[-1])
        return self._connections[shard_id]

    async def close(self) -> None:
        for connection in self._connections.values():
            await connection.dispose()
        self._connections.clear()
