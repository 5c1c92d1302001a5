"""Shard execution engine.

ShardExecutionEngine applies the frozen rule set to one shard: every
deletion, then every replacement, each in its own transaction. A failing
rule is recorded and the next one still runs; after each rule the engine
waits for the shard's replicas to catch up.

ShardWorker is the queue handler for one (request, shard) work item. It
tracks its own target row, runs the rules and the user page purge, records
the outcome and then asks the orchestrator to finalize the request. Every
step is safe to repeat, so redelivery of an item does no harm.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy import column, delete, select, table, update
from sqlalchemy.sql import Delete, Update

from rtbf.core.rules import Rule, RuleContext, RuleKind, RuleRegistry
from rtbf.db.shards import ShardConnection, ShardRegistry
from rtbf.infra.work_queue import WorkItem
from rtbf.models.request import RequestStatus
from rtbf.services.page_purge import PagePurger
from rtbf.services.store import RequestStore
from rtbf.telemetry.logging import bind_forget_context, clear_context

log = structlog.get_logger(__name__)

_actor = table("actor", column("actor_id"), column("actor_user"))


@dataclass(frozen=True)
class RuleFailure:
    table: str
    kind: RuleKind
    error: str

    def __str__(self) -> str:
        return f"{self.kind} on {self.table} failed: {self.error}"


def _predicate(tbl: Any, where: Mapping[str, Any]) -> list[Any]:
    clauses = []
    for name, value in where.items():
        col = tbl.c[name]
        if isinstance(value, list):
            clauses.append(col.in_(value))
        elif value is None:
            clauses.append(col.is_(None))
        else:
            clauses.append(col == value)
    return clauses


def build_statement(rule: Rule, context: RuleContext) -> Delete | Update:
    """Bind a rule to a request and render it as a Core DELETE or UPDATE."""
    where, values = rule.bind(context)
    tbl = table(rule.table, *(column(name) for name in {*where, *values}))
    if rule.kind == RuleKind.DELETE:
        return delete(tbl).where(*_predicate(tbl, where))
    return update(tbl).where(*_predicate(tbl, where)).values(**values)


class ShardExecutionEngine:
    """Applies registry rules on a shard with per-rule fault isolation."""

    def __init__(self, registry: RuleRegistry) -> None:
        self._registry = registry

    async def resolve_actor_id(self, shard: ShardConnection, user_id: int) -> int | None:
        """The user's actor id on this shard, or None if they never acted here."""
        if not await shard.table_exists("actor"):
            return None
        async with shard.primary.connect() as conn:
            result = await conn.execute(
                select(_actor.c.actor_id).where(_actor.c.actor_user == user_id)
            )
            return result.scalar_one_or_none()

    async def apply_rules(
        self, shard: ShardConnection, context: RuleContext
    ) -> list[RuleFailure]:
        failures: list[RuleFailure] = []
        applied = skipped = 0

        for rule in (*self._registry.deletions, *self._registry.replacements):
            if rule.needs_actor and context.actor_id is None:
                skipped += 1
                continue
            if not await shard.table_exists(rule.table):
                skipped += 1
                continue

            try:
                async with shard.primary.begin() as conn:
                    result = await conn.execute(build_statement(rule, context))
                applied += 1
                log.debug(
                    "shard.rule_applied",
                    shard_id=shard.shard_id,
                    rule=rule.describe(),
                    rows=result.rowcount,
                )
            except Exception as exc:
                failure = RuleFailure(
                    table=rule.table,
                    kind=rule.kind,
                    error=f"{type(exc).__name__}: {exc}",
                )
                failures.append(failure)
                log.warning(
                    "shard.rule_failed",
                    shard_id=shard.shard_id,
                    rule=rule.describe(),
                    error=failure.error,
                )
            await shard.wait_for_replication()

        log.info(
            "shard.rules_applied",
            shard_id=shard.shard_id,
            applied=applied,
            skipped=skipped,
            failed=len(failures),
        )
        return failures


Finalizer = Callable[[int], Awaitable[bool]]


class ShardWorker:
    """Queue handler running one WorkItem against its shard."""

    def __init__(
        self,
        store: RequestStore,
        shards: ShardRegistry,
        engine: ShardExecutionEngine,
        purger: PagePurger,
        finalize: Finalizer,
    ) -> None:
        self._store = store
        self._shards = shards
        self._engine = engine
        self._purger = purger
        self._finalize = finalize

    async def run(self, item: WorkItem) -> bool:
        """Anonymise the user on one shard.

        Returns True once substantive work was attempted, even if recording
        the outcome failed afterwards (that is logged at critical level).
        """
        bind_forget_context(item.request_id, item.shard_id)
        try:
            return await self._run(item)
        finally:
            clear_context()

    async def _run(self, item: WorkItem) -> bool:
        rows = await self._store.update_target(
            item.request_id, item.shard_id, RequestStatus.IN_PROGRESS
        )
        if rows != 1:
            target = await self._store.get_target(item.request_id, item.shard_id)
            if target is not None and not target.is_active:
                log.info("shard.target_already_done", status=target.status.name)
                return True
            log.error("shard.target_missing", rows=rows)

        errors: list[str] = []
        hard_error: str | None = None
        try:
            shard = self._shards.get(item.shard_id)
            context = RuleContext(
                old_name=item.original_name,
                new_name=item.target_name,
                user_id=item.user_id,
                actor_id=await self._engine.resolve_actor_id(shard, item.user_id),
            )
            errors.extend(str(f) for f in await self._engine.apply_rules(shard, context))
            purge = await self._purger.purge(shard, item.original_name, item.target_name)
            errors.extend(purge.errors)
        except Exception as exc:
            hard_error = f"{type(exc).__name__}: {exc}"
            log.error("shard.run_failed", error=hard_error, exc_info=True)

        try:
            if hard_error is not None:
                rows = await self._store.update_target(
                    item.request_id,
                    item.shard_id,
                    RequestStatus.FAILED,
                    "\n".join([hard_error, *errors]),
                )
            else:
                rows = await self._store.update_target(
                    item.request_id,
                    item.shard_id,
                    RequestStatus.FINISHED,
                    "\n".join(errors) or None,
                )
            if rows != 1:
                log.warning("shard.target_not_updated", rows=rows)
            await self._finalize(item.request_id)
        except Exception as exc:
            log.critical(
                "shard.bookkeeping_failed",
                user_id=item.user_id,
                error=str(exc),
                exc_info=True,
            )

        log.info(
            "shard.run_complete",
            failed=hard_error is not None,
            errors=len(errors),
        )
        return True
