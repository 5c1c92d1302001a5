"""Process-start assembly of the forget service.

Everything the orchestrator and shard workers need is built here once,
from settings, and passed down through constructors:

    rule registry (defaults + configured providers, frozen)
    completion events (configured subscribers)
    request store, identity renamer, shard registry, directory, notifier
    shard worker  <-  completion monitor
    work queue    <-  shard worker
    ForgetService <-  all of the above

Tests build the same container with fakes swapped in through the keyword
arguments of build_container().
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from rtbf.cache.backend import CacheBackend, get_cache_backend
from rtbf.config import Settings
from rtbf.core.events import CompletionEvents, CompletionSubscriber, load_completion_subscribers
from rtbf.core.rules import RuleProvider, RuleRegistry, build_rule_registry, load_rule_providers
from rtbf.db.shards import ShardRegistry
from rtbf.infra.work_queue import InProcessWorkQueue, WorkQueue
from rtbf.services.directory import Directory, IdentityStoreDirectory
from rtbf.services.identity import IdentityRenamer
from rtbf.services.notifier import Notifier, notifier_from_settings
from rtbf.services.orchestrator import CompletionMonitor, ForgetService
from rtbf.services.page_purge import PagePurger
from rtbf.services.shard_engine import ShardExecutionEngine, ShardWorker
from rtbf.services.store import RequestStore

log = structlog.get_logger(__name__)


@dataclass
class ForgetContainer:
    settings: Settings
    rules: RuleRegistry
    store: RequestStore
    cache: CacheBackend
    renamer: IdentityRenamer
    shards: ShardRegistry
    monitor: CompletionMonitor
    worker: ShardWorker
    queue: WorkQueue
    service: ForgetService

    async def start(self) -> None:
        if isinstance(self.queue, InProcessWorkQueue):
            await self.queue.start()

    async def stop(self) -> None:
        if isinstance(self.queue, InProcessWorkQueue):
            await self.queue.shutdown(drain=True)
        await self.shards.close()
        await self.cache.close()
        log.info("forget.container_stopped")


def build_container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    identity_engine: AsyncEngine,
    *,
    shards: ShardRegistry | None = None,
    directory: Directory | None = None,
    notifier: Notifier | None = None,
    cache: CacheBackend | None = None,
    queue: WorkQueue | None = None,
    rule_providers: Iterable[RuleProvider] = (),
    subscribers: Iterable[CompletionSubscriber] = (),
) -> ForgetContainer:
    """Assemble the service graph.

    Rule providers and completion subscribers named in settings are loaded
    first, followed by the ones passed in directly.
    """
    rules = build_rule_registry(
        [*load_rule_providers(settings.rule_provider_modules), *rule_providers]
    )

    events = CompletionEvents()
    for subscriber in (
        *load_completion_subscribers(settings.completion_subscriber_modules),
        *subscribers,
    ):
        events.subscribe(subscriber)

    store = RequestStore(session_factory)
    cache = cache or get_cache_backend(settings)
    renamer = IdentityRenamer.from_settings(settings, identity_engine, cache)
    shards = shards or ShardRegistry(settings)
    monitor = CompletionMonitor(store, events)

    worker = ShardWorker(
        store,
        shards,
        ShardExecutionEngine(rules),
        PagePurger(settings.system_actor_name),
        monitor.check_and_finalize,
    )
    queue = queue or InProcessWorkQueue(
        worker.run,
        max_workers=settings.worker_concurrency,
        max_retries=settings.worker_max_retries,
    )

    service = ForgetService(
        store,
        renamer,
        directory or IdentityStoreDirectory(shards),
        queue,
        notifier or notifier_from_settings(settings),
        monitor,
        token_ttl_seconds=settings.token_ttl_seconds,
        anonymous_name_prefix=settings.anonymous_name_prefix,
    )

    log.info(
        "forget.container_built",
        shards=len(shards.shard_ids),
        rules=len(rules),
        subscribers=len(events.subscribers),
    )
    return ForgetContainer(
        settings=settings,
        rules=rules,
        store=store,
        cache=cache,
        renamer=renamer,
        shards=shards,
        monitor=monitor,
        worker=worker,
        queue=queue,
        service=service,
    )
