"""
Shared test fixtures for pytest.

Everything runs against file-backed SQLite databases under tmp_path, one per
store, so the real SQLAlchemy code paths (including BEGIN IMMEDIATE locking)
are exercised without a server:

- settings: Test environment configuration pointing at tmp_path databases
- request_engine / session_factory / store: Request store
- identity_engine / seed_user: Identity store (home shard) and a user seeder
- shards / seed_shard: Two wiki shards with the platform tables used by rules
- notifier, directory, recording_queue: Fakes for the outer collaborators
- service: ForgetService wired with the fakes above
- make_token: Helper to create test JWT tokens
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import Column, Integer, MetaData, String, Table, Text, insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from rtbf.api.auth import create_token
from rtbf.cache.backend import InMemoryCacheBackend
from rtbf.config import Environment, Settings, get_settings
from rtbf.database import Base, IdentityBase, build_engine, make_session_factory
from rtbf.db.shards import ShardConnection, ShardRegistry
from rtbf.errors import NotificationError
from rtbf.infra.work_queue import WorkItem
from rtbf.models.identity import ActorRecord, UserIdentity, UserRecord
from rtbf.models.request import ForgetRequest
from rtbf.services.directory import StaticDirectory
from rtbf.services.identity import IdentityRenamer
from rtbf.services.orchestrator import CompletionMonitor, ForgetService
from rtbf.services.store import RequestStore

SHARD_IDS = ("dewiki", "enwiki")

# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #


@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ------------------------------------------------------------------ #
# Constants for Test JWTs
# ------------------------------------------------------------------ #

TEST_JWT_SECRET = "test-jwt-secret-for-unit-tests"


def make_token(user_id: int, role: str = "user", expires_in: int = 3600) -> str:
    """Create a test JWT token using HS256."""
    return create_token(
        user_id=user_id,
        secret=TEST_JWT_SECRET,
        role=role,
        expires_in=expires_in,
    )


@pytest.fixture
def token_factory():
    return make_token


# ------------------------------------------------------------------ #
# Shard schema: the subset of platform tables the rules and purge touch
# ------------------------------------------------------------------ #

shard_metadata = MetaData()

Table(
    "actor",
    shard_metadata,
    Column("actor_id", Integer, primary_key=True, autoincrement=True),
    Column("actor_user", Integer, nullable=True, unique=True),
    Column("actor_name", String(255), nullable=False, unique=True),
)
Table(
    "page",
    shard_metadata,
    Column("page_id", Integer, primary_key=True, autoincrement=True),
    Column("page_namespace", Integer, nullable=False),
    Column("page_title", String(255), nullable=False),
)
Table(
    "revision",
    shard_metadata,
    Column("rev_id", Integer, primary_key=True, autoincrement=True),
    Column("rev_page", Integer, nullable=False),
)
Table(
    "archive",
    shard_metadata,
    Column("ar_id", Integer, primary_key=True, autoincrement=True),
    Column("ar_namespace", Integer, nullable=False),
    Column("ar_title", String(255), nullable=False),
)
Table(
    "logging",
    shard_metadata,
    Column("log_id", Integer, primary_key=True, autoincrement=True),
    Column("log_type", String(32), nullable=False, default=""),
    Column("log_action", String(32), nullable=False, default=""),
    Column("log_namespace", Integer, nullable=False, default=0),
    Column("log_title", String(255), nullable=False, default=""),
    Column("log_actor", Integer, nullable=False, default=0),
    Column("log_timestamp", String(14), nullable=False, default="19700101000000"),
    Column("log_comment_id", Integer, nullable=False, default=0),
    Column("log_params", Text, nullable=False, default=""),
    Column("log_deleted", Integer, nullable=False, default=0),
)
Table(
    "recentchanges",
    shard_metadata,
    Column("rc_id", Integer, primary_key=True, autoincrement=True),
    Column("rc_namespace", Integer, nullable=False, default=0),
    Column("rc_title", String(255), nullable=False, default=""),
    Column("rc_actor", Integer, nullable=False, default=0),
    Column("rc_ip", String(40), nullable=False, default=""),
    Column("rc_type", Integer, nullable=False, default=0),
    Column("rc_source", String(16), nullable=False, default=""),
    Column("rc_comment_id", Integer, nullable=False, default=0),
    Column("rc_log_type", String(32), nullable=True),
    Column("rc_log_action", String(32), nullable=True),
    Column("rc_bot", Integer, nullable=False, default=0),
    Column("rc_deleted", Integer, nullable=False, default=0),
    Column("rc_timestamp", String(14), nullable=False, default="19700101000000"),
)
Table(
    "block",
    shard_metadata,
    Column("bl_id", Integer, primary_key=True, autoincrement=True),
    Column("bl_by_actor", Integer, nullable=False),
)
Table(
    "block_target",
    shard_metadata,
    Column("bt_id", Integer, primary_key=True, autoincrement=True),
    Column("bt_user", Integer, nullable=True),
)
Table(
    "user_groups",
    shard_metadata,
    Column("ug_user", Integer, primary_key=True),
    Column("ug_group", String(255), primary_key=True),
)
Table(
    "abuse_filter_log",
    shard_metadata,
    Column("afl_id", Integer, primary_key=True, autoincrement=True),
    Column("afl_user_text", String(255), nullable=False),
)
Table(
    "moderation",
    shard_metadata,
    Column("mod_id", Integer, primary_key=True, autoincrement=True),
    Column("mod_user", Integer, nullable=False),
    Column("mod_user_text", String(255), nullable=False),
    Column("mod_header_xff", String(255), nullable=False, default=""),
    Column("mod_header_ua", String(255), nullable=False, default=""),
    Column("mod_ip", String(40), nullable=False, default=""),
)


async def create_shard_schema(engine: AsyncEngine, *, skip: tuple[str, ...] = ()) -> None:
    tables = [t for name, t in shard_metadata.tables.items() if name not in skip]
    async with engine.begin() as conn:
        await conn.run_sync(lambda c: shard_metadata.create_all(c, tables=tables))


async def fetch_all(engine: AsyncEngine, table_name: str) -> list[dict[str, Any]]:
    """All rows of a shard table as dicts, in primary key order."""
    table = shard_metadata.tables[table_name]
    async with engine.connect() as conn:
        result = await conn.execute(table.select().order_by(*table.primary_key.columns))
        return [dict(row._mapping) for row in result]


def _sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


# ------------------------------------------------------------------ #
# Settings
# ------------------------------------------------------------------ #


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Test environment settings with every database under tmp_path."""
    avatars = tmp_path / "avatars"
    avatars.mkdir()
    return Settings(
        environment=Environment.TEST,
        database_url=_sqlite_url(tmp_path / "rtbf.db"),
        identity_database_url=_sqlite_url(tmp_path / "identity.db"),
        shard_database_urls={s: _sqlite_url(tmp_path / f"{s}.db") for s in SHARD_IDS},
        shard_replica_urls={},
        avatar_directory=str(avatars),
        jwt_secret=TEST_JWT_SECRET,
        redis_url="",
        smtp_host=None,
        worker_concurrency=2,
        worker_max_retries=1,
        rule_provider_modules=[],
        completion_subscriber_modules=[],
    )


# ------------------------------------------------------------------ #
# Request store
# ------------------------------------------------------------------ #


@pytest.fixture
async def request_engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(settings.database_url, for_test=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(request_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(request_engine)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> RequestStore:
    return RequestStore(session_factory)


# ------------------------------------------------------------------ #
# Identity store
# ------------------------------------------------------------------ #


@pytest.fixture
async def identity_engine(settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(settings.identity_database_url, for_test=True)
    async with engine.begin() as conn:
        await conn.run_sync(IdentityBase.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def seed_user(identity_engine: AsyncEngine):
    """Insert a user plus its central actor row; returns the UserIdentity."""
    factory = make_session_factory(identity_engine)

    async def _seed(user_id: int, name: str, email: str = "") -> UserIdentity:
        async with factory() as session, session.begin():
            session.add(
                UserRecord(
                    user_id=user_id,
                    user_name=name,
                    user_real_name=f"Real {name}",
                    user_email=email,
                    user_password="pbkdf2_sha256$1$salt$original",
                    user_token="original-token",
                )
            )
            session.add(ActorRecord(actor_user=user_id, actor_name=name))
        return UserIdentity(id=user_id, name=name, email=email)

    return _seed


@pytest.fixture
def cache() -> InMemoryCacheBackend:
    return InMemoryCacheBackend()


@pytest.fixture
def renamer(
    settings: Settings, identity_engine: AsyncEngine, cache: InMemoryCacheBackend
) -> IdentityRenamer:
    return IdentityRenamer.from_settings(settings, identity_engine, cache)


# ------------------------------------------------------------------ #
# Shards
# ------------------------------------------------------------------ #


@pytest.fixture
async def shards(settings: Settings) -> AsyncGenerator[ShardRegistry, None]:
    """Registry with both test shards created and their schema in place."""
    registry = ShardRegistry(settings)
    for shard_id in SHARD_IDS:
        engine = build_engine(settings.shard_database_urls[shard_id], for_test=True)
        await create_shard_schema(engine)
        registry.add(ShardConnection(shard_id, engine))
    yield registry
    await registry.close()


@pytest.fixture
def seed_shard(shards: ShardRegistry):
    """Insert rows into a shard table: await seed_shard("enwiki", "block", [...])."""

    async def _seed(shard_id: str, table_name: str, rows: list[dict[str, Any]]) -> None:
        table = shard_metadata.tables[table_name]
        async with shards.get(shard_id).primary.begin() as conn:
            await conn.execute(insert(table), rows)

    return _seed


# ------------------------------------------------------------------ #
# Fakes
# ------------------------------------------------------------------ #


class FakeNotifier:
    """Records confirmation sends; raises NotificationError when ``fail`` is set."""

    def __init__(self) -> None:
        self.sent: list[tuple[UserIdentity, ForgetRequest]] = []
        self.fail = False

    async def send_confirmation(self, user: UserIdentity, request: ForgetRequest) -> None:
        if self.fail:
            raise NotificationError("smtp down")
        self.sent.append((user, request))


class RecordingQueue:
    """Work queue that only records what was enqueued."""

    def __init__(self) -> None:
        self.items: list[tuple[str, WorkItem]] = []

    async def enqueue(self, shard_id: str, item: WorkItem) -> None:
        self.items.append((shard_id, item))


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def directory() -> StaticDirectory:
    return StaticDirectory()


@pytest.fixture
def recording_queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def service(
    store: RequestStore,
    renamer: IdentityRenamer,
    directory: StaticDirectory,
    recording_queue: RecordingQueue,
    notifier: FakeNotifier,
) -> ForgetService:
    return ForgetService(
        store,
        renamer,
        directory,
        recording_queue,
        notifier,
        CompletionMonitor(store),
    )


@pytest.fixture
def shard_rows(shards: ShardRegistry):
    """Read back a shard table: rows = await shard_rows("enwiki", "block")."""

    async def _rows(shard_id: str, table_name: str) -> list[dict[str, Any]]:
        return await fetch_all(shards.get(shard_id).primary, table_name)

    return _rows


@pytest.fixture
async def make_shard(tmp_path: Path) -> AsyncGenerator[Any, None]:
    """Build an extra ShardConnection, optionally without some tables."""
    created: list[ShardConnection] = []

    async def _make(shard_id: str, *, skip: tuple[str, ...] = ()) -> ShardConnection:
        engine = build_engine(_sqlite_url(tmp_path / f"extra_{shard_id}.db"), for_test=True)
        await create_shard_schema(engine, skip=skip)
        connection = ShardConnection(shard_id, engine)
        created.append(connection)
        return connection

    yield _make
    for connection in created:
        await connection.dispose()
