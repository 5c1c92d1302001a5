"""User page purge on a shard.

Removes every page in the User and User talk namespaces whose title is the
old or new username, or a subpage of either, then scrubs the residue those
pages leave behind in archive, logging and recentchanges.

Deletions are performed by a system actor and recorded as suppressed,
bot-flagged entries so they stay out of default recent-changes views. A
failing page is recorded and the remaining pages are still processed; the
residue purge is best effort and never retried.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import and_, column, delete, insert, or_, select, table
from sqlalchemy.ext.asyncio import AsyncConnection
from sqlalchemy.sql.elements import ColumnElement

from rtbf.db.shards import ShardConnection

log = structlog.get_logger(__name__)

NS_USER = 2
NS_USER_TALK = 3
USER_NAMESPACES = (NS_USER, NS_USER_TALK)

# log_deleted / rc_deleted bitfield: action, comment, user, restricted
SUPPRESSED_ALL = 1 | 2 | 4 | 8

# recentchanges row type and source for log entries
RC_LOG = 3
RC_SRC_LOG = "mw.log"
# Shared empty comment row
EMPTY_COMMENT_ID = 0

_actor = table("actor", column("actor_id"), column("actor_user"), column("actor_name"))
_page = table("page", column("page_id"), column("page_namespace"), column("page_title"))
_revision = table("revision", column("rev_id"), column("rev_page"))
_archive = table("archive", column("ar_namespace"), column("ar_title"))
_logging = table(
    "logging",
    column("log_type"),
    column("log_action"),
    column("log_namespace"),
    column("log_title"),
    column("log_actor"),
    column("log_timestamp"),
    column("log_comment_id"),
    column("log_params"),
    column("log_deleted"),
)
_recentchanges = table(
    "recentchanges",
    column("rc_namespace"),
    column("rc_title"),
    column("rc_actor"),
    column("rc_ip"),
    column("rc_type"),
    column("rc_source"),
    column("rc_comment_id"),
    column("rc_log_type"),
    column("rc_log_action"),
    column("rc_bot"),
    column("rc_deleted"),
    column("rc_timestamp"),
)


class SystemActorUnavailableError(RuntimeError):
    """The shard has no actor table, so deletions cannot be attributed."""


def wiki_timestamp() -> str:
    """Current time in the platform's 14-digit timestamp format."""
    return datetime.now(UTC).strftime("%Y%m%d%H%M%S")


def title_db_key(name: str) -> str:
    """Page title storage form: spaces become underscores."""
    return name.strip().replace(" ", "_")


def title_matches(title_col: Any, keys: list[str]) -> ColumnElement[bool]:
    """Exact title or subpage (``key/...``) match for any of the keys."""
    clauses: list[ColumnElement[bool]] = []
    for key in keys:
        clauses.append(title_col == key)
        clauses.append(title_col.startswith(f"{key}/", autoescape=True))
    return or_(*clauses)


@dataclass
class PagePurgeResult:
    pages_deleted: int = 0
    errors: list[str] = field(default_factory=list)


class PagePurger:
    """Deletes a user's pages and their residue on one shard."""

    def __init__(self, system_actor_name: str) -> None:
        self._system_actor_name = system_actor_name

    async def ensure_system_actor(self, shard: ShardConnection) -> int:
        if not await shard.table_exists("actor"):
            raise SystemActorUnavailableError(
                f"Shard '{shard.shard_id}' has no actor table for '{self._system_actor_name}'"
            )
        lookup = select(_actor.c.actor_id).where(_actor.c.actor_name == self._system_actor_name)
        async with shard.primary.begin() as conn:
            actor_id = (await conn.execute(lookup)).scalar_one_or_none()
            if actor_id is None:
                await conn.execute(
                    insert(_actor).values(actor_user=None, actor_name=self._system_actor_name)
                )
                actor_id = (await conn.execute(lookup)).scalar_one()
                log.info(
                    "shard.system_actor_created",
                    shard_id=shard.shard_id,
                    actor_id=actor_id,
                )
        return int(actor_id)

    async def purge(
        self, shard: ShardConnection, old_name: str, new_name: str
    ) -> PagePurgeResult:
        """Delete matching pages, then archive/logging/recentchanges residue.

        Raises:
            SystemActorUnavailableError: If deletions cannot be attributed.
        """
        result = PagePurgeResult()
        keys = sorted({title_db_key(old_name), title_db_key(new_name)})

        if await shard.table_exists("page"):
            system_actor = await self.ensure_system_actor(shard)
            present = {
                name: await shard.table_exists(name)
                for name in ("revision", "logging", "recentchanges")
            }
            async with shard.primary.connect() as conn:
                rows = (
                    await conn.execute(
                        select(_page.c.page_id, _page.c.page_namespace, _page.c.page_title).where(
                            _page.c.page_namespace.in_(USER_NAMESPACES),
                            title_matches(_page.c.page_title, keys),
                        )
                    )
                ).all()

            for page_id, namespace, page_title in rows:
                try:
                    async with shard.primary.begin() as conn:
                        await self._delete_page(conn, present, page_id)
                except Exception as exc:
                    message = f"Failed to delete page {namespace}:{page_title}: {exc}"
                    result.errors.append(message)
                    log.warning(
                        "shard.page_delete_failed",
                        shard_id=shard.shard_id,
                        page_id=page_id,
                        error=str(exc),
                    )
                else:
                    result.pages_deleted += 1
                    await self._record_deletion(
                        shard, present, namespace, page_title, system_actor, result
                    )
                await shard.wait_for_replication()

        await self._purge_residue(shard, keys, result)

        log.info(
            "shard.pages_purged",
            shard_id=shard.shard_id,
            pages_deleted=result.pages_deleted,
            errors=len(result.errors),
        )
        return result

    async def _delete_page(
        self, conn: AsyncConnection, present: dict[str, bool], page_id: int
    ) -> None:
        """Immediate delete of one page and its revisions."""
        if present["revision"]:
            await conn.execute(delete(_revision).where(_revision.c.rev_page == page_id))
        await conn.execute(delete(_page).where(_page.c.page_id == page_id))

    async def _record_deletion(
        self,
        shard: ShardConnection,
        present: dict[str, bool],
        namespace: int,
        page_title: str,
        system_actor: int,
        result: PagePurgeResult,
    ) -> None:
        """Suppressed deletion log entry plus its bot-flagged recent change.

        Runs after the page delete has committed; a failure here is recorded
        against the page but never brings the page back.
        """
        now = wiki_timestamp()
        statements = []
        if present["logging"]:
            statements.append(
                insert(_logging).values(
                    log_type="delete",
                    log_action="delete",
                    log_namespace=namespace,
                    log_title=page_title,
                    log_actor=system_actor,
                    log_timestamp=now,
                    log_comment_id=EMPTY_COMMENT_ID,
                    log_params="",
                    log_deleted=SUPPRESSED_ALL,
                )
            )
        if present["recentchanges"]:
            statements.append(
                insert(_recentchanges).values(
                    rc_namespace=namespace,
                    rc_title=page_title,
                    rc_actor=system_actor,
                    rc_ip="127.0.0.1",
                    rc_type=RC_LOG,
                    rc_source=RC_SRC_LOG,
                    rc_comment_id=EMPTY_COMMENT_ID,
                    rc_log_type="delete",
                    rc_log_action="delete",
                    rc_bot=1,
                    rc_deleted=SUPPRESSED_ALL,
                    rc_timestamp=now,
                )
            )
        if not statements:
            return
        try:
            async with shard.primary.begin() as conn:
                for statement in statements:
                    await conn.execute(statement)
        except Exception as exc:
            result.errors.append(
                f"Deleted page {namespace}:{page_title} but could not log it: {exc}"
            )
            log.warning(
                "shard.deletion_log_failed",
                shard_id=shard.shard_id,
                namespace=namespace,
                title=page_title,
                error=str(exc),
            )

    async def _purge_residue(
        self, shard: ShardConnection, keys: list[str], result: PagePurgeResult
    ) -> None:
        statements = [
            (
                "archive",
                delete(_archive).where(
                    and_(
                        _archive.c.ar_namespace.in_(USER_NAMESPACES),
                        title_matches(_archive.c.ar_title, keys),
                    )
                ),
            ),
            ("logging", delete(_logging).where(title_matches(_logging.c.log_title, keys))),
            (
                "recentchanges",
                delete(_recentchanges).where(title_matches(_recentchanges.c.rc_title, keys)),
            ),
        ]
        for name, statement in statements:
            if not await shard.table_exists(name):
                continue
            try:
                async with shard.primary.begin() as conn:
                    deleted = (await conn.execute(statement)).rowcount
                log.debug("shard.residue_purged", shard_id=shard.shard_id, table=name, rows=deleted)
            except Exception as exc:
                result.errors.append(f"Failed to purge {name}: {exc}")
                log.warning(
                    "shard.residue_purge_failed",
                    shard_id=shard.shard_id,
                    table=name,
                    error=str(exc),
                )
