"""Identity rename - the centralized, one-time part of forgetting a user.

Runs on the identity store (home shard) before any shard work is queued:

1. evict the cached identity record
2. scrub credentials: random password, new user token, no real name, no email
3. rename user and actor rows to the target name in ONE transaction
4. evict every session of the user
5. delete the user's avatar files

Steps 1-3 are fatal on error (RenameFailedError; the caller must not fan out).
Steps 4-5 run after the rename is committed, so their failures are logged
and do not undo or fail the request.
"""

from __future__ import annotations

import hashlib
import secrets
from datetime import UTC, datetime
from pathlib import Path

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncEngine

from rtbf.cache.backend import CacheBackend
from rtbf.config import Settings
from rtbf.database import make_session_factory
from rtbf.errors import RenameFailedError
from rtbf.models.identity import ActorRecord, UserIdentity, UserRecord
from rtbf.models.request import ForgetRequest

log = structlog.get_logger(__name__)

PBKDF2_ITERATIONS = 210_000


def hash_password(password: str, *, iterations: int = PBKDF2_ITERATIONS) -> str:
    """PBKDF2-SHA256 hash in ``pbkdf2_sha256$<iterations>$<salt>$<hash>`` form."""
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), iterations)
    return f"pbkdf2_sha256${iterations}${salt}${digest.hex()}"


class IdentityRenamer:
    """Anonymises the central identity of a user."""

    def __init__(
        self,
        engine: AsyncEngine,
        cache: CacheBackend,
        *,
        identity_cache_prefix: str = "identity:user",
        session_key_prefix: str = "session:user",
        avatar_directory: str | Path | None = None,
        avatar_extensions: tuple[str, ...] | list[str] = ("png", "gif", "jpg", "jpeg", "webp"),
    ) -> None:
        self._session_factory = make_session_factory(engine)
        self._cache = cache
        self._identity_cache_prefix = identity_cache_prefix
        self._session_key_prefix = session_key_prefix
        self._avatar_directory = Path(avatar_directory) if avatar_directory else None
        self._avatar_extensions = tuple(avatar_extensions)

    @classmethod
    def from_settings(
        cls, settings: Settings, engine: AsyncEngine, cache: CacheBackend
    ) -> IdentityRenamer:
        return cls(
            engine,
            cache,
            identity_cache_prefix=settings.identity_cache_prefix,
            session_key_prefix=settings.session_key_prefix,
            avatar_directory=settings.avatar_directory,
            avatar_extensions=settings.avatar_extensions,
        )

    def identity_cache_key(self, user_id: int) -> str:
        return f"{self._identity_cache_prefix}:{user_id}"

    def session_key_pattern(self, user_id: int) -> str:
        return f"{self._session_key_prefix}:{user_id}:*"

    async def get_user(self, user_id: int) -> UserIdentity | None:
        async with self._session_factory() as session:
            record = await session.get(UserRecord, user_id)
            return UserIdentity.from_record(record) if record else None

    async def rename(self, user: UserIdentity, request: ForgetRequest) -> None:
        """Rename ``user`` to ``request.target_name`` and scrub its identity.

        Raises:
            RenameFailedError: If eviction, the credential scrub or the
                atomic rename failed. Nothing was queued on shards yet.
        """
        old_name = request.original_name
        new_name = request.target_name
        try:
            await self._cache.delete(self.identity_cache_key(user.id))
            await self._scrub_credentials(user.id)
            await self._rename_rows(user.id, old_name, new_name)
        except Exception as exc:
            log.error(
                "identity.rename_failed",
                request_id=request.id,
                user_id=user.id,
                old_name=old_name,
                new_name=new_name,
                error=str(exc),
                exc_info=True,
            )
            raise RenameFailedError(f"Renaming user {user.id} failed: {exc}") from exc

        log.info(
            "identity.renamed",
            request_id=request.id,
            user_id=user.id,
            old_name=old_name,
            new_name=new_name,
        )

        await self._invalidate_sessions(user.id)
        self._delete_avatars(user.id)

    async def _scrub_credentials(self, user_id: int) -> None:
        async with self._session_factory() as session, session.begin():
            record = await session.get(UserRecord, user_id)
            if record is None:
                raise LookupError(f"User {user_id} disappeared before rename")
            record.user_password = hash_password(secrets.token_hex(32))
            record.user_token = secrets.token_hex(16)
            record.user_real_name = ""
            if record.user_email:
                record.user_email = ""
                record.user_email_authenticated = None
            record.user_touched = datetime.now(UTC)

    async def _rename_rows(self, user_id: int, old_name: str, new_name: str) -> None:
        async with self._session_factory() as session, session.begin():
            user_rows = await session.execute(
                update(UserRecord)
                .where(UserRecord.user_id == user_id, UserRecord.user_name == old_name)
                .values(user_name=new_name)
            )
            actor_rows = await session.execute(
                update(ActorRecord)
                .where(ActorRecord.actor_user == user_id, ActorRecord.actor_name == old_name)
                .values(actor_name=new_name)
            )
        if user_rows.rowcount == 0 or actor_rows.rowcount == 0:
            # Already renamed, or renamed concurrently by someone else
            log.warning(
                "identity.rename_no_rows",
                user_id=user_id,
                old_name=old_name,
                new_name=new_name,
                user_rows=user_rows.rowcount,
                actor_rows=actor_rows.rowcount,
            )

    async def _invalidate_sessions(self, user_id: int) -> None:
        pattern = self.session_key_pattern(user_id)
        try:
            evicted = await self._cache.delete_pattern(pattern)
        except Exception as exc:
            log.error(
                "identity.session_invalidation_failed",
                user_id=user_id,
                pattern=pattern,
                error=str(exc),
                exc_info=True,
            )
            return
        log.info("identity.sessions_invalidated", user_id=user_id, sessions=evicted)

    def _delete_avatars(self, user_id: int) -> None:
        if self._avatar_directory is None:
            return
        for ext in self._avatar_extensions:
            path = self._avatar_directory / f"avatar_{user_id}.{ext}"
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                log.error(
                    "identity.avatar_delete_failed",
                    user_id=user_id,
                    path=str(path),
                    error=str(exc),
                )
            else:
                log.debug("identity.avatar_checked", user_id=user_id, path=str(path))
