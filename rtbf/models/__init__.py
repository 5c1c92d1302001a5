"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
when Alembic runs autogenerate.
"""

from rtbf.models.identity import ActorRecord, UserIdentity, UserRecord
from rtbf.models.request import (
    ACTIVE_STATUSES,
    ForgetRequest,
    ForgetRequestRecord,
    RequestSource,
    RequestStatus,
    ShardTarget,
    ShardTargetRecord,
)

__all__ = [
    "ACTIVE_STATUSES",
    "ActorRecord",
    "ForgetRequest",
    "ForgetRequestRecord",
    "RequestSource",
    "RequestStatus",
    "ShardTarget",
    "ShardTargetRecord",
    "UserIdentity",
    "UserRecord",
]
