"""Shard database connections."""

from rtbf.db.shards import ShardConnection, ShardRegistry

__all__ = ["ShardConnection", "ShardRegistry"]
