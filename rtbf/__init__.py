"""Right-to-be-forgotten orchestrator: anonymises a user across every shard."""

__version__ = "0.1.0"
