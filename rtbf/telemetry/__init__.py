"""Telemetry package: structured logging setup and context helpers."""

from __future__ import annotations

from rtbf.telemetry.logging import (
    bind_forget_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "bind_forget_context",
    "clear_context",
    "configure_logging",
]
