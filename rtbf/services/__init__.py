"""Forget request services."""

from rtbf.services.orchestrator import CompletionMonitor, ForgetService, status_label
from rtbf.services.store import RequestStore

__all__ = ["CompletionMonitor", "ForgetService", "RequestStore", "status_label"]
