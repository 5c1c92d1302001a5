"""Completion event surface.

Subscribers are registered at process start and invoked, in registration
order, each time a request is finalized. The event cannot be vetoed: a
subscriber that raises is logged and skipped, and finalization stands.
"""

from __future__ import annotations

import importlib
import inspect
from collections.abc import Awaitable, Callable, Iterable

import structlog

from rtbf.models.request import ForgetRequest

log = structlog.get_logger(__name__)

CompletionSubscriber = Callable[[ForgetRequest], Awaitable[None] | None]


class CompletionEvents:
    """Typed subscription list for the request-complete event."""

    def __init__(self) -> None:
        self._subscribers: list[CompletionSubscriber] = []

    def subscribe(self, subscriber: CompletionSubscriber) -> None:
        self._subscribers.append(subscriber)

    @property
    def subscribers(self) -> tuple[CompletionSubscriber, ...]:
        return tuple(self._subscribers)

    async def fire(self, request: ForgetRequest) -> None:
        log.info(
            "forget.completion_event",
            request_id=request.id,
            subscribers=len(self._subscribers),
        )
        for subscriber in self._subscribers:
            try:
                result = subscriber(request)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                log.error(
                    "forget.completion_subscriber_failed",
                    request_id=request.id,
                    subscriber=getattr(subscriber, "__qualname__", repr(subscriber)),
                    error=str(exc),
                    exc_info=True,
                )


def load_completion_subscribers(module_paths: Iterable[str]) -> list[CompletionSubscriber]:
    """Import each module and return its ``on_request_complete`` callable.

    Raises:
        ImportError: If a module cannot be imported.
        AttributeError: If a module has no callable ``on_request_complete``.
    """
    subscribers: list[CompletionSubscriber] = []
    for path in module_paths:
        module = importlib.import_module(path)
        subscriber = getattr(module, "on_request_complete", None)
        if not callable(subscriber):
            raise AttributeError(f"Subscriber module '{path}' has no on_request_complete()")
        subscribers.append(subscriber)
        log.info("events.subscriber_loaded", module=path)
    return subscribers
