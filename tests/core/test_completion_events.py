"""Tests for the request-complete event surface."""

from __future__ import annotations

import sys
import textwrap
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from rtbf.core.events import CompletionEvents, load_completion_subscribers
from rtbf.models.request import ForgetRequest, RequestSource, RequestStatus


def _finished_request() -> ForgetRequest:
    now = datetime.now(UTC)
    return ForgetRequest(
        id=1,
        user_id=7,
        original_name="Alice",
        target_name="Anonymous 1a2b3c4d",
        status=RequestStatus.FINISHED,
        source=RequestSource.WEB,
        token=None,
        token_expires_at=None,
        created_at=now,
        completed_at=now,
    )


class TestCompletionEvents:
    async def test_subscribers_run_in_registration_order(self):
        order: list[str] = []
        events = CompletionEvents()
        events.subscribe(lambda r: order.append("sync"))

        async def async_subscriber(request: ForgetRequest) -> None:
            order.append("async")

        events.subscribe(async_subscriber)

        await events.fire(_finished_request())
        assert order == ["sync", "async"]

    async def test_failing_subscriber_does_not_stop_the_rest(self):
        events = CompletionEvents()
        broken = MagicMock(side_effect=RuntimeError("boom"))
        healthy = AsyncMock()
        events.subscribe(broken)
        events.subscribe(healthy)

        request = _finished_request()
        await events.fire(request)

        broken.assert_called_once_with(request)
        healthy.assert_awaited_once_with(request)

    async def test_fire_without_subscribers(self):
        events = CompletionEvents()
        await events.fire(_finished_request())
        assert events.subscribers == ()


class TestLoadCompletionSubscribers:
    @pytest.fixture
    def subscriber_module(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        module_name = "rtbf_test_completion_subscriber"
        (tmp_path / f"{module_name}.py").write_text(
            textwrap.dedent(
                """\
                seen = []

                def on_request_complete(request):
                    seen.append(request.id)
                """
            )
        )
        monkeypatch.syspath_prepend(str(tmp_path))
        yield module_name
        sys.modules.pop(module_name, None)

    async def test_loaded_subscriber_receives_event(self, subscriber_module: str):
        events = CompletionEvents()
        for subscriber in load_completion_subscribers([subscriber_module]):
            events.subscribe(subscriber)

        await events.fire(_finished_request())
        assert sys.modules[subscriber_module].seen == [1]

    def test_module_without_hook(self):
        with pytest.raises(AttributeError, match="on_request_complete"):
            load_completion_subscribers(["json"])
