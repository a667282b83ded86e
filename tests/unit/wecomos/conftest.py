"""Shared fixtures for wecomos tests."""

from typing import Any

import pytest

from wecom_fakes import FakeWeComApi, make_config
from wecomos.bridge import WeComBridge
from wecomos.host_local import LocalHostRuntime


@pytest.fixture
def api():
    return FakeWeComApi()


@pytest.fixture
def replies():
    """Reply text returned by the local host (mutable per test)."""
    return {"text": "pong"}


@pytest.fixture
def runtime(replies):
    async def handler(ctx):
        return replies["text"]
    return LocalHostRuntime(reply_handler=handler)


@pytest.fixture
def bridge_factory(api, runtime):
    def factory(**wecom: Any) -> WeComBridge:
        return WeComBridge(
            make_config(**wecom),
            runtime=runtime,
            transport=api.transport,
            media_transport=api.transport,
        )
    return factory
