"""
Shared fixtures: a scripted transport so no test touches the network.
"""

import pytest

from gptline.cache import CacheStore
from gptline.engine import CompletionEngine

HELLO_STREAM = [
    "event: thread.message.delta",
    'data: {"delta":{"content":[{"text":{"value":"Hel"}}]}}',
    "",
    "event: thread.message.delta",
    'data: {"delta":{"content":[{"text":{"value":"lo"}}]}}',
    "",
    "data: [DONE]",
]


class FakeTransport:
    """Stands in for ChatTransport: replays canned lines and records each body."""

    def __init__(self, lines=None, api_key="sk-test", error=None):
        self.lines = list(HELLO_STREAM if lines is None else lines)
        self.api_key = api_key
        self.error = error
        self.bodies = []

    @property
    def calls(self):
        return len(self.bodies)

    def stream_lines(self, body):
        self.bodies.append(body)
        if self.error:
            raise self.error
        yield from self.lines


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def cache(tmp_path):
    return CacheStore(tmp_path / "cache")


@pytest.fixture
def engine(transport, cache):
    return CompletionEngine(transport, cache, model="test-model")


@pytest.fixture
def hello_stream():
    return list(HELLO_STREAM)


@pytest.fixture
def fake_transport_cls():
    return FakeTransport
