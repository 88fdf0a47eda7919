"""
Tests for the completion engine: cache modes, error handling, multi-prompt.
Transport is scripted (see conftest.FakeTransport); nothing hits the network.
"""

import pytest

from gptline.cache import fingerprint
from gptline.engine import CacheMode, CompletionEngine
from gptline.errors import InvalidRequest, TransportError, UpstreamError
from gptline.request import SYSTEM, USER, Fragment, PromptSet

TERSE = PromptSet(fragments=(Fragment(SYSTEM, "You are terse"), Fragment(USER, "Say hi")))


class Sink:
    def __init__(self):
        self.chunks = []

    def __call__(self, chunk):
        self.chunks.append(chunk)

    @property
    def text(self):
        return "".join(self.chunks)


# ---------------------------------------------------------------------------
# Normal mode
# ---------------------------------------------------------------------------

def test_end_to_end_populates_then_hits_cache(engine, transport, cache):
    """First call streams and fills the cache; the second is served from it."""
    sink = Sink()
    assert engine.complete(TERSE, sink=sink) == "Hello"
    assert sink.chunks == ["Hel", "lo"]
    assert transport.calls == 1

    key = fingerprint(TERSE.fragments, TERSE.options)
    assert cache.get(key) == "Hello"

    sink = Sink()
    assert engine.complete(TERSE, sink=sink) == "Hello"
    assert sink.chunks == ["Hello"]  # cached text emitted whole
    assert transport.calls == 1


def test_request_body_sent(engine, transport):
    engine.complete(TERSE, sink=None)
    body = transport.bodies[0]
    assert body["model"] == "test-model"
    assert body["stream"] is True
    assert body["messages"] == [
        {"role": "system", "content": "You are terse"},
        {"role": "user", "content": "Say hi"},
    ]


def test_reordered_fragments_share_cache_entry(engine, transport):
    """Cache keys ignore fragment order, so -u A -u B reuses -u B -u A."""
    a = PromptSet(fragments=(Fragment(USER, "A"), Fragment(USER, "B")))
    b = PromptSet(fragments=(Fragment(USER, "B"), Fragment(USER, "A")))
    engine.complete(a, sink=None)
    engine.complete(b, sink=None)
    assert transport.calls == 1


def test_cache_is_written_while_streaming(transport, cache):
    """Each delta is on disk before the next one is decoded."""
    seen_on_disk = []
    key = fingerprint(TERSE.fragments)

    def sink(chunk):
        seen_on_disk.append(cache.path(key).read_text())

    CompletionEngine(transport, cache, model="m").complete(TERSE, sink=sink)
    # the sink runs before the tee, so it sees the previous prefix
    assert seen_on_disk == ["", "Hel"]
    assert cache.get(key) == "Hello"


# ---------------------------------------------------------------------------
# Bypass / refresh
# ---------------------------------------------------------------------------

def test_bypass_twice_calls_twice_and_never_caches(engine, transport, cache):
    assert engine.complete(TERSE, mode=CacheMode.BYPASS, sink=None) == "Hello"
    assert engine.complete(TERSE, mode=CacheMode.BYPASS, sink=None) == "Hello"
    assert transport.calls == 2
    assert cache.keys() == []


def test_bypass_ignores_existing_entry(engine, transport, cache):
    cache.put(engine.key(TERSE), "stale")
    assert engine.complete(TERSE, mode=CacheMode.BYPASS, sink=None) == "Hello"
    assert cache.get(engine.key(TERSE)) == "stale"


def test_refresh_clears_then_fetches(engine, transport, cache):
    key = engine.key(TERSE)
    cache.put(key, "stale")
    assert engine.complete(TERSE, mode=CacheMode.REFRESH, sink=None) == "Hello"
    assert transport.calls == 1
    assert cache.get(key) == "Hello"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

def test_no_content_is_invalid_before_network(engine, transport):
    with pytest.raises(InvalidRequest):
        engine.complete(PromptSet(fragments=(Fragment(USER, "  "),)), sink=None)
    assert transport.calls == 0


def test_missing_api_key_is_invalid_before_network(fake_transport_cls, cache):
    transport = fake_transport_cls(api_key="")
    engine = CompletionEngine(transport, cache, model="m")
    with pytest.raises(InvalidRequest):
        engine.complete(TERSE, sink=None)
    assert transport.calls == 0


def test_transport_error_leaves_no_entry(fake_transport_cls, cache):
    transport = fake_transport_cls(error=TransportError("connection refused"))
    engine = CompletionEngine(transport, cache, model="m")
    with pytest.raises(TransportError):
        engine.complete(TERSE, sink=None)
    assert cache.keys() == []


def test_upstream_error_in_stream_discards_entry(fake_transport_cls, cache):
    lines = [
        "event: thread.message.delta",
        'data: {"delta":{"content":[{"text":{"value":"Hel"}}]}}',
        "event: thread.message.delta",
        'data: {"error": {"message": "quota exceeded"}}',
    ]
    engine = CompletionEngine(fake_transport_cls(lines=lines), cache, model="m")
    sink = Sink()
    with pytest.raises(UpstreamError, match="quota exceeded"):
        engine.complete(TERSE, sink=sink)
    assert sink.text == "Hel"
    assert cache.get(engine.key(TERSE)) is None


def test_interrupt_leaves_partial_entry(fake_transport_cls, cache):
    """A user interrupt mid-stream keeps whatever was cached so far."""
    engine = CompletionEngine(fake_transport_cls(), cache, model="m")

    def sink(chunk):
        if chunk == "lo":
            raise KeyboardInterrupt

    with pytest.raises(KeyboardInterrupt):
        engine.complete(TERSE, sink=sink)
    assert cache.get(engine.key(TERSE)) == "Hel"


# ---------------------------------------------------------------------------
# Multi-prompt
# ---------------------------------------------------------------------------

def test_complete_lines_one_call_per_line(engine, transport):
    base = PromptSet(fragments=(Fragment(SYSTEM, "Translate to French"),))
    results = engine.complete_lines(base, ["cat\n", "\n", "dog\n"], sink=None)
    assert results == ["Hello", "Hello"]
    assert transport.calls == 2
    last_user = [b["messages"][-1] for b in transport.bodies]
    assert last_user == [{"role": "user", "content": "cat"}, {"role": "user", "content": "dog"}]
    # base never accumulates earlier lines
    assert all(len(b["messages"]) == 2 for b in transport.bodies)
    assert len(base.fragments) == 1


def test_complete_lines_separates_outputs(engine):
    sink = Sink()
    engine.complete_lines(PromptSet(), ["a", "b"], mode=CacheMode.BYPASS, sink=sink)
    assert sink.text == "Hello\nHello\n"


def test_complete_slurp_single_call(engine, transport):
    base = PromptSet(fragments=(Fragment(SYSTEM, "Summarize"),))
    engine.complete_slurp(base, "line one\nline two\n", sink=None)
    assert transport.calls == 1
    assert transport.bodies[0]["messages"][-1] == {"role": "user", "content": "line one\nline two\n"}


def test_complete_slurp_empty_input_without_base_is_invalid(engine):
    with pytest.raises(InvalidRequest):
        engine.complete_slurp(PromptSet(), "   \n", sink=None)
