"""
Completion engine — one logical "get a completion for these prompts".

    prompts → build request → fingerprint → cache hit? emit it
                                          → miss: POST, decode stream,
                                            tee each delta to the sink and
                                            the cache entry being written

Cache modes:
    NORMAL   read the cache, populate it on a miss
    BYPASS   always call the API, never touch the cache
    REFRESH  drop this request's entry, then behave like NORMAL
"""

from __future__ import annotations

import contextlib
import enum
import logging
import sys
from typing import Callable, Iterable

from gptline.cache import CacheStore, fingerprint
from gptline.errors import InvalidRequest, TransportError, UpstreamError
from gptline.request import USER, Fragment, PromptSet, build_request
from gptline.stream import StreamDecoder
from gptline.transport import ChatTransport

logger = logging.getLogger(__name__)

Sink = Callable[[str], None]


class CacheMode(enum.Enum):
    NORMAL = "normal"
    BYPASS = "bypass"
    REFRESH = "refresh"


def stdout_sink(chunk: str):
    """Write straight through to stdout, unbuffered."""
    sys.stdout.write(chunk)
    sys.stdout.flush()


class CompletionEngine:
    """Ties the request builder, cache, transport and decoder together."""

    def __init__(self, transport: ChatTransport, cache: CacheStore, model: str):
        self.transport = transport
        self.cache = cache
        self.model = model

    def key(self, prompts: PromptSet, extra: Iterable[Fragment] = ()) -> str:
        """Cache fingerprint for prompts plus any per-call extras."""
        prompts = prompts.with_extra(*extra)
        return fingerprint(prompts.fragments, prompts.options)

    def complete(
        self,
        prompts: PromptSet,
        extra: Iterable[Fragment] = (),
        mode: CacheMode = CacheMode.NORMAL,
        sink: Sink | None = stdout_sink,
    ) -> str:
        """
        Produce the completion text for prompts (+ extra), streaming it to sink.

        Raises InvalidRequest before any network activity when there is
        nothing to send or no API key.
        """
        prompts = prompts.with_extra(*extra)
        if not prompts.has_content:
            raise InvalidRequest("Nothing to send: give at least one prompt (-u, -s or -p)")
        if not self.transport.api_key:
            raise InvalidRequest("No API key configured; set OPENAI_API_KEY")

        request = build_request(prompts, self.model)
        key = fingerprint(prompts.fragments, prompts.options)

        if mode is CacheMode.REFRESH:
            self.cache.clear(key)

        if mode is CacheMode.BYPASS:
            logger.debug("Cache bypass for %s", key[:12])
            return self._fetch(request.to_body(), sink)

        cached = self.cache.get(key)
        if cached is not None:
            if sink:
                sink(cached)
            return cached

        logger.debug("Cache miss for %s; populating", key[:12])
        writer = self.cache.writer(key)
        try:
            text = self._fetch(request.to_body(), sink, tee=writer.append)
        except (UpstreamError, TransportError):
            writer.close()
            self.cache.clear(key)
            raise
        finally:
            # KeyboardInterrupt lands here too: the partial entry stays
            writer.close()
        return text

    def _fetch(self, body: dict, sink: Sink | None, tee: Sink | None = None) -> str:
        """One network call, decoded as it streams."""

        def on_delta(chunk: str):
            if sink:
                sink(chunk)
            if tee:
                tee(chunk)

        decoder = StreamDecoder(on_delta)
        with contextlib.closing(self.transport.stream_lines(body)) as lines:
            return decoder.decode(lines)

    def complete_lines(
        self,
        prompts: PromptSet,
        lines: Iterable[str],
        mode: CacheMode = CacheMode.NORMAL,
        sink: Sink | None = stdout_sink,
        separator: str = "\n",
    ) -> list[str]:
        """One independent completion per non-blank input line, each on top of the same base."""
        results = []
        for line in lines:
            line = line.rstrip("\n")
            if not line.strip():
                continue
            results.append(self.complete(prompts, extra=(Fragment(USER, line),), mode=mode, sink=sink))
            if sink and separator:
                sink(separator)
        return results

    def complete_slurp(
        self,
        prompts: PromptSet,
        text: str,
        mode: CacheMode = CacheMode.NORMAL,
        sink: Sink | None = stdout_sink,
    ) -> str:
        """All input merged into a single extra user fragment, one completion."""
        extra = (Fragment(USER, text),) if text.strip() else ()
        return self.complete(prompts, extra=extra, mode=mode, sink=sink)


def build_engine(cfg: dict) -> CompletionEngine:
    """Engine wired from config."""
    api = cfg["api"]
    transport = ChatTransport(
        url=api["url"],
        api_key=api.get("key", ""),
        connect_timeout=api.get("connect_timeout", 10),
    )
    cache = CacheStore(cfg["storage"]["cache_dir"])
    return CompletionEngine(transport, cache, model=api["model"])
