"""
Stream decoder — turns a server-sent-event line stream into text, live.

Two framings show up on the wire:

    event: thread.message.delta
    data: {"delta":{"content":[{"text":{"value":"Hel"}}]}}

and plain chat-completion chunks with no event line:

    data: {"choices":[{"delta":{"content":"Hel"}}]}

Either way each delta is handed to the callback the moment it is parsed and
appended to the running buffer. A line containing [DONE] ends the stream. An
"error" field in any payload ends it too, as an UpstreamError.
"""

from __future__ import annotations

import json
import logging
from typing import Callable, Iterable

from gptline.errors import UpstreamError

logger = logging.getLogger(__name__)

MESSAGE_DELTA_EVENT = "thread.message.delta"
DONE_SENTINEL = "[DONE]"
ERROR_EVENT = "error"


def _error_message(error) -> str:
    """Provider error payloads are usually {"message": ...}; fall back to the raw value."""
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or json.dumps(error))
    return str(error)


def _message_delta_text(payload: dict) -> str:
    """Concatenate delta.content[*].text.value from a thread.message.delta payload."""
    delta = payload.get("delta") or {}
    parts = []
    for item in delta.get("content") or []:
        if not isinstance(item, dict):
            continue
        value = (item.get("text") or {}).get("value")
        if value:
            parts.append(value)
    return "".join(parts)


def _chat_chunk_text(payload: dict) -> str:
    choices = payload.get("choices") or [{}]
    return (choices[0].get("delta") or {}).get("content") or ""


class StreamDecoder:
    """
    Small state machine over SSE lines.

    One instance decodes one response; decode() resets the state, so an
    instance can be reused across calls without anything carrying over.
    """

    def __init__(self, on_delta: Callable[[str], None] | None = None):
        self.on_delta = on_delta
        self.reset()

    def reset(self):
        self.event: str | None = None
        self.done = False
        self._parts: list[str] = []

    @property
    def text(self) -> str:
        """Everything emitted so far."""
        return "".join(self._parts)

    def _emit(self, chunk: str):
        self._parts.append(chunk)
        if self.on_delta:
            self.on_delta(chunk)

    def feed(self, line: str) -> bool:
        """
        Consume one line. Returns True once the terminal marker is seen.

        Raises UpstreamError on an error payload; nothing is emitted after it.
        """
        if self.done:
            return True

        line = line.rstrip("\r\n")

        if DONE_SENTINEL in line:
            self.done = True
            return True

        if not line.strip():
            self.event = None
            return False

        if line.startswith("event:"):
            self.event = line[len("event:"):].strip()
            return False

        if not line.startswith("data:"):
            # comments (": keep-alive"), id:, retry:
            return False

        data = line[len("data:"):].strip()

        if self.event == ERROR_EVENT:
            try:
                error = json.loads(data)
            except json.JSONDecodeError:
                error = data
            if isinstance(error, dict) and "error" in error:
                error = error["error"]
            raise UpstreamError(_error_message(error))

        if self.event not in (None, MESSAGE_DELTA_EVENT):
            return False

        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping undecodable stream payload: %.200s", data)
            return False
        if not isinstance(payload, dict):
            return False

        if payload.get("error"):
            raise UpstreamError(_error_message(payload["error"]))

        if self.event == MESSAGE_DELTA_EVENT:
            # Empty delta marks a paragraph break
            self._emit(_message_delta_text(payload) or "\n")
        else:
            chunk = _chat_chunk_text(payload)
            if chunk:
                self._emit(chunk)
        return False

    def decode(self, lines: Iterable[str]) -> str:
        """Run a whole stream through the decoder and return the full text."""
        self.reset()
        for line in lines:
            if self.feed(line):
                break
        else:
            logger.warning("Stream ended without %s; keeping %d chars", DONE_SENTINEL, len(self.text))
        return self.text
