"""
Request builder.

Prompt text arrives as fragments tagged by kind: system, user, or the legacy
generic "prompt". A generic prompt is a user message in every respect except
fingerprinting, where it stays its own class (see gptline.cache).

A PromptSet is the immutable base of a completion: the fragments and raw
option strings collected from the command line. Callers that need one extra
line per call (multi-prompt mode) pass it separately instead of mutating the
base.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

SYSTEM = "system"
USER = "user"
PROMPT = "prompt"

FRAGMENT_KINDS = (SYSTEM, USER, PROMPT)

# Keys the body owns; options cannot override them.
_RESERVED_OPTIONS = ("stream", "messages")


@dataclass(frozen=True)
class Fragment:
    """One piece of prompt text, tagged by where it came from."""
    kind: str
    text: str

    def __post_init__(self):
        if self.kind not in FRAGMENT_KINDS:
            raise ValueError(f"Unknown fragment kind: {self.kind!r}")

    @property
    def role(self) -> str:
        """Message role this fragment is sent as. Generic prompts are user messages."""
        return SYSTEM if self.kind == SYSTEM else USER


@dataclass(frozen=True)
class Message:
    role: str
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class PromptSet:
    """Immutable base configuration for one or more completions."""
    fragments: tuple[Fragment, ...] = ()
    options: tuple[str, ...] = ()

    def with_extra(self, *extra: Fragment) -> "PromptSet":
        """A new PromptSet with extra fragments appended. The base is untouched."""
        return PromptSet(fragments=self.fragments + tuple(extra), options=self.options)

    @property
    def has_content(self) -> bool:
        return any(f.text.strip() for f in self.fragments)


@dataclass(frozen=True)
class Request:
    """A fully built chat-completions request. Never mutated after send."""
    model: str
    messages: tuple[Message, ...]
    options: dict = field(default_factory=dict)
    stream: bool = True

    def to_body(self) -> dict:
        """JSON body for the chat-completions endpoint."""
        body: dict = {"model": self.model}
        for key, value in self.options.items():
            if key in _RESERVED_OPTIONS:
                logger.warning("Ignoring option %r: it cannot be overridden", key)
                continue
            body[key] = _coerce_option_value(value)
        body["stream"] = self.stream
        body["messages"] = [m.to_dict() for m in self.messages]
        return body


def parse_option(raw: str) -> tuple[str, str]:
    """
    Split a "key: value" option on the first colon, trimming both sides.

    No colon is tolerated: the whole string becomes the key and the value
    is empty.
    """
    key, sep, value = raw.partition(":")
    if not sep:
        logger.debug("Option without a colon passed through as-is: %r", raw)
        return raw.strip(), ""
    return key.strip(), value.strip()


def parse_options(raw_options) -> dict[str, str]:
    """Parse option strings in order; later keys overwrite earlier ones."""
    options: dict[str, str] = {}
    for raw in raw_options:
        key, value = parse_option(raw)
        options[key] = value
    return options


def _reject_constant(name: str):
    raise ValueError(f"Non-finite number {name}")


def _coerce_option_value(value: str):
    """Send JSON scalars typed ("0.2" -> 0.2, "true" -> True), the rest as strings."""
    try:
        parsed = json.loads(value, parse_constant=_reject_constant)
    except (ValueError, TypeError):
        return value
    if isinstance(parsed, (dict, list, str)):
        return value
    # NaN and Infinity are not valid in a request body
    if isinstance(parsed, float) and not math.isfinite(parsed):
        return value
    return parsed


def order_messages(fragments) -> tuple[Message, ...]:
    """System messages first, then user messages, then generic prompts as user messages."""
    ordered = []
    for kind in FRAGMENT_KINDS:
        ordered.extend(Message(f.role, f.text) for f in fragments if f.kind == kind)
    return tuple(ordered)


def build_request(prompts: PromptSet, model: str, stream: bool = True) -> Request:
    """Assemble a Request from a PromptSet."""
    options = parse_options(prompts.options)
    if options.get("model"):
        model = options.pop("model")
    else:
        options.pop("model", None)
    return Request(
        model=model,
        messages=order_messages(prompts.fragments),
        options=options,
        stream=stream,
    )


def fragments_from(system=(), user=(), prompt=()) -> list[Fragment]:
    """Tagged fragments from per-kind lists of text."""
    return (
        [Fragment(SYSTEM, t) for t in system]
        + [Fragment(USER, t) for t in user]
        + [Fragment(PROMPT, t) for t in prompt]
    )
