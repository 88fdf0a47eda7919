"""
Conversation store — chat sessions as flat text files.

One file per session, named by creation time. Format:

    Title: Rust lifetimes explained
    User: what is a lifetime?
    System: A lifetime is ...
    continuation lines belong to the block above
    User: thanks

Assistant replies are recorded as System turns. Any line that does not start
with "User:" or "System:" continues the current block. The file is rewritten
in full on every save.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from gptline.errors import NotFound, StorageUnavailable

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New conversation"

ROLE_USER = "user"
ROLE_SYSTEM = "system"

_LABELS = {ROLE_USER: "User", ROLE_SYSTEM: "System"}
_BLOCK_RE = re.compile(r"^(User|System):[ \t]?(.*)$")
_TITLE_PREFIX = "Title:"


@dataclass
class Turn:
    role: str
    text: str


@dataclass
class Conversation:
    """A chat session: a title plus ordered turns."""
    title: str = DEFAULT_TITLE
    turns: list[Turn] = field(default_factory=list)
    path: Path | None = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def has_default_title(self) -> bool:
        return self.title == DEFAULT_TITLE

    def first_user_text(self) -> str:
        for turn in self.turns:
            if turn.role == ROLE_USER:
                return turn.text
        return ""

    def transcript(self) -> str:
        """The turns as the labelled blocks they are saved as (no title line)."""
        return "\n".join(f"{_LABELS[t.role]}: {t.text}" for t in self.turns)


def serialize(conv: Conversation) -> str:
    lines = [f"{_TITLE_PREFIX} {conv.title.strip()}"]
    for turn in conv.turns:
        lines.append(f"{_LABELS[turn.role]}: {turn.text.rstrip()}")
    return "\n".join(lines) + "\n"


def parse(text: str) -> Conversation:
    """Inverse of serialize()."""
    conv = Conversation()
    lines = text.split("\n")
    if lines and lines[0].startswith(_TITLE_PREFIX):
        conv.title = lines[0][len(_TITLE_PREFIX):].strip()
        lines = lines[1:]

    role: str | None = None
    block: list[str] = []

    def close_block():
        if role is not None:
            conv.turns.append(Turn(role, "\n".join(block).rstrip()))

    for line in lines:
        match = _BLOCK_RE.match(line)
        if match:
            close_block()
            role = ROLE_USER if match.group(1) == "User" else ROLE_SYSTEM
            block = [match.group(2)]
        elif role is not None:
            block.append(line)
        elif line.strip():
            logger.debug("Ignoring text before the first turn: %.80s", line)
    close_block()
    return conv


class ConversationStore:
    """
    Directory of saved conversations.

    titler, when given, is called once with the first user message to name
    a conversation on its first save. After that the title is frozen.
    """

    def __init__(self, directory: str | Path, titler: Callable[[str], str] | None = None):
        self.directory = Path(directory).expanduser()
        self.titler = titler
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create conversations directory {self.directory}: {e}") from e

    def create(self) -> Conversation:
        return Conversation()

    @staticmethod
    def append_turn(conv: Conversation, role: str, text: str):
        if role not in _LABELS:
            raise ValueError(f"Unknown turn role: {role!r}")
        conv.turns.append(Turn(role, text))

    def _derive_title(self, conv: Conversation):
        first = conv.first_user_text()
        if not (self.titler and conv.has_default_title and first.strip()):
            return
        title = self.titler(first)
        # first non-empty line, without wrapping quotes
        title = next((ln.strip() for ln in title.splitlines() if ln.strip()), "")
        title = title.strip("\"'` ")
        if title:
            conv.title = title
            logger.info("Titled conversation %r", title)

    def save(self, conv: Conversation) -> Path:
        """Title the conversation if needed, then rewrite its file."""
        self._derive_title(conv)
        if conv.path is None:
            conv.path = self.directory / f"{conv.created_at.strftime('%Y%m%d-%H%M%S-%f')}.txt"
        try:
            with open(conv.path, "w", encoding="utf-8", newline="") as f:
                f.write(serialize(conv))
        except OSError as e:
            raise StorageUnavailable(f"Cannot save conversation {conv.path}: {e}") from e
        logger.debug("Saved %d turns to %s", len(conv.turns), conv.path)
        return conv.path

    def _files(self) -> list[Path]:
        """Conversation files, most recently modified first."""
        try:
            files = [p for p in self.directory.glob("*.txt") if p.is_file()]
            return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot read conversations directory {self.directory}: {e}") from e

    @staticmethod
    def _read(path: Path) -> Conversation:
        try:
            with open(path, encoding="utf-8", newline="") as f:
                return parse(f.read())
        except OSError as e:
            raise StorageUnavailable(f"Cannot read conversation {path}: {e}") from e

    @staticmethod
    def _read_title(path: Path) -> str:
        try:
            # only "\n" ends the title line
            with open(path, encoding="utf-8", newline="\n") as f:
                first = f.readline()
        except OSError as e:
            raise StorageUnavailable(f"Cannot read conversation {path}: {e}") from e
        if first.startswith(_TITLE_PREFIX):
            return first[len(_TITLE_PREFIX):].strip()
        return DEFAULT_TITLE

    def entries(self) -> list[tuple[str, Path]]:
        return [(self._read_title(p), p) for p in self._files()]

    def list(self) -> list[str]:
        return [title for title, _ in self.entries()]

    def search(self, query: str) -> list[str]:
        """Titles of conversations whose title or any turn contains query (case-insensitive)."""
        needle = query.lower()
        hits = []
        for path in self._files():
            conv = self._read(path)
            haystack = [conv.title] + [t.text for t in conv.turns]
            if any(needle in text.lower() for text in haystack):
                hits.append(conv.title)
        return hits

    def load(self, title: str) -> Conversation:
        """The most recent conversation whose title matches exactly."""
        wanted = title.strip()
        for found, path in self.entries():
            if found == wanted:
                conv = self._read(path)
                conv.path = path
                return conv
        raise NotFound(f"No conversation titled {wanted!r}")
