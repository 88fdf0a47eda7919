"""
Interactive chat — a menu of saved conversations plus a strict
input → completion → save loop.

Single-threaded: it blocks on the user, then blocks on the full completion,
never both. Each reply is sent the whole transcript so far as one user
message, behind the configured system prompt.
"""

from __future__ import annotations

import logging
import sys
from typing import Callable

from gptline.conversation import ROLE_SYSTEM, ROLE_USER, Conversation, ConversationStore
from gptline.engine import CacheMode, CompletionEngine
from gptline.errors import GptlineError, NotFound
from gptline.render import (
    C_DIM,
    C_TITLE,
    colors_enabled,
    format_titles,
    format_transcript,
    paint,
    print_error,
)
from gptline.request import SYSTEM, USER, Fragment, PromptSet

logger = logging.getLogger(__name__)

MENU = "  [n] new  [r] resume  [s] search  [q] quit"
EXIT_WORDS = ("/exit", "/quit", "/menu")


def make_titler(engine: CompletionEngine, title_prompt: str) -> Callable[[str], str]:
    """One silent auxiliary completion that names a conversation."""

    def titler(first_message: str) -> str:
        prompts = PromptSet(fragments=(Fragment(SYSTEM, title_prompt), Fragment(USER, first_message)))
        try:
            return engine.complete(prompts, sink=None)
        except GptlineError as e:
            # untitled for now; the next save tries again
            logger.warning("Could not title conversation: %s", e)
            return ""

    return titler


class ChatSession:
    """The interactive loop. input_fn and out are swappable for tests."""

    def __init__(
        self,
        engine: CompletionEngine,
        store: ConversationStore,
        system_prompt: str,
        input_fn: Callable[[str], str] = input,
        out=None,
        mode: CacheMode = CacheMode.NORMAL,
    ):
        self.engine = engine
        self.store = store
        self.system_prompt = system_prompt
        self.input_fn = input_fn
        self.out = out or sys.stdout
        self.mode = mode
        self.color = colors_enabled(self.out)

    def _print(self, text: str = ""):
        print(text, file=self.out)

    def _write(self, chunk: str):
        self.out.write(chunk)
        self.out.flush()

    def _ask(self, prompt: str) -> str | None:
        """One line of input; None on EOF."""
        try:
            return self.input_fn(prompt)
        except EOFError:
            return None

    # ------------------------------------------------------------------
    # Menu
    # ------------------------------------------------------------------

    def run(self):
        """Menu loop until the user quits."""
        while True:
            self._print(MENU)
            choice = self._ask("  > ")
            if choice is None:
                return
            choice = choice.strip().lower()
            if choice in ("q", "quit", "exit"):
                return
            if choice in ("n", "new", ""):
                self.converse(self.store.create())
                continue
            if choice in ("r", "resume"):
                titles = self.store.list()
            elif choice in ("s", "search"):
                query = self._ask("  search: ")
                if query is None:
                    return
                titles = self.store.search(query.strip())
            else:
                self._print(paint(f"  Unknown choice {choice!r}", C_DIM, self.color))
                continue
            try:
                conv = self.pick(titles)
            except NotFound as e:
                print_error(str(e), self.out)
                continue
            if conv is not None:
                self._print(format_transcript(conv, self.color))
                self.converse(conv)

    def pick(self, titles: list[str]) -> Conversation | None:
        """Choose a conversation by number or exact title. NotFound if nothing matches."""
        self._print(format_titles(titles, self.color))
        if not titles:
            return None
        answer = self._ask("  which? ")
        if answer is None or not answer.strip():
            return None
        answer = answer.strip()
        if answer.isdigit() and 1 <= int(answer) <= len(titles):
            answer = titles[int(answer) - 1]
        return self.store.load(answer)

    # ------------------------------------------------------------------
    # Conversation
    # ------------------------------------------------------------------

    def converse(self, conv: Conversation):
        """Alternate user input and completions until /exit or EOF."""
        self._print(paint(f"  ☎  {conv.title}  (/exit to leave)", C_TITLE, self.color))
        while True:
            line = self._ask("you> ")
            if line is None or line.strip() in EXIT_WORDS:
                return
            if not line.strip():
                continue
            self.exchange(conv, line.strip())

    def exchange(self, conv: Conversation, text: str) -> str | None:
        """One user turn and one reply. A failed reply leaves conv unchanged."""
        self.store.append_turn(conv, ROLE_USER, text)
        prompts = PromptSet(fragments=(
            Fragment(SYSTEM, self.system_prompt),
            Fragment(USER, conv.transcript()),
        ))
        try:
            reply = self.engine.complete(prompts, mode=self.mode, sink=self._write)
        except GptlineError as e:
            conv.turns.pop()
            print_error(str(e), self.out)
            return None
        self._print()
        self.store.append_turn(conv, ROLE_SYSTEM, reply.strip())
        self.store.save(conv)
        return reply
