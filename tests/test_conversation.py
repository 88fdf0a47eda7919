"""
Tests for the flat-file conversation store.
Uses a temp directory for each test.
"""

import os
import time

import pytest

from gptline.conversation import (
    DEFAULT_TITLE,
    ROLE_SYSTEM,
    ROLE_USER,
    Conversation,
    ConversationStore,
    Turn,
    parse,
    serialize,
)
from gptline.errors import NotFound, StorageUnavailable


@pytest.fixture
def store(tmp_path):
    return ConversationStore(tmp_path / "conversations")


def _touch_older(path, seconds):
    past = time.time() - seconds
    os.utime(path, (past, past))


def test_create_is_untitled_and_empty(store):
    conv = store.create()
    assert conv.title == DEFAULT_TITLE
    assert conv.turns == []


def test_round_trip_multiline(store):
    """Saved turns, embedded newlines included, load back identically."""
    conv = store.create()
    conv.title = "Shell loops"
    store.append_turn(conv, ROLE_USER, "how do I loop over files?")
    store.append_turn(conv, ROLE_SYSTEM, "Use a for loop:\n\nfor f in *; do\n  echo \"$f\"\ndone")
    store.append_turn(conv, ROLE_USER, "thanks")
    store.save(conv)

    loaded = store.load("Shell loops")
    assert loaded.title == "Shell loops"
    assert loaded.turns == conv.turns
    assert loaded.path == conv.path


@pytest.mark.parametrize("text", [
    "x\r\ny",
    "lone\rreturn",
    "col1\x0ccol2",
    "tab\x0bvertical",
    "next\x85line",
    "sep\u2028arator\u2029para",
    "group\x1dsep\x1erec\x1cfile",
])
def test_round_trip_keeps_other_line_separators(store, text):
    """Only "\\n" breaks a message; every other separator survives a reload."""
    conv = Conversation(title="Separators", turns=[Turn(ROLE_USER, text), Turn(ROLE_SYSTEM, "ok\r\n" + text)])
    store.save(conv)
    assert store.load("Separators").turns == conv.turns


def test_file_format(store):
    conv = Conversation(title="T", turns=[Turn(ROLE_USER, "hi"), Turn(ROLE_SYSTEM, "hello\nthere")])
    path = store.save(conv)
    assert path.read_text() == "Title: T\nUser: hi\nSystem: hello\nthere\n"


def test_parse_trims_block_trailing_whitespace():
    conv = parse("Title:  Padded  \nUser: hi   \n\n\nSystem: yo\n")
    assert conv.title == "Padded"
    assert conv.turns == [Turn(ROLE_USER, "hi"), Turn(ROLE_SYSTEM, "yo")]


def test_serialize_parse_inverse():
    conv = Conversation(title="X", turns=[Turn(ROLE_USER, "a\n  indented"), Turn(ROLE_SYSTEM, "b")])
    assert parse(serialize(conv)).turns == conv.turns


def test_title_derived_once_then_frozen(tmp_path):
    """The titler runs on the first save only."""
    calls = []

    def titler(text):
        calls.append(text)
        return '"Greeting the bot"\n'

    store = ConversationStore(tmp_path, titler=titler)
    conv = store.create()
    store.append_turn(conv, ROLE_USER, "hello bot")
    store.append_turn(conv, ROLE_SYSTEM, "hi")
    store.save(conv)
    assert conv.title == "Greeting the bot"

    store.append_turn(conv, ROLE_USER, "another")
    store.save(conv)
    assert calls == ["hello bot"]
    assert store.list() == ["Greeting the bot"]


def test_empty_title_keeps_default(tmp_path):
    store = ConversationStore(tmp_path, titler=lambda text: "")
    conv = store.create()
    store.append_turn(conv, ROLE_USER, "hello")
    store.save(conv)
    assert conv.title == DEFAULT_TITLE


def test_save_rewrites_same_file(store):
    conv = store.create()
    store.append_turn(conv, ROLE_USER, "one")
    first = store.save(conv)
    store.append_turn(conv, ROLE_SYSTEM, "two")
    second = store.save(conv)
    assert first == second
    assert len(list(store.directory.iterdir())) == 1
    assert "System: two" in second.read_text()


def test_list_most_recent_first(store):
    old = Conversation(title="old")
    new = Conversation(title="new")
    store.save(old)
    store.save(new)
    _touch_older(old.path, 60)
    assert store.list() == ["new", "old"]


def test_search_matches_title_and_turns(store):
    a = Conversation(title="Python packaging", turns=[Turn(ROLE_USER, "pyproject?")])
    b = Conversation(title="Cooking", turns=[Turn(ROLE_USER, "best RISOTTO rice")])
    store.save(a)
    store.save(b)
    assert store.search("packaging") == ["Python packaging"]
    assert store.search("risotto") == ["Cooking"]
    assert store.search("user") == []  # labels aren't content
    assert store.search("nothing like this") == []


def test_load_unknown_title_raises_not_found(store):
    with pytest.raises(NotFound):
        store.load("missing")


def test_append_turn_rejects_unknown_role(store):
    with pytest.raises(ValueError):
        store.append_turn(store.create(), "assistant", "x")


def test_unreadable_directory_is_storage_error(store, monkeypatch):
    def denied(self, pattern):
        raise PermissionError(13, "Permission denied", str(self))

    monkeypatch.setattr(type(store.directory), "glob", denied)
    for call in (store.list, lambda: store.search("x"), lambda: store.load("x")):
        with pytest.raises(StorageUnavailable):
            call()


def test_unreadable_file_is_storage_error(store, monkeypatch):
    store.save(Conversation(title="Locked", turns=[Turn(ROLE_USER, "hi")]))
    real_open = open

    def denied(path, *args, **kwargs):
        if str(path).startswith(str(store.directory)):
            raise PermissionError(13, "Permission denied", str(path))
        return real_open(path, *args, **kwargs)

    monkeypatch.setattr("builtins.open", denied)
    with pytest.raises(StorageUnavailable):
        store.list()
    with pytest.raises(StorageUnavailable):
        store.search("hi")
