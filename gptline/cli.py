#!/usr/bin/env python3
"""
gptline CLI — completions and chat on the command line.

Every command has a short name and standard aliases:

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    ask             gpt, complete   Stream one completion (cached)
    chat            talk            Interactive chat with saved history
    code            —               Ask for code, print it without fences
    cmd             shell           Ask for a single shell command
    tap             tail            Watch a cache entry as it fills
    list            history         List or search saved conversations

`gpt ...` is a shortcut for `gptline ask ...`.
"""

import argparse
import logging
import os
import platform
import subprocess
import sys
from pathlib import Path

from gptline import __version__
from gptline.errors import GptlineError, InvalidRequest, StorageUnavailable

logger = logging.getLogger(__name__)

CODE_SYSTEM_PROMPT = (
    "You are a programmer. Reply with code only, in a single markdown code "
    "block. No explanation."
)

CMD_SYSTEM_PROMPT = (
    "Reply with exactly one {shell} command for {os} that does what the user "
    "asks. No explanation, no markdown."
)


def _setup_logging(cfg: dict, verbose: bool = False):
    log_cfg = cfg.get("logging", {})
    level_name = "DEBUG" if verbose else str(log_cfg.get("level", "WARNING"))
    level = getattr(logging, level_name.upper(), logging.WARNING)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).expanduser().parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(Path(log_file).expanduser()))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


def _cache_mode(args):
    from gptline.engine import CacheMode

    if getattr(args, "no_cache", False):
        return CacheMode.BYPASS
    if getattr(args, "clear", False):
        return CacheMode.REFRESH
    return CacheMode.NORMAL


def _prompts(args, extra_system=()):
    from gptline.request import PromptSet, fragments_from

    fragments = fragments_from(
        system=list(extra_system) + (args.system or []),
        user=args.user or [],
        prompt=args.prompt or [],
    )
    return PromptSet(fragments=tuple(fragments), options=tuple(args.option or []))


def _finish_line(text: str):
    if text and not text.endswith("\n"):
        sys.stdout.write("\n")
        sys.stdout.flush()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_check(cfg: dict) -> int:
    """Validate the environment: key, storage directories, endpoint."""
    from gptline.cache import CacheStore
    from gptline.conversation import ConversationStore
    from gptline.render import print_error, print_ok
    from gptline.transport import ChatTransport

    status = 0
    api = cfg["api"]
    if api.get("key"):
        print_ok("API key is set")
    else:
        print_error("OPENAI_API_KEY is not set")
        status = status or InvalidRequest.exit_code

    for label, path, store_cls in (
        ("Cache", cfg["storage"]["cache_dir"], CacheStore),
        ("Conversations", cfg["storage"]["conversations_dir"], ConversationStore),
    ):
        try:
            store_cls(path)
            print_ok(f"{label}: {Path(path).expanduser()}")
        except StorageUnavailable as e:
            print_error(str(e))
            status = status or e.exit_code

    print_ok(f"Model: {api['model']}")
    if api.get("key"):
        transport = ChatTransport(api["url"], api["key"], api.get("connect_timeout", 10))
        ok, detail = transport.check()
        if ok:
            print_ok(detail)
        else:
            print_error(detail)
            status = status or 1
    return status


def cmd_ask(args, cfg: dict) -> int:
    """Stream one completion, from the cache when possible."""
    from gptline.engine import build_engine
    from gptline.render import print_ok

    if args.check:
        return cmd_check(cfg)

    engine = build_engine(cfg)

    if args.clear_all:
        removed = engine.cache.clear_all()
        print_ok(f"Cleared {removed} cache entries", stream=sys.stderr)

    prompts = _prompts(args)

    if args.key:
        print(engine.key(prompts))
        return 0

    if args.clear_all and not prompts.has_content and not (args.read or args.slurp):
        return 0

    mode = _cache_mode(args)
    if args.slurp:
        text = engine.complete_slurp(prompts, sys.stdin.read(), mode=mode)
        _finish_line(text)
    elif args.read:
        engine.complete_lines(prompts, sys.stdin, mode=mode)
    else:
        text = engine.complete(prompts, mode=mode)
        _finish_line(text)
    return 0


def cmd_chat(args, cfg: dict) -> int:
    """Interactive chat with saved, searchable history."""
    from gptline.chat import ChatSession, make_titler
    from gptline.conversation import ConversationStore
    from gptline.engine import build_engine

    engine = build_engine(cfg)
    chat_cfg = cfg["chat"]
    store = ConversationStore(
        cfg["storage"]["conversations_dir"],
        titler=make_titler(engine, chat_cfg["title_prompt"]),
    )
    session = ChatSession(engine, store, system_prompt=chat_cfg["system_prompt"], mode=_cache_mode(args))
    try:
        session.run()
    except KeyboardInterrupt:
        print("\n  [line disconnected]")
    return 0


def _read_request(args) -> str:
    words = " ".join(args.request).strip()
    if not words and not sys.stdin.isatty():
        words = sys.stdin.read().strip()
    if not words:
        raise InvalidRequest("Say what you want, e.g. gptline code 'fizzbuzz in python'")
    return words


def cmd_code(args, cfg: dict) -> int:
    """Ask for code and print it with markdown fences stripped."""
    from gptline.engine import build_engine
    from gptline.render import strip_code_fences
    from gptline.request import USER, Fragment

    engine = build_engine(cfg)
    prompts = _prompts(args, extra_system=[CODE_SYSTEM_PROMPT])
    text = engine.complete(prompts, extra=(Fragment(USER, _read_request(args)),), mode=_cache_mode(args), sink=None)
    print(strip_code_fences(text))
    return 0


def cmd_cmd(args, cfg: dict) -> int:
    """Ask for one shell command; optionally run it after confirmation."""
    from gptline.engine import build_engine
    from gptline.render import strip_code_fences
    from gptline.request import USER, Fragment

    shell = Path(os.environ.get("SHELL", "sh")).name
    system = CMD_SYSTEM_PROMPT.format(shell=shell, os=platform.system() or "Unix")

    engine = build_engine(cfg)
    prompts = _prompts(args, extra_system=[system])
    text = engine.complete(prompts, extra=(Fragment(USER, _read_request(args)),), mode=_cache_mode(args), sink=None)
    command = strip_code_fences(text)
    print(command)

    if not args.run:
        return 0
    try:
        answer = input("  Run it? [y/N] ")
    except EOFError:
        answer = ""
    if answer.strip().lower() not in ("y", "yes"):
        return 0
    logger.info("Running generated command: %s", command)
    return subprocess.run(command, shell=True).returncode


def cmd_tap(args, cfg: dict) -> int:
    """Print a cache entry, following it while another process fills it."""
    from gptline.cache import CacheStore
    from gptline.render import live_tap

    cache = CacheStore(cfg["storage"]["cache_dir"])
    found = live_tap(cache, args.key, follow=args.follow, idle_timeout=args.idle)
    return 0 if found else 1


def cmd_list(args, cfg: dict) -> int:
    """List saved conversations, newest first."""
    from gptline.conversation import ConversationStore
    from gptline.render import colors_enabled, format_titles

    store = ConversationStore(cfg["storage"]["conversations_dir"])
    titles = store.search(args.search) if args.search else store.list()
    print(format_titles(titles, colors_enabled()))
    return 0


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under multiple names."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def _add_prompt_flags(p):
    p.add_argument("--user", "-u", action="append", metavar="TEXT", help="User message (repeatable)")
    p.add_argument("--system", "-s", action="append", metavar="TEXT", help="System message (repeatable)")
    p.add_argument("--prompt", "-p", action="append", metavar="TEXT",
                   help="Generic prompt, sent as a user message (repeatable)")
    p.add_argument("--option", "-o", action="append", metavar="'KEY: VALUE'",
                   help="Extra API parameter, e.g. 'temperature: 0.2' (repeatable)")


def _add_cache_flags(p):
    group = p.add_mutually_exclusive_group()
    group.add_argument("--no-cache", action="store_true", help="Always call the API; don't read or write the cache")
    group.add_argument("--clear", "-c", action="store_true", help="Drop this request's cache entry first")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gptline",
        description="gptline — streaming completions and chat from the command line.",
        epilog=(
            "Each command has standard aliases.\n"
            "Example: 'gptline ask' and 'gptline gpt' do the same thing.\n"
            "Run 'gptline <command> --help' for command-specific options."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--version", "-V", action="version",
        version=f"gptline {__version__}",
    )
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging on stderr")

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    # ask / gpt / complete
    def setup_ask(p):
        _add_prompt_flags(p)
        _add_cache_flags(p)
        p.add_argument("--read", "-r", action="store_true",
                       help="Read more prompts from stdin, one completion per line")
        p.add_argument("--slurp", action="store_true",
                       help="Read all of stdin as one extra prompt (one completion)")
        p.add_argument("--clear-all", action="store_true", help="Wipe the whole cache")
        p.add_argument("--check", action="store_true", help="Validate the environment and exit")
        p.add_argument("--key", action="store_true", help="Print this request's cache key and exit")

    _add_command(sub, ["ask", "gpt", "complete"],
                 "Stream one completion (cached)", cmd_ask, setup_ask)

    # chat / talk
    def setup_chat(p):
        p.add_argument("--no-cache", action="store_true", help="Don't read or write the cache")

    _add_command(sub, ["chat", "talk"],
                 "Interactive chat with saved history", cmd_chat, setup_chat)

    # code
    def setup_code(p):
        p.add_argument("request", nargs="*", help="What to write (default: read stdin)")
        _add_prompt_flags(p)
        _add_cache_flags(p)

    _add_command(sub, ["code"], "Ask for code, print it without fences", cmd_code, setup_code)

    # cmd / shell
    def setup_cmd(p):
        p.add_argument("request", nargs="*", help="What the command should do (default: read stdin)")
        p.add_argument("--run", action="store_true", help="Offer to run the command")
        _add_prompt_flags(p)
        _add_cache_flags(p)

    _add_command(sub, ["cmd", "shell"], "Ask for a single shell command", cmd_cmd, setup_cmd)

    # tap / tail
    def setup_tap(p):
        p.add_argument("key", help="Cache key (see 'gptline ask --key ...')")
        p.add_argument("--follow", "-f", action="store_true", help="Keep printing as the entry grows")
        p.add_argument("--idle", type=float, default=None,
                       help="With --follow, stop after this many seconds without new text")

    _add_command(sub, ["tap", "tail"], "Watch a cache entry as it fills", cmd_tap, setup_tap)

    # list / history
    def setup_list(p):
        p.add_argument("--search", "-s", default=None, help="Only conversations containing this text")

    _add_command(sub, ["list", "history"], "List or search saved conversations", cmd_list, setup_list)

    return parser


def main(argv=None) -> int:
    from gptline.config import load_config
    from gptline.render import print_error

    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0

    try:
        cfg = load_config(args.config, reload=bool(args.config))
    except (OSError, ValueError) as e:
        print_error(f"Bad config: {e}")
        return 1
    _setup_logging(cfg, verbose=args.verbose)

    try:
        return args.func(args, cfg) or 0
    except GptlineError as e:
        logger.debug("Fatal %s", type(e).__name__, exc_info=True)
        print_error(str(e))
        return e.exit_code
    except KeyboardInterrupt:
        return 130


def gpt_main(argv=None) -> int:
    """`gpt ...` == `gptline ask ...`"""
    argv = sys.argv[1:] if argv is None else list(argv)
    return main(["ask", *argv])


def run():
    sys.exit(main())


def run_gpt():
    sys.exit(gpt_main())


if __name__ == "__main__":
    run()
