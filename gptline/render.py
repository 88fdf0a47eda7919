"""
Terminal rendering — colours, error banners, transcripts, code extraction.

Everything here takes already-produced text and formats it. No network, no
storage writes.
"""

import re
import sys

from gptline.conversation import ROLE_USER, Conversation

# ANSI colors
C_RESET = "\033[0m"
C_BOLD = "\033[1m"
C_DIM = "\033[2m"
C_USER = "\033[96m"      # cyan
C_SYSTEM = "\033[93m"    # yellow
C_TITLE = "\033[95m"     # magenta
C_BORDER = "\033[90m"    # gray
C_OK = "\033[92m"        # green
C_ERROR = "\033[91m"     # red

ROLE_COLORS = {
    "user": C_USER,
    "system": C_SYSTEM,
}

ROLE_ICONS = {
    "user": "▶",
    "system": "◀",
}

_FENCE_RE = re.compile(r"^\s*(```|~~~)")


def colors_enabled(stream=None) -> bool:
    stream = stream or sys.stdout
    return hasattr(stream, "isatty") and stream.isatty()


def paint(text: str, color: str, enabled: bool = True) -> str:
    return f"{color}{text}{C_RESET}" if enabled else text


def print_error(message: str, stream=None):
    """Clearly marked fatal error on stderr."""
    stream = stream or sys.stderr
    print(paint(f"  ✗  {message}", C_ERROR, colors_enabled(stream)), file=stream)


def print_ok(message: str, stream=None):
    stream = stream or sys.stdout
    print(paint(f"  ✓  {message}", C_OK, colors_enabled(stream)), file=stream)


def strip_code_fences(text: str) -> str:
    """
    Keep only the code of a markdown-fenced answer.

    With fences present, the contents of every fenced block are returned,
    joined by blank lines, and the prose around them is dropped. Without
    fences the text comes back trimmed.
    """
    blocks: list[list[str]] = []
    current: list[str] | None = None
    for line in text.splitlines():
        if _FENCE_RE.match(line):
            if current is None:
                current = []
            else:
                blocks.append(current)
                current = None
            continue
        if current is not None:
            current.append(line)
    if current:
        # unterminated fence: keep what we got
        blocks.append(current)
    if not blocks:
        return text.strip()
    return "\n\n".join("\n".join(b).strip("\n") for b in blocks)


def format_turn(role: str, text: str, color: bool = True) -> str:
    role_color = ROLE_COLORS.get(role, C_RESET)
    icon = ROLE_ICONS.get(role, "?")
    label = "YOU" if role == ROLE_USER else "GPT"
    header = paint(f"{C_BOLD}{icon} {label}", role_color) if color else f"{icon} {label}"
    body = "\n".join(f"    {line}" for line in text.split("\n"))
    return f"  {header}\n{body}"


def format_transcript(conv: Conversation, color: bool = True) -> str:
    """A saved conversation rendered for replay on screen."""
    lines = [paint(f"  ☎  {conv.title}", C_TITLE, color)]
    lines.append(paint(f"  {'═' * 60}", C_BORDER, color))
    for turn in conv.turns:
        lines.append(format_turn(turn.role, turn.text, color))
        lines.append(paint(f"  {'─' * 60}", C_BORDER, color))
    return "\n".join(lines)


def format_titles(titles: list[str], color: bool = True) -> str:
    """Numbered menu of conversation titles."""
    if not titles:
        return paint("  No conversations yet.", C_DIM, color)
    width = len(str(len(titles)))
    return "\n".join(
        f"  {paint(str(i).rjust(width), C_DIM, color)}  {title}"
        for i, title in enumerate(titles, 1)
    )


def live_tap(cache, key: str, follow: bool = True, out=None, idle_timeout: float | None = None):
    """
    Print a cache entry, and with follow keep printing as it grows.

    Lets one terminal watch a completion another process is still streaming
    into the cache. Ctrl+C hangs up.
    """
    out = out or sys.stdout
    if not cache.exists(key) and not follow:
        print_error(f"No cache entry {key}")
        return False
    try:
        for chunk in cache.tail(key, follow=follow, idle_timeout=idle_timeout):
            out.write(chunk)
            out.flush()
    except KeyboardInterrupt:
        if colors_enabled(out):
            out.write(f"\n  {C_DIM}[line disconnected]{C_RESET}\n")
        else:
            out.write("\n")
    return True
