"""
Response cache — one flat file per request fingerprint.

The fingerprint is computed over the *sorted* fragments of each class
(options, system, user, generic), so the same set of prompt text hits the
same entry no matter the order it was given in. Role classes stay separate:
moving a fragment from -s to -u changes the key.

Entries are populated while the response streams in. CacheWriter appends and
flushes every chunk, so any other process reading the same file sees a
growing, valid prefix. CacheReader keeps its own cursor for exactly that
kind of watching (see `tail`).
"""

from __future__ import annotations

import codecs
import hashlib
import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Iterator

from gptline.errors import InvalidRequest, StorageUnavailable
from gptline.request import PROMPT, SYSTEM, USER, parse_option

logger = logging.getLogger(__name__)

_KEY_RE = re.compile(r"[0-9a-f]{64}")


def fingerprint(fragments, options=()) -> str:
    """
    SHA-256 hex digest identifying a request for caching.

    Each class is sorted on its own, then the classes are serialized in a
    fixed order: options, system, user, generic.
    """
    fragments = list(fragments)
    blocks = [
        sorted([list(parse_option(o)) for o in options]),
        sorted(f.text for f in fragments if f.kind == SYSTEM),
        sorted(f.text for f in fragments if f.kind == USER),
        sorted(f.text for f in fragments if f.kind == PROMPT),
    ]
    payload = json.dumps(blocks, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class CacheWriter:
    """
    Append-only writer for one cache entry.

    Opening truncates the entry once; after that every append goes straight
    to disk. Never rewritten wholesale while populating.
    """

    def __init__(self, path: Path):
        self.path = path
        self._file = None
        self.bytes_written = 0

    def open(self) -> "CacheWriter":
        if self._file is None:
            self._file = open(self.path, "w", encoding="utf-8", newline="")
        return self

    def append(self, chunk: str):
        if self._file is None:
            self.open()
        if not chunk:
            return
        try:
            self._file.write(chunk)
            self._file.flush()
        except OSError as e:
            raise StorageUnavailable(f"Cannot write cache entry {self.path}: {e}") from e
        self.bytes_written += len(chunk.encode("utf-8"))

    def close(self):
        if self._file:
            self._file.close()
            self._file = None

    def __enter__(self):
        return self.open()

    def __exit__(self, *exc):
        self.close()
        return False


class CacheReader:
    """Cursor over a cache entry. Each read() returns only what was appended since the last one."""

    def __init__(self, path: Path):
        self.path = path
        self.offset = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")()

    def read(self) -> str:
        """New text since the previous call; "" if nothing new or no entry yet."""
        try:
            with open(self.path, "rb") as f:
                if os.fstat(f.fileno()).st_size < self.offset:
                    # truncated by a refetch: start over on the new content
                    self.offset = 0
                    self._decoder.reset()
                f.seek(self.offset)
                data = f.read()
        except FileNotFoundError:
            return ""
        except OSError as e:
            raise StorageUnavailable(f"Cannot read cache entry {self.path}: {e}") from e
        self.offset += len(data)
        # Incremental decode holds back a multibyte sequence split across reads
        return self._decoder.decode(data)


class CacheStore:
    """Directory of cached responses, one file per fingerprint."""

    def __init__(self, cache_dir: str | Path):
        self.cache_dir = Path(cache_dir).expanduser()
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f"Cannot create cache directory {self.cache_dir}: {e}") from e
        logger.debug("Cache store at %s", self.cache_dir)

    def path(self, key: str) -> Path:
        """Entry file for a key. Only fingerprints are accepted as keys."""
        if not isinstance(key, str) or not _KEY_RE.fullmatch(key):
            raise InvalidRequest(f"Not a cache key: {key!r}")
        return self.cache_dir / key

    def get(self, key: str) -> str | None:
        """Cached text, exactly as stored, or None on a miss. Empty entries count as a miss."""
        path = self.path(key)
        try:
            with open(path, encoding="utf-8", newline="") as f:
                text = f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageUnavailable(f"Cannot read cache entry {path}: {e}") from e
        if not text:
            return None
        logger.debug("Cache hit %s (%d chars)", key[:12], len(text))
        return text

    def put(self, key: str, text: str):
        """Write or overwrite an entry."""
        with self.writer(key) as w:
            w.append(text)

    def writer(self, key: str) -> CacheWriter:
        """Append-only writer for populating an entry while it streams."""
        try:
            return CacheWriter(self.path(key)).open()
        except OSError as e:
            raise StorageUnavailable(f"Cannot write cache entry {self.path(key)}: {e}") from e

    def reader(self, key: str) -> CacheReader:
        return CacheReader(self.path(key))

    def exists(self, key: str) -> bool:
        return self.path(key).exists()

    def clear(self, key: str) -> bool:
        """Delete one entry. Returns True if something was removed."""
        path = self.path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageUnavailable(f"Cannot delete cache entry {path}: {e}") from e
        logger.debug("Cleared cache entry %s", key[:12])
        return True

    def clear_all(self) -> int:
        """Delete every entry in the cache directory."""
        removed = 0
        try:
            for path in self.cache_dir.iterdir():
                if path.is_file():
                    path.unlink(missing_ok=True)
                    removed += 1
        except OSError as e:
            raise StorageUnavailable(f"Cannot clear cache directory {self.cache_dir}: {e}") from e
        logger.info("Cleared %d cache entries from %s", removed, self.cache_dir)
        return removed

    def keys(self) -> list[str]:
        try:
            return sorted(p.name for p in self.cache_dir.iterdir() if p.is_file())
        except OSError as e:
            raise StorageUnavailable(f"Cannot read cache directory {self.cache_dir}: {e}") from e

    def tail(
        self,
        key: str,
        follow: bool = False,
        poll_interval: float = 0.1,
        idle_timeout: float | None = None,
    ) -> Iterator[str]:
        """
        Yield an entry's text as it grows, like `tail -f`.

        Without follow, yields whatever is there now and stops. With follow,
        keeps polling until interrupted, or until nothing new arrives for
        idle_timeout seconds when one is given.
        """
        reader = self.reader(key)
        idle_since = time.monotonic()
        while True:
            chunk = reader.read()
            if chunk:
                idle_since = time.monotonic()
                yield chunk
            if not follow:
                return
            if idle_timeout is not None and time.monotonic() - idle_since >= idle_timeout:
                return
            if not chunk:
                time.sleep(poll_interval)
