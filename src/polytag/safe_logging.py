"""Privacy-aware logging for polytag.

Tagging a music library logs many file paths and pieces of tag text. Paths
are shortened to their library-relative form (or hashed), and e-mail
addresses, which turn up in COMMENT and URL fields, are redacted before a
record reaches any handler.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Z|a-z]{2,}\b")

LIBRARY_ROOT_ENV = "POLYTAG_LIBRARY_ROOT"


def hash_path(file_path: Path | str, length: int = 12) -> str:
    """Truncated SHA-256 of the full path; stable across runs."""
    return hashlib.sha256(str(file_path).encode()).hexdigest()[:length]


def relativize_path(file_path: Path | str, library_root: Path | str | None = None) -> str:
    """Path relative to ``library_root``, or ``parent/name`` outside of it.

    ``parent/name`` is usually ``album/track`` in a music library, which is
    enough to find the file again without exposing the home directory.
    """
    path = Path(file_path)
    if library_root:
        try:
            return str(path.relative_to(Path(library_root)))
        except ValueError:
            pass
    if path.parent.name:
        return f"{path.parent.name}/{path.name}"
    return path.name


def safe_path(
    file_path: Path | str,
    library_root: Path | str | None = None,
    use_hash: bool = False,
) -> str:
    """Representation of a path for log and error messages.

    Args:
        file_path: Path to represent
        library_root: Root to relativize against; defaults to the
            ``POLYTAG_LIBRARY_ROOT`` environment variable
        use_hash: Show ``file:<hash>`` instead of any part of the path
    """
    if use_hash:
        return f"file:{hash_path(file_path)}"
    if library_root is None:
        library_root = _get_library_root()
    return relativize_path(file_path, library_root)


def sanitize_message(message: str) -> str:
    return EMAIL.sub("[EMAIL]", message)


@lru_cache(maxsize=1)
def _get_library_root() -> Path | None:
    root = os.environ.get(LIBRARY_ROOT_ENV)
    return Path(root) if root else None


def _looks_like_path(text: str) -> bool:
    return "/" in text and "://" not in text and bool(Path(text).suffix)


class SafeLogFormatter(logging.Formatter):
    """Formatter that shortens path arguments and redacts e-mail addresses."""

    def __init__(self, fmt: str | None = None, hash_paths: bool = False):
        super().__init__(fmt)
        self.hash_paths = hash_paths
        self._library_root = _get_library_root()

    def format(self, record: logging.LogRecord) -> str:
        # Other handlers may see the same record
        record = logging.makeLogRecord(record.__dict__)
        record.msg = sanitize_message(str(record.msg))
        if isinstance(record.args, Mapping):
            record.args = {key: self._clean(value) for key, value in record.args.items()}
        elif record.args:
            record.args = tuple(self._clean(value) for value in record.args)
        return super().format(record)

    def _clean(self, value: Any) -> Any:
        if isinstance(value, Path) or (isinstance(value, str) and _looks_like_path(value)):
            return safe_path(value, self._library_root, use_hash=self.hash_paths)
        if isinstance(value, str):
            return sanitize_message(value)
        return value


def configure_rich_logging(
    level: int = logging.WARNING,
    hash_paths: bool = False,
    show_time: bool = False,
) -> Console:
    """Route log records through Rich on stderr and return the stdout console.

    A handler installed by an earlier call is replaced, so the CLI can run
    several times in one process.
    """
    handler = RichHandler(
        console=Console(stderr=True),
        show_time=show_time,
        show_path=False,
        rich_tracebacks=level <= logging.DEBUG,
    )
    handler.setFormatter(SafeLogFormatter(fmt="%(message)s", hash_paths=hash_paths))

    root_logger = logging.getLogger()
    for existing in [h for h in root_logger.handlers if isinstance(h, RichHandler)]:
        root_logger.removeHandler(existing)
    root_logger.setLevel(level)
    root_logger.addHandler(handler)

    return Console()


## Tests


def test_hash_path():
    song = Path("/home/user/music/song.flac")

    assert len(hash_path(song)) == 12
    assert hash_path(song) == hash_path("/home/user/music/song.flac")
    assert hash_path(song) != hash_path(song.with_name("other.flac"))


def test_relativize_path():
    path = Path("/home/user/music/artist/album/song.mp3")

    assert relativize_path(path, "/home/user/music") == "artist/album/song.mp3"
    assert relativize_path(path) == "album/song.mp3"
    assert relativize_path(path, "/elsewhere") == "album/song.mp3"
    assert relativize_path("song.mp3") == "song.mp3"


def test_safe_path_uses_library_root(monkeypatch):
    """POLYTAG_LIBRARY_ROOT is the default root."""
    monkeypatch.setenv(LIBRARY_ROOT_ENV, "/srv/music")
    _get_library_root.cache_clear()
    try:
        assert safe_path("/srv/music/a/b/c.opus") == "a/b/c.opus"
    finally:
        _get_library_root.cache_clear()

    hashed = safe_path("/srv/music/a/b/c.opus", use_hash=True)
    assert hashed.startswith("file:")
    assert "c.opus" not in hashed


def test_sanitize_message():
    sanitized = sanitize_message("COMMENT=mail me at user@example.com")
    assert sanitized == "COMMENT=mail me at [EMAIL]"


def test_safe_log_formatter_paths_and_args():
    """Paths in args are shortened, e-mails in args redacted."""
    formatter = SafeLogFormatter(fmt="%(message)s")
    record = logging.LogRecord(
        name="test",
        level=logging.INFO,
        pathname="",
        lineno=0,
        msg="Wrote %s for %s (see %s)",
        args=(Path("/home/user/music/a/b.flac"), "user@example.com", "https://x.org/a.html"),
        exc_info=None,
    )

    assert formatter.format(record) == "Wrote a/b.flac for [EMAIL] (see https://x.org/a.html)"
    # The original record is untouched
    assert record.args[1] == "user@example.com"


def test_configure_rich_logging_replaces_handler():
    """Repeated configuration keeps a single Rich handler."""
    root_logger = logging.getLogger()
    before = list(root_logger.handlers)
    try:
        configure_rich_logging(level=logging.INFO)
        console = configure_rich_logging(level=logging.DEBUG)

        rich_handlers = [h for h in root_logger.handlers if isinstance(h, RichHandler)]
        assert len(rich_handlers) == 1
        assert root_logger.level == logging.DEBUG
        assert isinstance(console, Console)
    finally:
        for handler in list(root_logger.handlers):
            if handler not in before:
                root_logger.removeHandler(handler)
        root_logger.setLevel(logging.WARNING)
