"""Batch processing of many audio files.

Each file is read, edited and written as one unit, independently of the
others, so a failure in one file is recorded and the rest carry on.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, TypeVar

from polytag.errors import TagError

log = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

AUDIO_EXTENSIONS = (".mp3", ".flac", ".ogg", ".oga", ".opus", ".m4a", ".m4b", ".mp4")


@dataclass
class BatchConfig:
    """Configuration for batch processing."""

    workers: int = 1
    continue_on_error: bool = True
    progress_callback: Callable[[int, int], None] | None = None


@dataclass
class BatchSummary:
    """Counts and per-item errors of one batch run."""

    total: int = 0
    succeeded: int = 0
    errors: list[tuple[Any, TagError]] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def done(self) -> int:
        return self.succeeded + self.failed


def process_batch(
    items: list[T],
    processor: Callable[[T], R],
    config: BatchConfig | None = None,
) -> tuple[list[R], BatchSummary]:
    """Run ``processor`` over ``items``.

    With ``config.workers > 1`` items run on a thread pool; results and
    progress callbacks are still reported in input order. Only ``TagError``
    counts as a per-item failure. Anything else is a bug and propagates.

    Returns:
        Results of the items that succeeded, and the batch summary

    Raises:
        TagError: The first failure, when ``continue_on_error`` is off
    """
    config = config or BatchConfig()
    summary = BatchSummary(total=len(items))
    results: list[R] = []

    pool = ThreadPoolExecutor(max_workers=config.workers) if config.workers > 1 else None
    try:
        calls: Iterable[tuple[T, Callable[[], R]]]
        if pool is None:
            calls = ((item, partial(processor, item)) for item in items)
        else:
            calls = [(item, pool.submit(processor, item).result) for item in items]

        for item, call in calls:
            try:
                results.append(call())
                summary.succeeded += 1
            except TagError as e:
                summary.errors.append((item, e))
                if not config.continue_on_error:
                    log.error("Stopping batch at %s: %s", item, e)
                    raise
                log.warning("Skipping %s: %s", item, e)

            if config.progress_callback:
                config.progress_callback(summary.done, summary.total)
    finally:
        if pool is not None:
            pool.shutdown(wait=True, cancel_futures=True)

    return results, summary


def collect_audio_files(
    paths: list[Path],
    extensions: tuple[str, ...] = AUDIO_EXTENSIONS,
    recursive: bool = True,
) -> list[Path]:
    """Expand ``paths`` into a list of audio files.

    Files named explicitly are kept whatever their extension, in the order
    given; directories are searched for ``extensions`` and their matches
    follow, sorted.
    """
    explicit: list[Path] = []
    found: set[Path] = set()

    for path in paths:
        if path.is_dir():
            candidates = path.rglob("*") if recursive else path.glob("*")
            found.update(p for p in candidates if p.is_file() and p.suffix.lower() in extensions)
        elif path not in explicit:
            explicit.append(path)

    return explicit + sorted(found - set(explicit))


## Tests


def test_process_batch_success():
    results, summary = process_batch([1, 2, 3], lambda x: x * 2)

    assert results == [2, 4, 6]
    assert (summary.total, summary.succeeded, summary.failed) == (3, 3, 0)


def test_process_batch_continues_after_tag_error():
    def processor(x: int) -> int:
        if x == 3:
            raise TagError("bad tag")
        return x * 2

    results, summary = process_batch([1, 2, 3, 4, 5], processor)

    assert results == [2, 4, 8, 10]
    assert summary.failed == 1
    assert summary.errors[0][0] == 3
    assert summary.done == 5


def test_process_batch_stop_on_error():
    """With continue-on-error off the first failure ends the batch."""
    seen: list[int] = []

    def processor(x: int) -> int:
        seen.append(x)
        if x == 2:
            raise TagError("bad tag")
        return x

    try:
        process_batch([1, 2, 3], processor, BatchConfig(continue_on_error=False))
        raise AssertionError("Should have raised TagError")
    except TagError:
        pass
    assert seen == [1, 2]


def test_process_batch_propagates_bugs():
    """Non-tag exceptions are not swallowed, even with continue-on-error."""

    def processor(x: int) -> int:
        raise KeyError(x)

    try:
        process_batch([1], processor)
        raise AssertionError("Should have raised KeyError")
    except KeyError:
        pass


def test_process_batch_parallel_keeps_order():
    """Threaded processing reports results and progress in input order."""
    import time

    def processor(x: int) -> int:
        time.sleep(0.01 * (5 - x))
        if x == 2:
            raise TagError("bad tag")
        return x

    progress: list[int] = []
    config = BatchConfig(workers=4, progress_callback=lambda done, total: progress.append(done))
    results, summary = process_batch([1, 2, 3, 4], processor, config)

    assert results == [1, 3, 4]
    assert summary.errors[0][0] == 2
    assert progress == [1, 2, 3, 4]


def test_collect_audio_files(tmp_path):
    (tmp_path / "song1.mp3").touch()
    (tmp_path / "song2.FLAC").touch()
    (tmp_path / "cover.jpg").touch()
    tracks = tmp_path / "tracks"
    tracks.mkdir()
    (tracks / "song3.m4a").touch()
    (tracks / "song4.opus").touch()

    files = collect_audio_files([tmp_path])
    assert [f.name for f in files] == ["song1.mp3", "song2.FLAC", "song3.m4a", "song4.opus"]
    assert len(collect_audio_files([tmp_path], recursive=False)) == 2

    # Explicit files come first and keep their order
    cover = tmp_path / "cover.jpg"
    files = collect_audio_files([cover, tmp_path / "song1.mp3", tmp_path])
    assert files[:2] == [cover, tmp_path / "song1.mp3"]
    assert files.count(tmp_path / "song1.mp3") == 1
