"""Atomic splice of new container bytes into a file.

The new content is assembled in a temporary file next to the original,
flushed and fsynced, then renamed over the original. If anything fails
before the rename the original is untouched and the temporary file is
removed.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import BinaryIO

from polytag.errors import TagIOError
from polytag.safe_logging import safe_path
from polytag.scanner import ContainerLocation

log = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def _copy_range(src: BinaryIO, dst: BinaryIO, length: int) -> None:
    while length > 0:
        chunk = src.read(min(CHUNK_SIZE, length))
        if not chunk:
            raise OSError("file shrank while being rewritten")
        dst.write(chunk)
        length -= len(chunk)


def write(
    path: Path | str,
    location: ContainerLocation,
    new_bytes: bytes,
    preserve_mtime: bool = False,
) -> None:
    """Replace ``location`` in ``path`` with ``new_bytes``.

    Args:
        path: File to rewrite
        location: Byte range to replace (zero length inserts)
        new_bytes: Replacement bytes
        preserve_mtime: Keep the original access/modification times

    Raises:
        TagIOError: On any filesystem failure; the original file is left as it was
    """
    path = Path(path)
    tmp: Path | None = None
    try:
        st = path.stat()
        if location.end > st.st_size:
            raise OSError(f"container ends at {location.end} but file has {st.st_size} bytes")
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        tmp = Path(tmp_name)
        with os.fdopen(fd, "wb") as dst, open(path, "rb") as src:
            _copy_range(src, dst, location.offset)
            dst.write(new_bytes)
            src.seek(location.end)
            shutil.copyfileobj(src, dst, CHUNK_SIZE)
            dst.flush()
            os.fsync(dst.fileno())
        os.chmod(tmp, stat.S_IMODE(st.st_mode))
        if preserve_mtime:
            os.utime(tmp, ns=(st.st_atime_ns, st.st_mtime_ns))
        os.replace(tmp, path)
        tmp = None
    except OSError as exc:
        raise TagIOError(f"failed to write {safe_path(path)}: {exc}", exc) from exc
    finally:
        if tmp is not None:
            with contextlib.suppress(OSError):
                tmp.unlink()

    log.debug(
        "Wrote %s: replaced %d bytes at %d with %d bytes",
        path,
        location.length,
        location.offset,
        len(new_bytes),
    )
