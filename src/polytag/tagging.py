"""File-level tag reading and writing.

Ties the scanner, codecs and atomic writer together: ``read_tags`` opens a
file and decodes its tag container into a ``TagModel``; ``save_tags`` splices
an edited model back into the same file. The model operations themselves
(mutation, upgrade, copy) never touch the filesystem.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from polytag import writer
from polytag.batch import BatchConfig, BatchSummary, process_batch
from polytag.codecs import get_codec
from polytag.copying import CopyResult, copy
from polytag.errors import TagIOError
from polytag.model import ContainerKind, TagFormat, TagModel
from polytag.safe_logging import safe_path
from polytag.scanner import ContainerLocation, detect, scan
from polytag.upgrade import UpgradeResult, convert, upgrade

log = logging.getLogger(__name__)


@dataclass
class TagFile:
    """A file's bytes together with its decoded tag."""

    path: Path
    kind: ContainerKind
    location: ContainerLocation
    model: TagModel
    data: bytes

    @property
    def has_tag(self) -> bool:
        return self.location.present


@dataclass
class WriteReport:
    """Report of what was written (or would be, for a dry run)."""

    file_path: Path
    fields_written: list[str] = field(default_factory=list)
    fields_removed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    bytes_delta: int = 0
    dry_run: bool = False
    changed: bool = False


def _read_bytes(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise TagIOError(f"cannot read {safe_path(path)}: {exc}", exc) from exc


def detect_kind(path: Path | str) -> ContainerKind:
    """Container kind of ``path``, judged from its content rather than its name."""
    return detect(_read_bytes(Path(path)))


def read_tags(
    path: Path | str,
    kind: ContainerKind | None = None,
    id3_format: TagFormat = TagFormat.ID3V24,
) -> TagFile:
    """
    Open ``path`` and decode its tag container.

    Args:
        path: Audio file
        kind: Container kind; detected from the file content when omitted
        id3_format: Revision for the empty model of an MP3 without an ID3v2 tag

    Raises:
        TagIOError: If the file cannot be read
        ContainerNotFoundError: If the file is not a supported container
        MalformedError: If the tag container is corrupt
    """
    path = Path(path)
    data = _read_bytes(path)
    location = scan(data, kind)

    if location.kind is ContainerKind.ID3V2 and not location.present:
        model = TagModel.empty(id3_format)
    else:
        model = get_codec(location.kind).decode(data, location)

    log.debug("Read %s tag from %s (%d entries)", model.native_format, path, len(model))
    return TagFile(path=path, kind=location.kind, location=location, model=model, data=data)


def changed_fields(before: TagModel, after: TagModel) -> tuple[list[str], list[str]]:
    """Identifiers whose values changed, and identifiers that disappeared."""
    written = [
        ident
        for ident in after.identifiers()
        if [e.values for e in after.get_all(ident)] != [e.values for e in before.get_all(ident)]
    ]
    removed = [ident for ident in before.identifiers() if ident not in after]
    return written, removed


def save_tags(
    tag_file: TagFile,
    model: TagModel,
    padding: int | None = None,
    dry_run: bool = False,
    preserve_mtime: bool = False,
    id3_format: TagFormat | None = None,
) -> WriteReport:
    """
    Write ``model`` into the file ``tag_file`` was read from.

    The file is only rewritten when the encoded container differs from what
    is already there. With ``id3_format`` an ID3 model is first converted to
    that revision; conversion warnings land in the report.

    Args:
        tag_file: Result of ``read_tags`` for the target file
        model: Model to write; must be in a format the container can hold
        padding: Explicit padding size; ``None`` lets the codec decide
        dry_run: If True, don't write, just report what would be written
        preserve_mtime: Keep the file's modification time
        id3_format: ID3v2 revision to save as; ignored for other formats

    Raises:
        UnsupportedFeatureError: If the container cannot hold ``model``
        TagIOError: If the rewrite fails; the file is left untouched
    """
    report = WriteReport(file_path=tag_file.path, dry_run=dry_run)
    if id3_format is not None and model.native_format.is_id3:
        converted = convert(model, id3_format)
        model = converted.model
        report.warnings.extend(converted.warnings)
    report.fields_written, report.fields_removed = changed_fields(tag_file.model, model)

    splice = get_codec(tag_file.kind).splice(model, tag_file.data, tag_file.location, padding)
    if splice.payload == splice.location.slice(tag_file.data):
        log.debug("Tag of %s unchanged, not rewriting", tag_file.path)
        return report

    report.changed = True
    report.bytes_delta = splice.delta
    if not dry_run:
        writer.write(tag_file.path, splice.location, splice.payload, preserve_mtime)
        log.info("Updated %s (%+d bytes)", tag_file.path, splice.delta)
    return report


def upgrade_file(
    path: Path | str,
    padding: int | None = None,
    dry_run: bool = False,
    preserve_mtime: bool = False,
) -> tuple[UpgradeResult, WriteReport]:
    """Upgrade the tag of ``path`` to the newest revision of its family."""
    tag_file = read_tags(path)
    result = upgrade(tag_file.model)
    if not result.upgraded:
        return result, WriteReport(file_path=tag_file.path, dry_run=dry_run)

    report = save_tags(tag_file, result.model, padding, dry_run, preserve_mtime)
    report.warnings.extend(result.warnings)
    return result, report


def copy_into(
    source: TagModel,
    destination: Path | str,
    identifiers: Iterable[str] | None = None,
    padding: int | None = None,
    dry_run: bool = False,
    preserve_mtime: bool = False,
) -> tuple[CopyResult, WriteReport]:
    """Copy entries of ``source`` into the tag of one destination file."""
    tag_file = read_tags(destination)
    [result] = copy(source, identifiers, [tag_file.model])
    report = save_tags(tag_file, result.model, padding, dry_run, preserve_mtime)
    report.warnings.extend(result.warnings)
    return result, report


def copy_tags(
    source: Path | str,
    destinations: Sequence[Path | str],
    identifiers: Iterable[str] | None = None,
    padding: int | None = None,
    dry_run: bool = False,
    preserve_mtime: bool = False,
) -> tuple[list[WriteReport], BatchSummary]:
    """Copy tags from the file ``source`` into each destination file, in order.

    A destination that fails is recorded in the summary and the others are
    still processed.

    Returns:
        Reports for the destinations that were written, and the batch summary

    Raises:
        TagError: If the source cannot be read
    """
    source_model = read_tags(source).model
    wanted = list(identifiers) if identifiers is not None else None

    def copy_one(dest: Path | str) -> WriteReport:
        return copy_into(source_model, dest, wanted, padding, dry_run, preserve_mtime)[1]

    return process_batch(list(destinations), copy_one, BatchConfig(continue_on_error=True))
