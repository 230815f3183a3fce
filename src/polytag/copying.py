"""Copy entries from one tag model into others, translating across formats.

The normalized identifier is the bridge between formats. Singular fields in
a destination are overwritten; repeatable fields are appended unless an
identical value is already there. Entries a destination format cannot
express are dropped and reported, never silently.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace

from polytag.fields import is_repeatable, untranslatable_reason
from polytag.model import Binary, Scalar, TagEntry, TagFormat, TagModel, normalize_identifier

log = logging.getLogger(__name__)


@dataclass
class CopyResult:
    """One destination after a copy."""

    model: TagModel
    copied: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _comparable(values: Sequence[Scalar]) -> list[object]:
    """Values as compared for duplicates; pictures match on their bytes alone."""
    return [v.data if isinstance(v, Binary) else v for v in values]


def lossy_picture_reason(fmt: TagFormat, entry: TagEntry) -> str | None:
    """What ``fmt`` cannot keep of a picture entry, if anything."""
    if fmt is not TagFormat.MP4 or entry.identifier != "PICTURE":
        return None
    lost = []
    for value in entry.values:
        if isinstance(value, Binary) and value.description and "description" not in lost:
            lost.append("description")
        if isinstance(value, Binary) and value.picture_type != 3 and "picture type" not in lost:
            lost.append("picture type")
    return " and ".join(lost) or None


def translate(entry: TagEntry, source: TagFormat, destination: TagFormat) -> TagEntry:
    """Re-home ``entry`` for ``destination``.

    Native hints only survive within a format family; across families the
    destination codec picks its own native key from the identifier.
    """
    if source.family == destination.family:
        return entry
    return replace(entry, hint=None)


def select(
    source: TagModel, identifiers: Iterable[str] | None
) -> tuple[list[TagEntry], list[str]]:
    """Entries to copy, plus requested identifiers the source lacks."""
    if identifiers is None:
        return list(source.entries), []
    wanted = [normalize_identifier(i) for i in identifiers]
    missing = [i for i in wanted if i not in source]
    chosen = set(wanted)
    return [e for e in source.entries if e.identifier in chosen], missing


def merge(
    destination: TagModel, entries: Sequence[TagEntry], source_format: TagFormat
) -> CopyResult:
    result = CopyResult(model=destination)
    merged = list(destination.entries)
    fmt = destination.native_format
    replaced: set[str] = set()

    for entry in entries:
        if reason := untranslatable_reason(fmt, entry):
            message = f"{entry.identifier} dropped for {fmt}: {reason}"
            log.warning(message)
            result.dropped.append(entry.identifier)
            result.warnings.append(message)
            continue
        incoming = translate(entry, source_format, fmt)

        if lossy := lossy_picture_reason(fmt, incoming):
            message = f"{incoming.identifier} {lossy} not stored in {fmt}"
            log.warning(message)
            result.warnings.append(message)

        if is_repeatable(incoming.identifier):
            wanted = _comparable(incoming.values)
            duplicate = any(
                e.identifier == incoming.identifier and _comparable(e.values) == wanted
                for e in merged
            )
            if duplicate:
                log.debug("Skipping duplicate %s value", incoming.identifier)
                continue
            merged.append(incoming)
        elif incoming.identifier in replaced:
            # Several source entries for one singular field collapse into one value list.
            index = next(i for i, e in enumerate(merged) if e.identifier == incoming.identifier)
            merged[index] = merged[index].with_value(merged[index].values + incoming.values)
        else:
            positions = [i for i, e in enumerate(merged) if e.identifier == incoming.identifier]
            if positions:
                merged[positions[0]] = incoming
                for i in reversed(positions[1:]):
                    del merged[i]
            else:
                merged.append(incoming)
            replaced.add(incoming.identifier)
        result.copied.append(incoming.identifier)

    result.model = destination.with_entries(merged)
    return result


def copy(
    source: TagModel,
    identifiers: Iterable[str] | None,
    destinations: Sequence[TagModel],
) -> list[CopyResult]:
    """
    Copy ``identifiers`` (all entries when ``None``) from ``source`` into each destination.

    Returns one ``CopyResult`` per destination, in order. The source and
    destination models are left untouched.
    """
    entries, missing = select(source, identifiers)
    results = []
    for destination in destinations:
        result = merge(destination, entries, source.native_format)
        for ident in missing:
            result.warnings.append(f"{ident} is not present in the source")
        results.append(result)
    return results
