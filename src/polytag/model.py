"""Unified tag model shared by every format codec.

A ``TagModel`` is produced fresh by a codec's ``decode`` for each opened
file and is treated as immutable: the mutation, upgrade and copy engines all
return new models instead of editing one in place.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace
from enum import StrEnum
from typing import Union


class TagFormat(StrEnum):
    """Closed set of tag formats the engine can decode and encode."""

    ID3V23 = "id3v2.3"
    ID3V24 = "id3v2.4"
    VORBIS = "vorbis"
    MP4 = "mp4"

    @property
    def is_id3(self) -> bool:
        return self in (TagFormat.ID3V23, TagFormat.ID3V24)

    @property
    def family(self) -> str:
        """Format family; upgrades never cross family boundaries."""
        return "id3v2" if self.is_id3 else self.value


class ContainerKind(StrEnum):
    """How a tag is embedded in a file."""

    ID3V2 = "id3v2"
    FLAC = "flac"
    OGG_VORBIS = "ogg_vorbis"
    OGG_OPUS = "ogg_opus"
    MP4 = "mp4"

    @property
    def default_format(self) -> TagFormat:
        """Format used when creating a brand new tag in this container."""
        if self is ContainerKind.ID3V2:
            return TagFormat.ID3V24
        if self is ContainerKind.MP4:
            return TagFormat.MP4
        return TagFormat.VORBIS


@dataclass(frozen=True)
class Binary:
    """Raw binary value with its declared MIME type.

    ``picture_type`` follows the ID3 APIC / FLAC PICTURE numbering
    (3 = front cover).
    """

    data: bytes
    mime: str = "application/octet-stream"
    picture_type: int = 3
    description: str = ""

    def __repr__(self) -> str:
        return f"Binary({self.mime}, {len(self.data)} bytes, type={self.picture_type})"


Scalar = Union[str, int, Binary]
TagValue = Union[Scalar, list[Scalar]]


@dataclass(frozen=True)
class NativeHint:
    """Where an entry came from in its native format.

    Only the attributes that matter for the source format are set. Codecs
    consult the hint when re-encoding so that unchanged entries round-trip
    exactly (same frame id, text encoding, language, original key case).
    """

    key: str
    encoding: int | None = None
    language: str | None = None
    description: str | None = None
    mean: str | None = None
    data_type: int | None = None


@dataclass(frozen=True)
class TagEntry:
    """One metadata field keyed by a normalized identifier."""

    identifier: str
    value: TagValue
    hint: NativeHint | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "identifier", normalize_identifier(self.identifier))
        if isinstance(self.value, tuple):
            object.__setattr__(self, "value", list(self.value))

    @property
    def values(self) -> list[Scalar]:
        """The value as a list, whether it is multi-valued or not."""
        if isinstance(self.value, list):
            return list(self.value)
        return [self.value]

    @property
    def texts(self) -> list[str]:
        """Every scalar value rendered as text (binary values are skipped)."""
        return [str(v) for v in self.values if not isinstance(v, Binary)]

    @property
    def text(self) -> str:
        """Text values joined the way a console display shows them."""
        return "; ".join(self.texts)

    def with_value(self, value: TagValue) -> TagEntry:
        return replace(self, value=value)


@dataclass(frozen=True)
class UnrecognizedBlock:
    """Opaque bytes a codec could not map to a known identifier.

    Written back verbatim; dropping these on save is a correctness bug.
    """

    key: str
    data: bytes
    native_format: TagFormat

    def __repr__(self) -> str:
        return f"UnrecognizedBlock({self.key!r}, {len(self.data)} bytes, {self.native_format})"


@dataclass(frozen=True)
class TagModel:
    """Format-agnostic tag: ordered entries plus provenance."""

    native_format: TagFormat
    native_version: int | None = None
    entries: tuple[TagEntry, ...] = ()
    unrecognized_blocks: tuple[UnrecognizedBlock, ...] = ()
    vendor: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.entries, tuple):
            object.__setattr__(self, "entries", tuple(self.entries))
        if not isinstance(self.unrecognized_blocks, tuple):
            object.__setattr__(self, "unrecognized_blocks", tuple(self.unrecognized_blocks))

    @classmethod
    def empty(cls, native_format: TagFormat) -> TagModel:
        version = {TagFormat.ID3V23: 3, TagFormat.ID3V24: 4}.get(native_format)
        return cls(native_format=native_format, native_version=version)

    def __iter__(self) -> Iterator[TagEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, identifier: object) -> bool:
        if not isinstance(identifier, str):
            return False
        key = normalize_identifier(identifier)
        return any(e.identifier == key for e in self.entries)

    def get(self, identifier: str) -> TagEntry | None:
        key = normalize_identifier(identifier)
        for entry in self.entries:
            if entry.identifier == key:
                return entry
        return None

    def get_all(self, identifier: str) -> list[TagEntry]:
        key = normalize_identifier(identifier)
        return [e for e in self.entries if e.identifier == key]

    def identifiers(self) -> list[str]:
        """Identifiers in first-seen order, without duplicates."""
        seen: dict[str, None] = {}
        for entry in self.entries:
            seen.setdefault(entry.identifier, None)
        return list(seen)

    def with_entries(self, entries: Iterable[TagEntry]) -> TagModel:
        return replace(self, entries=tuple(entries))

    def with_blocks(self, blocks: Iterable[UnrecognizedBlock]) -> TagModel:
        return replace(self, unrecognized_blocks=tuple(blocks))

    @property
    def is_empty(self) -> bool:
        return not self.entries and not self.unrecognized_blocks


def normalize_identifier(identifier: str) -> str:
    """Normalize a user- or codec-supplied field name to an identifier."""
    return identifier.strip().upper()
