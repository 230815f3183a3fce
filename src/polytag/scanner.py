"""Container scanner: locate embedded tag containers without parsing them.

The scanner only reads structure (headers, block chains, page framing, box
sizes) and returns a ``ContainerLocation``. Decoding the contents is the
job of the format codecs in ``polytag.codecs``.

Error contract:
- ``ContainerNotFoundError`` when the file has no container of the
  requested kind (the caller may create one at ``anchor()``).
- ``MalformedError`` when a signature is present but the structure is
  truncated or inconsistent.
- ``UnsupportedFeatureError`` for valid constructs the engine does not
  handle (ID3v2.2, multiplexed Ogg headers, ...).
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Iterator
from dataclasses import dataclass, field

from polytag.errors import ContainerNotFoundError, MalformedError, UnsupportedFeatureError
from polytag.model import ContainerKind

log = logging.getLogger(__name__)

ID3_HEADER_SIZE = 10
ID3_MAX_TAG_SIZE = 256 * 1024 * 1024


@dataclass(frozen=True)
class ContainerLocation:
    """Byte range of a tag container within a file.

    ``present`` is False for a zero-length anchor where a new container
    would be inserted, and for structural regions (FLAC metadata, MP4
    ``moov``) that currently hold no tag.
    """

    offset: int
    length: int
    kind: ContainerKind
    present: bool = True

    @property
    def end(self) -> int:
        return self.offset + self.length

    def slice(self, data: bytes) -> bytes:
        return data[self.offset : self.end]


class ByteCursor:
    """Bounds-checked reader over an immutable byte buffer.

    Every read past ``end`` raises ``MalformedError`` with the offset at
    which the short read happened; nothing is silently truncated.
    """

    def __init__(self, data: bytes, pos: int = 0, end: int | None = None):
        self.data = data
        self.pos = pos
        self.end = len(data) if end is None else end
        if not 0 <= self.pos <= self.end <= len(data):
            raise MalformedError("cursor bounds outside buffer", pos)

    @property
    def remaining(self) -> int:
        return self.end - self.pos

    def at_end(self) -> bool:
        return self.pos >= self.end

    def _check(self, n: int) -> None:
        if n < 0 or n > self.remaining:
            raise MalformedError(f"need {n} bytes, {self.remaining} remaining", self.pos)

    def peek(self, n: int) -> bytes:
        self._check(n)
        return self.data[self.pos : self.pos + n]

    def read(self, n: int) -> bytes:
        chunk = self.peek(n)
        self.pos += n
        return chunk

    def read_rest(self) -> bytes:
        return self.read(self.remaining)

    def skip(self, n: int) -> None:
        self._check(n)
        self.pos += n

    def seek(self, pos: int) -> None:
        if not 0 <= pos <= self.end:
            raise MalformedError("seek outside buffer", pos)
        self.pos = pos

    def sub(self, n: int) -> ByteCursor:
        """Cursor over the next ``n`` bytes; advances this cursor past them."""
        self._check(n)
        cursor = ByteCursor(self.data, self.pos, self.pos + n)
        self.pos += n
        return cursor

    def u8(self) -> int:
        return self.read(1)[0]

    def u16be(self) -> int:
        return struct.unpack(">H", self.read(2))[0]

    def u24be(self) -> int:
        return int.from_bytes(self.read(3), "big")

    def u32be(self) -> int:
        return struct.unpack(">I", self.read(4))[0]

    def u64be(self) -> int:
        return struct.unpack(">Q", self.read(8))[0]

    def u32le(self) -> int:
        return struct.unpack("<I", self.read(4))[0]

    def u64le(self) -> int:
        return struct.unpack("<Q", self.read(8))[0]


# ID3v2


def decode_syncsafe(raw: bytes) -> int:
    """Decode a 28-bit (or 35-bit) syncsafe integer.

    Raises ``MalformedError`` if any byte has its high bit set.
    """
    value = 0
    for byte in raw:
        if byte & 0x80:
            raise MalformedError("invalid syncsafe integer")
        value = (value << 7) | byte
    return value


def encode_syncsafe(value: int, width: int = 4) -> bytes:
    if value >= 1 << (7 * width):
        raise MalformedError(f"{value} does not fit in a {width}-byte syncsafe integer")
    return bytes((value >> (7 * (width - 1 - i))) & 0x7F for i in range(width))


@dataclass(frozen=True)
class Id3Header:
    major: int
    revision: int
    flags: int
    size: int

    @property
    def unsynchronised(self) -> bool:
        return bool(self.flags & 0x80)

    @property
    def extended(self) -> bool:
        return bool(self.flags & 0x40)

    @property
    def experimental(self) -> bool:
        return bool(self.flags & 0x20)

    @property
    def footer(self) -> bool:
        return self.major == 4 and bool(self.flags & 0x10)

    @property
    def total_size(self) -> int:
        return ID3_HEADER_SIZE + self.size + (ID3_HEADER_SIZE if self.footer else 0)


def parse_id3_header(data: bytes, offset: int = 0) -> Id3Header:
    """Parse and validate the 10-byte ID3v2 header at ``offset``."""
    if data[offset : offset + 3] != b"ID3":
        raise ContainerNotFoundError("no ID3v2 header")
    cursor = ByteCursor(data, offset + 3)
    if cursor.remaining < 7:
        raise MalformedError("truncated ID3v2 header", offset)
    major, revision, flags = cursor.u8(), cursor.u8(), cursor.u8()
    if major == 2:
        raise UnsupportedFeatureError("ID3v2.2 tags are not supported")
    if major not in (3, 4) or revision == 0xFF:
        raise UnsupportedFeatureError(f"unknown ID3v2 version 2.{major}.{revision}")
    invalid = flags & (0x0F if major == 4 else 0x1F)
    if invalid:
        raise MalformedError(f"invalid ID3v2.{major} header flags 0x{flags:02x}", offset + 5)
    size = decode_syncsafe(cursor.read(4))
    if size == 0 or size > ID3_MAX_TAG_SIZE:
        raise MalformedError(f"invalid ID3v2 tag size {size}", offset + 6)
    header = Id3Header(major=major, revision=revision, flags=flags, size=size)
    if offset + header.total_size > len(data):
        raise MalformedError(
            f"ID3v2 tag declares {header.total_size} bytes, file has {len(data) - offset}", offset
        )
    return header


def _locate_id3(data: bytes) -> ContainerLocation:
    header = parse_id3_header(data)
    return ContainerLocation(0, header.total_size, ContainerKind.ID3V2)


# FLAC

FLAC_STREAMINFO = 0
FLAC_PADDING = 1
FLAC_VORBIS_COMMENT = 4
FLAC_PICTURE = 6

FLAC_BLOCK_NAMES = {
    0: "STREAMINFO",
    1: "PADDING",
    2: "APPLICATION",
    3: "SEEKTABLE",
    4: "VORBIS_COMMENT",
    5: "CUESHEET",
    6: "PICTURE",
}


@dataclass(frozen=True)
class FlacBlock:
    block_type: int
    offset: int
    length: int
    is_last: bool

    @property
    def name(self) -> str:
        return FLAC_BLOCK_NAMES.get(self.block_type, f"BLOCK_{self.block_type}")

    @property
    def data_offset(self) -> int:
        return self.offset + 4

    @property
    def end(self) -> int:
        return self.data_offset + self.length


def iter_flac_blocks(data: bytes, offset: int = 4) -> Iterator[FlacBlock]:
    """Walk the FLAC metadata block chain starting after the ``fLaC`` marker."""
    cursor = ByteCursor(data, offset)
    while True:
        start = cursor.pos
        header = cursor.u8()
        block_type = header & 0x7F
        if block_type == 127:
            raise MalformedError("invalid FLAC metadata block type 127", start)
        length = cursor.u24be()
        if length > cursor.remaining:
            raise MalformedError(
                f"FLAC {FLAC_BLOCK_NAMES.get(block_type, block_type)} block overruns file", start
            )
        cursor.skip(length)
        block = FlacBlock(block_type, start, length, bool(header & 0x80))
        yield block
        if block.is_last:
            return


def _locate_flac(data: bytes) -> ContainerLocation:
    if data[:4] != b"fLaC":
        raise ContainerNotFoundError("no FLAC stream marker")
    blocks = list(iter_flac_blocks(data))
    if blocks[0].block_type != FLAC_STREAMINFO:
        raise MalformedError("FLAC stream does not start with STREAMINFO", 4)
    present = any(b.block_type == FLAC_VORBIS_COMMENT for b in blocks)
    return ContainerLocation(4, blocks[-1].end - 4, ContainerKind.FLAC, present)


# Ogg


def _make_crc_table() -> list[int]:
    table = []
    for i in range(256):
        r = i << 24
        for _ in range(8):
            r = ((r << 1) ^ 0x04C11DB7) if r & 0x80000000 else (r << 1)
        table.append(r & 0xFFFFFFFF)
    return table


_CRC_TABLE = _make_crc_table()


def ogg_crc(data: bytes) -> int:
    """CRC-32 as used by Ogg pages (poly 0x04c11db7, no reflection)."""
    crc = 0
    for byte in data:
        crc = ((crc << 8) & 0xFFFFFFFF) ^ _CRC_TABLE[((crc >> 24) ^ byte) & 0xFF]
    return crc


@dataclass
class OggPage:
    """One physical Ogg page."""

    serial: int
    sequence: int
    granule: int = 0
    header_type: int = 0
    segments: list[int] = field(default_factory=list)
    body: bytes = b""
    offset: int = 0

    @property
    def continued(self) -> bool:
        return bool(self.header_type & 0x01)

    @property
    def first(self) -> bool:
        return bool(self.header_type & 0x02)

    @property
    def last(self) -> bool:
        return bool(self.header_type & 0x04)

    @property
    def size(self) -> int:
        return 27 + len(self.segments) + len(self.body)

    @property
    def end(self) -> int:
        return self.offset + self.size

    @property
    def complete(self) -> bool:
        """Whether the final packet on this page ends on this page."""
        return bool(self.segments) and self.segments[-1] < 255

    @classmethod
    def parse(cls, data: bytes, offset: int) -> OggPage:
        cursor = ByteCursor(data, offset)
        if cursor.remaining < 27 or cursor.read(4) != b"OggS":
            raise MalformedError("expected Ogg page", offset)
        version = cursor.u8()
        if version != 0:
            raise UnsupportedFeatureError(f"Ogg stream structure version {version}")
        header_type = cursor.u8()
        granule = cursor.u64le()
        serial = cursor.u32le()
        sequence = cursor.u32le()
        crc = cursor.u32le()
        segments = list(cursor.read(cursor.u8()))
        body = cursor.read(sum(segments))
        page = cls(serial, sequence, granule, header_type, segments, body, offset)
        raw = bytearray(data[offset : page.end])
        raw[22:26] = b"\x00\x00\x00\x00"
        if ogg_crc(bytes(raw)) != crc:
            raise MalformedError("Ogg page CRC mismatch", offset)
        return page

    def to_bytes(self) -> bytes:
        header = struct.pack(
            "<4sBBQIIIB",
            b"OggS",
            0,
            self.header_type,
            self.granule & 0xFFFFFFFFFFFFFFFF,
            self.serial,
            self.sequence,
            0,
            len(self.segments),
        )
        raw = bytearray(header + bytes(self.segments) + self.body)
        raw[22:26] = struct.pack("<I", ogg_crc(bytes(raw)))
        return bytes(raw)


def iter_ogg_pages(data: bytes, offset: int = 0, end: int | None = None) -> Iterator[OggPage]:
    end = len(data) if end is None else end
    while offset < end:
        page = OggPage.parse(data, offset)
        yield page
        offset = page.end


def split_packets(pages: list[OggPage]) -> list[bytes]:
    """Reassemble complete packets from consecutive pages of one stream.

    A trailing incomplete packet is returned as well; callers that need
    only complete packets count them against ``page.complete``.
    """
    packets: list[bytes] = []
    current = bytearray()
    for page in pages:
        pos = 0
        for lacing in page.segments:
            current += page.body[pos : pos + lacing]
            pos += lacing
            if lacing < 255:
                packets.append(bytes(current))
                current = bytearray()
    if current:
        packets.append(bytes(current))
    return packets


OGG_CODECS = {
    b"\x01vorbis": (ContainerKind.OGG_VORBIS, 3),
    b"OpusHead": (ContainerKind.OGG_OPUS, 2),
}


def ogg_stream_kind(data: bytes) -> ContainerKind:
    if data[:4] != b"OggS":
        raise ContainerNotFoundError("no Ogg page at start of file")
    first = OggPage.parse(data, 0)
    for magic, (kind, _) in OGG_CODECS.items():
        if first.body.startswith(magic):
            return kind
    raise UnsupportedFeatureError("Ogg stream is neither Vorbis nor Opus")


def locate_ogg_headers(data: bytes) -> tuple[ContainerLocation, list[OggPage]]:
    """Find the pages carrying the comment (and Vorbis setup) header packets.

    Returns the location covering those pages and the parsed pages.
    """
    kind = ogg_stream_kind(data)
    wanted = next(count for k, count in OGG_CODECS.values() if k is kind)
    first = OggPage.parse(data, 0)
    if not first.first or len(first.segments) == 0 or not first.complete:
        raise MalformedError("first Ogg page must hold only the identification header", 0)
    if len(split_packets([first])) != 1:
        raise MalformedError("first Ogg page must hold only the identification header", 0)

    pages: list[OggPage] = []
    finished = 1
    for page in iter_ogg_pages(data, first.end):
        if page.serial != first.serial:
            raise UnsupportedFeatureError("multiplexed Ogg header pages are not supported")
        pages.append(page)
        finished += sum(1 for lacing in page.segments if lacing < 255)
        if finished >= wanted:
            if finished > wanted or not page.complete:
                raise UnsupportedFeatureError("audio packet shares a page with header packets")
            break
    else:
        raise MalformedError("Ogg stream ends inside header packets", first.end)

    start = pages[0].offset
    location = ContainerLocation(start, pages[-1].end - start, kind)
    return location, pages


def _locate_ogg(data: bytes, kind: ContainerKind) -> ContainerLocation:
    location, _ = locate_ogg_headers(data)
    if location.kind is not kind:
        raise ContainerNotFoundError(f"Ogg stream is {location.kind}, not {kind}")
    return location


# MP4


@dataclass(frozen=True)
class Box:
    """An MP4/QuickTime box (atom) header."""

    type: str
    offset: int
    header_size: int
    size: int

    @property
    def data_offset(self) -> int:
        return self.offset + self.header_size

    @property
    def end(self) -> int:
        return self.offset + self.size

    @property
    def data_size(self) -> int:
        return self.size - self.header_size


def box_type(raw: bytes) -> str:
    return raw.decode("latin-1")


def iter_boxes(data: bytes, start: int, end: int) -> Iterator[Box]:
    """Walk sibling boxes in ``data[start:end]`` validating every size."""
    cursor = ByteCursor(data, start, end)
    while cursor.remaining >= 8:
        offset = cursor.pos
        size = cursor.u32be()
        kind = box_type(cursor.read(4))
        header_size = 8
        if size == 1:
            size = cursor.u64be()
            header_size = 16
        elif size == 0:
            size = end - offset
        if size < header_size:
            raise MalformedError(f"box {kind!r} declares size {size}", offset)
        if size > end - offset:
            raise MalformedError(
                f"box {kind!r} declares {size} bytes but only {end - offset} remain", offset
            )
        cursor.seek(offset + size)
        yield Box(kind, offset, header_size, size)
    if cursor.remaining:
        # QuickTime udta may end with a 4-byte zero terminator.
        log.debug("Ignoring %d trailing bytes at offset %d", cursor.remaining, cursor.pos)


def find_box(data: bytes, parent_start: int, parent_end: int, kind: str) -> Box | None:
    for box in iter_boxes(data, parent_start, parent_end):
        if box.type == kind:
            return box
    return None


def meta_children_offset(data: bytes, meta: Box) -> int:
    """Offset of the first child inside a ``meta`` box.

    ISO ``meta`` is a full box (4 bytes of version/flags); some QuickTime
    writers emit it as a plain container.
    """
    probe = data[meta.data_offset + 4 : meta.data_offset + 8]
    if probe in (b"hdlr", b"ilst", b"keys", b"free"):
        return meta.data_offset
    return meta.data_offset + 4


def find_ilst(data: bytes, moov: Box) -> Box | None:
    udta = find_box(data, moov.data_offset, moov.end, "udta")
    if udta is None:
        return None
    meta = find_box(data, udta.data_offset, udta.end, "meta")
    if meta is None:
        return None
    return find_box(data, meta_children_offset(data, meta), meta.end, "ilst")


def _is_mp4(data: bytes) -> bool:
    return len(data) >= 12 and data[4:8] == b"ftyp"


def _locate_mp4(data: bytes) -> ContainerLocation:
    if not _is_mp4(data):
        raise ContainerNotFoundError("no MP4 ftyp box")
    moov = find_box(data, 0, len(data), "moov")
    if moov is None:
        raise ContainerNotFoundError("MP4 file has no moov box")
    present = find_ilst(data, moov) is not None
    return ContainerLocation(moov.offset, moov.size, ContainerKind.MP4, present)


# Public entry points


def detect(data: bytes) -> ContainerKind:
    """Guess the container kind of a file from its leading bytes."""
    if data[:3] == b"ID3":
        return ContainerKind.ID3V2
    if data[:4] == b"fLaC":
        return ContainerKind.FLAC
    if data[:4] == b"OggS":
        return ogg_stream_kind(data)
    if _is_mp4(data):
        return ContainerKind.MP4
    if len(data) >= 2 and data[0] == 0xFF and data[1] & 0xE0 == 0xE0:
        # Bare MPEG audio frame sync: an MP3 without a tag yet.
        return ContainerKind.ID3V2
    raise ContainerNotFoundError("unrecognized file type")


def locate(data: bytes, kind: ContainerKind) -> ContainerLocation:
    """Locate the tag container of ``kind`` in ``data``."""
    if kind is ContainerKind.ID3V2:
        location = _locate_id3(data)
    elif kind is ContainerKind.FLAC:
        location = _locate_flac(data)
    elif kind in (ContainerKind.OGG_VORBIS, ContainerKind.OGG_OPUS):
        location = _locate_ogg(data, kind)
    elif kind is ContainerKind.MP4:
        location = _locate_mp4(data)
    else:
        raise UnsupportedFeatureError(f"no scanner for {kind}")
    log.debug("Located %s container at %d+%d", kind, location.offset, location.length)
    return location


def anchor(data: bytes, kind: ContainerKind) -> ContainerLocation:
    """Zero-length location where a brand new container would be inserted.

    Only ID3v2 can be absent from an otherwise valid file; the other
    containers always have a structural region to rewrite.
    """
    if kind is ContainerKind.ID3V2:
        return ContainerLocation(0, 0, kind, present=False)
    return locate(data, kind)


def scan(data: bytes, kind: ContainerKind | None = None) -> ContainerLocation:
    """Detect (if needed) and locate, falling back to an insertion anchor."""
    if kind is None:
        kind = detect(data)
    try:
        return locate(data, kind)
    except ContainerNotFoundError:
        if kind is not ContainerKind.ID3V2:
            raise
        log.debug("No ID3v2 tag present, anchoring a new one at offset 0")
        return anchor(data, kind)
