"""Vorbis comments embedded in Ogg Vorbis and Ogg Opus streams.

The comment header is the second packet of the logical stream. For Vorbis
it is followed by the setup header, and the two usually share pages, so
both packets are re-paginated together. When the number of header pages
changes, every later page of the stream is renumbered and its CRC
recomputed; the splice then extends to the end of the file.
"""

from __future__ import annotations

import logging

from polytag.codecs.base import Splice, TagCodec
from polytag.codecs.vorbis import decode_comments, encode_comment_block
from polytag.errors import MalformedError
from polytag.model import ContainerKind, TagFormat, TagModel, UnrecognizedBlock
from polytag.scanner import ByteCursor, ContainerLocation, OggPage, iter_ogg_pages, split_packets

log = logging.getLogger(__name__)

VORBIS_COMMENT_MAGIC = b"\x03vorbis"
OPUS_COMMENT_MAGIC = b"OpusTags"
OPUS_TRAILER = "OPUS_TRAILER"


def paginate(packets: list[bytes], serial: int, sequence: int) -> list[OggPage]:
    """Lay ``packets`` out on consecutive pages starting at ``sequence``."""
    pages: list[OggPage] = []
    segments: list[int] = []
    body = bytearray()
    continued = False

    def flush() -> None:
        nonlocal segments, body, continued
        page = OggPage(
            serial=serial,
            sequence=sequence + len(pages),
            header_type=0x01 if continued else 0,
            segments=segments,
            body=bytes(body),
        )
        if all(s == 255 for s in segments):
            page.granule = -1
        pages.append(page)
        continued = segments[-1] == 255
        segments = []
        body = bytearray()

    for packet in packets:
        lacing = [255] * (len(packet) // 255) + [len(packet) % 255]
        pos = 0
        for value in lacing:
            if len(segments) == 255:
                flush()
            segments.append(value)
            body += packet[pos : pos + value]
            pos += value
    if segments:
        flush()
    return pages


class OggCodec(TagCodec):
    """Comment header codec for Ogg Vorbis and Ogg Opus."""

    kinds = (ContainerKind.OGG_VORBIS, ContainerKind.OGG_OPUS)
    formats = (TagFormat.VORBIS,)

    def __init__(self, kind: ContainerKind = ContainerKind.OGG_VORBIS):
        if kind not in self.kinds:
            raise ValueError(f"OggCodec cannot handle {kind}")
        self.kind = kind

    @property
    def magic(self) -> bytes:
        return OPUS_COMMENT_MAGIC if self.kind is ContainerKind.OGG_OPUS else VORBIS_COMMENT_MAGIC

    def _header_packets(
        self, data: bytes, location: ContainerLocation
    ) -> tuple[list[OggPage], list[bytes]]:
        pages = list(iter_ogg_pages(data, location.offset, location.end))
        packets = split_packets(pages)
        if not packets or not packets[0].startswith(self.magic):
            raise MalformedError("Ogg comment header packet not found", location.offset)
        return pages, packets

    def decode(self, data: bytes, location: ContainerLocation) -> TagModel:
        _, packets = self._header_packets(data, location)
        cursor = ByteCursor(packets[0], len(self.magic))
        vendor, entries, blocks = decode_comments(cursor)
        if self.kind is ContainerKind.OGG_OPUS and cursor.remaining:
            # Opus allows binary data after the comment list.
            blocks.append(UnrecognizedBlock(OPUS_TRAILER, cursor.read_rest(), TagFormat.VORBIS))
        elif self.kind is ContainerKind.OGG_VORBIS and (
            cursor.at_end() or not (cursor.u8() & 1)
        ):
            raise MalformedError(
                "Vorbis comment header is missing its framing bit", location.offset
            )
        log.debug("Decoded Ogg comment header: %d entries", len(entries))
        return TagModel(
            native_format=TagFormat.VORBIS,
            entries=tuple(entries),
            unrecognized_blocks=tuple(blocks),
            vendor=vendor,
        )

    def encode(self, model: TagModel) -> bytes:
        """The complete comment header packet."""
        self.check_format(model)
        packet = self.magic + encode_comment_block(model)
        if self.kind is ContainerKind.OGG_VORBIS:
            return packet + b"\x01"
        trailer = b"".join(
            b.data
            for b in model.unrecognized_blocks
            if b.key == OPUS_TRAILER and b.native_format is TagFormat.VORBIS
        )
        return packet + trailer

    def splice(
        self,
        model: TagModel,
        data: bytes,
        location: ContainerLocation,
        padding: int | None = None,
    ) -> Splice:
        pages, packets = self._header_packets(data, location)
        first = pages[0]
        new_pages = paginate([self.encode(model), *packets[1:]], first.serial, first.sequence)
        payload = b"".join(page.to_bytes() for page in new_pages)

        shift = len(new_pages) - len(pages)
        if shift == 0:
            return Splice(location, payload)

        log.debug("Header page count changed by %d, renumbering stream pages", shift)
        rest = bytearray()
        for page in iter_ogg_pages(data, location.end):
            if page.serial == first.serial:
                page.sequence += shift
                rest += page.to_bytes()
            else:
                rest += data[page.offset : page.end]
        extended = ContainerLocation(location.offset, len(data) - location.offset, location.kind)
        return Splice(extended, payload + bytes(rest))
