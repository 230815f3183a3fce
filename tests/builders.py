"""Byte builders for synthetic audio files.

Every test file is synthesized in memory: minimal but structurally valid
MP3, FLAC, Ogg Vorbis, Ogg Opus and MP4 files with a recognizable audio
payload, so tests can check both the tag and that the audio survived.
"""

from __future__ import annotations

import struct
from collections.abc import Sequence

from polytag.scanner import (
    OggPage,
    encode_syncsafe,
    find_box,
    iter_boxes,
    iter_ogg_pages,
)

# =============================================================================
# Audio payloads
# =============================================================================

MPEG_AUDIO = b"\xff\xfb\x90\x00" + bytes(range(256)) * 4
FLAC_AUDIO = b"\xff\xf8\x69\x08" + bytes(range(255, -1, -1)) * 4
MP4_AUDIO = b"\x00\x11\x22\x33" * 300

# =============================================================================
# ID3v2
# =============================================================================


def id3_frame(frame_id: str, payload: bytes, version: int = 4, flags: int = 0) -> bytes:
    """One frame with a header for the given major version."""
    size = encode_syncsafe(len(payload)) if version == 4 else struct.pack(">I", len(payload))
    return frame_id.encode("ascii") + size + struct.pack(">H", flags) + payload


def text_frame(frame_id: str, *texts: str, version: int = 4, encoding: int = 0) -> bytes:
    """Text frame; several texts are null-separated."""
    codec = {0: "latin-1", 1: "utf-16", 2: "utf-16-be", 3: "utf-8"}[encoding]
    sep = b"\x00\x00" if encoding in (1, 2) else b"\x00"
    body = sep.join(t.encode(codec) for t in texts)
    return id3_frame(frame_id, bytes((encoding,)) + body, version)


def id3_tag(*frames: bytes, version: int = 4, padding: int = 0, flags: int = 0) -> bytes:
    body = b"".join(frames) + b"\x00" * padding
    return b"ID3" + bytes((version, 0, flags)) + encode_syncsafe(len(body)) + body


def mp3_bytes(*frames: bytes, version: int = 4, padding: int = 0) -> bytes:
    """An MP3 with an ID3v2 tag holding ``frames`` (no tag when none given)."""
    if not frames and not padding:
        return MPEG_AUDIO
    return id3_tag(*frames, version=version, padding=padding) + MPEG_AUDIO


# =============================================================================
# FLAC / Vorbis comments
# =============================================================================

STREAMINFO = struct.pack(">HH", 4096, 4096) + bytes(6) + bytes.fromhex("0ac442f000000000")
STREAMINFO += bytes(16)


def comment_block(
    comments: Sequence[str | bytes], vendor: str = "reference libFLAC 1.4.3"
) -> bytes:
    """Vorbis comment block body (no framing bit)."""
    raw_vendor = vendor.encode("utf-8")
    parts = [struct.pack("<I", len(raw_vendor)), raw_vendor, struct.pack("<I", len(comments))]
    for comment in comments:
        raw = comment.encode("utf-8") if isinstance(comment, str) else comment
        parts += [struct.pack("<I", len(raw)), raw]
    return b"".join(parts)


def flac_block(block_type: int, body: bytes, last: bool = False) -> bytes:
    return bytes(((0x80 if last else 0) | block_type,)) + len(body).to_bytes(3, "big") + body


def flac_bytes(
    comments: Sequence[str | bytes] | None = (),
    vendor: str = "reference libFLAC 1.4.3",
    padding: int | None = 64,
    extra: Sequence[tuple[int, bytes]] = (),
) -> bytes:
    """A FLAC stream: STREAMINFO, optional comment block, extra blocks, padding."""
    blocks: list[tuple[int, bytes]] = [(0, STREAMINFO)]
    if comments is not None:
        blocks.append((4, comment_block(comments, vendor)))
    blocks.extend(extra)
    if padding is not None:
        blocks.append((1, b"\x00" * padding))
    chain = b"".join(
        flac_block(kind, body, last=i == len(blocks) - 1) for i, (kind, body) in enumerate(blocks)
    )
    return b"fLaC" + chain + FLAC_AUDIO


def flac_picture(
    data: bytes, mime: str = "image/png", picture_type: int = 3, desc: str = ""
) -> bytes:
    """FLAC PICTURE structure (width/height/depth/colours zeroed)."""
    raw_mime = mime.encode("ascii")
    raw_desc = desc.encode("utf-8")
    return (
        struct.pack(">II", picture_type, len(raw_mime))
        + raw_mime
        + struct.pack(">I", len(raw_desc))
        + raw_desc
        + struct.pack(">IIIII", 0, 0, 0, 0, len(data))
        + data
    )


# =============================================================================
# Ogg
# =============================================================================

OGG_SERIAL = 0x1234ABCD
VORBIS_IDENT = b"\x01vorbis" + struct.pack("<IBIiiiBB", 0, 2, 44100, 0, 128000, 0, 0xB8, 1)
VORBIS_SETUP = b"\x05vorbis" + bytes(range(64))
OPUS_HEAD = b"OpusHead" + struct.pack("<BBHIhB", 1, 2, 312, 48000, 0, 0)
OGG_AUDIO_PACKETS = [bytes([n]) * 300 for n in range(1, 5)]


def lacing(packet: bytes) -> list[int]:
    return [255] * (len(packet) // 255) + [len(packet) % 255]


def ogg_page(
    packets: Sequence[bytes],
    sequence: int,
    header_type: int = 0,
    granule: int = 0,
    serial: int = OGG_SERIAL,
) -> bytes:
    """A page holding complete ``packets`` only."""
    segments = [value for packet in packets for value in lacing(packet)]
    page = OggPage(serial, sequence, granule, header_type, segments, b"".join(packets))
    return page.to_bytes()


def _ogg_stream(ident: bytes, headers: list[bytes]) -> bytes:
    pages = [ogg_page([ident], 0, header_type=0x02), ogg_page(headers, 1)]
    for i, packet in enumerate(OGG_AUDIO_PACKETS):
        last = i == len(OGG_AUDIO_PACKETS) - 1
        header_type = 0x04 if last else 0
        pages.append(ogg_page([packet], i + 2, header_type=header_type, granule=960 * (i + 1)))
    return b"".join(pages)


def ogg_vorbis_bytes(
    comments: Sequence[str | bytes] = (), vendor: str = "Xiph.Org libVorbis"
) -> bytes:
    comment = b"\x03vorbis" + comment_block(comments, vendor) + b"\x01"
    return _ogg_stream(VORBIS_IDENT, [comment, VORBIS_SETUP])


def ogg_opus_bytes(comments: Sequence[str | bytes] = (), vendor: str = "libopus 1.4") -> bytes:
    return _ogg_stream(OPUS_HEAD, [b"OpusTags" + comment_block(comments, vendor)])


def ogg_audio_pages(data: bytes) -> list[tuple[int, bytes]]:
    """``(sequence, body)`` of every page holding one of ``OGG_AUDIO_PACKETS``."""
    return [
        (page.sequence, page.body)
        for page in iter_ogg_pages(data)
        if page.body in OGG_AUDIO_PACKETS
    ]


# =============================================================================
# MP4
# =============================================================================

HDLR = b"\x00" * 8 + b"mdirappl" + b"\x00" * 9


def box(kind: str, payload: bytes) -> bytes:
    return struct.pack(">I4s", len(payload) + 8, kind.encode("latin-1")) + payload


def mp4_item(code: str, data_type: int, *payloads: bytes) -> bytes:
    return box(code, b"".join(box("data", struct.pack(">II", data_type, 0) + p) for p in payloads))


def mp4_text(code: str, *texts: str) -> bytes:
    return mp4_item(code, 1, *(t.encode("utf-8") for t in texts))


def mp4_freeform(name: str, *texts: str, mean: str = "com.apple.iTunes") -> bytes:
    payload = box("mean", b"\x00" * 4 + mean.encode()) + box("name", b"\x00" * 4 + name.encode())
    for text in texts:
        payload += box("data", struct.pack(">II", 1, 0) + text.encode("utf-8"))
    return box("----", payload)


def mp4_bytes(items: Sequence[bytes] | None = (), mdat_first: bool = False) -> bytes:
    """An M4A with one track whose single chunk points at ``MP4_AUDIO``.

    ``items=None`` builds a ``moov`` without any ``udta``.
    """
    ftyp = box("ftyp", b"M4A \x00\x00\x02\x00M4A isommp42")
    mdat = box("mdat", MP4_AUDIO)

    def moov(chunk_offset: int) -> bytes:
        stco = box("stco", b"\x00" * 4 + struct.pack(">II", 1, chunk_offset))
        trak = box("trak", box("mdia", box("minf", box("stbl", stco))))
        udta = b""
        if items is not None:
            meta = box("meta", b"\x00" * 4 + box("hdlr", HDLR) + box("ilst", b"".join(items)))
            udta = box("udta", meta)
        return box("moov", box("mvhd", bytes(100)) + trak + udta)

    if mdat_first:
        return ftyp + mdat + moov(len(ftyp) + 8)
    size = len(moov(0))
    return ftyp + moov(len(ftyp) + size + 8) + mdat


def mp4_chunk_offset(data: bytes) -> int:
    """The single ``stco`` entry of a file built by ``mp4_bytes``."""
    moov = find_box(data, 0, len(data), "moov")
    assert moov is not None
    current = moov
    for name in ("trak", "mdia", "minf", "stbl", "stco"):
        found = find_box(data, current.data_offset, current.end, name)
        assert found is not None, name
        current = found
    return struct.unpack(">I", data[current.data_offset + 8 : current.data_offset + 12])[0]


def top_level_boxes(data: bytes) -> list[str]:
    return [b.type for b in iter_boxes(data, 0, len(data))]
