"""Tests for container detection and location."""

from __future__ import annotations

import struct

import pytest

from polytag.errors import ContainerNotFoundError, MalformedError, UnsupportedFeatureError
from polytag.model import ContainerKind
from polytag.scanner import (
    ByteCursor,
    anchor,
    decode_syncsafe,
    detect,
    encode_syncsafe,
    iter_boxes,
    locate,
    ogg_crc,
    scan,
)
from tests.builders import (
    MPEG_AUDIO,
    STREAMINFO,
    box,
    flac_block,
    flac_bytes,
    id3_tag,
    mp3_bytes,
    mp4_bytes,
    mp4_text,
    ogg_opus_bytes,
    ogg_page,
    ogg_vorbis_bytes,
    text_frame,
)


def test_syncsafe_round_trip():
    """Syncsafe integers keep the high bit of every byte clear."""
    assert encode_syncsafe(0) == b"\x00\x00\x00\x00"
    assert encode_syncsafe(257) == b"\x00\x00\x02\x01"
    assert decode_syncsafe(b"\x00\x00\x02\x01") == 257
    assert decode_syncsafe(encode_syncsafe((1 << 28) - 1)) == (1 << 28) - 1


def test_syncsafe_rejects_high_bit():
    with pytest.raises(MalformedError):
        decode_syncsafe(b"\x00\x80\x00\x00")
    with pytest.raises(MalformedError):
        encode_syncsafe(1 << 28)


def test_byte_cursor_bounds():
    """Short reads raise instead of truncating."""
    cursor = ByteCursor(b"\x00\x01\x02\x03\x04")
    assert cursor.u16be() == 1
    assert cursor.remaining == 3
    with pytest.raises(MalformedError, match="at offset 2"):
        cursor.read(4)
    sub = cursor.sub(2)
    assert sub.read_rest() == b"\x02\x03"
    assert cursor.read_rest() == b"\x04"
    assert cursor.at_end()


def test_ogg_crc_known_value():
    """CRC of an empty buffer is zero and the checksum is not reflected."""
    assert ogg_crc(b"") == 0
    assert ogg_crc(b"\x00\x00\x00\x01") == 0x04C11DB7


# =============================================================================
# Detection
# =============================================================================


@pytest.mark.parametrize(
    "data,kind",
    [
        (mp3_bytes(text_frame("TIT2", "x")), ContainerKind.ID3V2),
        (MPEG_AUDIO, ContainerKind.ID3V2),
        (flac_bytes(["TITLE=x"]), ContainerKind.FLAC),
        (ogg_vorbis_bytes(), ContainerKind.OGG_VORBIS),
        (ogg_opus_bytes(), ContainerKind.OGG_OPUS),
        (mp4_bytes(), ContainerKind.MP4),
    ],
)
def test_detect(data, kind):
    assert detect(data) is kind


def test_detect_unknown():
    with pytest.raises(ContainerNotFoundError):
        detect(b"RIFF\x00\x00\x00\x00WAVEfmt ")


def test_detect_unknown_ogg_codec():
    data = ogg_page([b"\x7fFLAC" + bytes(20)], 0, header_type=0x02)
    with pytest.raises(UnsupportedFeatureError):
        detect(data)


# =============================================================================
# ID3v2
# =============================================================================


def test_locate_id3_covers_header_and_body():
    tag = id3_tag(text_frame("TIT2", "Title"), padding=20)
    location = locate(tag + MPEG_AUDIO, ContainerKind.ID3V2)
    assert (location.offset, location.length) == (0, len(tag))
    assert location.present
    assert location.slice(tag + MPEG_AUDIO) == tag


def test_locate_id3_with_footer():
    body = text_frame("TIT2", "Title")
    tag = id3_tag(body, flags=0x10)
    footer = b"3DI" + tag[3:10]
    location = locate(tag + footer + MPEG_AUDIO, ContainerKind.ID3V2)
    assert location.length == len(tag) + 10


def test_scan_anchors_missing_id3_tag():
    """A bare MPEG stream gets a zero-length insertion point."""
    location = scan(MPEG_AUDIO)
    assert location == anchor(MPEG_AUDIO, ContainerKind.ID3V2)
    assert (location.offset, location.length, location.present) == (0, 0, False)


def test_id3v22_unsupported():
    data = b"ID3\x02\x00\x00\x00\x00\x00\x10" + bytes(16) + MPEG_AUDIO
    with pytest.raises(UnsupportedFeatureError, match="ID3v2.2"):
        scan(data)


def test_id3_zero_size_is_malformed():
    with pytest.raises(MalformedError, match="tag size 0"):
        scan(b"ID3\x04\x00\x00\x00\x00\x00\x00" + MPEG_AUDIO)


def test_id3_size_beyond_file_is_malformed():
    data = b"ID3\x04\x00\x00" + encode_syncsafe(100_000) + bytes(50)
    with pytest.raises(MalformedError, match="declares"):
        scan(data)


def test_id3_invalid_flags():
    data = b"ID3\x04\x00\x01" + encode_syncsafe(10) + bytes(10)
    with pytest.raises(MalformedError, match="flags"):
        scan(data)


# =============================================================================
# FLAC
# =============================================================================


def test_locate_flac_covers_metadata_chain():
    data = flac_bytes(["TITLE=x"], padding=64)
    location = locate(data, ContainerKind.FLAC)
    assert location.offset == 4
    assert data[location.end : location.end + 4] == b"\xff\xf8\x69\x08"
    assert location.present


def test_locate_flac_without_comments():
    location = locate(flac_bytes(None), ContainerKind.FLAC)
    assert not location.present
    assert location.length > 0


def test_flac_must_start_with_streaminfo():
    data = b"fLaC" + flac_block(1, bytes(8)) + flac_block(0, STREAMINFO, last=True)
    with pytest.raises(MalformedError, match="STREAMINFO"):
        locate(data, ContainerKind.FLAC)


def test_flac_block_overrun():
    data = b"fLaC" + bytes((0x80,)) + (1000).to_bytes(3, "big") + STREAMINFO
    with pytest.raises(MalformedError, match="overruns"):
        locate(data, ContainerKind.FLAC)


def test_flac_missing_marker():
    with pytest.raises(ContainerNotFoundError):
        locate(MPEG_AUDIO, ContainerKind.FLAC)


# =============================================================================
# Ogg
# =============================================================================


def test_locate_ogg_header_pages():
    """The location spans the comment and setup pages, not the identification page."""
    data = ogg_vorbis_bytes(["TITLE=x"])
    location = locate(data, ContainerKind.OGG_VORBIS)
    first_page_size = 27 + 1 + 30
    assert location.offset == first_page_size
    assert data[location.offset : location.offset + 4] == b"OggS"
    assert data[location.end : location.end + 4] == b"OggS"


def test_locate_ogg_wrong_kind():
    with pytest.raises(ContainerNotFoundError):
        locate(ogg_opus_bytes(), ContainerKind.OGG_VORBIS)


def test_ogg_crc_mismatch():
    data = bytearray(ogg_vorbis_bytes(["TITLE=x"]))
    data[40] ^= 0xFF
    with pytest.raises(MalformedError, match="CRC"):
        scan(bytes(data))


def test_ogg_audio_sharing_header_page():
    """An audio packet on the last header page cannot be spliced safely."""
    comment = b"OpusTags" + struct.pack("<I", 0) + struct.pack("<I", 0)
    data = ogg_page([b"OpusHead" + bytes(11)], 0, header_type=0x02) + ogg_page(
        [comment, b"audio"], 1
    )
    with pytest.raises(UnsupportedFeatureError, match="shares a page"):
        scan(data)


def test_ogg_truncated_headers():
    data = ogg_page([b"\x01vorbis" + bytes(23)], 0, header_type=0x02) + ogg_page(
        [b"\x03vorbis" + bytes(8) + b"\x01"], 1
    )
    with pytest.raises(MalformedError, match="ends inside"):
        scan(data)


def test_ogg_first_page_must_hold_one_packet():
    data = ogg_page([b"OpusHead" + bytes(11), b"OpusTags"], 0, header_type=0x02)
    with pytest.raises(MalformedError, match="identification header"):
        scan(data)


# =============================================================================
# MP4
# =============================================================================


def test_locate_mp4_moov():
    data = mp4_bytes([mp4_text("\xa9nam", "x")])
    location = locate(data, ContainerKind.MP4)
    assert data[location.offset + 4 : location.offset + 8] == b"moov"
    assert location.present


def test_locate_mp4_without_ilst():
    location = locate(mp4_bytes(None), ContainerKind.MP4)
    assert not location.present


def test_mp4_without_moov():
    data = box("ftyp", b"M4A \x00\x00\x00\x00") + box("mdat", b"x" * 16)
    with pytest.raises(ContainerNotFoundError, match="moov"):
        scan(data)


def test_oversized_box_is_malformed():
    """A box claiming more bytes than its parent holds is rejected."""
    data = box("ftyp", b"M4A \x00\x00\x00\x00") + struct.pack(">I4s", 10_000, b"moov") + bytes(20)
    with pytest.raises(MalformedError, match="declares 10000 bytes"):
        scan(data)


def test_undersized_box_is_malformed():
    with pytest.raises(MalformedError, match="declares size 4"):
        list(iter_boxes(struct.pack(">I4s", 4, b"free") + bytes(8), 0, 16))


def test_box_zero_size_extends_to_parent_end():
    data = struct.pack(">I4s", 0, b"mdat") + bytes(24)
    [only] = list(iter_boxes(data, 0, len(data)))
    assert only.size == len(data)


def test_box_64bit_size():
    data = struct.pack(">I4sQ", 1, b"free", 24) + bytes(8)
    [only] = list(iter_boxes(data, 0, len(data)))
    assert (only.header_size, only.size, only.data_size) == (16, 24, 8)
