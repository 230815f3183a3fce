"""Tests for the Vorbis comment codec and FLAC metadata embedding."""

from __future__ import annotations

import base64

import pytest

from polytag.codecs.vorbis import (
    DEFAULT_VENDOR,
    FlacCodec,
    decode_comments,
    decode_picture,
    encode_comment_block,
    encode_picture,
)
from polytag.errors import MalformedError, UnsupportedFeatureError
from polytag.model import Binary, ContainerKind, TagEntry, TagFormat, TagModel
from polytag.scanner import ByteCursor, ContainerLocation, iter_flac_blocks, scan
from tests.builders import FLAC_AUDIO, STREAMINFO, comment_block, flac_bytes, flac_picture


def decode(data: bytes) -> TagModel:
    return FlacCodec().decode(data, scan(data))


def block_types(data: bytes) -> list[int]:
    return [b.block_type for b in iter_flac_blocks(data)]


# =============================================================================
# Comment block
# =============================================================================


def test_decode_comments_keys_are_case_insensitive():
    vendor, entries, blocks = decode_comments(
        ByteCursor(comment_block(["title=One", "Artist=Two"], vendor="enc 1.0"))
    )
    assert vendor == "enc 1.0"
    assert [(e.identifier, e.value) for e in entries] == [("TITLE", "One"), ("ARTIST", "Two")]
    # Original spelling is kept for re-encoding
    assert entries[0].hint.key == "title"
    assert not blocks


def test_repeated_singular_keys_merge():
    _, entries, _ = decode_comments(ByteCursor(comment_block(["ARTIST=A", "ARTIST=B"])))
    assert len(entries) == 1
    assert entries[0].value == ["A", "B"]


def test_repeatable_keys_stay_separate():
    _, entries, _ = decode_comments(ByteCursor(comment_block(["COMMENT=a", "COMMENT=b"])))
    assert [e.value for e in entries] == ["a", "b"]


def test_invalid_comments_kept_verbatim():
    raw = [b"no separator", b"K\xffY=value", "TITLE=ok"]
    _, entries, blocks = decode_comments(ByteCursor(comment_block(raw)))
    assert [e.identifier for e in entries] == ["TITLE"]
    assert [b.data for b in blocks] == [b"no separator", b"K\xffY=value"]
    assert all(b.key == "FIELD" for b in blocks)


def test_value_may_contain_equals():
    _, entries, _ = decode_comments(ByteCursor(comment_block(["DESCRIPTION=a=b"])))
    assert entries[0].value == "a=b"


def test_comment_count_overrun():
    raw = comment_block([])[:-4] + (1000).to_bytes(4, "little")
    with pytest.raises(MalformedError, match="comment count"):
        decode_comments(ByteCursor(raw))


def test_metadata_block_picture_comment():
    picture = Binary(b"\x89PNG", "image/png", 3, "front")
    encoded = base64.b64encode(encode_picture(picture)).decode()
    _, entries, _ = decode_comments(
        ByteCursor(comment_block([f"METADATA_BLOCK_PICTURE={encoded}"]))
    )
    assert entries[0].identifier == "PICTURE"
    assert entries[0].value == picture


def test_picture_structure_round_trip():
    raw = flac_picture(b"jpegdata", mime="image/jpeg", picture_type=4, desc="back")
    picture = decode_picture(raw)
    assert picture == Binary(b"jpegdata", "image/jpeg", 4, "back")
    assert encode_picture(picture) == raw


def test_encode_comment_block_keeps_key_spelling():
    model = TagModel(
        TagFormat.VORBIS,
        entries=decode_comments(ByteCursor(comment_block(["Title=x"])))[1],
        vendor="v",
    )
    assert encode_comment_block(model) == comment_block(["Title=x"], vendor="v")


def test_encode_comment_block_default_vendor():
    model = TagModel(TagFormat.VORBIS, entries=(TagEntry("ARTIST", ["A", "B"]),))
    assert encode_comment_block(model) == comment_block(
        ["ARTIST=A", "ARTIST=B"], vendor=DEFAULT_VENDOR
    )


def test_encode_rejects_invalid_key():
    model = TagModel(TagFormat.VORBIS, entries=(TagEntry("BAD=KEY", "x"),))
    with pytest.raises(UnsupportedFeatureError, match="Vorbis comment field name"):
        encode_comment_block(model)


def test_encode_rejects_binary_outside_picture():
    model = TagModel(TagFormat.VORBIS, entries=(TagEntry("TITLE", Binary(b"x")),))
    with pytest.raises(UnsupportedFeatureError, match="binary"):
        encode_comment_block(model)


# =============================================================================
# FLAC
# =============================================================================


def test_flac_decode():
    model = decode(flac_bytes(["TITLE=Sinnerman", "Artist=Nina Simone"]))
    assert model.native_format is TagFormat.VORBIS
    assert model.vendor == "reference libFLAC 1.4.3"
    assert model.get("ARTIST").value == "Nina Simone"
    # STREAMINFO is carried as an unrecognized block; padding is dropped
    assert [b.key for b in model.unrecognized_blocks] == ["STREAMINFO"]
    assert model.unrecognized_blocks[0].data == STREAMINFO


def test_flac_picture_blocks():
    data = flac_bytes(["TITLE=x"], extra=[(6, flac_picture(b"img"))])
    model = decode(data)
    picture = model.get("PICTURE")
    assert picture.value == Binary(b"img", "image/png", 3, "")
    assert picture.hint.key == "FLAC_PICTURE"


def test_flac_other_blocks_preserved():
    seektable = bytes(range(18))
    data = flac_bytes(["TITLE=x"], extra=[(3, seektable), (2, b"APPLxyz")])
    model = decode(data)
    assert [b.key for b in model.unrecognized_blocks] == ["STREAMINFO", "SEEKTABLE", "APPLICATION"]

    new = FlacCodec().splice(model, data, scan(data)).apply(data)
    assert block_types(new) == [0, 3, 2, 4, 1]
    assert decode(new).unrecognized_blocks == model.unrecognized_blocks


def test_flac_without_comment_block():
    data = flac_bytes(None)
    model = decode(data)
    assert len(model) == 0
    assert model.vendor is None


def test_flac_encode_order():
    """STREAMINFO first, then comments, pictures and padding last."""
    model = decode(flac_bytes(["TITLE=x"]))
    model = model.with_entries([*model.entries, TagEntry("PICTURE", Binary(b"i", "image/png"))])
    chain = FlacCodec().encode(model, padding=16)
    blocks = list(iter_flac_blocks(b"fLaC" + chain))
    assert [b.block_type for b in blocks] == [0, 4, 6, 1]
    assert blocks[-1].is_last and not any(b.is_last for b in blocks[:-1])


def test_flac_picture_before_comments_keeps_order():
    picture = flac_picture(b"\x89PNG", desc="front")
    data = flac_bytes(None, extra=[(6, picture), (4, comment_block(["TITLE=a"]))])
    model = decode(data)
    assert model.identifiers() == ["PICTURE", "TITLE"]

    new = FlacCodec().splice(model, data, scan(data)).apply(data)
    assert block_types(new) == [0, 6, 4, 1]
    assert decode(new) == model


def test_flac_second_comment_block_stays_second():
    data = flac_bytes(["TITLE=first"], extra=[(4, comment_block(["TITLE=second"]))])
    model = decode(data)
    assert model.get("TITLE").value == "first"

    new = FlacCodec().splice(model, data, scan(data)).apply(data)
    assert block_types(new) == [0, 4, 4, 1]
    again = decode(new)
    assert again.get("TITLE").value == "first"
    assert again == model


def test_flac_encode_requires_streaminfo():
    with pytest.raises(MalformedError, match="STREAMINFO"):
        FlacCodec().encode(TagModel(TagFormat.VORBIS, entries=(TagEntry("TITLE", "x"),)))


def test_flac_splice_keeps_audio():
    data = flac_bytes(["TITLE=x"], padding=64)
    model = decode(data)
    model = model.with_entries([*model.entries, TagEntry("ALBUM", "Pastel Blues")])
    new = FlacCodec().splice(model, data, scan(data)).apply(data)
    assert new.endswith(FLAC_AUDIO)
    assert decode(new).get("ALBUM").value == "Pastel Blues"


def test_flac_splice_absorbs_growth_into_padding():
    """Small changes reuse the padding block so the audio does not move."""
    data = flac_bytes(["TITLE=x"], padding=200)
    model = decode(data)
    model = model.with_entries([*model.entries, TagEntry("ALBUM", "Pastel Blues")])
    splice = FlacCodec().splice(model, data, scan(data))
    assert splice.delta == 0
    assert block_types(splice.apply(data))[-1] == 1


def test_flac_splice_adds_comment_block():
    data = flac_bytes(None)
    model = decode(data).with_entries([TagEntry("TITLE", "new")])
    new = FlacCodec().splice(model, data, scan(data)).apply(data)
    assert decode(new).get("TITLE").value == "new"
    assert decode(new).vendor == DEFAULT_VENDOR


def test_flac_choose_padding():
    location = ContainerLocation(4, 1000, ContainerKind.FLAC)
    assert FlacCodec.choose_padding(800, location, 10_000) == 196
    assert FlacCodec.choose_padding(1200, location, 10_000) == 1024
    assert FlacCodec.choose_padding(996, location, 10_000) == 0


def test_flac_oversized_block_rejected():
    model = decode(flac_bytes(["TITLE=x"]))
    model = model.with_entries([TagEntry("PICTURE", Binary(b"\x00" * (1 << 24)))])
    with pytest.raises(UnsupportedFeatureError, match="16 MiB"):
        FlacCodec().encode(model)
