"""Interoperability with mutagen.

Files written by polytag must read correctly in mutagen and the other way
round. The MP4 fixtures have no real audio track, so MP4 tags are read and
written through mutagen's atom-level API instead of ``mutagen.mp4.MP4``.
"""

from __future__ import annotations

from mutagen.flac import FLAC
from mutagen.id3 import COMM, ID3, TIT2, TPE1, TRCK
from mutagen.mp4 import Atoms, MP4Tags
from mutagen.oggopus import OggOpus
from mutagen.oggvorbis import OggVorbis

from polytag import mutation
from polytag.model import Binary, TagFormat
from polytag.tagging import read_tags, save_tags
from tests.builders import MP4_AUDIO, MPEG_AUDIO, OGG_AUDIO_PACKETS, mp4_chunk_offset


def edit(path, *edits):
    """Apply ``(operation, identifier, value)`` edits with polytag and save."""
    tag_file = read_tags(path)
    model = tag_file.model
    for op, ident, value in edits:
        model = getattr(mutation, op)(model, ident, value)
    return save_tags(tag_file, model)


def mp4_tags(path) -> MP4Tags:
    with open(path, "rb") as f:
        return MP4Tags(Atoms(f), f)


# =============================================================================
# ID3v2
# =============================================================================


def test_mutagen_reads_polytag_id3v24(mp3_file):
    edit(
        mp3_file,
        ("modify", "TITLE", "Sinner Man"),
        ("add", "DATE", "1965-05-01"),
        ("add", "COMMENT", "live at Newport"),
    )
    tags = ID3(mp3_file)
    assert tags.version == (2, 4, 0)
    assert tags["TIT2"].text == ["Sinner Man"]
    assert tags["TPE1"].text == ["Nina Simone"]
    assert tags["TRCK"].text == ["5/12"]
    assert str(tags["TDRC"].text[0]) == "1965-05-01"
    [comment] = tags.getall("COMM")
    assert comment.text == ["live at Newport"]


def test_mutagen_reads_polytag_id3v23(make_file):
    path = make_file("bare.mp3", MPEG_AUDIO)
    tag_file = read_tags(path, id3_format=TagFormat.ID3V23)
    model = mutation.add(tag_file.model, "TITLE", "Ünïcode ✓")
    model = mutation.add(model, "DATE", "2004-03-21")
    save_tags(tag_file, model)

    tags = ID3(path)
    assert tags.version == (2, 3, 0)
    assert tags["TIT2"].text == ["Ünïcode ✓"]
    # mutagen upgrades TYER/TDAT to TDRC on load
    assert str(tags["TDRC"].text[0]) == "2004-03-21"
    assert path.read_bytes().endswith(MPEG_AUDIO)


def test_polytag_reads_mutagen_id3(make_file):
    path = make_file("bare.mp3", MPEG_AUDIO)
    tags = ID3()
    tags.add(TIT2(encoding=3, text=["Sinnerman"]))
    tags.add(TPE1(encoding=1, text=["Nina Simone"]))
    tags.add(TRCK(encoding=0, text=["5/12"]))
    tags.add(COMM(encoding=3, lang="eng", desc="", text=["live"]))
    tags.save(path, v2_version=3)

    model = read_tags(path).model
    assert model.native_format is TagFormat.ID3V23
    assert model.get("TITLE").value == "Sinnerman"
    assert model.get("ARTIST").value == "Nina Simone"
    assert model.get("TRACKNUMBER").value == "5"
    assert model.get("TRACKTOTAL").value == "12"
    assert model.get("COMMENT").value == "live"
    assert model.get("COMMENT").hint.language == "eng"


# =============================================================================
# FLAC
# =============================================================================


def test_mutagen_reads_polytag_flac(flac_file):
    edit(
        flac_file,
        ("modify", "TITLE", "Sinner Man"),
        ("add", "PICTURE", Binary(b"\x89PNG\r\n\x1a\n", "image/png")),
    )
    audio = FLAC(flac_file)
    assert audio["title"] == ["Sinner Man"]
    assert audio["artist"] == ["Nina Simone"]
    [picture] = audio.pictures
    assert picture.mime == "image/png"
    assert picture.data == b"\x89PNG\r\n\x1a\n"


def test_polytag_reads_mutagen_flac(flac_file):
    audio = FLAC(flac_file)
    audio["album"] = "Pastel Blues"
    audio["genre"] = ["Jazz", "Soul"]
    audio.save()

    model = read_tags(flac_file).model
    assert model.get("ALBUM").value == "Pastel Blues"
    assert model.get("TITLE").value == "Sinnerman"
    genres = [v for e in model.get_all("GENRE") for v in e.values]
    assert genres == ["Jazz", "Soul"]


# =============================================================================
# Ogg
# =============================================================================


def _has_audio(data: bytes) -> bool:
    return all(packet in data for packet in OGG_AUDIO_PACKETS)


def test_mutagen_reads_polytag_ogg_vorbis(ogg_file):
    edit(ogg_file, ("add", "ALBUM", "Pastel Blues"), ("add", "DESCRIPTION", "x" * 70_000))
    audio = OggVorbis(ogg_file)
    assert audio["title"] == ["Sinnerman"]
    assert audio["album"] == ["Pastel Blues"]
    assert audio["description"] == ["x" * 70_000]
    assert _has_audio(ogg_file.read_bytes())


def test_polytag_reads_mutagen_ogg_vorbis(ogg_file):
    audio = OggVorbis(ogg_file)
    audio["album"] = "Pastel Blues"
    audio.save()

    model = read_tags(ogg_file).model
    assert model.get("ALBUM").value == "Pastel Blues"
    assert model.get("ARTIST").value == "Nina Simone"


def test_mutagen_reads_polytag_opus(opus_file):
    edit(opus_file, ("modify", "ARTIST", "Nina"))
    audio = OggOpus(opus_file)
    assert audio["artist"] == ["Nina"]
    assert audio["title"] == ["Sinnerman"]
    assert _has_audio(opus_file.read_bytes())


def test_polytag_reads_mutagen_opus(opus_file):
    audio = OggOpus(opus_file)
    audio["date"] = "1965"
    audio.save()
    assert read_tags(opus_file).model.get("DATE").value == "1965"


# =============================================================================
# MP4
# =============================================================================


def test_mutagen_reads_polytag_mp4(mp4_file):
    edit(
        mp4_file,
        ("modify", "TITLE", "Sinner Man"),
        ("add", "TRACKNUMBER", "5"),
        ("add", "TRACKTOTAL", "12"),
        ("add", "DESCRIPTION", "y" * 3000),
    )
    tags = mp4_tags(mp4_file)
    assert tags["\xa9nam"] == ["Sinner Man"]
    assert tags["\xa9ART"] == ["Nina Simone"]
    assert tags["trkn"] == [(5, 12)]

    data = mp4_file.read_bytes()
    offset = mp4_chunk_offset(data)
    assert data[offset : offset + len(MP4_AUDIO)] == MP4_AUDIO


def test_polytag_reads_mutagen_mp4(mp4_file):
    tags = mp4_tags(mp4_file)
    tags["\xa9alb"] = ["Pastel Blues"]
    tags["tmpo"] = [98]
    tags.save(mp4_file)

    model = read_tags(mp4_file).model
    assert model.get("ALBUM").value == "Pastel Blues"
    assert model.get("BPM").value == 98
    assert model.get("TITLE").value == "Sinnerman"

    data = mp4_file.read_bytes()
    offset = mp4_chunk_offset(data)
    assert data[offset : offset + len(MP4_AUDIO)] == MP4_AUDIO
