"""Normalized field vocabulary and per-format native key mappings.

Identifiers are the bridge between formats: an ID3 ``TPE1`` frame, a
Vorbis ``ARTIST`` comment and an MP4 ``\\xa9ART`` atom all decode to the
``ARTIST`` identifier, so copying between formats is a lookup here.
"""

from __future__ import annotations

from dataclasses import dataclass

from polytag.model import Binary, TagEntry, TagFormat

ITUNES_MEAN = "com.apple.iTunes"


@dataclass(frozen=True)
class FieldSpec:
    """Native keys for one normalized identifier."""

    identifier: str
    id3v24: str | None = None
    id3v23: str | None = None
    vorbis: str | None = None
    mp4: str | None = None
    repeatable: bool = False
    numeric: bool = False


def _spec(
    identifier: str,
    id3: str | None,
    vorbis: str | None,
    mp4: str | None,
    id3v23: str | None = None,
    repeatable: bool = False,
    numeric: bool = False,
) -> FieldSpec:
    return FieldSpec(
        identifier=identifier,
        id3v24=id3,
        id3v23=id3v23 if id3v23 is not None else id3,
        vorbis=vorbis,
        mp4=mp4,
        repeatable=repeatable,
        numeric=numeric,
    )


FIELDS: dict[str, FieldSpec] = {
    spec.identifier: spec
    for spec in (
        _spec("TITLE", "TIT2", "TITLE", "\xa9nam"),
        _spec("SUBTITLE", "TIT3", "SUBTITLE", None),
        _spec("GROUPING", "TIT1", "GROUPING", "\xa9grp"),
        _spec("ARTIST", "TPE1", "ARTIST", "\xa9ART"),
        _spec("ALBUMARTIST", "TPE2", "ALBUMARTIST", "aART"),
        _spec("CONDUCTOR", "TPE3", "CONDUCTOR", None),
        _spec("REMIXER", "TPE4", "REMIXER", None),
        _spec("ALBUM", "TALB", "ALBUM", "\xa9alb"),
        _spec("COMPOSER", "TCOM", "COMPOSER", "\xa9wrt"),
        _spec("LYRICIST", "TEXT", "LYRICIST", None),
        _spec("GENRE", "TCON", "GENRE", "\xa9gen"),
        _spec("DATE", "TDRC", "DATE", "\xa9day", id3v23="TYER"),
        _spec("ORIGINALDATE", "TDOR", "ORIGINALDATE", None, id3v23="TORY"),
        _spec("TRACKNUMBER", "TRCK", "TRACKNUMBER", "trkn"),
        _spec("TRACKTOTAL", "TRCK", "TRACKTOTAL", "trkn"),
        _spec("DISCNUMBER", "TPOS", "DISCNUMBER", "disk"),
        _spec("DISCTOTAL", "TPOS", "DISCTOTAL", "disk"),
        _spec("BPM", "TBPM", "BPM", "tmpo", numeric=True),
        _spec("COMPILATION", "TCMP", "COMPILATION", "cpil", numeric=True),
        _spec("COPYRIGHT", "TCOP", "COPYRIGHT", "cprt"),
        _spec("ENCODEDBY", "TENC", "ENCODEDBY", None),
        _spec("ENCODER", "TSSE", "ENCODER", "\xa9too"),
        _spec("LABEL", "TPUB", "LABEL", None),
        _spec("ISRC", "TSRC", "ISRC", None),
        _spec("MEDIA", "TMED", "MEDIA", None),
        _spec("LANGUAGE", "TLAN", "LANGUAGE", None),
        _spec("MOOD", "TMOO", "MOOD", None, id3v23=""),
        _spec("INVOLVEDPEOPLE", "TIPL", "INVOLVEDPEOPLE", None, id3v23="IPLS"),
        _spec("MUSICIANCREDITS", "TMCL", "MUSICIANCREDITS", None, id3v23=""),
        _spec("ALBUMSORT", "TSOA", "ALBUMSORT", "soal", id3v23=""),
        _spec("ARTISTSORT", "TSOP", "ARTISTSORT", "soar", id3v23=""),
        _spec("TITLESORT", "TSOT", "TITLESORT", "sonm", id3v23=""),
        _spec("ALBUMARTISTSORT", "TSO2", "ALBUMARTISTSORT", "soaa"),
        _spec("COMMENT", "COMM", "COMMENT", "\xa9cmt", repeatable=True),
        _spec("LYRICS", "USLT", "LYRICS", "\xa9lyr", repeatable=True),
        _spec("PICTURE", "APIC", "METADATA_BLOCK_PICTURE", "covr", repeatable=True),
        _spec("ARTISTWEBPAGE", "WOAR", "ARTISTWEBPAGE", None, repeatable=True),
        _spec("COMMERCIALURL", "WCOM", "COMMERCIALURL", None, repeatable=True),
        _spec("COPYRIGHTURL", "WCOP", "COPYRIGHTURL", None),
        _spec("FILEWEBPAGE", "WOAF", "FILEWEBPAGE", None),
        _spec("SOURCEWEBPAGE", "WOAS", "SOURCEWEBPAGE", None),
        _spec("RADIOWEBPAGE", "WORS", "RADIOWEBPAGE", None),
        _spec("PAYMENTURL", "WPAY", "PAYMENTURL", None),
        _spec("PUBLISHERWEBPAGE", "WPUB", "PUBLISHERWEBPAGE", None),
    )
}

# Frames that hold a "number/total" pair split across two identifiers.
ID3_PAIRS = {
    "TRCK": ("TRACKNUMBER", "TRACKTOTAL"),
    "TPOS": ("DISCNUMBER", "DISCTOTAL"),
}
MP4_PAIRS = {
    "trkn": ("TRACKNUMBER", "TRACKTOTAL"),
    "disk": ("DISCNUMBER", "DISCTOTAL"),
}


def field_spec(identifier: str) -> FieldSpec | None:
    return FIELDS.get(identifier)


def is_repeatable(identifier: str) -> bool:
    """Whether a model may hold more than one entry for ``identifier``.

    Identifiers outside the vocabulary are treated as singular.
    """
    spec = FIELDS.get(identifier)
    return spec.repeatable if spec else False


def id3_frame_for(identifier: str, version: int) -> str | None:
    """Native ID3 frame id for a known identifier in a given major version.

    Returns ``None`` for identifiers outside the vocabulary and an empty
    string for known identifiers that have no frame in that version.
    """
    spec = FIELDS.get(identifier)
    if spec is None:
        return None
    frame = spec.id3v24 if version >= 4 else spec.id3v23
    return frame or ""


def identifier_for_id3(frame_id: str) -> str | None:
    for spec in FIELDS.values():
        if frame_id in (spec.id3v24, spec.id3v23) and frame_id not in ID3_PAIRS:
            return spec.identifier
    return None


def identifier_for_vorbis(key: str) -> str:
    upper = key.upper()
    return "PICTURE" if upper == "METADATA_BLOCK_PICTURE" else upper


def vorbis_key_for(identifier: str) -> str:
    spec = FIELDS.get(identifier)
    if spec is not None and spec.vorbis:
        return spec.vorbis
    return identifier


def identifier_for_mp4(code: str) -> str | None:
    for spec in FIELDS.values():
        if spec.mp4 == code and code not in MP4_PAIRS:
            return spec.identifier
    return None


def mp4_atom_for(identifier: str) -> str | None:
    spec = FIELDS.get(identifier)
    return spec.mp4 if spec is not None else None


def is_valid_vorbis_key(key: str) -> bool:
    """Vorbis field names are printable ASCII 0x20-0x7D excluding '='."""
    return bool(key) and all(0x20 <= ord(ch) <= 0x7D and ch != "=" for ch in key)


def _int_coercible(entry: TagEntry) -> bool:
    for value in entry.values:
        if isinstance(value, Binary):
            return False
        if isinstance(value, int):
            continue
        text = value.strip()
        if not text.lstrip("+-").isdigit():
            return False
    return True


def untranslatable_reason(fmt: TagFormat, entry: TagEntry) -> str | None:
    """Explain why ``entry`` cannot be expressed in ``fmt``, or ``None`` if it can."""
    has_binary = any(isinstance(v, Binary) for v in entry.values)
    is_picture = entry.identifier == "PICTURE"

    if is_picture and not all(isinstance(v, Binary) for v in entry.values):
        return "PICTURE values must be binary"

    if fmt.is_id3:
        if has_binary and not is_picture:
            return "ID3v2 can only carry binary data as an attached picture"
        return None

    if fmt is TagFormat.VORBIS:
        if not is_valid_vorbis_key(vorbis_key_for(entry.identifier)):
            return f"{entry.identifier!r} is not a valid Vorbis comment field name"
        if has_binary and not is_picture:
            return "Vorbis comments can only carry binary data as a picture"
        return None

    if fmt is TagFormat.MP4:
        spec = FIELDS.get(entry.identifier)
        if mp4_atom_for(entry.identifier) in MP4_PAIRS or (spec is not None and spec.numeric):
            if not _int_coercible(entry):
                return f"{entry.identifier} must be numeric in MP4"
        return None

    return f"unknown format {fmt}"
