"""Vorbis comment codec and its FLAC embedding.

The comment block is shared by FLAC, Ogg Vorbis and Ogg Opus: a vendor
string followed by a count of length-prefixed ``KEY=value`` UTF-8 strings.
Keys are case-insensitive; they are uppercased into identifiers and the
original spelling is kept in the entry hint.
"""

from __future__ import annotations

import base64
import binascii
import logging
import struct

from polytag.codecs.base import Splice, TagCodec
from polytag.errors import MalformedError, UnsupportedFeatureError
from polytag.fields import identifier_for_vorbis, is_repeatable, is_valid_vorbis_key, vorbis_key_for
from polytag.model import (
    Binary,
    ContainerKind,
    NativeHint,
    TagEntry,
    TagFormat,
    TagModel,
    UnrecognizedBlock,
)
from polytag.scanner import (
    FLAC_BLOCK_NAMES,
    FLAC_PADDING,
    FLAC_PICTURE,
    FLAC_VORBIS_COMMENT,
    ByteCursor,
    ContainerLocation,
    iter_flac_blocks,
)

log = logging.getLogger(__name__)

DEFAULT_VENDOR = "polytag"
DEFAULT_PADDING = 1024
FLAC_MAX_BLOCK = (1 << 24) - 1

# Key of an unrecognized block holding one raw, unparseable comment.
RAW_COMMENT = "FIELD"
PICTURE_KEY = "METADATA_BLOCK_PICTURE"
FLAC_PICTURE_HINT = "FLAC_PICTURE"

_BLOCK_TYPES = {name: number for number, name in FLAC_BLOCK_NAMES.items()}


# FLAC picture structure (also base64-embedded as METADATA_BLOCK_PICTURE)


def decode_picture(raw: bytes) -> Binary:
    cursor = ByteCursor(raw)
    picture_type = cursor.u32be()
    mime = cursor.read(cursor.u32be()).decode("ascii", "replace")
    description = cursor.read(cursor.u32be()).decode("utf-8", "replace")
    cursor.skip(16)  # width, height, depth, colours
    data = cursor.read(cursor.u32be())
    return Binary(data=data, mime=mime, picture_type=picture_type, description=description)


def encode_picture(picture: Binary) -> bytes:
    mime = picture.mime.encode("ascii", "replace")
    desc = picture.description.encode("utf-8")
    return b"".join(
        (
            struct.pack(">II", picture.picture_type, len(mime)),
            mime,
            struct.pack(">I", len(desc)),
            desc,
            struct.pack(">IIIII", 0, 0, 0, 0, len(picture.data)),
            picture.data,
        )
    )


# Comment block


def decode_comments(
    cursor: ByteCursor, fmt: TagFormat = TagFormat.VORBIS
) -> tuple[str, list[TagEntry], list[UnrecognizedBlock]]:
    """Read vendor and comments from ``cursor``, leaving it after the last comment."""
    vendor = cursor.read(cursor.u32le()).decode("utf-8", "replace")
    count = cursor.u32le()
    if count > cursor.remaining // 4:
        raise MalformedError(f"comment count {count} exceeds block size", cursor.pos)

    entries: list[TagEntry] = []
    blocks: list[UnrecognizedBlock] = []
    singular_at: dict[str, int] = {}

    for _ in range(count):
        raw = cursor.read(cursor.u32le())
        entry = _decode_comment(raw)
        if entry is None:
            log.warning("Keeping unparseable Vorbis comment verbatim (%d bytes)", len(raw))
            blocks.append(UnrecognizedBlock(RAW_COMMENT, raw, fmt))
            continue
        if is_repeatable(entry.identifier):
            entries.append(entry)
        elif entry.identifier in singular_at:
            index = singular_at[entry.identifier]
            merged = entries[index]
            entries[index] = merged.with_value(merged.values + entry.values)
        else:
            singular_at[entry.identifier] = len(entries)
            entries.append(entry)
    return vendor, entries, blocks


def _decode_comment(raw: bytes) -> TagEntry | None:
    key_raw, sep, value_raw = raw.partition(b"=")
    if not sep:
        return None
    try:
        key = key_raw.decode("ascii")
        value = value_raw.decode("utf-8")
    except UnicodeDecodeError:
        return None
    if not is_valid_vorbis_key(key):
        return None
    identifier = identifier_for_vorbis(key)
    if identifier == "PICTURE":
        try:
            picture = decode_picture(base64.b64decode(value, validate=True))
        except (binascii.Error, MalformedError):
            return None
        return TagEntry(identifier, picture, NativeHint(key))
    return TagEntry(identifier, value, NativeHint(key))


def comment_strings(model: TagModel, skip_flac_pictures: bool = False) -> list[bytes]:
    """Render every entry (and raw comment block) as ``KEY=value`` bytes."""
    comments: list[bytes] = []
    for entry in model.entries:
        hint = entry.hint
        if entry.identifier == "PICTURE":
            if skip_flac_pictures and not (hint is not None and hint.key.upper() == PICTURE_KEY):
                continue
            key = hint.key if hint is not None and hint.key.upper() == PICTURE_KEY else PICTURE_KEY
            for value in entry.values:
                if not isinstance(value, Binary):
                    raise UnsupportedFeatureError("PICTURE values must be binary")
                encoded = base64.b64encode(encode_picture(value)).decode("ascii")
                comments.append(f"{key}={encoded}".encode())
            continue

        key = vorbis_key_for(entry.identifier)
        if hint is not None and hint.key.upper() == key.upper():
            key = hint.key
        if not is_valid_vorbis_key(key):
            raise UnsupportedFeatureError(f"{key!r} is not a valid Vorbis comment field name")
        for value in entry.values:
            if isinstance(value, Binary):
                raise UnsupportedFeatureError(
                    f"binary value for {entry.identifier} cannot be stored in a Vorbis comment"
                )
            comments.append(f"{key}={value}".encode())

    for block in model.unrecognized_blocks:
        if block.key == RAW_COMMENT and block.native_format is TagFormat.VORBIS:
            comments.append(block.data)
    return comments


def encode_comment_block(model: TagModel, skip_flac_pictures: bool = False) -> bytes:
    vendor = (model.vendor if model.vendor is not None else DEFAULT_VENDOR).encode("utf-8")
    comments = comment_strings(model, skip_flac_pictures)
    parts = [struct.pack("<I", len(vendor)), vendor, struct.pack("<I", len(comments))]
    for comment in comments:
        parts.append(struct.pack("<I", len(comment)))
        parts.append(comment)
    return b"".join(parts)


# FLAC embedding


def _flac_block(block_type: int, body: bytes, last: bool = False) -> bytes:
    if len(body) > FLAC_MAX_BLOCK:
        name = FLAC_BLOCK_NAMES.get(block_type, block_type)
        raise UnsupportedFeatureError(f"FLAC {name} block of {len(body)} bytes exceeds 16 MiB")
    return bytes(((0x80 if last else 0) | block_type,)) + len(body).to_bytes(3, "big") + body


def _is_picture_block(entry: TagEntry) -> bool:
    """Whether ``entry`` is written as a FLAC PICTURE block rather than a comment."""
    if entry.identifier != "PICTURE":
        return False
    return entry.hint is None or entry.hint.key.upper() != PICTURE_KEY


class FlacCodec(TagCodec):
    """Vorbis comments (and PICTURE blocks) in a FLAC metadata block chain."""

    kinds = (ContainerKind.FLAC,)
    formats = (TagFormat.VORBIS,)

    def decode(self, data: bytes, location: ContainerLocation) -> TagModel:
        entries: list[TagEntry] = []
        blocks: list[UnrecognizedBlock] = []
        vendor: str | None = None

        for block in iter_flac_blocks(data, location.offset):
            body = data[block.data_offset : block.end]
            if block.block_type == FLAC_VORBIS_COMMENT:
                if vendor is not None:
                    log.warning("Ignoring second VORBIS_COMMENT block at offset %d", block.offset)
                    blocks.append(UnrecognizedBlock(block.name, body, TagFormat.VORBIS))
                    continue
                cursor = ByteCursor(body)
                vendor, comments, raw = decode_comments(cursor)
                entries.extend(comments)
                blocks.extend(raw)
            elif block.block_type == FLAC_PICTURE:
                picture = decode_picture(body)
                entries.append(TagEntry("PICTURE", picture, NativeHint(FLAC_PICTURE_HINT)))
            elif block.block_type == FLAC_PADDING:
                continue
            else:
                blocks.append(UnrecognizedBlock(block.name, body, TagFormat.VORBIS))

        log.debug("Decoded FLAC metadata: %d entries, %d other blocks", len(entries), len(blocks))
        return TagModel(
            native_format=TagFormat.VORBIS,
            entries=tuple(entries),
            unrecognized_blocks=tuple(blocks),
            vendor=vendor,
        )

    def encode(self, model: TagModel, padding: int | None = None) -> bytes:
        """Metadata block chain (without the ``fLaC`` marker)."""
        self.check_format(model)
        chunks: list[tuple[int, bytes]] = []
        # Later VORBIS_COMMENT blocks stay behind the one the entries come from
        comment_chunks: list[tuple[int, bytes]] = []
        for block in model.unrecognized_blocks:
            if block.native_format is not TagFormat.VORBIS or block.key == RAW_COMMENT:
                continue
            block_type = _BLOCK_TYPES.get(block.key)
            if block_type is None and block.key.startswith("BLOCK_"):
                block_type = int(block.key[6:])
            if block_type is None:
                raise MalformedError(f"unknown FLAC block {block.key!r}")
            if block_type == FLAC_VORBIS_COMMENT:
                comment_chunks.append((block_type, block.data))
            else:
                chunks.append((block_type, block.data))

        if not chunks or chunks[0][0] != 0:
            raise MalformedError("FLAC metadata must start with STREAMINFO")

        has_comments = bool(comment_strings(model, skip_flac_pictures=True))
        if has_comments or model.vendor is not None:
            comment_block = encode_comment_block(model, skip_flac_pictures=True)
            comment_chunks.insert(0, (FLAC_VORBIS_COMMENT, comment_block))

        # PICTURE blocks keep their place relative to the comment block,
        # which goes where its first entry sits.
        ordered: list[tuple[int, bytes]] = []
        comments_at: int | None = None
        for entry in model.entries:
            if not _is_picture_block(entry):
                if comments_at is None:
                    comments_at = len(ordered)
                continue
            for value in entry.values:
                if not isinstance(value, Binary):
                    raise UnsupportedFeatureError("PICTURE values must be binary")
                ordered.append((FLAC_PICTURE, encode_picture(value)))
        at = comments_at or 0
        chunks.extend(ordered[:at] + comment_chunks + ordered[at:])
        if padding is not None:
            chunks.append((FLAC_PADDING, b"\x00" * padding))

        return b"".join(
            _flac_block(block_type, body, last=i == len(chunks) - 1)
            for i, (block_type, body) in enumerate(chunks)
        )

    def splice(
        self,
        model: TagModel,
        data: bytes,
        location: ContainerLocation,
        padding: int | None = None,
    ) -> Splice:
        if padding is None:
            padding = self.choose_padding(len(self.encode(model)), location, len(data))
        return Splice(location, self.encode(model, padding))

    @staticmethod
    def choose_padding(new_size: int, location: ContainerLocation, file_size: int) -> int:
        """Fill the old metadata length exactly when the spare room is modest."""
        spare = location.length - new_size - 4
        if 0 <= spare <= max(file_size // 100, DEFAULT_PADDING):
            return spare
        return DEFAULT_PADDING
