"""ID3v2.3 / ID3v2.4 codec.

Decoding handles tag-level and frame-level unsynchronisation, extended
headers, footers, zlib-compressed frames, grouping bytes, data length
indicators and the iTunes habit of writing non-syncsafe v2.4 frame sizes.
Encrypted frames raise ``UnsupportedFeatureError``. Frames that do not map
to a text/URL/comment/lyrics/picture entry are preserved as unrecognized
blocks holding the frame payload with all frame-level encodings undone.

Encoding always writes a tag without unsynchronisation, extended header or
footer, and with every frame flag cleared.
"""

from __future__ import annotations

import logging
import re
import struct
import zlib
from dataclasses import dataclass

from polytag.codecs.base import Splice, TagCodec
from polytag.errors import MalformedError, UnsupportedFeatureError
from polytag.fields import ID3_PAIRS, field_spec, id3_frame_for, identifier_for_id3, is_repeatable
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
    ID3_HEADER_SIZE,
    ID3_MAX_TAG_SIZE,
    ByteCursor,
    ContainerLocation,
    decode_syncsafe,
    encode_syncsafe,
    parse_id3_header,
)

log = logging.getLogger(__name__)

FRAME_ID = re.compile(rb"[A-Z0-9]{4}")

LATIN1 = 0
UTF16 = 1
UTF16BE = 2
UTF8 = 3

_TERMINATORS = {LATIN1: b"\x00", UTF16: b"\x00\x00", UTF16BE: b"\x00\x00", UTF8: b"\x00"}

DEFAULT_PADDING = 1024

# Frames that exist in only one of the two revisions.
V23_ONLY = frozenset({"TYER", "TDAT", "TIME", "TORY", "TRDA", "TSIZ", "IPLS", "EQUA", "RVAD"})
V24_ONLY = frozenset(
    {
        "TDRC", "TDOR", "TDEN", "TDRL", "TDTG", "TIPL", "TMCL", "TMOO", "TPRO",
        "TSOA", "TSOP", "TSOT", "TSST", "ASPI", "EQU2", "RVA2", "SEIS", "SIGN",
    }
)  # fmt: skip

_ISO_STAMP = re.compile(r"(\d{4})(?:-(\d{2})(?:-(\d{2})(?:T(\d{2}):(\d{2})(?::\d{2})?)?)?)?")


def remove_unsync(raw: bytes) -> bytes:
    """Undo unsynchronisation: every 0xFF 0x00 pair becomes 0xFF."""
    return raw.replace(b"\xff\x00", b"\xff")


# Text helpers


def decode_text(raw: bytes, encoding: int) -> str:
    if encoding == LATIN1:
        return raw.decode("latin-1")
    if encoding == UTF16:
        if raw[:2] == b"\xfe\xff":
            return _utf16(raw[2:], "utf-16-be")
        if raw[:2] == b"\xff\xfe":
            return _utf16(raw[2:], "utf-16-le")
        return _utf16(raw, "utf-16-le")
    if encoding == UTF16BE:
        return _utf16(raw, "utf-16-be")
    if encoding == UTF8:
        return raw.decode("utf-8")
    raise MalformedError(f"invalid ID3v2 text encoding {encoding}")


def _utf16(raw: bytes, codec: str) -> str:
    if len(raw) % 2:
        raw = raw[:-1]
    return raw.decode(codec)


def encode_text(text: str, encoding: int) -> bytes:
    if encoding == LATIN1:
        return text.encode("latin-1")
    if encoding == UTF16:
        return b"\xff\xfe" + text.encode("utf-16-le")
    if encoding == UTF16BE:
        return text.encode("utf-16-be")
    return text.encode("utf-8")


def split_terminated(raw: bytes, encoding: int, maxsplit: int = -1) -> list[bytes]:
    """Split on the encoding's null terminator (2-byte aligned for UTF-16)."""
    if len(_TERMINATORS[encoding]) == 1:
        return raw.split(b"\x00", maxsplit)
    parts: list[bytes] = []
    start = 0
    i = 0
    while i + 1 < len(raw):
        if raw[i] == 0 and raw[i + 1] == 0:
            parts.append(raw[start:i])
            start = i + 2
            if len(parts) == maxsplit:
                break
        i += 2
    parts.append(raw[start:])
    return parts


def _encodable(texts: list[str], encoding: int) -> bool:
    if encoding != LATIN1:
        return True
    try:
        for text in texts:
            text.encode("latin-1")
    except UnicodeEncodeError:
        return False
    return True


def choose_encoding(texts: list[str], version: int, preferred: int | None = None) -> int:
    """Pick a text encoding valid for ``version`` that can represent ``texts``."""
    allowed = (LATIN1, UTF16, UTF16BE, UTF8) if version == 4 else (LATIN1, UTF16)
    if preferred in allowed and _encodable(texts, preferred):
        return preferred
    if _encodable(texts, LATIN1):
        return LATIN1
    return UTF8 if version == 4 else UTF16


# Frame model


@dataclass(frozen=True)
class RawFrame:
    """A frame payload with all frame-level encodings already undone."""

    frame_id: str
    payload: bytes


def _is_frame_id(key: str) -> bool:
    return key.isascii() and FRAME_ID.fullmatch(key.encode("ascii")) is not None


def _frame_looks_valid(body: bytes, pos: int) -> bool:
    if pos == len(body):
        return True
    if pos > len(body) - 4:
        return pos < len(body) and not any(body[pos:])
    return body[pos] == 0 or FRAME_ID.fullmatch(body[pos : pos + 4]) is not None


def _v24_frame_size(raw: bytes, body: bytes, data_start: int) -> int:
    plain = int.from_bytes(raw, "big")
    if any(b & 0x80 for b in raw):
        return plain
    syncsafe = decode_syncsafe(raw)
    if syncsafe != plain:
        # iTunes writes plain big-endian sizes in v2.4 tags.
        if not _frame_looks_valid(body, data_start + syncsafe) and _frame_looks_valid(
            body, data_start + plain
        ):
            log.debug("Using non-syncsafe frame size at offset %d", data_start - 10)
            return plain
    return syncsafe


def _undo_frame_flags(
    frame_id: str, flags: int, payload: bytes, version: int, tag_unsync: bool
) -> bytes:
    cursor = ByteCursor(payload)
    if version == 3:
        compressed = bool(flags & 0x0080)
        encrypted = bool(flags & 0x0040)
        grouped = bool(flags & 0x0020)
        if encrypted:
            raise UnsupportedFeatureError(f"encrypted ID3v2 frame {frame_id}")
        if compressed:
            cursor.skip(4)
        if grouped:
            cursor.skip(1)
        data = cursor.read_rest()
    else:
        grouped = bool(flags & 0x0040)
        compressed = bool(flags & 0x0008)
        encrypted = bool(flags & 0x0004)
        unsync = bool(flags & 0x0002) or tag_unsync
        has_length = bool(flags & 0x0001)
        if encrypted:
            raise UnsupportedFeatureError(f"encrypted ID3v2 frame {frame_id}")
        if grouped:
            cursor.skip(1)
        if has_length:
            cursor.skip(4)
        data = cursor.read_rest()
        if unsync:
            data = remove_unsync(data)
    if compressed:
        try:
            data = zlib.decompress(data)
        except zlib.error as exc:
            raise MalformedError(f"corrupt compressed frame {frame_id}: {exc}") from exc
    return data


def read_frames(data: bytes, location: ContainerLocation) -> tuple[int, list[RawFrame]]:
    """Parse the tag at ``location`` into its major version and raw frames."""
    header = parse_id3_header(data, location.offset)
    start = location.offset + ID3_HEADER_SIZE
    body = data[start : start + header.size]
    if header.unsynchronised and header.major == 3:
        body = remove_unsync(body)

    cursor = ByteCursor(body)
    if header.extended:
        if header.major == 3:
            cursor.skip(cursor.u32be())
        else:
            ext_size = decode_syncsafe(cursor.read(4))
            if ext_size < 6:
                raise MalformedError("invalid ID3v2.4 extended header size", start)
            cursor.skip(ext_size - 4)

    frames: list[RawFrame] = []
    while cursor.remaining >= 10:
        frame_start = cursor.pos
        raw_id = cursor.peek(4)
        if raw_id[0] == 0:
            break  # padding
        if FRAME_ID.fullmatch(raw_id) is None:
            raise MalformedError(f"invalid frame id {raw_id!r}", start + frame_start)
        cursor.skip(4)
        raw_size = cursor.read(4)
        flags = cursor.u16be()
        if header.major == 3:
            size = int.from_bytes(raw_size, "big")
        else:
            size = _v24_frame_size(raw_size, body, cursor.pos)
        if size == 0:
            log.debug("Zero-size frame %s ends frame list", raw_id.decode())
            break
        if size > cursor.remaining:
            raise MalformedError(
                f"frame {raw_id.decode()} declares {size} bytes, {cursor.remaining} remain",
                start + frame_start,
            )
        frame_id = raw_id.decode("ascii")
        payload = _undo_frame_flags(
            frame_id,
            flags,
            cursor.read(size),
            header.major,
            header.unsynchronised and header.major == 4,
        )
        frames.append(RawFrame(frame_id, payload))
    return header.major, frames


# Frame payload decoding


def _text_values(raw: bytes, encoding: int) -> list[str]:
    parts = split_terminated(raw, encoding)
    if len(parts) > 1 and parts[-1] in (b"", b"\xff\xfe", b"\xfe\xff"):
        parts.pop()
    return [decode_text(p, encoding) for p in parts]


def _single(values: list[str]) -> str | list[str]:
    return values[0] if len(values) == 1 else list(values)


def _identifier(frame_id: str) -> str:
    return identifier_for_id3(frame_id) or frame_id


def decode_frame(frame: RawFrame) -> list[TagEntry] | None:
    """Decode one frame into entries, or ``None`` when it is not understood."""
    fid = frame.frame_id
    cursor = ByteCursor(frame.payload)

    if fid == "TXXX" or fid == "WXXX":
        encoding = cursor.u8()
        desc_raw, rest = (split_terminated(cursor.read_rest(), encoding, 1) + [b""])[:2]
        desc = decode_text(desc_raw, encoding)
        if not desc.strip():
            return None
        hint = NativeHint(fid, encoding=encoding, description=desc)
        if fid == "WXXX":
            return [TagEntry(desc, rest.split(b"\x00")[0].decode("latin-1"), hint)]
        return [TagEntry(desc, _single(_text_values(rest, encoding)), hint)]

    if fid.startswith("T") or fid == "IPLS":
        encoding = cursor.u8()
        values = _text_values(cursor.read_rest(), encoding)
        hint = NativeHint(fid, encoding=encoding)
        if fid in ID3_PAIRS:
            number_id, total_id = ID3_PAIRS[fid]
            number, _, total = values[0].partition("/")
            entries = []
            if number or not total:
                entries.append(TagEntry(number_id, number.strip(), hint))
            if total:
                entries.append(TagEntry(total_id, total.strip(), hint))
            return entries
        return [TagEntry(_identifier(fid), _single(values), hint)]

    if fid.startswith("W"):
        url = frame.payload.split(b"\x00")[0].decode("latin-1")
        return [TagEntry(_identifier(fid), url, NativeHint(fid))]

    if fid in ("COMM", "USLT"):
        encoding = cursor.u8()
        language = cursor.read(3).decode("latin-1")
        desc_raw, text_raw = (split_terminated(cursor.read_rest(), encoding, 1) + [b""])[:2]
        text = _text_values(text_raw, encoding)[0]
        hint = NativeHint(
            fid,
            encoding=encoding,
            language=language,
            description=decode_text(desc_raw, encoding),
        )
        return [TagEntry(_identifier(fid), text, hint)]

    if fid == "APIC":
        encoding = cursor.u8()
        rest = cursor.read_rest()
        mime_raw, _, rest = rest.partition(b"\x00")
        if not rest:
            raise MalformedError("truncated APIC frame")
        picture_type = rest[0]
        desc_raw, data = (split_terminated(rest[1:], encoding, 1) + [b""])[:2]
        picture = Binary(
            data=data,
            mime=mime_raw.decode("latin-1"),
            picture_type=picture_type,
            description=decode_text(desc_raw, encoding),
        )
        return [TagEntry("PICTURE", picture, NativeHint(fid, encoding=encoding))]

    return None


class Id3v2Codec(TagCodec):
    """Codec for ID3v2.3 and ID3v2.4 tags at the start of a file."""

    kinds = (ContainerKind.ID3V2,)
    formats = (TagFormat.ID3V23, TagFormat.ID3V24)

    def decode(self, data: bytes, location: ContainerLocation) -> TagModel:
        version, frames = read_frames(data, location)
        fmt = TagFormat.ID3V24 if version == 4 else TagFormat.ID3V23
        entries: list[TagEntry] = []
        blocks: list[UnrecognizedBlock] = []
        seen: set[str] = set()

        for frame in frames:
            try:
                decoded = decode_frame(frame)
            except (UnicodeDecodeError, MalformedError) as exc:
                log.warning("Keeping frame %s verbatim: %s", frame.frame_id, exc)
                decoded = None
            if decoded is None:
                blocks.append(UnrecognizedBlock(frame.frame_id, frame.payload, fmt))
                continue
            if any(e.identifier in seen and not is_repeatable(e.identifier) for e in decoded):
                log.warning("Duplicate %s frame kept verbatim", frame.frame_id)
                blocks.append(UnrecognizedBlock(frame.frame_id, frame.payload, fmt))
                continue
            for entry in decoded:
                seen.add(entry.identifier)
                entries.append(entry)

        log.debug(
            "Decoded ID3v2.%d tag: %d entries, %d unrecognized", version, len(entries), len(blocks)
        )
        return TagModel(
            native_format=fmt,
            native_version=version,
            entries=tuple(entries),
            unrecognized_blocks=tuple(blocks),
        )

    def encode(self, model: TagModel, padding: int = 0) -> bytes:
        self.check_format(model)
        version = 4 if model.native_format is TagFormat.ID3V24 else 3
        frames = b"".join(
            self._frame_bytes(fid, payload, version) for fid, payload in self.frames_for(model)
        )
        size = len(frames) + padding
        if size + ID3_HEADER_SIZE > ID3_MAX_TAG_SIZE:
            raise UnsupportedFeatureError(f"ID3v2 tag of {size} bytes exceeds the 256 MB limit")
        header = b"ID3" + bytes((version, 0, 0)) + encode_syncsafe(size)
        return header + frames + b"\x00" * padding

    def splice(
        self,
        model: TagModel,
        data: bytes,
        location: ContainerLocation,
        padding: int | None = None,
    ) -> Splice:
        if model.is_empty:
            return Splice(location, b"")
        if padding is None:
            unpadded = len(self.encode(model))
            padding = self.choose_padding(unpadded, location, len(data))
        return Splice(location, self.encode(model, padding))

    @staticmethod
    def choose_padding(new_size: int, location: ContainerLocation, file_size: int) -> int:
        """Reuse the old tag's space when shrinking, else leave 1 KiB."""
        if location.present and new_size <= location.length:
            return min(location.length - new_size, max(file_size // 100, DEFAULT_PADDING))
        return DEFAULT_PADDING

    @staticmethod
    def _frame_bytes(frame_id: str, payload: bytes, version: int) -> bytes:
        size = encode_syncsafe(len(payload)) if version == 4 else struct.pack(">I", len(payload))
        return frame_id.encode("ascii") + size + b"\x00\x00" + payload

    # Entry -> frame translation

    def frames_for(self, model: TagModel) -> list[tuple[str, bytes]]:
        version = 4 if model.native_format is TagFormat.ID3V24 else 3
        frames: list[tuple[str, bytes]] = []
        pairs_done: set[str] = set()

        for entry in model.entries:
            spec = field_spec(entry.identifier)
            pair_frame = spec.id3v24 if spec is not None and spec.id3v24 in ID3_PAIRS else None
            if pair_frame is not None:
                if pair_frame not in pairs_done:
                    pairs_done.add(pair_frame)
                    frames.append(self._pair_frame(model, pair_frame, version, entry.hint))
                continue
            if entry.identifier == "DATE" and version == 3:
                frames.extend(self._v23_date_frames(model, entry))
                continue
            frames.extend(self.entry_frames(entry, version))

        for block in model.unrecognized_blocks:
            if not block.native_format.is_id3:
                log.debug("Skipping %s block %s in ID3v2 tag", block.native_format, block.key)
                continue
            if not _is_frame_id(block.key):
                raise MalformedError(f"unrecognized block key {block.key!r} is not a frame id")
            frames.append((block.key, block.data))
        return frames

    def _frame_id(self, entry: TagEntry, version: int) -> str:
        other_version = V24_ONLY if version == 3 else V23_ONLY
        derived = id3_frame_for(entry.identifier, version)
        hint = entry.hint
        if hint is not None and _is_frame_id(hint.key) and hint.key not in other_version:
            if (
                hint.key == derived
                or hint.key in ("TXXX", "WXXX")
                or (not derived and hint.key == entry.identifier)
            ):
                return hint.key
        if derived:
            return derived
        ident = entry.identifier
        if _is_frame_id(ident) and ident[0] in "TW" and ident not in ("TXXX", "WXXX"):
            if ident not in other_version:
                return ident
        return "WXXX" if ident.endswith("URL") else "TXXX"

    def entry_frames(self, entry: TagEntry, version: int) -> list[tuple[str, bytes]]:
        """Frame ids and payloads that carry ``entry`` in the given major version."""
        fid = self._frame_id(entry, version)
        hint = entry.hint
        preferred = hint.encoding if hint is not None else None

        if fid == "APIC":
            return [self._apic(value, version, preferred) for value in entry.values]
        if any(isinstance(v, Binary) for v in entry.values):
            raise UnsupportedFeatureError(
                f"binary value for {entry.identifier} cannot be stored in an ID3v2 {fid} frame"
            )
        texts = entry.texts or [""]

        if fid in ("TXXX", "WXXX"):
            desc = entry.identifier
            if hint is not None and hint.key == fid and hint.description:
                desc = hint.description
            if fid == "WXXX":
                encoding = choose_encoding([desc], version, preferred)
                url = texts[0].encode("latin-1", "replace")
                label = encode_text(desc, encoding) + _TERMINATORS[encoding]
                return [(fid, bytes((encoding,)) + label + url)]
            encoding = choose_encoding([desc, *texts], version, preferred)
            return [(fid, bytes((encoding,)) + self._joined([desc, *texts], encoding))]

        if fid in ("COMM", "USLT"):
            language = (hint.language if hint is not None and hint.language else "eng")[:3].ljust(3)
            desc = hint.description if hint is not None and hint.description else ""
            frames = []
            for text in texts:
                encoding = choose_encoding([desc, text], version, preferred)
                payload = (
                    bytes((encoding,))
                    + language.encode("latin-1", "replace")
                    + encode_text(desc, encoding)
                    + _TERMINATORS[encoding]
                    + encode_text(text, encoding)
                )
                frames.append((fid, payload))
            return frames

        if fid.startswith("W"):
            return [(fid, text.encode("latin-1", "replace")) for text in texts]

        encoding = choose_encoding(texts, version, preferred)
        return [(fid, bytes((encoding,)) + self._joined(texts, encoding))]

    @staticmethod
    def _joined(texts: list[str], encoding: int) -> bytes:
        return _TERMINATORS[encoding].join(encode_text(t, encoding) for t in texts)

    def _apic(self, value: object, version: int, preferred: int | None) -> tuple[str, bytes]:
        if not isinstance(value, Binary):
            raise UnsupportedFeatureError("PICTURE values must be binary")
        encoding = choose_encoding([value.description], version, preferred)
        payload = (
            bytes((encoding,))
            + value.mime.encode("latin-1", "replace")
            + b"\x00"
            + bytes((value.picture_type & 0xFF,))
            + encode_text(value.description, encoding)
            + _TERMINATORS[encoding]
            + value.data
        )
        return "APIC", payload

    def _pair_frame(
        self, model: TagModel, frame_id: str, version: int, hint: NativeHint | None
    ) -> tuple[str, bytes]:
        number_id, total_id = ID3_PAIRS[frame_id]
        number = model.get(number_id)
        total = model.get(total_id)
        text = number.texts[0] if number is not None and number.texts else ""
        if total is not None and total.texts and total.texts[0]:
            text = f"{text}/{total.texts[0]}"
        preferred = hint.encoding if hint is not None else None
        encoding = choose_encoding([text], version, preferred)
        return frame_id, bytes((encoding,)) + encode_text(text, encoding)

    def _v23_date_frames(self, model: TagModel, entry: TagEntry) -> list[tuple[str, bytes]]:
        """Split an ISO timestamp into TYER/TDAT/TIME for ID3v2.3."""
        stamp = entry.texts[0] if entry.texts else ""
        match = _ISO_STAMP.fullmatch(stamp)
        if match is None:
            return self.entry_frames(entry.with_value(stamp), 3)
        year, month, day, hour, minute = match.groups()
        preferred = entry.hint.encoding if entry.hint is not None else None
        encoding = choose_encoding([stamp], 3, preferred)
        frames = [("TYER", bytes((encoding,)) + encode_text(year, encoding))]
        if month and day and "TDAT" not in model:
            frames.append(("TDAT", bytes((encoding,)) + encode_text(day + month, encoding)))
        if hour and minute and "TIME" not in model:
            frames.append(("TIME", bytes((encoding,)) + encode_text(hour + minute, encoding)))
        return frames
