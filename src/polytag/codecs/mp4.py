"""MP4 / QuickTime metadata atom codec (``moov/udta/meta/ilst``).

Every box size is validated against its parent before it is trusted (see
``polytag.scanner.iter_boxes``). Items whose code has no identifier, or
whose data cannot be typed, are preserved verbatim as full atom bytes.

Splicing rewrites the whole ``moov`` box. When its size changes and media
data follows it, every ``stco``/``co64`` chunk offset that points past the
old ``moov`` is shifted by the size delta.
"""

from __future__ import annotations

import logging
import struct

from polytag.codecs.base import Splice, TagCodec
from polytag.errors import MalformedError, UnsupportedFeatureError
from polytag.fields import (
    ITUNES_MEAN,
    MP4_PAIRS,
    field_spec,
    identifier_for_mp4,
    is_repeatable,
    mp4_atom_for,
)
from polytag.model import (
    Binary,
    ContainerKind,
    NativeHint,
    Scalar,
    TagEntry,
    TagFormat,
    TagModel,
    UnrecognizedBlock,
)
from polytag.scanner import (
    Box,
    ByteCursor,
    ContainerLocation,
    find_box,
    find_ilst,
    iter_boxes,
    meta_children_offset,
)

log = logging.getLogger(__name__)

DEFAULT_PADDING = 1024

# Well-known data atom type codes.
IMPLICIT = 0
UTF8 = 1
UTF16 = 2
JPEG = 13
PNG = 14
BE_SIGNED = 21
BMP = 27

IMAGE_TYPES = {JPEG: "image/jpeg", PNG: "image/png", BMP: "image/bmp"}
FREEFORM = "----"

HDLR_BODY = b"\x00" * 8 + b"mdirappl" + b"\x00" * 9


def atom(kind: str, payload: bytes) -> bytes:
    """Serialize a box, switching to a 64-bit size when needed."""
    code = kind.encode("latin-1")
    if len(payload) + 8 > 0xFFFFFFFF:
        return struct.pack(">I4sQ", 1, code, len(payload) + 16) + payload
    return struct.pack(">I4s", len(payload) + 8, code) + payload


def data_atom(data_type: int, payload: bytes) -> bytes:
    return atom("data", struct.pack(">II", data_type, 0) + payload)


def _read_full_string(data: bytes, box: Box) -> str:
    if box.data_size < 4:
        raise MalformedError(f"{box.type!r} box too short", box.offset)
    return data[box.data_offset + 4 : box.end].decode("utf-8")


def _data_values(data: bytes, item: Box) -> list[tuple[int, bytes]]:
    values = []
    for child in iter_boxes(data, item.data_offset, item.end):
        if child.type != "data":
            continue
        if child.data_size < 8:
            raise MalformedError("data atom shorter than its header", child.offset)
        cursor = ByteCursor(data, child.data_offset, child.end)
        data_type = cursor.u32be() & 0x00FFFFFF
        cursor.skip(4)  # locale
        values.append((data_type, cursor.read_rest()))
    return values


def _int_value(payload: bytes) -> int | None:
    if len(payload) not in (1, 2, 3, 4, 8):
        log.warning("Keeping %d-byte integer item verbatim", len(payload))
        return None
    return int.from_bytes(payload, "big", signed=True)


def _typed_value(code: str, data_type: int, payload: bytes) -> Scalar | None:
    if code == "covr":
        mime = IMAGE_TYPES.get(data_type, "image/jpeg" if data_type == IMPLICIT else None)
        return Binary(data=payload, mime=mime) if mime else None
    if data_type == UTF8:
        return payload.decode("utf-8")
    if data_type == UTF16:
        return payload.decode("utf-16-be")
    if data_type in (BE_SIGNED, IMPLICIT) and code in ("tmpo", "cpil"):
        return _int_value(payload)
    return None


def decode_item(data: bytes, item: Box) -> list[TagEntry] | None:
    """Decode one ``ilst`` item, or return ``None`` to keep it verbatim."""
    code = item.type
    values = _data_values(data, item)
    if not values:
        return None

    if code == FREEFORM:
        mean = name = None
        for child in iter_boxes(data, item.data_offset, item.end):
            if child.type == "mean":
                mean = _read_full_string(data, child)
            elif child.type == "name":
                name = _read_full_string(data, child)
        if not mean or not name or not name.strip():
            return None
        if any(data_type != UTF8 for data_type, _ in values):
            return None
        texts = [payload.decode("utf-8") for _, payload in values]
        hint = NativeHint(f"{FREEFORM}:{mean}:{name}", mean=mean, description=name, data_type=UTF8)
        return [TagEntry(name, texts[0] if len(texts) == 1 else texts, hint)]

    if code in MP4_PAIRS:
        payload = values[0][1]
        if len(payload) < 6:
            log.warning("Keeping short %s item verbatim (%d bytes)", code, len(payload))
            return None
        number, total = struct.unpack(">HH", payload[2:6])
        number_id, total_id = MP4_PAIRS[code]
        hint = NativeHint(code, data_type=values[0][0])
        entries = []
        if number or not total:
            entries.append(TagEntry(number_id, number, hint))
        if total:
            entries.append(TagEntry(total_id, total, hint))
        return entries

    identifier = identifier_for_mp4(code)
    if identifier is None:
        return None
    decoded = [_typed_value(code, data_type, payload) for data_type, payload in values]
    if any(value is None for value in decoded):
        return None
    hint = NativeHint(code, data_type=values[0][0])
    if code == "covr":
        return [TagEntry(identifier, value, hint) for value in decoded]
    return [TagEntry(identifier, decoded[0] if len(decoded) == 1 else decoded, hint)]


def _as_int(value: Scalar, identifier: str) -> int:
    if isinstance(value, Binary):
        raise UnsupportedFeatureError(f"{identifier} must be numeric in MP4")
    try:
        return int(str(value).strip())
    except ValueError as exc:
        raise UnsupportedFeatureError(
            f"{identifier} must be numeric in MP4, got {value!r}"
        ) from exc


class Mp4Codec(TagCodec):
    """iTunes-style ``ilst`` metadata inside an MP4 ``moov`` box."""

    kinds = (ContainerKind.MP4,)
    formats = (TagFormat.MP4,)

    def decode(self, data: bytes, location: ContainerLocation) -> TagModel:
        moov = next(iter_boxes(data, location.offset, location.end))
        ilst = find_ilst(data, moov)
        if ilst is None:
            return TagModel.empty(TagFormat.MP4)

        entries: list[TagEntry] = []
        blocks: list[UnrecognizedBlock] = []
        seen: set[str] = set()
        for item in iter_boxes(data, ilst.data_offset, ilst.end):
            raw = data[item.offset : item.end]
            try:
                decoded = decode_item(data, item)
            except UnicodeDecodeError as exc:
                log.warning("Keeping MP4 item %r verbatim: %s", item.type, exc)
                decoded = None
            if decoded is None or any(
                e.identifier in seen and not is_repeatable(e.identifier) for e in decoded
            ):
                blocks.append(UnrecognizedBlock(item.type, raw, TagFormat.MP4))
                continue
            for entry in decoded:
                seen.add(entry.identifier)
                entries.append(entry)

        log.debug("Decoded MP4 ilst: %d entries, %d unrecognized", len(entries), len(blocks))
        return TagModel(
            native_format=TagFormat.MP4,
            entries=tuple(entries),
            unrecognized_blocks=tuple(blocks),
        )

    # Encoding

    def encode(self, model: TagModel) -> bytes:
        """The ``ilst`` box for ``model``."""
        self.check_format(model)
        items: list[bytes] = []
        pairs_done: set[str] = set()
        for entry in model.entries:
            code = mp4_atom_for(entry.identifier)
            if code in MP4_PAIRS:
                if code not in pairs_done:
                    pairs_done.add(code)
                    items.append(self._pair_item(model, code))
                continue
            items.append(self._item(entry, code))
        for block in model.unrecognized_blocks:
            if block.native_format is TagFormat.MP4:
                items.append(block.data)
        return atom("ilst", b"".join(items))

    def _pair_item(self, model: TagModel, code: str) -> bytes:
        number_id, total_id = MP4_PAIRS[code]
        number = model.get(number_id)
        total = model.get(total_id)
        n = _as_int(number.values[0], number_id) if number is not None else 0
        t = _as_int(total.values[0], total_id) if total is not None else 0
        if not (0 <= n <= 0xFFFF and 0 <= t <= 0xFFFF):
            raise UnsupportedFeatureError(f"{code} values out of range: {n}/{t}")
        payload = struct.pack(">HHH", 0, n, t)
        if code == "trkn":
            payload += b"\x00\x00"
        return atom(code, data_atom(IMPLICIT, payload))

    def _item(self, entry: TagEntry, code: str | None) -> bytes:
        values = entry.values
        if code is None:
            hint = entry.hint
            mean, name = ITUNES_MEAN, entry.identifier
            if hint is not None and hint.key.startswith(FREEFORM) and hint.mean:
                mean = hint.mean
                if hint.description and hint.description.upper() == entry.identifier:
                    name = hint.description
            payload = atom("mean", b"\x00" * 4 + mean.encode("utf-8"))
            payload += atom("name", b"\x00" * 4 + name.encode("utf-8"))
            for value in values:
                if isinstance(value, Binary):
                    payload += data_atom(IMPLICIT, value.data)
                else:
                    payload += data_atom(UTF8, str(value).encode("utf-8"))
            return atom(FREEFORM, payload)

        if code == "covr":
            payload = b""
            for value in values:
                if not isinstance(value, Binary):
                    raise UnsupportedFeatureError("PICTURE values must be binary")
                data_type = {v: k for k, v in IMAGE_TYPES.items()}.get(value.mime, JPEG)
                payload += data_atom(data_type, value.data)
            return atom(code, payload)

        spec = field_spec(entry.identifier)
        if spec is not None and spec.numeric:
            number = _as_int(values[0], entry.identifier)
            width = 1 if code == "cpil" else 2
            if not -(1 << (8 * width - 1)) <= number < 1 << (8 * width - 1):
                raise UnsupportedFeatureError(f"{entry.identifier} value {number} out of range")
            return atom(code, data_atom(BE_SIGNED, number.to_bytes(width, "big", signed=True)))

        payload = b""
        for value in values:
            if isinstance(value, Binary):
                raise UnsupportedFeatureError(
                    f"binary value for {entry.identifier} cannot be stored in MP4 {code!r}"
                )
            payload += data_atom(UTF8, str(value).encode("utf-8"))
        return atom(code, payload)

    # Splicing

    def splice(
        self,
        model: TagModel,
        data: bytes,
        location: ContainerLocation,
        padding: int | None = None,
    ) -> Splice:
        moov = next(iter_boxes(data, location.offset, location.end))
        ilst = self.encode(model)
        if padding is None:
            unpadded = len(self._rebuild_moov(data, moov, ilst, None))
            padding = self.choose_padding(unpadded, location, len(data))
        elif 0 < padding < 8:
            padding = 8
        new_moov = bytearray(self._rebuild_moov(data, moov, ilst, padding))

        delta = len(new_moov) - moov.size
        if delta:
            if any(box.type == "moof" for box in iter_boxes(data, 0, len(data))):
                raise UnsupportedFeatureError("resizing moov in a fragmented MP4 is not supported")
            self._shift_chunk_offsets(new_moov, moov.end, delta)
        return Splice(location, bytes(new_moov))

    @staticmethod
    def choose_padding(new_size: int, location: ContainerLocation, file_size: int) -> int:
        """Size of the ``free`` box placed after ``ilst`` (0 means none)."""
        spare = location.length - new_size
        if spare == 0:
            return 0
        if 8 <= spare <= max(file_size // 100, DEFAULT_PADDING):
            return spare
        return DEFAULT_PADDING

    def _rebuild_moov(self, data: bytes, moov: Box, ilst: bytes, padding: int | None) -> bytes:
        free = atom("free", b"\x00" * (padding - 8)) if padding else b""
        children: list[bytes] = []
        udta_done = False
        for child in iter_boxes(data, moov.data_offset, moov.end):
            if child.type == "udta" and not udta_done:
                children.append(self._rebuild_udta(data, child, ilst + free))
                udta_done = True
            else:
                children.append(data[child.offset : child.end])
        if not udta_done:
            children.append(atom("udta", self._new_meta(ilst + free)))
        return atom("moov", b"".join(children))

    def _new_meta(self, contents: bytes) -> bytes:
        return atom("meta", b"\x00" * 4 + atom("hdlr", HDLR_BODY) + contents)

    def _rebuild_udta(self, data: bytes, udta: Box, contents: bytes) -> bytes:
        children: list[bytes] = []
        meta_done = False
        for child in iter_boxes(data, udta.data_offset, udta.end):
            if child.type == "meta" and not meta_done:
                children.append(self._rebuild_meta(data, child, contents))
                meta_done = True
            else:
                children.append(data[child.offset : child.end])
        if not meta_done:
            children.append(self._new_meta(contents))
        return atom("udta", b"".join(children))

    def _rebuild_meta(self, data: bytes, meta: Box, contents: bytes) -> bytes:
        start = meta_children_offset(data, meta)
        prefix = data[meta.data_offset : start]
        children: list[bytes] = []
        has_hdlr = False
        for child in iter_boxes(data, start, meta.end):
            if child.type in ("ilst", "free"):
                continue
            has_hdlr = has_hdlr or child.type == "hdlr"
            children.append(data[child.offset : child.end])
        if not has_hdlr:
            children.insert(0, atom("hdlr", HDLR_BODY))
        return atom("meta", prefix + b"".join(children) + contents)

    def _shift_chunk_offsets(self, moov: bytearray, old_moov_end: int, delta: int) -> None:
        """Patch ``stco``/``co64`` entries that point past the old ``moov`` in place."""
        data = bytes(moov)
        root = next(iter_boxes(data, 0, len(data)))
        for trak in iter_boxes(data, root.data_offset, root.end):
            if trak.type != "trak":
                continue
            stbl = self._find_path(data, trak, ("mdia", "minf", "stbl"))
            if stbl is None:
                continue
            for table in iter_boxes(data, stbl.data_offset, stbl.end):
                if table.type not in ("stco", "co64"):
                    continue
                cursor = ByteCursor(data, table.data_offset + 4, table.end)
                count = cursor.u32be()
                width = 4 if table.type == "stco" else 8
                fmt = ">I" if width == 4 else ">Q"
                if count * width > cursor.remaining:
                    raise MalformedError(f"{table.type} entry count overruns box", table.offset)
                for _ in range(count):
                    pos = cursor.pos
                    value = cursor.u32be() if width == 4 else cursor.u64be()
                    if value < old_moov_end:
                        continue
                    shifted = value + delta
                    if shifted >= 1 << (8 * width):
                        raise UnsupportedFeatureError("chunk offset overflows stco; co64 needed")
                    moov[pos : pos + width] = struct.pack(fmt, shifted)
                log.debug("Shifted %d %s offsets by %d", count, table.type, delta)

    @staticmethod
    def _find_path(data: bytes, box: Box, path: tuple[str, ...]) -> Box | None:
        current: Box | None = box
        for name in path:
            if current is None:
                return None
            current = find_box(data, current.data_offset, current.end, name)
        return current
