"""In-family tag revision conversions.

Only ID3 has more than one revision: ``upgrade`` moves ID3v2.3 to ID3v2.4
and ``downgrade`` saves an ID3v2.4 model as ID3v2.3. Vorbis comments and
MP4 atoms have a single revision. Moving between families is a copy, not
a conversion.

Frames embedded in CHAP and CTOC frames are kept as they are and reported.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace

from polytag.codecs.id3v2 import V23_ONLY, Id3v2Codec
from polytag.errors import UnsupportedFeatureError
from polytag.model import NativeHint, TagEntry, TagFormat, TagModel, UnrecognizedBlock

log = logging.getLogger(__name__)

LATEST = {"id3v2": TagFormat.ID3V24}

# v2.3 frames renamed in v2.4, keyed by identifier.
RENAMED = {
    "ORIGINALDATE": "TDOR",
    "INVOLVEDPEOPLE": "TIPL",
}

# v2.4 frames with no ID3v2.3 counterpart.
DROPPED_IN_V23 = frozenset(
    {
        "EQU2", "RVA2", "ASPI", "SEEK", "SIGN", "TDEN", "TDRL",
        "TDTG", "TMOO", "TPRO", "TSST", "TSOA", "TSOP", "TSOT",
    }
)  # fmt: skip

CHAPTER_FRAMES = ("CHAP", "CTOC")

_GENRE_REF = re.compile(r"\((\d+|RX|CR)\)")


@dataclass
class UpgradeResult:
    """Outcome of a revision conversion; ``upgraded`` is False for the no-op case."""

    model: TagModel
    warnings: list[str] = field(default_factory=list)
    upgraded: bool = False


def needs_upgrade(model: TagModel) -> bool:
    latest = LATEST.get(model.native_format.family)
    return latest is not None and model.native_format != latest


def split_genre(text: str) -> list[str]:
    """Turn a v2.3 ``TCON`` string such as ``(4)(17)Rock`` into v2.4 values.

    A trailing refinement replaces the reference it follows.
    """
    values: list[str] = []
    rest = text
    while not rest.startswith("((") and (match := _GENRE_REF.match(rest)):
        values.append(match.group(1))
        rest = rest[match.end() :]
    if rest.startswith("(("):
        rest = rest[1:]
    if rest:
        if values:
            values.pop()
        values.append(rest)
    return values or [text]


def build_timestamp(year: str, ddmm: str | None, hhmm: str | None) -> tuple[str, set[str]]:
    """Join TYER/TDAT/TIME into an ISO 8601 timestamp.

    Stops at the first part that is missing or invalid; returns the stamp
    and the names of the parts that were consumed.
    """
    used: set[str] = set()
    if not re.fullmatch(r"\d{4}", year):
        return year, used
    stamp = year
    if ddmm is None or not re.fullmatch(r"\d{4}", ddmm):
        return stamp, used
    day, month = int(ddmm[:2]), int(ddmm[2:])
    if not (1 <= month <= 12 and 1 <= day <= 31):
        return stamp, used
    stamp += f"-{month:02d}-{day:02d}"
    used.add("TDAT")
    if hhmm is None or not re.fullmatch(r"\d{4}", hhmm):
        return stamp, used
    hour, minute = int(hhmm[:2]), int(hhmm[2:])
    if hour > 23 or minute > 59:
        return stamp, used
    used.add("TIME")
    return stamp + f"T{hour:02d}:{minute:02d}", used


def _first_text(entry: TagEntry | None) -> str | None:
    if entry is None or not entry.texts:
        return None
    return entry.texts[0].strip()


def _rehint(entry: TagEntry, key: str) -> TagEntry:
    encoding = entry.hint.encoding if entry.hint is not None else None
    return replace(entry, hint=NativeHint(key, encoding=encoding))


def upgrade(model: TagModel) -> UpgradeResult:
    """Upgrade ``model`` to the newest revision of its format family.

    Returns a no-op result (``upgraded=False``) when the model already is
    at the latest revision or its family has only one.
    """
    if not needs_upgrade(model):
        return UpgradeResult(model=model)

    codec = Id3v2Codec()
    warnings: list[str] = []
    blocks = list(model.unrecognized_blocks)

    date = model.get("DATE")
    stamp, used = build_timestamp(
        _first_text(date) or "", _first_text(model.get("TDAT")), _first_text(model.get("TIME"))
    )

    entries: list[TagEntry] = []
    for entry in model.entries:
        ident = entry.identifier
        if ident == "DATE" and entry is date:
            entries.append(_rehint(entry.with_value(stamp), "TDRC"))
        elif ident in used:
            continue
        elif ident in RENAMED:
            entries.append(_rehint(entry, RENAMED[ident]))
        elif ident == "GENRE":
            values = [v for text in entry.texts for v in split_genre(text)]
            entries.append(entry.with_value(values[0] if len(values) == 1 else values))
        elif ident in V23_ONLY:
            for frame_id, payload in codec.entry_frames(entry, 3):
                blocks.append(UnrecognizedBlock(frame_id, payload, TagFormat.ID3V23))
            warnings.append(f"{ident} has no ID3v2.4 equivalent; kept as an unrecognized frame")
        else:
            entries.append(entry)

    for block in model.unrecognized_blocks:
        if block.key in V23_ONLY:
            warnings.append(f"{block.key} has no ID3v2.4 equivalent; kept as an unrecognized frame")
    warnings.extend(_chapter_warnings(model, "ID3v2.4"))

    for warning in warnings:
        log.warning(warning)
    upgraded = replace(
        model,
        native_format=TagFormat.ID3V24,
        native_version=4,
        entries=tuple(entries),
        unrecognized_blocks=tuple(blocks),
    )
    return UpgradeResult(model=upgraded, warnings=warnings, upgraded=True)


def join_genre(values: list[str]) -> str:
    """Turn v2.4 ``TCON`` values back into one v2.3 string such as ``(4)(17)Rock``.

    Numeric and RX/CR values become references; names follow them, joined
    by ``/``.
    """
    refs = "".join(f"({v})" for v in values if v.isdigit() or v in ("RX", "CR"))
    names = [v for v in values if not (v.isdigit() or v in ("RX", "CR"))]
    text = "/".join(names)
    if text.startswith("("):
        text = "(" + text
    return refs + text


def _chapter_warnings(model: TagModel, target: str) -> list[str]:
    return [
        f"frames inside {block.key} are not converted to {target}"
        for block in model.unrecognized_blocks
        if block.key in CHAPTER_FRAMES
    ]


def downgrade(model: TagModel) -> UpgradeResult:
    """Convert an ID3v2.4 model so it can be saved as ID3v2.3.

    TDRC is split into TYER/TDAT/TIME by the encoder, TDOR keeps only its
    year as TORY, and TIPL/TMCL merge into IPLS. Frames without a v2.3
    counterpart are dropped with a warning.
    """
    if model.native_format is not TagFormat.ID3V24:
        return UpgradeResult(model=model)

    warnings: list[str] = []
    entries: list[TagEntry] = []
    credits: int | None = None

    for entry in model.entries:
        ident = entry.identifier
        native = entry.hint.key if entry.hint is not None else ident
        if native in DROPPED_IN_V23:
            warnings.append(f"{ident} has no ID3v2.3 equivalent; dropped")
        elif ident == "DATE":
            entries.append(_rehint(entry, "TYER"))
        elif ident == "ORIGINALDATE":
            year = re.match(r"\d*", _first_text(entry) or "").group()
            if year:
                entries.append(_rehint(entry.with_value(year), "TORY"))
            else:
                warnings.append(f"ORIGINALDATE {entry.text!r} has no year; dropped")
        elif ident in ("INVOLVEDPEOPLE", "MUSICIANCREDITS"):
            if credits is None:
                credits = len(entries)
                entries.append(_rehint(replace(entry, identifier="INVOLVEDPEOPLE"), "IPLS"))
            else:
                merged = entries[credits].values + entry.values
                entries[credits] = entries[credits].with_value(merged)
        elif ident == "GENRE" and len(entry.texts) > 1:
            entries.append(entry.with_value(join_genre(entry.texts)))
        else:
            entries.append(entry)

    blocks: list[UnrecognizedBlock] = []
    for block in model.unrecognized_blocks:
        if block.key in DROPPED_IN_V23:
            warnings.append(f"{block.key} has no ID3v2.3 equivalent; dropped")
        else:
            blocks.append(block)
    warnings.extend(_chapter_warnings(model, "ID3v2.3"))

    for warning in warnings:
        log.warning(warning)
    downgraded = replace(
        model,
        native_format=TagFormat.ID3V23,
        native_version=3,
        entries=tuple(entries),
        unrecognized_blocks=tuple(blocks),
    )
    return UpgradeResult(model=downgraded, warnings=warnings, upgraded=True)


def convert(model: TagModel, target: TagFormat) -> UpgradeResult:
    """Move ``model`` to another revision of its own family.

    Raises:
        UnsupportedFeatureError: If ``target`` belongs to another family
    """
    if target.family != model.native_format.family:
        raise UnsupportedFeatureError(
            f"cannot convert {model.native_format} to {target}; copy the tags instead"
        )
    if target is TagFormat.ID3V23:
        return downgrade(model)
    if target is LATEST.get(target.family):
        return upgrade(model)
    return UpgradeResult(model=model)
