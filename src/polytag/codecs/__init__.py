"""
Format codecs, one per container kind.

``get_codec`` is the single dispatch point from a ``ContainerKind`` to the
codec that decodes and encodes it.
"""

from __future__ import annotations

from polytag.codecs.base import Splice, TagCodec
from polytag.codecs.id3v2 import Id3v2Codec
from polytag.codecs.mp4 import Mp4Codec
from polytag.codecs.ogg import OggCodec
from polytag.codecs.vorbis import FlacCodec
from polytag.errors import UnsupportedFeatureError
from polytag.model import ContainerKind

__all__ = (
    "FlacCodec",
    "Id3v2Codec",
    "Mp4Codec",
    "OggCodec",
    "Splice",
    "TagCodec",
    "get_codec",
)


def get_codec(kind: ContainerKind | str) -> TagCodec:
    """
    Get the codec for a container kind.

    Raises:
        UnsupportedFeatureError: If no codec handles ``kind``
    """
    kind_enum = ContainerKind(kind) if isinstance(kind, str) else kind

    if kind_enum == ContainerKind.ID3V2:
        return Id3v2Codec()
    elif kind_enum == ContainerKind.FLAC:
        return FlacCodec()
    elif kind_enum in (ContainerKind.OGG_VORBIS, ContainerKind.OGG_OPUS):
        return OggCodec(kind_enum)
    elif kind_enum == ContainerKind.MP4:
        return Mp4Codec()

    raise UnsupportedFeatureError(f"no codec for container kind {kind_enum}")
