"""Abstract codec interface shared by the ID3v2, Vorbis and MP4 codecs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from polytag.errors import UnsupportedFeatureError
from polytag.model import ContainerKind, TagFormat, TagModel
from polytag.scanner import ContainerLocation


@dataclass(frozen=True)
class Splice:
    """Replacement bytes for a byte range of a file."""

    location: ContainerLocation
    payload: bytes

    @property
    def delta(self) -> int:
        """Change in file size once the splice is applied."""
        return len(self.payload) - self.location.length

    def apply(self, data: bytes) -> bytes:
        return data[: self.location.offset] + self.payload + data[self.location.end :]


class TagCodec(ABC):
    """
    Decode a located container into a ``TagModel`` and encode it back.

    ``encode`` produces standalone container bytes; ``splice`` embeds them
    into the surrounding file structure and reports the byte range to
    replace.
    """

    kinds: tuple[ContainerKind, ...] = ()
    formats: tuple[TagFormat, ...] = ()

    @abstractmethod
    def decode(self, data: bytes, location: ContainerLocation) -> TagModel:
        """Decode the container at ``location`` within ``data``."""
        pass

    @abstractmethod
    def encode(self, model: TagModel) -> bytes:
        """Serialize ``model`` as container bytes, sizes computed from the payload."""
        pass

    @abstractmethod
    def splice(
        self,
        model: TagModel,
        data: bytes,
        location: ContainerLocation,
        padding: int | None = None,
    ) -> Splice:
        """
        Build the replacement for ``location`` holding ``model``.

        Args:
            model: Model to write
            data: Full current file contents
            location: Container location from the scanner (or an anchor)
            padding: Explicit padding size; ``None`` lets the codec decide
        """
        pass

    def check_format(self, model: TagModel) -> None:
        if model.native_format not in self.formats:
            raise UnsupportedFeatureError(
                f"{type(self).__name__} cannot encode a {model.native_format} model"
            )
