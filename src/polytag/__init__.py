__all__ = (
    "__version__",
    # Model
    "Binary",
    "ContainerKind",
    "NativeHint",
    "TagEntry",
    "TagFormat",
    "TagModel",
    "UnrecognizedBlock",
    # Errors
    "ContainerNotFoundError",
    "DuplicateFieldError",
    "FieldNotFoundError",
    "MalformedError",
    "TagError",
    "TagIOError",
    "UnsupportedFeatureError",
    # Engine
    "CopyResult",
    "UpgradeResult",
    "add",
    "clear",
    "convert",
    "copy",
    "delete",
    "downgrade",
    "get_codec",
    "modadd",
    "modify",
    "scan",
    "upgrade",
    # Files
    "TagFile",
    "WriteReport",
    "copy_tags",
    "read_tags",
    "save_tags",
    "upgrade_file",
)

__version__ = "0.1.0"

from polytag.codecs import get_codec
from polytag.copying import CopyResult, copy
from polytag.errors import (
    ContainerNotFoundError,
    DuplicateFieldError,
    FieldNotFoundError,
    MalformedError,
    TagError,
    TagIOError,
    UnsupportedFeatureError,
)
from polytag.model import (
    Binary,
    ContainerKind,
    NativeHint,
    TagEntry,
    TagFormat,
    TagModel,
    UnrecognizedBlock,
)
from polytag.mutation import add, clear, delete, modadd, modify
from polytag.scanner import scan
from polytag.tagging import TagFile, WriteReport, copy_tags, read_tags, save_tags, upgrade_file
from polytag.upgrade import UpgradeResult, convert, downgrade, upgrade
