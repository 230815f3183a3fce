"""Typed errors raised by the tag codec engine.

Every failure the engine can report derives from ``TagError`` so that batch
callers can catch one type per file and keep going.
"""

from __future__ import annotations


class TagError(Exception):
    """Base class for all polytag errors."""


class ContainerNotFoundError(TagError):
    """The file has no tag container of the requested kind.

    Recoverable: the caller may choose to create a new container.
    """


class MalformedError(TagError):
    """A container signature is present but its structure is invalid."""

    def __init__(self, message: str, offset: int | None = None):
        if offset is not None:
            message = f"{message} (at offset {offset})"
        super().__init__(message)
        self.offset = offset


class UnsupportedFeatureError(TagError):
    """The container is valid but uses a construct the engine cannot handle."""


class DuplicateFieldError(TagError):
    """A singular field was added while already present."""

    def __init__(self, identifier: str):
        super().__init__(f"field {identifier!r} is already present")
        self.identifier = identifier


class FieldNotFoundError(TagError):
    """A field was modified while absent."""

    def __init__(self, identifier: str):
        super().__init__(f"field {identifier!r} is not present")
        self.identifier = identifier


class TagIOError(TagError):
    """Filesystem failure while reading or rewriting a file."""

    def __init__(self, message: str, cause: OSError | None = None):
        super().__init__(message)
        self.cause = cause
