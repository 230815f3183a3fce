"""Pytest configuration and shared fixtures for polytag tests."""

from __future__ import annotations

import pytest

from tests.builders import (
    flac_bytes,
    mp3_bytes,
    mp4_bytes,
    mp4_text,
    ogg_opus_bytes,
    ogg_vorbis_bytes,
    text_frame,
)

# =============================================================================
# Environment isolation
# =============================================================================


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep POLYTAG_* variables from the developer's shell out of the tests."""
    import os

    for name in list(os.environ):
        if name.startswith("POLYTAG_"):
            monkeypatch.delenv(name)

    from polytag.safe_logging import _get_library_root

    _get_library_root.cache_clear()
    yield
    _get_library_root.cache_clear()


# =============================================================================
# File Fixtures
# =============================================================================


@pytest.fixture
def make_file(tmp_path):
    """Write bytes to a named file under ``tmp_path``."""

    def _make(name: str, data: bytes):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    return _make


@pytest.fixture
def mp3_file(make_file):
    """An MP3 with an ID3v2.4 tag."""
    return make_file(
        "song.mp3",
        mp3_bytes(
            text_frame("TIT2", "Sinnerman"),
            text_frame("TPE1", "Nina Simone"),
            text_frame("TRCK", "5/12"),
            padding=128,
        ),
    )


@pytest.fixture
def flac_file(make_file):
    """A FLAC file with a few Vorbis comments."""
    return make_file("song.flac", flac_bytes(["TITLE=Sinnerman", "Artist=Nina Simone"]))


@pytest.fixture
def ogg_file(make_file):
    """An Ogg Vorbis file with a few comments."""
    return make_file("song.ogg", ogg_vorbis_bytes(["TITLE=Sinnerman", "ARTIST=Nina Simone"]))


@pytest.fixture
def opus_file(make_file):
    """An Ogg Opus file with a few comments."""
    return make_file("song.opus", ogg_opus_bytes(["TITLE=Sinnerman", "ARTIST=Nina Simone"]))


@pytest.fixture
def mp4_file(make_file):
    """An M4A file with title and artist atoms."""
    return make_file(
        "song.m4a",
        mp4_bytes([mp4_text("\xa9nam", "Sinnerman"), mp4_text("\xa9ART", "Nina Simone")]),
    )
