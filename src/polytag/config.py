from __future__ import annotations

import os
import tomllib
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, Field

from polytag.model import TagFormat


class Id3Version(StrEnum):
    """ID3v2 revision used for files that have no tag yet."""

    V23 = "2.3"
    V24 = "2.4"

    @property
    def tag_format(self) -> TagFormat:
        return TagFormat.ID3V23 if self is Id3Version.V23 else TagFormat.ID3V24


class WriteConfig(BaseModel):
    """Tag writing configuration."""

    # Padding bytes after the tag; None picks a size from the file length
    padding: int | None = Field(default=None, ge=0)
    id3_version: Id3Version = Field(default=Id3Version.V24)
    preserve_mtime: bool = Field(default=False)


class BatchSettings(BaseModel):
    """Multi-file processing configuration."""

    workers: int = Field(default=1, ge=1, le=64)
    continue_on_error: bool = Field(default=True)
    recursive: bool = Field(default=True)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="WARNING")  # DEBUG, INFO, WARNING, ERROR
    hash_paths: bool = Field(default=False)


class Config(BaseModel):
    """
    Main configuration for polytag.

    Loads from TOML file with optional environment variable overrides.
    """

    write: WriteConfig = Field(default_factory=WriteConfig)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_path: Path | None = None) -> Config:
        """
        Load configuration from TOML file with environment variable overrides.

        Environment variables take precedence and follow the pattern:
        POLYTAG_<SECTION>_<KEY> (e.g., POLYTAG_WRITE_PADDING)

        All values are gathered into a single dictionary first, then validated
        by Pydantic to ensure consistent type checking and coercion.
        """
        config_dict: dict[str, object] = {}

        if config_path and config_path.exists():
            config_dict = tomllib.loads(config_path.read_text())

        config_dict = cls._merge_env_overrides(config_dict)
        return cls.model_validate(config_dict)

    @classmethod
    def _merge_env_overrides(cls, config_dict: dict[str, object]) -> dict[str, object]:
        """
        Merge environment variable overrides into config dictionary.

        Returns a new dictionary with env vars applied, ready for Pydantic validation.
        """
        env_prefix = "POLYTAG_"

        def section(name: str) -> dict[str, object]:
            current = config_dict.setdefault(name, {})
            if not isinstance(current, dict):
                current = {}
                config_dict[name] = current
            return current

        write = section("write")
        if padding := os.getenv(f"{env_prefix}WRITE_PADDING"):
            write["padding"] = padding
        if id3_version := os.getenv(f"{env_prefix}WRITE_ID3_VERSION"):
            write["id3_version"] = id3_version
        if preserve_mtime := os.getenv(f"{env_prefix}WRITE_PRESERVE_MTIME"):
            write["preserve_mtime"] = preserve_mtime.lower() in ("true", "1", "yes")

        batch = section("batch")
        if workers := os.getenv(f"{env_prefix}BATCH_WORKERS"):
            batch["workers"] = workers
        if continue_on_error := os.getenv(f"{env_prefix}BATCH_CONTINUE_ON_ERROR"):
            batch["continue_on_error"] = continue_on_error.lower() in ("true", "1", "yes")
        if recursive := os.getenv(f"{env_prefix}BATCH_RECURSIVE"):
            batch["recursive"] = recursive.lower() in ("true", "1", "yes")

        logging_config = section("logging")
        if log_level := os.getenv(f"{env_prefix}LOGGING_LEVEL"):
            logging_config["level"] = log_level
        if log_hash_paths := os.getenv(f"{env_prefix}LOGGING_HASH_PATHS"):
            logging_config["hash_paths"] = log_hash_paths.lower() in ("true", "1", "yes")

        return config_dict


## Tests


def test_config_defaults():
    config = Config()
    assert config.write.padding is None
    assert config.write.id3_version == Id3Version.V24
    assert config.write.id3_version.tag_format is TagFormat.ID3V24
    assert config.write.preserve_mtime is False
    assert config.batch.workers == 1
    assert config.logging.level == "WARNING"


def test_config_from_dict():
    config = Config.model_validate(
        {
            "write": {"padding": 0, "id3_version": "2.3"},
            "batch": {"workers": 4, "continue_on_error": False},
        }
    )
    assert config.write.padding == 0
    assert config.write.id3_version.tag_format is TagFormat.ID3V23
    assert config.batch.workers == 4
    assert config.batch.continue_on_error is False


def test_config_env_overrides(monkeypatch):
    monkeypatch.setenv("POLYTAG_WRITE_PADDING", "2048")
    monkeypatch.setenv("POLYTAG_WRITE_PRESERVE_MTIME", "yes")
    monkeypatch.setenv("POLYTAG_BATCH_WORKERS", "8")
    monkeypatch.setenv("POLYTAG_LOGGING_LEVEL", "DEBUG")

    config = Config.load()
    assert config.write.padding == 2048
    assert config.write.preserve_mtime is True
    assert config.batch.workers == 8
    assert config.logging.level == "DEBUG"


def test_config_env_beats_file(tmp_path, monkeypatch):
    config_file = tmp_path / "polytag.toml"
    config_file.write_text('[write]\nid3_version = "2.3"\npadding = 512\n')
    monkeypatch.setenv("POLYTAG_WRITE_PADDING", "64")

    config = Config.load(config_file)
    assert config.write.id3_version == Id3Version.V23
    assert config.write.padding == 64


def test_config_load_nonexistent_file():
    config = Config.load(Path("/nonexistent/config.toml"))
    assert config.write.padding is None
    assert config.batch.recursive is True
