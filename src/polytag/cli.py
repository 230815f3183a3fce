"""Command-line tagger built on the polytag codec engine.

Each file is opened, edited and rewritten as one unit; several files are
processed independently, optionally on a thread pool.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any

import typer

from polytag import __version__, mutation
from polytag.batch import BatchConfig, collect_audio_files, process_batch
from polytag.config import Config, Id3Version
from polytag.console import (
    get_console,
    make_progress,
    print_error,
    print_success,
    print_warning,
    set_console,
    tag_table,
)
from polytag.copying import copy
from polytag.errors import TagError
from polytag.model import Binary, TagFormat, TagModel, normalize_identifier
from polytag.safe_logging import configure_rich_logging
from polytag.tagging import WriteReport, read_tags, save_tags
from polytag.upgrade import downgrade, upgrade

log = logging.getLogger(__name__)

# Friendly names accepted on the command line
TAG_ALIASES = {
    "album": "ALBUM",
    "artist": "ARTIST",
    "comment": "COMMENT",
    "date": "DATE",
    "year": "DATE",
    "genre": "GENRE",
    "title": "TITLE",
    "track": "TRACKNUMBER",
    "disc": "DISCNUMBER",
}


class ExitCode:
    """Standard exit codes for the CLI."""

    SUCCESS = 0
    ERROR = 1
    USAGE = 2


app = typer.Typer(
    name="polytag",
    help="Read, edit, upgrade and copy tags in MP3, FLAC, Ogg and MP4 files",
    add_completion=False,
)


def tag_identifier(name: str) -> str:
    """Map a command-line tag name to a normalized identifier."""
    return TAG_ALIASES.get(name.strip().lower(), normalize_identifier(name))


def parse_assignment(text: str) -> tuple[str, str]:
    """Split ``NAME=VALUE``; the value may itself contain ``=``."""
    name, sep, value = text.partition("=")
    if not sep or not name.strip():
        raise typer.BadParameter(f"expected NAME=VALUE, got {text!r}")
    return tag_identifier(name), value


@dataclass
class Edits:
    """Everything requested for each file, in the order it is applied."""

    upgrade: bool = False
    source: TagModel | None = None
    copy_tags: list[str] | None = None
    clear: bool = False
    delete: list[str] = field(default_factory=list)
    add: list[tuple[str, str]] = field(default_factory=list)
    modify: list[tuple[str, str]] = field(default_factory=list)
    modadd: list[tuple[str, str]] = field(default_factory=list)
    downgrade: bool = False

    @property
    def writes(self) -> bool:
        return bool(
            self.upgrade
            or self.source is not None
            or self.clear
            or self.delete
            or self.add
            or self.modify
            or self.modadd
            or self.downgrade
        )


@dataclass
class FileResult:
    """Outcome for one successfully processed file."""

    path: Path
    model: TagModel
    report: WriteReport | None = None
    warnings: list[str] = field(default_factory=list)


def apply_edits(model: TagModel, edits: Edits, warnings: list[str]) -> TagModel:
    """Run the requested operations over ``model``; warnings are appended."""
    if edits.upgrade:
        result = upgrade(model)
        model = result.model
        warnings.extend(result.warnings)
    if edits.source is not None:
        [copied] = copy(edits.source, edits.copy_tags, [model])
        model = copied.model
        warnings.extend(copied.warnings)
    if edits.clear:
        model = mutation.clear(model)
    if edits.delete:
        model = mutation.delete(model, edits.delete)
    for ident, value in edits.add:
        model = mutation.add(model, ident, value)
    for ident, value in edits.modify:
        model = mutation.modify(model, ident, value)
    for ident, value in edits.modadd:
        model = mutation.modadd(model, ident, value)
    if edits.downgrade and model.native_format is TagFormat.ID3V24:
        result = downgrade(model)
        model = result.model
        warnings.extend(result.warnings)
    return model


def _json_value(value: Any) -> Any:
    if isinstance(value, Binary):
        return {"mime": value.mime, "size": len(value.data), "picture_type": value.picture_type}
    return value


def _tags_dict(model: TagModel, identifiers: list[str] | None) -> dict[str, list[Any]]:
    tags: dict[str, list[Any]] = {}
    wanted = identifiers if identifiers is not None else model.identifiers()
    for ident in wanted:
        for entry in model.get_all(ident):
            tags.setdefault(entry.identifier, []).extend(_json_value(v) for v in entry.values)
    return tags


@app.command()
def main(
    paths: Annotated[
        list[Path],
        typer.Argument(help="Audio files or directories"),
    ],
    add: Annotated[
        list[str] | None,
        typer.Option("--add", "-a", help="Add NAME=VALUE (fails if a singular field is set)"),
    ] = None,
    delete: Annotated[
        list[str] | None,
        typer.Option("--delete", "-d", help="Delete every value of NAME"),
    ] = None,
    modify: Annotated[
        list[str] | None,
        typer.Option("--modify", "-m", help="Replace NAME=VALUE (fails if NAME is absent)"),
    ] = None,
    modadd: Annotated[
        list[str] | None,
        typer.Option("--modadd", "-M", help="Replace NAME=VALUE, adding it if absent"),
    ] = None,
    output: Annotated[
        list[str] | None,
        typer.Option("--output", "-o", help="Show the given fields"),
    ] = None,
    output_all: Annotated[
        bool, typer.Option("--output-all", "-O", help="Show every field")
    ] = False,
    clear: Annotated[bool, typer.Option("--clear", "-0", help="Remove every field")] = False,
    upgrade_tag: Annotated[
        bool, typer.Option("--upgrade", "-u", help="Upgrade ID3v2.3 tags to ID3v2.4")
    ] = False,
    downgrade_tag: Annotated[
        bool, typer.Option("--downgrade", help="Save ID3v2.4 tags as ID3v2.3")
    ] = False,
    copy_from: Annotated[
        Path | None,
        typer.Option("--copy", "-c", help="Copy tags from this file into every PATH"),
    ] = None,
    tags: Annotated[
        list[str] | None,
        typer.Option("--tags", "-t", help="Fields to copy with --copy (default: all)"),
    ] = None,
    recursive: Annotated[
        bool | None,
        typer.Option("--recursive/--no-recursive", "-r", help="Descend into directories"),
    ] = None,
    quiet: Annotated[bool, typer.Option("--quiet", "-q", help="Only report errors")] = False,
    pedantic: Annotated[
        bool, typer.Option("--pedantic", "-p", help="Treat warnings as failures")
    ] = False,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", "-n", help="Report changes without writing")
    ] = False,
    padding: Annotated[
        int | None, typer.Option(help="Padding bytes to leave after the tag", min=0)
    ] = None,
    id3_version: Annotated[
        Id3Version | None, typer.Option(help="ID3v2 revision for files without a tag")
    ] = None,
    workers: Annotated[
        int | None, typer.Option("--workers", "-j", help="Files processed in parallel", min=1)
    ] = None,
    json_output: Annotated[bool, typer.Option("--json", help="Print results as JSON")] = False,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", help="Path to configuration TOML file", exists=True),
    ] = None,
    verbose: Annotated[
        int, typer.Option("--verbose", "-v", count=True, help="Increase verbosity")
    ] = 0,
) -> None:
    """Read and edit audio file tags.

    Operations are applied per file in this order: upgrade, copy, clear,
    delete, add, modify, modadd, downgrade. With no operation, every field
    is shown.

    Examples:
        polytag song.mp3
        polytag -a artist="Nina Simone" -m title="Sinnerman" song.flac
        polytag -r -u ~/Music
        polytag -c master.flac -t artist -t album copy.m4a copy.ogg
    """
    cfg = Config.load(config_path)

    # CLI > env > config file > defaults
    if recursive is not None:
        cfg.batch.recursive = recursive
    if workers is not None:
        cfg.batch.workers = workers
    if padding is not None:
        cfg.write.padding = padding
    if id3_version is not None:
        cfg.write.id3_version = id3_version

    if quiet:
        log_level = logging.ERROR
    elif verbose > 0:
        log_level = logging.DEBUG if verbose >= 2 else logging.INFO
    else:
        log_level = getattr(logging, cfg.logging.level.upper(), logging.WARNING)

    console = configure_rich_logging(level=log_level, hash_paths=cfg.logging.hash_paths)
    set_console(console)
    log.debug(f"polytag {__version__}, logging at {logging.getLevelName(log_level)}")

    edits = Edits(
        upgrade=upgrade_tag,
        clear=clear,
        delete=[tag_identifier(name) for name in delete or []],
        add=[parse_assignment(a) for a in add or []],
        modify=[parse_assignment(m) for m in modify or []],
        modadd=[parse_assignment(m) for m in modadd or []],
        downgrade=downgrade_tag,
    )
    if upgrade_tag and downgrade_tag:
        raise typer.BadParameter("--upgrade and --downgrade conflict", param_hint="--downgrade")
    if tags and copy_from is None:
        raise typer.BadParameter("--tags needs --copy", param_hint="--tags")
    if copy_from is not None:
        try:
            edits.source = read_tags(copy_from).model
        except TagError as e:
            print_error(f"{copy_from}: {e}")
            raise typer.Exit(ExitCode.ERROR) from e
        edits.copy_tags = [tag_identifier(t) for t in tags] if tags else None

    shown = [tag_identifier(o) for o in output] if output else None
    if not edits.writes and shown is None:
        output_all = True

    files = collect_audio_files(paths, recursive=cfg.batch.recursive)
    if not files:
        print_error("no audio files found")
        raise typer.Exit(ExitCode.ERROR)

    def process(path: Path) -> FileResult:
        tag_file = read_tags(path, id3_format=cfg.write.id3_version.tag_format)
        result = FileResult(path=path, model=tag_file.model)
        if not edits.writes:
            return result

        result.model = apply_edits(tag_file.model, edits, result.warnings)
        if pedantic and result.warnings:
            raise TagError(f"{len(result.warnings)} warning(s): " + "; ".join(result.warnings))
        result.report = save_tags(
            tag_file,
            result.model,
            padding=cfg.write.padding,
            dry_run=dry_run,
            preserve_mtime=cfg.write.preserve_mtime,
        )
        return result

    batch_config = BatchConfig(
        workers=cfg.batch.workers,
        continue_on_error=cfg.batch.continue_on_error,
    )
    try:
        if len(files) > 1 and not (quiet or json_output):
            with make_progress() as progress:
                task = progress.add_task("Tagging...", total=len(files))

                def advance(done: int, total: int) -> None:
                    progress.update(task, completed=done)

                batch_config.progress_callback = advance
                results, summary = process_batch(files, process, batch_config)
        else:
            results, summary = process_batch(files, process, batch_config)
    except TagError as e:
        # Only reached when continue_on_error is off
        print_error(str(e))
        raise typer.Exit(ExitCode.ERROR) from e

    if json_output:
        payload = []
        for res in results:
            entry: dict[str, Any] = {"file": str(res.path), "warnings": res.warnings}
            if output_all or shown is not None:
                entry["tags"] = _tags_dict(res.model, None if output_all else shown)
            if res.report is not None:
                entry["changed"] = res.report.changed
                entry["fields_written"] = res.report.fields_written
                entry["fields_removed"] = res.report.fields_removed
            payload.append(entry)
        for path, error in summary.errors:
            payload.append({"file": str(path), "error": str(error)})
        typer.echo(json.dumps(payload, indent=2, ensure_ascii=False))
    else:
        for res in results:
            if not quiet:
                for warning in res.warnings:
                    print_warning(f"{res.path}: {warning}")
                if res.report is not None and res.report.changed:
                    verb = "Would update" if dry_run else "Updated"
                    print_success(f"{verb} {res.path}")
                if output_all or shown is not None:
                    rows = mutation.output(res.model, None if output_all else shown)
                    get_console().print(tag_table(str(res.path), rows))
        for path, error in summary.errors:
            print_error(f"{path}: {error}")

    raise typer.Exit(ExitCode.SUCCESS if summary.failed == 0 else ExitCode.ERROR)


if __name__ == "__main__":
    app()
