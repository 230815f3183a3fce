"""Shared Rich console and output helpers for the polytag CLI."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

# Set by the CLI once logging is configured
_console: Console | None = None


def get_console() -> Console:
    """The console installed by ``set_console``.

    Raises:
        RuntimeError: If no console has been installed yet
    """
    if _console is None:
        raise RuntimeError("Console not initialized. Call set_console() first.")
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console


@contextmanager
def make_progress() -> Iterator[Progress]:
    """Transient progress bar counting processed files."""
    columns = [
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
    ]
    with Progress(*columns, transient=True, console=get_console()) as progress:
        yield progress


def print_error(message: str) -> None:
    get_console().print(f"[red]Error: {escape(message)}[/red]")


def print_warning(message: str) -> None:
    get_console().print(f"[yellow]Warning: {escape(message)}[/yellow]")


def print_success(message: str) -> None:
    get_console().print(f"[green]{escape(message)}[/green]")


def tag_table(title: str, rows: Iterable[tuple[str, str]]) -> Table:
    """Two-column table of ``(identifier, value)`` rows for one file."""
    table = Table(title=escape(title), title_justify="left", show_header=False, box=None)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value")
    for identifier, text in rows:
        table.add_row(escape(identifier), escape(text))
    return table
