"""Console output helpers for the CLI and the sync engine."""

import json
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table


class OutputFormatter:
    """Formats messages for the terminal, or as JSON.

    In quiet mode only errors are printed. In JSON mode human-readable
    messages go to stderr so stdout stays machine-readable.
    """

    def __init__(self, json_output: bool = False, quiet: bool = False):
        self.json_output = json_output
        self.quiet = quiet
        self.console = Console(stderr=json_output, highlight=False)
        self.err_console = Console(stderr=True, highlight=False)

    def print(self, message: str = "") -> None:
        if self.quiet:
            return
        self.console.print(message)

    def info(self, message: str) -> None:
        if self.quiet:
            return
        self.console.print(message, markup=False)

    def success(self, message: str) -> None:
        if self.quiet:
            return
        self.console.print(f"[green]✓[/green] {escape(message)}")

    def warning(self, message: str) -> None:
        if self.quiet:
            return
        self.console.print(f"[yellow]⚠ {escape(message)}[/yellow]")

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]✗ {escape(message)}[/red]")

    def output_json(self, data: Any) -> None:
        """Write a JSON document to stdout."""
        print(json.dumps(data, indent=2, default=str))

    def print_table(self, table: Table) -> None:
        if self.quiet:
            return
        self.console.print(table)
