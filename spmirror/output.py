"""Console output for CLI commands."""

import json
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table


class OutputFormatter:
    """Formats user-facing messages for the terminal or as JSON."""

    def __init__(
        self,
        json_output: bool = False,
        quiet: bool = False,
        console: Optional[Console] = None,
    ):
        """Initialize output formatter.

        Args:
            json_output: Emit machine-readable JSON instead of styled text
            quiet: Suppress informational messages (errors are still shown)
            console: Rich console to write to (defaults to stdout)
        """
        self.json_output = json_output
        self.quiet = quiet
        self.console = console or Console()
        self.err_console = Console(stderr=True)

    def print(self, message: str = "") -> None:
        if not self.quiet and not self.json_output:
            self.console.print(message, highlight=False, markup=False)

    def info(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.console.print(message, highlight=False, markup=False)

    def success(self, message: str) -> None:
        if not self.quiet and not self.json_output:
            self.console.print(f"[green]✓[/green] {escape(message)}", highlight=False)

    def warning(self, message: str) -> None:
        if not self.json_output:
            self.err_console.print(
                f"[yellow]⚠ {escape(message)}[/yellow]", highlight=False
            )

    def error(self, message: str) -> None:
        self.err_console.print(f"[red]✗ {escape(message)}[/red]", highlight=False)

    def output_json(self, data: Any) -> None:
        """Print data as JSON (used with --json)."""
        self.console.print_json(json.dumps(data, default=str))

    def output_table(
        self, columns: list[str], rows: list[list[str]], title: Optional[str] = None
    ) -> None:
        """Print rows as a table, or as a list of objects in JSON mode."""
        if self.json_output:
            self.output_json([dict(zip(columns, row)) for row in rows])
            return

        table = Table(title=title)
        for column in columns:
            table.add_column(column)
        for row in rows:
            table.add_row(*row)
        self.console.print(table)
