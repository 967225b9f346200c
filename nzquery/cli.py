"""
nzquery CLI Entry Point

Run SQL scripts through the query engine from a terminal.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from contextlib import suppress
from pathlib import Path
from typing import Mapping, Optional, Sequence

import typer
from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

from .config import load_config, save_config
from .engine import QueryEngine
from .history import JsonHistoryStore
from .models import ExecuteOptions, QueryResult, StreamingChunk
from .prompts import EscalationChoice
from .registry import ConnectionRegistry
from .splitter import split_statements

app = typer.Typer(
    name="nzquery",
    help="nzquery - stream SQL results with cancellation and reconnect",
    add_completion=False,
)
console = Console()

DISPLAY_ROWS = 50


class ConsoleVariablePrompt:
    """Asks for placeholder values on the terminal."""

    async def prompt(self, names: Sequence[str], defaults: Mapping[str, str]) -> Mapping[str, str] | None:
        values: dict[str, str] = {}
        try:
            for name in names:
                values[name] = await asyncio.to_thread(
                    Prompt.ask, f"Value for [cyan]{name}[/cyan]", default=defaults.get(name), console=console
                )
        except (EOFError, KeyboardInterrupt):
            return None
        return values


class ConsoleSessionDropPrompt:
    """Offers to terminate a session that keeps sending after a cancel."""

    async def choose(self, session_id: str, document_id: str | None) -> EscalationChoice:
        console.print(f"[yellow]The server is still sending rows for session {session_id}.[/yellow]")
        try:
            answer = await asyncio.to_thread(
                Prompt.ask,
                "Drop the session, wait longer or dismiss?",
                choices=[choice.value for choice in EscalationChoice],
                default=EscalationChoice.WAIT.value,
                console=console,
            )
        except (EOFError, KeyboardInterrupt):
            return EscalationChoice.DISMISS
        return EscalationChoice(answer)


class _ResultPrinter:
    """Keeps the first rows of each result set and prints them as a table."""

    def __init__(self, limit: int) -> None:
        self._limit = limit
        self._columns: tuple[str, ...] = ()
        self._rows: list[tuple[object, ...]] = []

    def on_chunk(self, chunk: StreamingChunk) -> None:
        if chunk.is_first_chunk:
            self._columns = tuple(column.name for column in chunk.columns)
            self._rows = []
        room = self._limit - len(self._rows)
        if room > 0:
            self._rows.extend(chunk.rows[:room])

    def on_result(self, result: QueryResult) -> None:
        if result.is_error:
            console.print(f"[red]Statement {result.statement_index + 1} failed: {result.message}[/red]")
            return
        rows = self._rows if not result.rows else list(result.rows[: self._limit])
        columns = self._columns if not result.columns else tuple(column.name for column in result.columns)
        if columns:
            table = Table(title=f"Statement {result.statement_index + 1}")
            for name in columns:
                table.add_column(name, style="cyan")
            for row in rows:
                table.add_row(*("NULL" if value is None else str(value) for value in row))
            console.print(table)
        summary = result.message or "OK"
        if result.elapsed_ms is not None:
            summary = f"{summary} in {result.elapsed_ms} ms"
        if result.limit_reached:
            summary = f"{summary} [yellow](row limit reached)[/yellow]"
        console.print(summary)
        self._columns = ()
        self._rows = []


@app.command()
def run(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, readable=True, help="SQL script to run"),
    document: Optional[str] = typer.Option(None, "--document", help="Document id (defaults to the file path)"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Connection profile to use"),
    database: Optional[str] = typer.Option(None, "--database", "-d", help="Override the profile's database"),
    values: list[str] = typer.Option([], "--set", "-s", help="Variable value as NAME=VALUE"),
    silent: bool = typer.Option(False, "--silent", help="Fail instead of prompting for variables"),
    chunk_size: Optional[int] = typer.Option(None, "--chunk-size", min=1, help="Rows per streamed chunk"),
    explain: bool = typer.Option(False, "--explain", help="Print the plan of the first statement"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
):
    """
    Run every statement in FILE, streaming results to the terminal.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        overrides = _parse_values(values)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(2)

    statements = split_statements(file.read_text(encoding="utf-8"))
    if not statements:
        console.print("[yellow]No statements found.[/yellow]")
        raise typer.Exit(0)

    options = ExecuteOptions(silent=silent, chunk_size=chunk_size, overrides=overrides)
    try:
        asyncio.run(_run(document or str(file.resolve()), statements, options, profile, database, explain))
    except Exception as e:
        console.print(f"\n[red]Execution failed: {e}[/red]")
        if verbose:
            console.print_exception()
        raise typer.Exit(1)


@app.command()
def profiles():
    """
    List configured connection profiles.
    """
    config = load_config()
    if not config.profiles:
        console.print("[yellow]No profiles configured[/yellow]")
        return

    table = Table(title="Connection Profiles")
    table.add_column("Name", style="cyan")
    table.add_column("Driver", style="green")
    table.add_column("Host", style="yellow")
    table.add_column("Database", style="magenta")
    table.add_column("User")
    table.add_column("Active", justify="center")
    for entry in config.profiles:
        host = f"{entry.host}:{entry.port}" if entry.port else entry.host
        active = "*" if entry.name == config.active_profile else ""
        table.add_row(entry.name, entry.driver, host, entry.database or "", entry.user or "", active)
    console.print(table)


async def _run(
    document_id: str,
    statements: Sequence[str],
    options: ExecuteOptions,
    profile: str | None,
    database: str | None,
    explain: bool,
) -> None:
    config = load_config()
    registry = ConnectionRegistry(config, save=save_config)
    history_path = Path(config.history_file).expanduser() if config.history_file else None
    engine = QueryEngine(
        registry,
        variable_prompt=ConsoleVariablePrompt(),
        drop_prompt=ConsoleSessionDropPrompt(),
        history=JsonHistoryStore(history_path, limit=config.engine.history_limit),
        log_sink=lambda message: console.print(f"[dim]{message}[/dim]"),
    )
    if profile:
        await registry.set_document_profile(document_id, profile)
    if database:
        await registry.set_database_override(document_id, database)

    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task[object]] = set()

    def _on_interrupt() -> None:
        console.print("[yellow]Cancelling...[/yellow]")
        task = loop.create_task(engine.cancel(document_id))
        pending.add(task)
        task.add_done_callback(pending.discard)

    with suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, _on_interrupt)
    try:
        if explain:
            console.print(await engine.explain(document_id, statements[0], options))
            return
        printer = _ResultPrinter(DISPLAY_ROWS)
        report = await engine.execute(
            document_id,
            statements,
            options,
            on_chunk=printer.on_chunk,
            on_result=printer.on_result,
        )
        if report.cancelled:
            console.print("[yellow]Query cancelled.[/yellow]")
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    finally:
        with suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        await engine.close()


def _parse_values(values: Sequence[str]) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise ValueError(f"Expected NAME=VALUE, got '{item}'.")
        parsed[name.strip()] = value
    return parsed


def main():
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
