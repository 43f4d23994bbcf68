"""Progress reporting for rook runs.

Reporters consume the same result events the aggregator sees, so every
output format shows exactly what was recorded:

- ``TextReporter``: one line per finished action, to stderr
- ``JsonReporter``: NDJSON, one object per event
- ``RichReporter``: colored lines plus a rich summary table per run
- ``NullReporter``: discards everything
"""

import json
import sys
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Iterable

from rich.console import Console
from rich.table import Table
from rich.text import Text

from rook.aggregate import RunResult
from rook.types import Outcome, Phase, ResultEvent

SYMBOLS = {
    Outcome.UNCHANGED: "✓",
    Outcome.CHANGED: "✓",
    Outcome.FAILED: "✗",
    Outcome.SKIPPED: "-",
    Outcome.CANCELLED: "⊘",
}

STYLES = {
    Outcome.UNCHANGED: "green",
    Outcome.CHANGED: "yellow",
    Outcome.FAILED: "red",
    Outcome.SKIPPED: "dim",
    Outcome.CANCELLED: "magenta",
}


def describe(event: ResultEvent) -> str:
    """One-line description of a finished action."""
    assert event.outcome is not None
    name = event.action_name or f"action {event.action_index}"
    line = f"{SYMBOLS[event.outcome]} {event.host}: {name} {event.outcome.value}"
    if event.error:
        line += f": {event.error}"
    return line


class Reporter(ABC):
    """Base class for run reporters."""

    @abstractmethod
    def on_run_start(self, run_name: str, hosts: Iterable[str]) -> None:
        """Called before a run is dispatched."""

    @abstractmethod
    def on_event(self, event: ResultEvent) -> None:
        """Called for every result event, in arrival order."""

    @abstractmethod
    def on_run_complete(self, result: RunResult) -> None:
        """Called after the last event of a run."""


class TextReporter(Reporter):
    """Reports finished actions as human-readable lines."""

    def __init__(self, output: Any = None, show_output: bool = False) -> None:
        self.output = output or sys.stderr
        self.show_output = show_output

    def _emit(self, message: str) -> None:
        print(message, file=self.output, flush=True)

    def on_run_start(self, run_name: str, hosts: Iterable[str]) -> None:
        hosts = list(hosts)
        self._emit(f"Run '{run_name}' on {len(hosts)} host(s)...")

    def on_event(self, event: ResultEvent) -> None:
        if event.phase == Phase.OUTPUT and self.show_output and event.output:
            for line in event.output.splitlines():
                self._emit(f"    {event.host} | {line}")
        elif event.is_terminal:
            self._emit(f"  {describe(event)}")

    def on_run_complete(self, result: RunResult) -> None:
        totals = result.totals()
        counts = ", ".join(f"{count} {outcome}" for outcome, count in totals.items() if count)
        if result.success:
            self._emit(f"Completed: {len(result.hosts)} host(s) succeeded ({counts or 'nothing to do'})")
        else:
            failed = ", ".join(result.failed_hosts)
            self._emit(f"Failed: {failed} ({counts})")


class JsonReporter(Reporter):
    """Reports events as NDJSON (newline-delimited JSON)."""

    def __init__(self, output: Any = None) -> None:
        self.output = output or sys.stderr

    def _emit(self, event: str, details: dict[str, Any]) -> None:
        record = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
        record.update(details)
        print(json.dumps(record), file=self.output, flush=True)

    def on_run_start(self, run_name: str, hosts: Iterable[str]) -> None:
        self._emit("run_start", {"run": run_name, "hosts": list(hosts)})

    def on_event(self, event: ResultEvent) -> None:
        self._emit("action", event.to_dict())

    def on_run_complete(self, result: RunResult) -> None:
        self._emit("run_complete", result.to_dict())


class RichReporter(Reporter):
    """Colored per-action lines and a summary table per run."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)

    def on_run_start(self, run_name: str, hosts: Iterable[str]) -> None:
        hosts = list(hosts)
        self.console.rule(f"[bold]{run_name}[/bold] ({len(hosts)} host(s))")

    def on_event(self, event: ResultEvent) -> None:
        if event.is_terminal and event.outcome is not None:
            self.console.print(Text(describe(event), style=STYLES[event.outcome]))

    def on_run_complete(self, result: RunResult) -> None:
        table = Table(title=result.name)
        table.add_column("Host", style="cyan")
        for outcome in Outcome:
            table.add_column(outcome.value.capitalize(), justify="right", style=STYLES[outcome])
        table.add_column("Status")

        for summary in result.hosts.values():
            if summary.connection_error:
                status = Text("unreachable", style="red")
            elif summary.success:
                status = Text("ok", style="green")
            else:
                status = Text("failed", style="red")
            table.add_row(
                summary.host,
                *(str(getattr(summary, outcome.value)) for outcome in Outcome),
                status,
            )
        self.console.print(table)


class NullReporter(Reporter):
    """Discards all events."""

    def on_run_start(self, run_name: str, hosts: Iterable[str]) -> None:
        pass

    def on_event(self, event: ResultEvent) -> None:
        pass

    def on_run_complete(self, result: RunResult) -> None:
        pass


def create_reporter(format: str = "text", enabled: bool = True, output: Any = None) -> Reporter:
    """Create a reporter for an output format.

    Args:
        format: "text", "rich" or "json"
        enabled: Return a NullReporter when False
        output: Output stream (defaults to sys.stderr)

    Raises:
        ValueError: On an unknown format
    """
    if not enabled:
        return NullReporter()
    if format == "json":
        return JsonReporter(output)
    if format == "rich":
        return RichReporter(Console(file=output, stderr=output is None))
    if format == "text":
        return TextReporter(output)
    raise ValueError(f"Unknown report format: {format}")
