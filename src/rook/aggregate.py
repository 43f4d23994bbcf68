"""Result aggregation.

Every result event of a run passes through one ``ResultAggregator``,
which keeps per-host counters and forwards the event unchanged to its
listeners (reporters). Only terminal (``finished``) events change
counters.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from rook.types import Outcome, ResolvedPlan, ResultEvent

logger = logging.getLogger(__name__)

Listener = Callable[[ResultEvent], None]


@dataclass(frozen=True)
class HostNotice:
    """A host-level condition that is not tied to one action."""

    host: str
    connection_error: str


@dataclass
class HostSummary:
    """Outcome counters of one host."""

    host: str
    total: int = 0
    unchanged: int = 0
    changed: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0
    connection_error: str | None = None
    outcomes: dict[int, Outcome] = field(default_factory=dict)

    @property
    def finished(self) -> int:
        return self.unchanged + self.changed + self.failed + self.skipped + self.cancelled

    @property
    def success(self) -> bool:
        return (
            self.connection_error is None
            and self.failed == 0
            and self.skipped == 0
            and self.cancelled == 0
            and self.finished >= self.total
        )

    def record(self, event: ResultEvent) -> None:
        if event.outcome is None:
            return
        if event.action_index in self.outcomes:
            logger.warning(f"{self.host}: duplicate result for action {event.action_index}, ignored")
            return
        self.outcomes[event.action_index] = event.outcome
        attr = event.outcome.value
        setattr(self, attr, getattr(self, attr) + 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "host": self.host,
            "success": self.success,
            "total": self.total,
            "unchanged": self.unchanged,
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "connection_error": self.connection_error,
        }


@dataclass
class RunResult:
    """Outcome of dispatching one run."""

    hosts: dict[str, HostSummary]
    name: str | None = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return all(summary.success for summary in self.hosts.values())

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    @property
    def failed_hosts(self) -> list[str]:
        return [name for name, summary in self.hosts.items() if not summary.success]

    def totals(self) -> dict[str, int]:
        totals = {outcome.value: 0 for outcome in Outcome}
        for summary in self.hosts.values():
            for outcome in Outcome:
                totals[outcome.value] += getattr(summary, outcome.value)
        return totals

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "cancelled": self.cancelled,
            "totals": self.totals(),
            "hosts": [summary.to_dict() for summary in self.hosts.values()],
        }


class ResultAggregator:
    """Single merge point for the events of a run."""

    def __init__(self, plans: Mapping[str, ResolvedPlan] | None = None, name: str | None = None) -> None:
        self.name = name
        self.hosts: dict[str, HostSummary] = {
            host: HostSummary(host, total=len(plan)) for host, plan in (plans or {}).items()
        }
        self.listeners: list[Listener] = []
        self.cancelled = False

    def add_listener(self, listener: Listener) -> None:
        self.listeners.append(listener)

    def _summary(self, host: str) -> HostSummary:
        summary = self.hosts.get(host)
        if summary is None:
            summary = self.hosts[host] = HostSummary(host)
        return summary

    def consume(self, item: ResultEvent | HostNotice) -> None:
        if isinstance(item, HostNotice):
            self._summary(item.host).connection_error = item.connection_error
            return

        if item.is_terminal:
            self._summary(item.host).record(item)
            if item.outcome == Outcome.CANCELLED:
                self.cancelled = True
        for listener in self.listeners:
            listener(item)

    def summary(self) -> RunResult:
        return RunResult(hosts=dict(self.hosts), name=self.name, cancelled=self.cancelled)
