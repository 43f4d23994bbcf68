"""Exception hierarchy for rook.

Errors carry structured context (host, action, field) so the CLI can
report every problem of a resolution pass with enough detail to fix it.
"""

from dataclasses import dataclass
from typing import Any, Iterable


class RookError(Exception):
    """Base class for all rook errors.

    Attributes:
        message: Human-readable message
        context: Extra key/value details (host, path, attempt, ...)
    """

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def __str__(self) -> str:
        return self.message

    def format_text(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({details})"


@dataclass(frozen=True)
class ValidationIssue:
    """A single problem found while building or compiling a runbook.

    Attributes:
        message: What is wrong
        kind: Category (duplicate, undefined, cycle, unresolved, template, schema, import, option, ambiguous)
        path: Runbook file the problem was found in
        host: Host being compiled, if any
        action: Action label ("#2 install nginx"), if any
        field: Parameter or variable name, if any
        severity: "error" or "warning"
    """

    message: str
    kind: str = "validation"
    path: str | None = None
    host: str | None = None
    action: str | None = None
    field: str | None = None
    severity: str = "error"

    @property
    def is_error(self) -> bool:
        return self.severity == "error"

    def format_text(self) -> str:
        where = []
        if self.path:
            where.append(self.path)
        if self.host:
            where.append(f"host={self.host}")
        if self.action:
            where.append(f"action={self.action}")
        if self.field:
            where.append(f"field={self.field}")
        prefix = f"[{' '.join(where)}] " if where else ""
        return f"{self.severity}: {prefix}{self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "kind": self.kind,
            "message": self.message,
            "path": self.path,
            "host": self.host,
            "action": self.action,
            "field": self.field,
        }


class ValidationError(RookError):
    """Raised when a resolution pass found one or more errors.

    All issues found in the pass are carried together, warnings included.
    """

    def __init__(self, issues: Iterable[ValidationIssue]) -> None:
        self.issues = list(issues)
        count = len(self.errors)
        lines = [f"{count} validation error(s)"]
        lines.extend(issue.format_text() for issue in self.errors)
        super().__init__("\n".join(lines))

    @property
    def errors(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if issue.is_error]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [issue for issue in self.issues if not issue.is_error]


class RunbookLoadError(RookError):
    """Raised when a runbook file cannot be read or is not a mapping."""


class TransportError(RookError):
    """Raised when a channel to a host's executor cannot be established."""

    def __init__(self, message: str, host: str | None = None, **context: Any) -> None:
        super().__init__(message, host=host, **context)
        self.host = host


class AuthenticationError(TransportError):
    """Raised when SSH authentication fails. Never retried."""


class ExecutorBuildError(RookError):
    """Raised when the executor archive cannot be built."""


class ChannelClosedError(TransportError):
    """Raised when an executor channel ends before its plan completed."""
