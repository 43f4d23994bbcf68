"""Core data types shared by the compiler, dispatcher and executor.

Resolved plans are immutable: parameters are frozen into read-only
mappings and tuples when a plan is built, and thawed back into plain
JSON-compatible structures only when serialized for the wire.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class Phase(str, Enum):
    """Lifecycle phase of a single action on a host."""

    STARTED = "started"
    OUTPUT = "output"
    FINISHED = "finished"


class Outcome(str, Enum):
    """Terminal outcome of an action."""

    UNCHANGED = "unchanged"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


def freeze(value: Any) -> Any:
    """Recursively convert dicts and lists to read-only equivalents."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of freeze: produce plain dicts and lists."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    return value


@dataclass(frozen=True)
class RunOptions:
    """Options declared on a run block.

    Attributes:
        name: Display name of the run
        remote_user: User to connect as (host variables take precedence)
        become: Run actions with elevated privileges (host variables take precedence)
        continue_on_error: Keep executing a host's plan after a failed action;
            None leaves it to the configuration
    """

    name: str | None = None
    remote_user: str | None = None
    become: bool = False
    continue_on_error: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "remote_user": self.remote_user,
            "become": self.become,
            "continue_on_error": self.continue_on_error,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunOptions":
        return cls(
            name=data.get("name"),
            remote_user=data.get("remote_user"),
            become=bool(data.get("become", False)),
            continue_on_error=data.get("continue_on_error"),
        )


@dataclass(frozen=True)
class HostTarget:
    """Connection identity of a compiled host.

    Attributes:
        name: Host name as declared in the runbook
        address: Network address to connect to
        port: SSH port
        user: Remote user (None = transport default)
        become: Whether the executor runs under sudo
        connection: "ssh" or "local"
        interpreter: Python interpreter on the target
        key_file: SSH private key file
    """

    name: str
    address: str
    port: int = 22
    user: str | None = None
    become: bool = False
    connection: str = "ssh"
    interpreter: str = "python3"
    key_file: str | None = None

    @property
    def is_local(self) -> bool:
        return self.connection == "local"


@dataclass(frozen=True)
class ResolvedAction:
    """One fully substituted and validated action of a host's plan.

    Attributes:
        index: Position in the host's plan (0-based)
        type: Action type name (command, copy, ...)
        name: Display name
        params: Read-only concrete parameter values
        origin: Directory of the runbook that declared the action, for
            resolving relative paths control-side
    """

    index: int
    type: str
    name: str
    params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    origin: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return {"action": self.type, "name": self.name, "params": thaw(self.params)}

    @classmethod
    def from_wire(cls, index: int, data: Mapping[str, Any]) -> "ResolvedAction":
        return cls(
            index=index,
            type=data["action"],
            name=data.get("name") or data["action"],
            params=freeze(data.get("params") or {}),
        )


@dataclass(frozen=True)
class ResolvedPlan:
    """The ordered action list compiled for one host."""

    host: HostTarget
    actions: tuple[ResolvedAction, ...]
    options: RunOptions = RunOptions()

    def __len__(self) -> int:
        return len(self.actions)

    def to_wire(self) -> dict[str, Any]:
        return {
            "host_id": self.host.name,
            "actions": [action.to_wire() for action in self.actions],
            "options": self.options.to_dict(),
        }

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "ResolvedPlan":
        host_id = data["host_id"]
        actions = tuple(
            ResolvedAction.from_wire(index, item) for index, item in enumerate(data.get("actions", []))
        )
        options = RunOptions.from_dict(data.get("options") or {})
        return cls(host=HostTarget(name=host_id, address=host_id), actions=actions, options=options)


@dataclass(frozen=True)
class ResultEvent:
    """A phase transition of one action on one host.

    Attributes:
        host: Host name
        action_index: Index of the action in the host's plan
        phase: started, output or finished
        outcome: Terminal outcome (finished events only)
        output: Captured output chunk or final output
        error: Human-readable error detail for failed/skipped/cancelled
        action_name: Display name, filled in control-side
    """

    host: str
    action_index: int
    phase: Phase
    outcome: Outcome | None = None
    output: str | None = None
    error: str | None = None
    action_name: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase == Phase.FINISHED

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "host": self.host,
            "action_index": self.action_index,
            "phase": self.phase.value,
        }
        if self.action_name is not None:
            result["action"] = self.action_name
        if self.outcome is not None:
            result["outcome"] = self.outcome.value
        if self.output:
            result["output"] = self.output
        if self.error:
            result["error"] = self.error
        return result

    def to_wire(self) -> dict[str, Any]:
        return {
            "action_index": self.action_index,
            "phase": self.phase.value,
            "outcome": self.outcome.value if self.outcome else None,
            "output": self.output,
            "error": self.error,
        }

    @classmethod
    def from_wire(cls, host: str, data: Mapping[str, Any]) -> "ResultEvent":
        outcome = data.get("outcome")
        return cls(
            host=host,
            action_index=int(data["action_index"]),
            phase=Phase(data["phase"]),
            outcome=Outcome(outcome) if outcome else None,
            output=data.get("output"),
            error=data.get("error"),
        )
