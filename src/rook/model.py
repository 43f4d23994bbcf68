"""Logical model of a runbook.

Groups and jobs live in arenas keyed by a stable id of the form
``"<runbook file>::<qualified name>"``. Parents refer to children by id,
so a group referenced from several parents is shared, never copied, and
imported definitions keep resolving in the namespace of the file that
declared them.
"""

from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping

from rook.exceptions import ValidationIssue
from rook.types import RunOptions

JOB_ACTION = "job"


def make_id(path: str, qualified_name: str) -> str:
    return f"{path}::{qualified_name}"


@dataclass(frozen=True)
class HostEntry:
    """A host declared inside a group, with the bindings given at that spot."""

    name: str
    vars: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GroupLink:
    """Membership of a child group in a parent, with link-level bindings."""

    group_id: str
    vars: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class Group:
    id: str
    name: str
    origin: str
    vars: dict[str, Any] = field(default_factory=dict)
    hosts: list[HostEntry] = field(default_factory=list)
    children: list[GroupLink] = field(default_factory=list)


@dataclass(frozen=True)
class ActionSpec:
    """An action as declared, before substitution.

    For ``job`` actions, ``job_ref`` holds the id of the included job.
    """

    type: str
    name: str | None
    params: Mapping[str, Any]
    origin: str
    job_ref: str | None = None

    @property
    def is_job(self) -> bool:
        return self.type == JOB_ACTION


@dataclass
class Job:
    id: str
    name: str
    origin: str
    actions: list[ActionSpec] = field(default_factory=list)


@dataclass
class RunSpec:
    """A run block: target, actions and options.

    ``target_kind`` is "group", "host" or None (implicit localhost).
    """

    index: int
    target: str | None
    target_kind: str | None
    target_id: str | None
    actions: list[ActionSpec]
    options: RunOptions
    origin: str

    @property
    def label(self) -> str:
        return self.options.name or f"run #{self.index + 1}"


@dataclass
class Model:
    """Validated, cross-referenced runbook model.

    Attributes:
        path: Root runbook file
        groups: Arena of every group, imported ones included
        jobs: Arena of every job, imported ones included
        group_names: Names visible in the root runbook -> group id
        job_names: Names visible in the root runbook -> job id
        runs: Run blocks of the root runbook, in declaration order
        warnings: Non-fatal issues found while building
    """

    path: str
    groups: dict[str, Group] = field(default_factory=dict)
    jobs: dict[str, Job] = field(default_factory=dict)
    group_names: dict[str, str] = field(default_factory=dict)
    job_names: dict[str, str] = field(default_factory=dict)
    runs: list[RunSpec] = field(default_factory=list)
    warnings: list[ValidationIssue] = field(default_factory=list)

    def group(self, name: str) -> Group | None:
        group_id = self.group_names.get(name)
        return self.groups.get(group_id) if group_id else None

    def job(self, name: str) -> Job | None:
        job_id = self.job_names.get(name)
        return self.jobs.get(job_id) if job_id else None

    def iter_hosts(self, group_id: str) -> Iterator[tuple[Group, HostEntry]]:
        """Yield (containing group, host entry) pairs reachable from a group.

        Depth-first in declaration order; a host reachable through several
        paths is yielded once per path.
        """
        stack: set[str] = set()

        def walk(gid: str) -> Iterator[tuple[Group, HostEntry]]:
            if gid in stack:
                return
            stack.add(gid)
            group = self.groups[gid]
            for entry in group.hosts:
                yield group, entry
            for link in group.children:
                yield from walk(link.group_id)
            stack.discard(gid)

        yield from walk(group_id)

    def host_names(self, group_id: str) -> list[str]:
        """Distinct host names under a group, in first-seen order."""
        seen: dict[str, None] = {}
        for _, entry in self.iter_hosts(group_id):
            seen.setdefault(entry.name, None)
        return list(seen)

    def find_host(self, host_name: str) -> str | None:
        """Id of the first visible group (declaration order) that reaches a host."""
        for group_id in self.group_names.values():
            if host_name in self.host_names(group_id):
                return group_id
        return None
