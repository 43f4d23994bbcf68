"""Model building and import resolution.

Turns a runbook tree (as returned by a loader) into a validated ``Model``.
Every problem found is collected; a single ``ValidationError`` carrying all
of them is raised at the end of the pass.

``use`` blocks are resolved eagerly: the referenced runbook is loaded and
built (its runs are ignored), then the requested groups and jobs become
visible under their alias or original name. Each file is built at most
once per pass, so two imports of the same file share one set of
definitions.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from rook.actions import JOB_ACTION, ActionRegistry, default_registry
from rook.exceptions import RunbookLoadError, ValidationError, ValidationIssue
from rook.loader import RunbookLoader, load_runbook, runbook_path
from rook.logging import log_performance
from rook.model import ActionSpec, Group, GroupLink, HostEntry, Job, Model, RunSpec, make_id
from rook.substitute import has_markup
from rook.types import RunOptions

logger = logging.getLogger(__name__)

TOP_LEVEL_KEYS = ("use", "group", "job", "run")
ACTION_KEYS = {"action", "name", "params"}
RUN_OPTION_TYPES = {
    "name": str,
    "remote_user": str,
    "become": bool,
    "continue_on_error": bool,
}


@dataclass
class _Unit:
    """Names visible inside one runbook file."""

    path: Path
    group_names: dict[str, str] = field(default_factory=dict)
    job_names: dict[str, str] = field(default_factory=dict)
    runs: list[RunSpec] = field(default_factory=list)

    @property
    def label(self) -> str:
        return str(self.path)


class ModelBuilder:
    """Builds a Model from a root runbook and whatever it imports.

    Attributes:
        loader: Callable reading a runbook file into a tree
        registry: Action types known to the engine
        loaded: Resolved paths of every file loaded, in load order
    """

    def __init__(
        self,
        loader: RunbookLoader | None = None,
        registry: ActionRegistry | None = None,
    ) -> None:
        self.loader = loader or load_runbook
        self.registry = registry or default_registry()
        self.loaded: list[Path] = []
        self._reset()

    def _reset(self) -> None:
        self.issues: list[ValidationIssue] = []
        self._groups: dict[str, Group] = {}
        self._jobs: dict[str, Job] = {}
        self._units: dict[Path, _Unit] = {}
        self._in_progress: set[Path] = set()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def build(self, path: str | Path) -> Model:
        """Load and build the runbook at path.

        Raises:
            RunbookLoadError: If the root runbook cannot be loaded
            ValidationError: If any validation error was found
        """
        root = Path(path).resolve()
        tree = self._load(root)
        return self.build_tree(tree, root)

    def build_tree(self, tree: Mapping[str, Any], path: str | Path) -> Model:
        """Build a model from an already-loaded root tree.

        path locates the runbook for relative imports and stable ids; it
        does not have to exist.
        """
        self._reset()
        root = Path(path).resolve()

        with log_performance(logger, "Model build", path=root):
            self._in_progress.add(root)
            unit = self._build_unit(tree, root, is_root=True)
            self._in_progress.discard(root)
            self._units[root] = unit
            self._check_job_cycles()

        model = Model(
            path=str(root),
            groups=self._groups,
            jobs=self._jobs,
            group_names=unit.group_names,
            job_names=unit.job_names,
            runs=unit.runs,
            warnings=[issue for issue in self.issues if not issue.is_error],
        )

        if any(issue.is_error for issue in self.issues):
            raise ValidationError(self.issues)

        logger.info(
            f"Built model: {len(model.groups)} group(s), {len(model.jobs)} job(s), {len(model.runs)} run(s)"
        )
        return model

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, path: Path) -> Mapping[str, Any]:
        tree = self.loader(path)
        self.loaded.append(path)
        return tree

    def _issue(self, unit: _Unit, message: str, kind: str, **context: Any) -> None:
        self.issues.append(ValidationIssue(message=message, kind=kind, path=unit.label, **context))

    def _as_list(self, unit: _Unit, value: Any, what: str) -> list[Any]:
        if value is None:
            return []
        if not isinstance(value, list):
            self._issue(unit, f"{what} must be a list", "syntax")
            return []
        return value

    def _as_vars(self, unit: _Unit, value: Any, what: str) -> dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, Mapping) or not all(isinstance(k, str) for k in value):
            self._issue(unit, f"vars of {what} must be a mapping of names to values", "syntax")
            return {}
        return dict(value)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def _build_unit(self, tree: Mapping[str, Any], path: Path, is_root: bool) -> _Unit:
        unit = _Unit(path=path)

        if not isinstance(tree, Mapping):
            self._issue(unit, "Runbook must be a mapping", "syntax")
            return unit

        for key in tree:
            if key not in TOP_LEVEL_KEYS:
                self._issue(unit, f"Unknown top-level block '{key}'", "syntax")

        for entry in self._as_list(unit, tree.get("use"), "use"):
            self._import(unit, entry)

        for entry in self._as_list(unit, tree.get("group"), "group"):
            if not isinstance(entry, Mapping):
                self._issue(unit, "group must be a mapping", "syntax")
                continue
            name = entry.get("name")
            group_id = self._build_group(unit, entry, prefix=None)
            if group_id is None:
                continue
            if name in unit.group_names:
                self._issue(unit, f"Duplicate group name '{name}'", "duplicate", field=name)
                continue
            unit.group_names[name] = group_id

        job_entries = self._declare_jobs(unit, self._as_list(unit, tree.get("job"), "job"))
        for job_id, entry in job_entries:
            job = self._jobs[job_id]
            job.actions = self._build_actions(unit, entry.get("actions"), f"job {job.name}")

        if is_root:
            for index, entry in enumerate(self._as_list(unit, tree.get("run"), "run")):
                run = self._build_run(unit, index, entry)
                if run is not None:
                    unit.runs.append(run)

        return unit

    def _import(self, unit: _Unit, entry: Any) -> None:
        if not isinstance(entry, Mapping) or not isinstance(entry.get("path"), str):
            self._issue(unit, "use requires a path string", "import")
            return

        target = runbook_path(entry["path"], unit.path.parent)
        imported = self._load_unit(unit, target)
        if imported is None:
            return

        for kind, source, dest in (
            ("group", imported.group_names, unit.group_names),
            ("job", imported.job_names, unit.job_names),
        ):
            for request in self._as_list(unit, entry.get(f"{kind}s"), f"use {kind}s"):
                if isinstance(request, str):
                    original, alias = request, request
                elif isinstance(request, Mapping) and isinstance(request.get("name"), str):
                    original = request["name"]
                    alias = request.get("as") or original
                else:
                    self._issue(unit, f"Invalid {kind} import request: {request!r}", "import")
                    continue

                node_id = source.get(original)
                if node_id is None:
                    self._issue(
                        unit,
                        f"{target.name} does not define {kind} '{original}'",
                        "undefined",
                        field=original,
                    )
                    continue
                existing = dest.get(alias)
                if existing is not None and existing != node_id:
                    self._issue(unit, f"Duplicate {kind} name '{alias}' after import", "duplicate", field=alias)
                    continue
                dest[alias] = node_id
                logger.debug(f"Imported {kind} {original} from {target} as {alias}")

    def _load_unit(self, unit: _Unit, target: Path) -> _Unit | None:
        if target in self._in_progress:
            self._issue(unit, f"Circular import of {target}", "import", field=str(target))
            return None
        cached = self._units.get(target)
        if cached is not None:
            logger.debug(f"Reusing already built runbook {target}")
            return cached

        try:
            tree = self._load(target)
        except RunbookLoadError as e:
            self._issue(unit, f"Cannot import {target}: {e.message}", "import", field=str(target))
            return None

        self._in_progress.add(target)
        try:
            imported = self._build_unit(tree, target, is_root=False)
        finally:
            self._in_progress.discard(target)
        self._units[target] = imported
        return imported

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def _build_group(self, unit: _Unit, entry: Mapping[str, Any], prefix: str | None) -> str | None:
        name = entry.get("name")
        if not isinstance(name, str) or not name:
            self._issue(unit, "group requires a name", "syntax")
            return None

        qualified = f"{prefix}/{name}" if prefix else name
        group_id = make_id(unit.label, qualified)
        group = Group(
            id=group_id,
            name=name,
            origin=unit.label,
            vars=self._as_vars(unit, entry.get("vars"), f"group {name}"),
        )

        for key in entry:
            if key not in ("name", "vars", "hosts", "groups"):
                self._issue(unit, f"Unknown key '{key}' in group {name}", "syntax", field=key)

        seen_hosts: set[str] = set()
        for host in self._as_list(unit, entry.get("hosts"), f"hosts of group {name}"):
            if isinstance(host, str):
                host_name, host_vars = host, {}
            elif isinstance(host, Mapping) and isinstance(host.get("name"), str):
                host_name = host["name"]
                host_vars = self._as_vars(unit, host.get("vars"), f"host {host_name}")
            else:
                self._issue(unit, f"Invalid host entry in group {name}: {host!r}", "syntax")
                continue
            if host_name in seen_hosts:
                self._issue(unit, f"Duplicate host '{host_name}' in group {name}", "duplicate", field=host_name)
                continue
            seen_hosts.add(host_name)
            group.hosts.append(HostEntry(host_name, host_vars))

        seen_children: set[str] = set()
        for child in self._as_list(unit, entry.get("groups"), f"groups of group {name}"):
            link = self._build_link(unit, group, child, qualified)
            if link is None:
                continue
            child_name = self._groups[link.group_id].name if link.group_id in self._groups else ""
            if child_name in seen_children:
                self._issue(
                    unit, f"Duplicate child group '{child_name}' in group {name}", "duplicate", field=child_name
                )
                continue
            seen_children.add(child_name)
            group.children.append(link)

        self._groups[group_id] = group
        return group_id

    def _build_link(self, unit: _Unit, parent: Group, child: Any, qualified: str) -> GroupLink | None:
        if isinstance(child, str):
            child = {"ref": child}
        if not isinstance(child, Mapping):
            self._issue(unit, f"Invalid child group in {parent.name}: {child!r}", "syntax")
            return None

        if "ref" in child:
            ref = child["ref"]
            if ref == parent.name:
                self._issue(unit, f"Group '{parent.name}' cannot reference itself", "cycle", field=ref)
                return None
            child_id = unit.group_names.get(ref) if isinstance(ref, str) else None
            if child_id is None:
                self._issue(
                    unit, f"Group '{parent.name}' references undefined group '{ref}'", "undefined", field=str(ref)
                )
                return None
            return GroupLink(child_id, self._as_vars(unit, child.get("vars"), f"group {parent.name} -> {ref}"))

        child_id = self._build_group(unit, child, prefix=qualified)
        if child_id is None:
            return None
        return GroupLink(child_id, {})

    # ------------------------------------------------------------------
    # Jobs and actions
    # ------------------------------------------------------------------

    def _declare_jobs(self, unit: _Unit, entries: list[Any]) -> list[tuple[str, Mapping[str, Any]]]:
        # All names are registered before any body is built so jobs can
        # include jobs declared further down.
        declared: list[tuple[str, Mapping[str, Any]]] = []
        for entry in entries:
            if not isinstance(entry, Mapping) or not isinstance(entry.get("name"), str):
                self._issue(unit, "job requires a name", "syntax")
                continue
            name = entry["name"]
            if name in unit.job_names:
                self._issue(unit, f"Duplicate job name '{name}'", "duplicate", field=name)
                continue
            job_id = make_id(unit.label, name)
            self._jobs[job_id] = Job(id=job_id, name=name, origin=unit.label)
            unit.job_names[name] = job_id
            declared.append((job_id, entry))
        return declared

    def _build_actions(self, unit: _Unit, items: Any, where: str) -> list[ActionSpec]:
        actions: list[ActionSpec] = []
        for index, item in enumerate(self._as_list(unit, items, f"actions of {where}")):
            label = f"{where} #{index + 1}"
            if not isinstance(item, Mapping) or not isinstance(item.get("action"), str):
                self._issue(unit, "action requires an action type", "syntax", action=label)
                continue

            action_type = item["action"]
            name = item.get("name")
            if name is not None and not isinstance(name, str):
                self._issue(unit, "action name must be a string", "syntax", action=label)
                name = None
            if name:
                label = f"{label} {name}"
            for key in item:
                if key not in ACTION_KEYS:
                    self._issue(unit, f"Unknown key '{key}' in action", "syntax", action=label, field=key)

            params = item.get("params") or {}
            if not isinstance(params, Mapping):
                self._issue(unit, "action params must be a mapping", "syntax", action=label)
                continue

            if action_type == JOB_ACTION:
                spec = self._build_job_action(unit, name, params, label)
                if spec is not None:
                    actions.append(spec)
                continue

            if action_type not in self.registry:
                self._issue(unit, f"Unknown action type '{action_type}'", "undefined", action=label)
                continue
            actions.append(ActionSpec(action_type, name, dict(params), origin=unit.label))
        return actions

    def _build_job_action(
        self, unit: _Unit, name: str | None, params: Mapping[str, Any], label: str
    ) -> ActionSpec | None:
        job_name = params.get("name")
        if not isinstance(job_name, str) or has_markup(job_name):
            self._issue(unit, "job action requires a literal job name", "syntax", action=label, field="name")
            return None
        for key in params:
            if key != "name":
                self._issue(unit, f"Unknown parameter '{key}' for job action", "schema", action=label, field=key)
        job_id = unit.job_names.get(job_name)
        if job_id is None:
            self._issue(unit, f"Undefined job '{job_name}'", "undefined", action=label, field="name")
            return None
        return ActionSpec(JOB_ACTION, name, {"name": job_name}, origin=unit.label, job_ref=job_id)

    def _check_job_cycles(self) -> None:
        """Reject job-inclusion cycles among all jobs, used or not."""
        on_stack: list[str] = []
        done: set[str] = set()
        reported: set[frozenset[str]] = set()

        def visit(job_id: str) -> None:
            on_stack.append(job_id)
            for action in self._jobs[job_id].actions:
                ref = action.job_ref
                if ref is None or ref in done:
                    continue
                if ref in on_stack:
                    cycle = on_stack[on_stack.index(ref):] + [ref]
                    key = frozenset(cycle)
                    if key not in reported:
                        reported.add(key)
                        names = " -> ".join(self._jobs[j].name for j in cycle)
                        job = self._jobs[ref]
                        self.issues.append(
                            ValidationIssue(
                                message=f"Job inclusion cycle: {names}",
                                kind="cycle",
                                path=job.origin,
                                field=job.name,
                            )
                        )
                    continue
                visit(ref)
            on_stack.pop()
            done.add(job_id)

        for job_id in list(self._jobs):
            if job_id not in done:
                visit(job_id)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _build_run(self, unit: _Unit, index: int, entry: Any) -> RunSpec | None:
        where = f"run #{index + 1}"
        if not isinstance(entry, Mapping):
            self._issue(unit, f"{where} must be a mapping", "syntax")
            return None

        options: dict[str, Any] = {}
        for key, expected in RUN_OPTION_TYPES.items():
            if key not in entry:
                continue
            value = entry[key]
            if not isinstance(value, expected):
                self._issue(
                    unit, f"{key} must be a {expected.__name__}", "option", action=where, field=key
                )
                continue
            options[key] = value
        for key in entry:
            if key not in RUN_OPTION_TYPES and key not in ("target", "actions"):
                self._issue(unit, f"Unknown key '{key}' in run", "syntax", action=where, field=key)

        target = entry.get("target")
        target_kind: str | None = None
        target_id: str | None = None
        if target is not None:
            if not isinstance(target, str):
                self._issue(unit, "run target must be a group or host name", "syntax", action=where)
                return None
            if target in unit.group_names:
                target_kind, target_id = "group", unit.group_names[target]
            else:
                lookup = Model(path=unit.label, groups=self._groups, group_names=unit.group_names)
                target_id = lookup.find_host(target)
                if target_id is None:
                    self._issue(
                        unit, f"Run target '{target}' is neither a group nor a host", "undefined",
                        action=where, field="target",
                    )
                    return None
                target_kind = "host"

        actions = self._build_actions(unit, entry.get("actions"), options.get("name") or where)
        return RunSpec(
            index=index,
            target=target,
            target_kind=target_kind,
            target_id=target_id,
            actions=actions,
            options=RunOptions(**options),
            origin=unit.label,
        )


def build_model(
    path: str | Path | None = None,
    loader: RunbookLoader | None = None,
    registry: ActionRegistry | None = None,
) -> Model:
    """Build the model for a runbook name or path (default: ./main.tr)."""
    return ModelBuilder(loader=loader, registry=registry).build(runbook_path(path))
