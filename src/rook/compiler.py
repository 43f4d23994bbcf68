"""Plan compilation.

Expands a run into one ``ResolvedPlan`` per targeted host:

1. Host set: every host reachable from the run's target group, through
   nested groups, de-duplicated by name in first-seen order.
2. Flattening: ``job`` actions are replaced inline by the job's own
   (already flattened) action list.
3. Substitution: every parameter and display name is evaluated against the
   host's scope chain.
4. Validation: concrete parameters are checked against the action schema.

Compilation is pure: it never opens a connection or starts a process, so
``rook check`` cannot hang on the network.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rook.actions import ActionRegistry, default_registry
from rook.exceptions import ValidationError, ValidationIssue
from rook.logging import log_performance
from rook.model import ActionSpec, Model, RunSpec
from rook.scope import ScopeChain, ScopeLayer, build_chain
from rook.substitute import SubstitutionError, UnresolvedVariable, substitute
from rook.types import HostTarget, ResolvedAction, ResolvedPlan, RunOptions, freeze

logger = logging.getLogger(__name__)

LOCALHOST = "localhost"
LOCAL_ADDRESSES = ("localhost", "127.0.0.1", "::1")

# Host variables with meaning to the transport
CONNECTION_VARS = (
    "address",
    "port",
    "remote_user",
    "become",
    "connection",
    "ssh_private_key_file",
    "python_interpreter",
)


@dataclass
class CompiledRun:
    """Plans of one run, keyed by host name in targeting order."""

    run: RunSpec
    plans: dict[str, ResolvedPlan]
    warnings: list[ValidationIssue] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.run.label


class PlanCompiler:
    """Compiles runs of a model into resolved per-host plans."""

    def __init__(self, model: Model, registry: ActionRegistry | None = None) -> None:
        self.model = model
        self.registry = registry or default_registry()
        self._flat_jobs: dict[str, list[ActionSpec]] = {}

    def compile_all(self) -> list[CompiledRun]:
        """Compile every run of the model.

        Raises:
            ValidationError: With the issues of all runs, if any is an error
        """
        compiled: list[CompiledRun] = []
        issues: list[ValidationIssue] = list(self.model.warnings)
        for run in self.model.runs:
            try:
                result = self.compile_run(run)
            except ValidationError as e:
                issues.extend(e.issues)
                continue
            issues.extend(result.warnings)
            compiled.append(result)
        if any(issue.is_error for issue in issues):
            raise ValidationError(issues)
        return compiled

    def compile_run(self, run: RunSpec) -> CompiledRun:
        """Compile a single run.

        Raises:
            ValidationError: If any host's plan has an error
        """
        issues: list[ValidationIssue] = []
        plans: dict[str, ResolvedPlan] = {}

        with log_performance(logger, "Compile run", run=run.label):
            actions = self._flatten(run.actions)
            for host_name, chain in self._targets(run):
                plan = self._compile_host(run, host_name, chain, actions, issues)
                if plan is not None:
                    plans[host_name] = plan

        if any(issue.is_error for issue in issues):
            raise ValidationError(issues)

        logger.info(f"Compiled {run.label}: {len(plans)} host(s), {len(actions)} action(s) each")
        return CompiledRun(run=run, plans=plans, warnings=issues)

    # ------------------------------------------------------------------

    def _targets(self, run: RunSpec) -> list[tuple[str, ScopeChain]]:
        if run.target_kind is None or run.target_id is None:
            return [(LOCALHOST, ScopeChain())]

        if run.target_kind == "host":
            assert run.target is not None
            return [(run.target, build_chain(self.model, run.target_id, run.target))]

        names = self.model.host_names(run.target_id)
        if not names:
            # A group without hosts runs on the control machine
            group = self.model.groups[run.target_id]
            layer = ScopeLayer(f"group {group.name}", group.vars, 2)
            return [(LOCALHOST, ScopeChain([layer]))]
        return [(name, build_chain(self.model, run.target_id, name)) for name in names]

    def _flatten(self, actions: list[ActionSpec]) -> list[ActionSpec]:
        flat: list[ActionSpec] = []
        for action in actions:
            if action.job_ref is not None:
                flat.extend(self._flatten_job(action.job_ref))
            else:
                flat.append(action)
        return flat

    def _flatten_job(self, job_id: str) -> list[ActionSpec]:
        cached = self._flat_jobs.get(job_id)
        if cached is None:
            cached = self._flatten(self.model.jobs[job_id].actions)
            self._flat_jobs[job_id] = cached
        return cached

    def _compile_host(
        self,
        run: RunSpec,
        host_name: str,
        chain: ScopeChain,
        actions: list[ActionSpec],
        issues: list[ValidationIssue],
    ) -> ResolvedPlan | None:
        before = len([issue for issue in issues if issue.is_error])

        for ambiguity in chain.ambiguities():
            issues.append(
                ValidationIssue(
                    message=(
                        f"'{ambiguity.name}' is bound differently by {ambiguity.chosen.label} and "
                        f"{ambiguity.other.label}; using {ambiguity.chosen.label} (declared first)"
                    ),
                    kind="ambiguous",
                    path=run.origin,
                    host=host_name,
                    field=ambiguity.name,
                    severity="warning",
                )
            )

        target = self._host_target(run, host_name, chain, issues)

        resolved: list[ResolvedAction] = []
        for index, spec in enumerate(actions):
            label = f"#{index + 1} {spec.name or spec.type}"
            action = self._resolve_action(index, spec, chain, host_name, label, run.origin, issues)
            if action is not None:
                resolved.append(action)

        if len([issue for issue in issues if issue.is_error]) > before or target is None:
            return None
        return ResolvedPlan(host=target, actions=tuple(resolved), options=run.options)

    def _resolve_action(
        self,
        index: int,
        spec: ActionSpec,
        chain: ScopeChain,
        host_name: str,
        label: str,
        path: str,
        issues: list[ValidationIssue],
    ) -> ResolvedAction | None:
        def fail(message: str, kind: str, field: str | None = None) -> None:
            issues.append(
                ValidationIssue(
                    message=message,
                    kind=kind,
                    path=spec.origin or path,
                    host=host_name,
                    action=label,
                    field=field,
                )
            )

        definition = self.registry.get(spec.type)
        if definition is None:
            fail(f"Unknown action type '{spec.type}'", "undefined")
            return None

        params: dict[str, Any] = {}
        ok = True
        for key, value in spec.params.items():
            try:
                params[key] = substitute(value, chain)
            except UnresolvedVariable as e:
                fail(f"Undefined variable '{e.name}' in parameter '{key}'", "unresolved", field=e.name)
                ok = False
            except SubstitutionError as e:
                fail(str(e), "template", field=key)
                ok = False

        name = spec.name or spec.type
        try:
            name = str(substitute(name, chain))
        except UnresolvedVariable as e:
            fail(f"Undefined variable '{e.name}' in action name", "unresolved", field=e.name)
            ok = False
        except SubstitutionError as e:
            fail(str(e), "template", field="name")
            ok = False

        if not ok:
            return None

        problems = definition.validate(params)
        for param, problem in problems:
            fail(f"{param}: {problem}", "schema", field=param)
        if problems:
            return None

        return ResolvedAction(
            index=index,
            type=spec.type,
            name=name,
            params=freeze(params),
            origin=str(Path(spec.origin).parent) if spec.origin else None,
        )

    def _host_target(
        self,
        run: RunSpec,
        host_name: str,
        chain: ScopeChain,
        issues: list[ValidationIssue],
    ) -> HostTarget | None:
        values: dict[str, Any] = {}
        for var in CONNECTION_VARS:
            if var not in chain:
                continue
            try:
                values[var] = substitute(chain.lookup(var), chain)
            except SubstitutionError as e:
                issues.append(
                    ValidationIssue(str(e), kind="unresolved", path=run.origin, host=host_name, field=var)
                )
                return None

        address = str(values.get("address", host_name))
        connection = values.get("connection") or ("local" if address in LOCAL_ADDRESSES else "ssh")
        if connection not in ("ssh", "local"):
            issues.append(
                ValidationIssue(
                    f"connection must be 'ssh' or 'local', got {connection!r}",
                    kind="option",
                    path=run.origin,
                    host=host_name,
                    field="connection",
                )
            )
            return None

        try:
            port = int(values.get("port", 22))
        except (TypeError, ValueError):
            issues.append(
                ValidationIssue(
                    f"port must be an integer, got {values.get('port')!r}",
                    kind="option",
                    path=run.origin,
                    host=host_name,
                    field="port",
                )
            )
            return None

        options: RunOptions = run.options
        return HostTarget(
            name=host_name,
            address=address,
            port=port,
            user=values.get("remote_user", options.remote_user),
            become=bool(values.get("become", options.become)),
            connection=connection,
            interpreter=str(values.get("python_interpreter", "python3")),
            key_file=values.get("ssh_private_key_file"),
        )


def compile_model(model: Model, registry: ActionRegistry | None = None) -> list[CompiledRun]:
    """Compile every run of a model; see PlanCompiler.compile_all."""
    return PlanCompiler(model, registry).compile_all()
