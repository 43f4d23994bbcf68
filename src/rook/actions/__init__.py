"""Action types and their registry.

Each action type is an ``ActionDefinition``: a name, a parameter schema,
an async handler that runs on the target and optionally a control-side
``prepare`` hook. The compiler validates runbooks against a registry; the
executor runs handlers from the same registry.

Usage:
    from rook.actions import default_registry

    registry = default_registry()
    registry.get("copy").validate({"src": "a", "dest": "/tmp/a"})
"""

from typing import Iterable

from rook.actions.command import COMMAND
from rook.actions.context import ActionContext, run_command
from rook.actions.copy import COPY
from rook.actions.exceptions import ActionFailed
from rook.actions.file import FILE
from rook.actions.git import GIT
from rook.actions.package import PACKAGE
from rook.actions.schema import ActionDefinition, ParamShape, ParamSpec

# Handled by the builder and compiler; never reaches an executor
JOB_ACTION = "job"

BUILTIN_ACTIONS: tuple[ActionDefinition, ...] = (COMMAND, COPY, FILE, GIT, PACKAGE)


class ActionRegistry:
    """Name -> ActionDefinition mapping."""

    def __init__(self, definitions: Iterable[ActionDefinition] = ()) -> None:
        self._actions: dict[str, ActionDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: ActionDefinition) -> None:
        """Add an action type.

        Raises:
            ValueError: If the name is taken or reserved
        """
        if definition.name == JOB_ACTION:
            raise ValueError(f"'{JOB_ACTION}' is a reserved action name")
        if definition.name in self._actions:
            raise ValueError(f"Action '{definition.name}' is already registered")
        self._actions[definition.name] = definition

    def get(self, name: str) -> ActionDefinition | None:
        return self._actions.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._actions

    def __len__(self) -> int:
        return len(self._actions)

    def names(self) -> list[str]:
        return sorted(self._actions)

    def definitions(self) -> list[ActionDefinition]:
        return [self._actions[name] for name in self.names()]


def default_registry() -> ActionRegistry:
    """A fresh registry holding the built-in actions."""
    return ActionRegistry(BUILTIN_ACTIONS)


__all__ = [
    "ActionContext",
    "ActionDefinition",
    "ActionFailed",
    "ActionRegistry",
    "BUILTIN_ACTIONS",
    "JOB_ACTION",
    "ParamShape",
    "ParamSpec",
    "default_registry",
    "run_command",
]
