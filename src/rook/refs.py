"""Programmatic variable references.

Runbook ASTs built in Python (rather than loaded from a file) can use
``VarRef`` objects instead of ``{{ name }}`` strings. Attribute access
extends the path, so ``var.app.port`` refers to the ``port`` key of the
``app`` variable.

Example:
    >>> from rook.refs import var
    >>> ref = var.app.port
    >>> ref.path
    ('app', 'port')
"""

from typing import Any


class VarRef:
    """Reference to a (possibly nested) variable, resolved at compile time."""

    def __init__(self, parent: "VarRef | None", name: str) -> None:
        self._parent = parent
        self._name = name

    def __getattr__(self, name: str) -> "VarRef":
        if name.startswith("__"):
            raise AttributeError(name)
        ref = VarRef(self, name)
        object.__setattr__(self, name, ref)
        return ref

    @property
    def path(self) -> tuple[str, ...]:
        parts: list[str] = []
        current: VarRef | None = self
        while current is not None and current._name:
            parts.append(current._name)
            current = current._parent
        return tuple(reversed(parts))

    @property
    def dotted(self) -> str:
        return ".".join(self.path)

    def __repr__(self) -> str:
        return f"VarRef({self.dotted})"

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, VarRef) and other.path == self.path

    def __hash__(self) -> int:
        return hash(self.path)


def get_nested_value(data: Any, path: tuple[str, ...] | list[str]) -> Any:
    """Walk nested mappings along ``path``.

    Raises:
        KeyError: If a key along the path is missing or a value is not a mapping
    """
    value = data
    for index, key in enumerate(path):
        try:
            value = value[key]
        except (KeyError, TypeError, IndexError):
            raise KeyError(".".join(path[: index + 1])) from None
    return value


# Root for building references: var.name, var.app.port, ...
var = VarRef(None, "")
