"""Variable scope chains.

A chain is an explicit, ordered list of binding maps for one host, nearest
first. It is computed once per host when plans are compiled, so variable
lookup never walks the group graph.

Distances along one path from the run target down to a host:

    host entry bindings        0
    group containing the host  2
    link into that group       3   (bindings on the parent's reference)
    its parent                 4
    ...

A layer reachable through several paths keeps its smallest distance. Layers
at the same distance are ordered by declaration (first reached in a
depth-first walk of the target group).
"""

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from rook.model import Model

_MISSING = object()


@dataclass(frozen=True)
class ScopeLayer:
    label: str
    bindings: Mapping[str, Any]
    distance: int
    order: int = 0


@dataclass(frozen=True)
class Ambiguity:
    """A variable bound differently by two layers at the same distance."""

    name: str
    chosen: ScopeLayer
    other: ScopeLayer


class ScopeChain:
    """Nearest-first lookup over binding layers."""

    def __init__(self, layers: Iterable[ScopeLayer] = ()) -> None:
        self.layers: tuple[ScopeLayer, ...] = tuple(
            sorted(layers, key=lambda layer: (layer.distance, layer.order))
        )

    def __contains__(self, name: str) -> bool:
        return any(name in layer.bindings for layer in self.layers)

    def lookup(self, name: str) -> Any:
        """Return the nearest binding of name.

        Raises:
            KeyError: If no layer binds name
        """
        for layer in self.layers:
            if name in layer.bindings:
                return layer.bindings[name]
        raise KeyError(name)

    def get(self, name: str, default: Any = None) -> Any:
        try:
            return self.lookup(name)
        except KeyError:
            return default

    def binding_layer(self, name: str) -> ScopeLayer | None:
        for layer in self.layers:
            if name in layer.bindings:
                return layer
        return None

    def flatten(self) -> dict[str, Any]:
        merged: dict[str, Any] = {}
        for layer in reversed(self.layers):
            merged.update(layer.bindings)
        return merged

    def ambiguities(self) -> list[Ambiguity]:
        """Variables whose nearest binding ties with a different value."""
        found: list[Ambiguity] = []
        names: dict[str, None] = {}
        for layer in self.layers:
            for name in layer.bindings:
                names.setdefault(name, None)

        for name in names:
            chosen = self.binding_layer(name)
            assert chosen is not None
            for layer in self.layers:
                if layer is chosen or layer.distance != chosen.distance:
                    continue
                value = layer.bindings.get(name, _MISSING)
                if value is not _MISSING and value != chosen.bindings[name]:
                    found.append(Ambiguity(name, chosen, layer))
        return found

    def __repr__(self) -> str:
        labels = ", ".join(f"{layer.label}@{layer.distance}" for layer in self.layers)
        return f"ScopeChain([{labels}])"


def build_chain(model: Model, target_group_id: str, host_name: str) -> ScopeChain:
    """Compute the scope chain of a host reached from a run's target group.

    Every path from the target group down to a group that lists the host
    contributes its layers; shared layers keep their minimum distance.
    """
    best: dict[tuple, ScopeLayer] = {}

    def offer(key: tuple, label: str, bindings: Mapping[str, Any], distance: int) -> None:
        current = best.get(key)
        if current is None:
            best[key] = ScopeLayer(label, bindings, distance, len(best))
        elif distance < current.distance:
            best[key] = ScopeLayer(label, bindings, distance, current.order)

    def walk(path: list[tuple[str, Mapping[str, Any]]]) -> None:
        # path: (group id, bindings on the link into it), target first
        group_id = path[-1][0]
        if any(gid == group_id for gid, _ in path[:-1]):
            return
        group = model.groups[group_id]
        for entry in group.hosts:
            if entry.name != host_name:
                continue
            offer(("host", group_id), f"host {host_name} in {group.name}", entry.vars, 0)
            for position, (gid, link_vars) in enumerate(path):
                hop = len(path) - position
                node = model.groups[gid]
                offer(("group", gid), f"group {node.name}", node.vars, 2 * hop)
                if position > 0 and link_vars:
                    parent_id = path[position - 1][0]
                    offer(
                        ("link", parent_id, gid),
                        f"group {model.groups[parent_id].name} -> {node.name}",
                        link_vars,
                        2 * hop + 1,
                    )
        for link in group.children:
            walk(path + [(link.group_id, link.vars)])

    walk([(target_group_id, {})])
    return ScopeChain(best.values())
