"""Action plugin contract.

Every action type declares its parameters up front so that runbooks can be
validated without contacting any host. Accepted shapes mirror what a
runbook can express: strings, booleans, lists of strings and enumerations
of literal strings. A parameter may accept several shapes (``package``'s
``name`` takes a string or a list).
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping


class ParamShape(str, Enum):
    STRING = "string"
    BOOLEAN = "boolean"
    LIST_OF_STRING = "list_of_string"
    ENUM = "enum"


@dataclass(frozen=True)
class ParamSpec:
    """Declaration of one action parameter.

    Attributes:
        name: Parameter name
        shapes: Accepted value shapes
        required: Whether the parameter must be given
        description: One-line help text
        choices: Allowed literals for the ENUM shape
    """

    name: str
    shapes: tuple[ParamShape, ...] = (ParamShape.STRING,)
    required: bool = False
    description: str = ""
    choices: tuple[str, ...] = ()

    def accepts(self, value: Any) -> bool:
        return any(_matches(shape, value, self.choices) for shape in self.shapes)

    def check(self, value: Any) -> str | None:
        """Return a problem description, or None if value is acceptable."""
        if self.accepts(value):
            return None
        if ParamShape.ENUM in self.shapes and isinstance(value, str):
            allowed = ", ".join(self.choices)
            return f"'{value}' is not one of: {allowed}"
        return f"expected {self.type_label()}, got {_describe(value)}"

    def type_label(self) -> str:
        labels = []
        for shape in self.shapes:
            if shape == ParamShape.ENUM:
                labels.append("one of " + ", ".join(f'"{c}"' for c in self.choices))
            elif shape == ParamShape.LIST_OF_STRING:
                labels.append("list of string")
            else:
                labels.append(shape.value)
        return " or ".join(labels)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "name": self.name,
            "required": self.required,
            "type": [shape.value for shape in self.shapes],
            "description": self.description,
        }
        if self.choices:
            result["choices"] = list(self.choices)
        return result


def _matches(shape: ParamShape, value: Any, choices: tuple[str, ...]) -> bool:
    if shape == ParamShape.STRING:
        return isinstance(value, str)
    if shape == ParamShape.BOOLEAN:
        return isinstance(value, bool)
    if shape == ParamShape.LIST_OF_STRING:
        return isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value)
    if shape == ParamShape.ENUM:
        return isinstance(value, str) and value in choices
    return False


def _describe(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "list"
    if isinstance(value, Mapping):
        return "mapping"
    if value is None:
        return "null"
    return type(value).__name__


# Handler: async (params, ctx) -> {"changed": bool, "output": str | None}
Handler = Callable[[dict[str, Any], Any], Awaitable[dict[str, Any]]]

# Prepare: (params, runbook dir) -> params sent on the wire. Runs control-side.
Prepare = Callable[[dict[str, Any], Path | None], dict[str, Any]]


@dataclass(frozen=True)
class ActionDefinition:
    """A registered action type."""

    name: str
    description: str
    params: tuple[ParamSpec, ...]
    handler: Handler
    prepare: Prepare | None = field(default=None, compare=False)

    def param(self, name: str) -> ParamSpec | None:
        for spec in self.params:
            if spec.name == name:
                return spec
        return None

    def validate(self, params: Mapping[str, Any]) -> list[tuple[str, str]]:
        """Check concrete parameter values against the schema.

        Returns:
            List of (parameter name, problem) pairs; empty when valid
        """
        problems: list[tuple[str, str]] = []
        for spec in self.params:
            if spec.name not in params:
                if spec.required:
                    problems.append((spec.name, "missing required parameter"))
                continue
            problem = spec.check(params[spec.name])
            if problem:
                problems.append((spec.name, problem))
        for name in params:
            if self.param(name) is None:
                problems.append((name, f"unknown parameter for action '{self.name}'"))
        return problems

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "params": [spec.to_dict() for spec in self.params],
        }

    def format_text(self) -> str:
        lines = [self.name, "", f"  {self.description}", "", "  Parameters:"]
        for spec in self.params:
            flag = "required" if spec.required else "optional"
            lines.append(f"    {spec.name} ({spec.type_label()}, {flag})")
            if spec.description:
                lines.append(f"        {spec.description}")
        return "\n".join(lines)
