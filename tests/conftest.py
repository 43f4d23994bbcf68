"""Shared fixtures: a registry of fake actions and a runbook writer."""

import asyncio
import textwrap
from pathlib import Path
from typing import Any, Callable

import pytest

from rook.actions import ActionContext, ActionDefinition, ActionFailed, ActionRegistry, ParamShape, ParamSpec


async def fake_package(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    names = params["name"] if isinstance(params["name"], list) else [params["name"]]
    for name in names:
        if name.startswith("missing"):
            raise ActionFailed(f"No package matching '{name}'")
    await ctx.emit_output(f"installed {', '.join(names)}")
    return {"changed": True, "output": None}


async def fake_copy(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    return {"changed": True, "output": f"copy to {params['dest']}"}


async def note(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    await ctx.emit_output(params.get("msg", ""))
    return {"changed": False, "output": params.get("msg")}


async def sleep(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    await asyncio.sleep(float(params["seconds"]))
    return {"changed": False, "output": None}


async def fail(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    raise ActionFailed(params.get("msg", "failed on purpose"))


FAKE_ACTIONS = (
    ActionDefinition(
        "package",
        "Pretend to install packages.",
        (
            ParamSpec("name", (ParamShape.STRING, ParamShape.LIST_OF_STRING), required=True),
            ParamSpec("state", (ParamShape.ENUM,), choices=("present", "absent", "latest")),
        ),
        fake_package,
    ),
    ActionDefinition(
        "copy",
        "Pretend to copy a file.",
        (ParamSpec("src", required=True), ParamSpec("dest", required=True)),
        fake_copy,
    ),
    ActionDefinition("note", "Emit a message.", (ParamSpec("msg"),), note),
    ActionDefinition("sleep", "Wait.", (ParamSpec("seconds", required=True),), sleep),
    ActionDefinition("fail", "Always fail.", (ParamSpec("msg"),), fail),
)


@pytest.fixture
def registry() -> ActionRegistry:
    return ActionRegistry(FAKE_ACTIONS)


@pytest.fixture
def write_runbook(tmp_path: Path) -> Callable[[str, str], Path]:
    """Write a YAML runbook under tmp_path and return its path."""

    def write(name: str, content: str) -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(content))
        return path

    return write
