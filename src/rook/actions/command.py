"""command action: run a program on the target."""

from typing import Any

from rook.actions.context import ActionContext, run_command
from rook.actions.exceptions import ActionFailed
from rook.actions.schema import ActionDefinition, ParamShape, ParamSpec


async def command(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    cmd = params["cmd"]
    args = list(params.get("args") or [])
    try:
        rc = await run_command(ctx, cmd, args, cwd=params.get("chdir"))
    except FileNotFoundError:
        raise ActionFailed(f"command not found: {cmd}")
    except NotADirectoryError:
        raise ActionFailed(f"chdir is not a directory: {params.get('chdir')}")

    if rc != 0:
        raise ActionFailed(f"{cmd} exited with status {rc}", output=ctx.output)
    return {"changed": True, "output": ctx.output}


COMMAND = ActionDefinition(
    name="command",
    description="Run a command on the target. Always reports changed.",
    params=(
        ParamSpec("cmd", required=True, description="The program to run"),
        ParamSpec("args", (ParamShape.LIST_OF_STRING,), description="Arguments passed to the program"),
        ParamSpec("chdir", description="Working directory for the program"),
    ),
    handler=command,
)
