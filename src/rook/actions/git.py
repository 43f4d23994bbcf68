"""git action: clone a repository, or fast-forward an existing clone."""

from pathlib import Path
from typing import Any

from rook.actions.context import ActionContext, capture_command, run_command
from rook.actions.exceptions import ActionFailed
from rook.actions.schema import ActionDefinition, ParamSpec


async def _head(dest: Path) -> str:
    rc, stdout = await capture_command("git", ["-C", str(dest), "rev-parse", "HEAD"])
    return stdout.strip() if rc == 0 else ""


async def git(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    repo = params["repo"]
    dest = Path(params["dest"]).expanduser()

    try:
        if (dest / ".git").exists():
            before = await _head(dest)
            rc = await run_command(ctx, "git", ["-C", str(dest), "pull", "--ff-only"])
            if rc != 0:
                raise ActionFailed(f"git pull failed with status {rc}", output=ctx.output)
            changed = await _head(dest) != before
        else:
            if dest.exists() and any(dest.iterdir()):
                raise ActionFailed(f"Destination exists and is not a git checkout: {dest}")
            rc = await run_command(ctx, "git", ["clone", repo, str(dest)])
            if rc != 0:
                raise ActionFailed(f"git clone failed with status {rc}", output=ctx.output)
            changed = True
    except FileNotFoundError:
        raise ActionFailed("git is not installed on the target")

    return {"changed": changed, "output": ctx.output or None}


GIT = ActionDefinition(
    name="git",
    description="Clone a git repository, or fast-forward an existing clone.",
    params=(
        ParamSpec("repo", required=True, description="Repository URL"),
        ParamSpec("dest", required=True, description="Checkout directory on the target"),
    ),
    handler=git,
)
