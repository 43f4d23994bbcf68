"""file action: make sure a path is a file, a directory, or absent."""

import shutil
from pathlib import Path
from typing import Any

from rook.actions.context import ActionContext
from rook.actions.exceptions import ActionFailed
from rook.actions.schema import ActionDefinition, ParamShape, ParamSpec


def parse_mode(mode: str) -> int:
    try:
        return int(mode, 8)
    except ValueError:
        raise ActionFailed(f"Invalid mode: {mode}")


def apply_mode(path: Path, mode: str | None) -> bool:
    """chmod path if its permission bits differ; returns whether it changed."""
    if not mode or not path.exists():
        return False
    wanted = parse_mode(mode)
    if path.stat().st_mode & 0o7777 == wanted:
        return False
    path.chmod(wanted)
    return True


async def file(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    """Manage a path.

    States:
        file: create an empty file if missing; fail if a directory is there
        directory: create the directory and parents if missing
        absent: remove the file or directory tree if present
    """
    path = Path(params["path"]).expanduser()
    state = params.get("state", "file")
    changed = False

    try:
        if state == "absent":
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
                changed = True
            elif path.exists() or path.is_symlink():
                path.unlink()
                changed = True

        elif state == "directory":
            if not path.exists():
                path.mkdir(parents=True)
                changed = True
            elif not path.is_dir():
                raise ActionFailed(f"Path exists but is not a directory: {path}")

        elif state == "file":
            if path.is_dir():
                raise ActionFailed(f"Path is a directory: {path}")
            if not path.exists():
                path.parent.mkdir(parents=True, exist_ok=True)
                path.touch()
                changed = True

        else:
            raise ActionFailed(f"Invalid state: {state}")

        if state != "absent":
            changed = apply_mode(path, params.get("mode")) or changed

    except PermissionError as e:
        raise ActionFailed(f"Permission denied: {e}")
    except OSError as e:
        raise ActionFailed(f"OS error: {e}")

    if changed:
        await ctx.emit_output(f"{path}: {state}")
    return {"changed": changed, "output": f"{path}: {state}" if changed else None}


FILE = ActionDefinition(
    name="file",
    description="Manage a file or directory on the target.",
    params=(
        ParamSpec("path", required=True, description="Path of the file or directory"),
        ParamSpec(
            "state",
            (ParamShape.ENUM,),
            choices=("file", "directory", "absent"),
            description="Desired state of the path (default: file)",
        ),
        ParamSpec("mode", description="Permission bits in octal, e.g. \"0644\""),
    ),
    handler=file,
)
