"""copy action: put a control-side file onto the target.

The source file is read on the control machine when the plan is sent and
travels inside the plan message, so the target needs no access to it.
"""

import base64
import hashlib
import os
import tempfile
from pathlib import Path
from typing import Any

from rook.actions.context import ActionContext
from rook.actions.exceptions import ActionFailed
from rook.actions.file import apply_mode
from rook.actions.schema import ActionDefinition, ParamSpec

CONTENT_KEY = "_content"


def prepare_copy(params: dict[str, Any], base_dir: Path | None) -> dict[str, Any]:
    """Embed the source file's content into the wire parameters.

    Relative sources are resolved against the directory of the runbook
    that declared the action.

    Raises:
        ActionFailed: If the source cannot be read
    """
    src = Path(params["src"]).expanduser()
    if not src.is_absolute() and base_dir is not None:
        src = base_dir / src
    try:
        content = src.read_bytes()
    except OSError as e:
        raise ActionFailed(f"Cannot read copy source {src}: {e.strerror}")
    wire = dict(params)
    wire[CONTENT_KEY] = base64.b64encode(content).decode("ascii")
    return wire


async def copy(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    if CONTENT_KEY not in params:
        raise ActionFailed("copy content was not sent with the plan")
    content = base64.b64decode(params[CONTENT_KEY])
    dest = Path(params["dest"]).expanduser()

    if dest.is_dir():
        dest = dest / Path(params["src"]).name

    try:
        if dest.exists() and hashlib.sha256(dest.read_bytes()).digest() == hashlib.sha256(content).digest():
            changed = apply_mode(dest, params.get("mode"))
            return {"changed": changed, "output": None}

        dest.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(content)
            os.replace(tmp_name, dest)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        apply_mode(dest, params.get("mode"))
    except PermissionError as e:
        raise ActionFailed(f"Permission denied: {e}")
    except OSError as e:
        raise ActionFailed(f"Can't copy to {dest}: {e}")

    await ctx.emit_output(f"copied {len(content)} bytes to {dest}")
    return {"changed": True, "output": f"copy to {dest}"}


COPY = ActionDefinition(
    name="copy",
    description="Copy a file from the control machine to the target.",
    params=(
        ParamSpec("src", required=True, description="Source file, relative to the runbook"),
        ParamSpec("dest", required=True, description="Destination path on the target"),
        ParamSpec("mode", description="Permission bits in octal, e.g. \"0644\""),
    ),
    handler=copy,
    prepare=prepare_copy,
)
