"""Runbook file loading.

The configuration-language parser is not part of rook: a loader is any
callable that takes a path and returns the runbook tree as plain mappings
and lists. The default loader reads JSON or YAML documents with that shape.
"""

import json
import logging
from pathlib import Path
from typing import Any, Callable

import yaml

from rook.exceptions import RunbookLoadError

logger = logging.getLogger(__name__)

DEFAULT_RUNBOOK = "main"
RUNBOOK_SUFFIX = ".tr"

RunbookLoader = Callable[[Path], dict[str, Any]]


def runbook_path(name: str | Path | None = None, base_dir: str | Path | None = None) -> Path:
    """Resolve a runbook name to a file path.

    ``None`` means ``main``; names not ending in ``.tr`` get it appended.
    Relative names are resolved against base_dir (default: current directory).

    Example:
        >>> runbook_path("deploy", "/srv")
        PosixPath('/srv/deploy.tr')
    """
    text = str(name) if name is not None else DEFAULT_RUNBOOK
    if not text.endswith(RUNBOOK_SUFFIX):
        text = f"{text}{RUNBOOK_SUFFIX}"
    path = Path(text).expanduser()
    if not path.is_absolute():
        path = Path(base_dir or Path.cwd()) / path
    return path.resolve()


def load_runbook(path: Path) -> dict[str, Any]:
    """Read a runbook tree from a JSON or YAML file.

    Format is auto-detected: content starting with ``{`` is JSON, anything
    else is parsed as YAML.

    Raises:
        RunbookLoadError: If the file can't be read or isn't a mapping
    """
    try:
        content = Path(path).read_text()
    except OSError as e:
        raise RunbookLoadError(f"Cannot read runbook: {e.strerror}", path=str(path)) from e

    try:
        if content.lstrip().startswith("{"):
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise RunbookLoadError(f"Invalid runbook syntax: {e}", path=str(path)) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise RunbookLoadError("Runbook must be a mapping at the top level", path=str(path))

    logger.debug(f"Loaded runbook {path}: {', '.join(data) or 'empty'}")
    return data
