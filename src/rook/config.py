"""Dispatch configuration.

Defaults can be overridden from a YAML file (``~/.rook/config.yml`` or
``--config``) and then from command-line flags.

Example config.yml:
    parallel: 20
    host_timeout: 600
    action_timeout: 120
    continue_on_error: false
    known_hosts: ~/.ssh/known_hosts
"""

import logging
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

DEFAULT_PARALLEL = 10
MAX_PARALLEL = 100
DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_CONFIG_PATH = Path("~/.rook/config.yml")


@dataclass(frozen=True)
class RookConfig:
    """Settings that govern how plans are dispatched.

    Attributes:
        parallel: Number of hosts executed concurrently
        host_timeout: Seconds a host may take for its whole plan (None = no limit)
        action_timeout: Seconds a single action may take (None = no limit)
        continue_on_error: Default for runs that don't set it themselves
        known_hosts: known_hosts file for SSH ("" disables host key checking)
        connect_timeout: Seconds per SSH connection attempt
        executor_cache_dir: Where built executor archives are cached
        remote_dir: Directory on targets that receives the executor
    """

    parallel: int = DEFAULT_PARALLEL
    host_timeout: float | None = None
    action_timeout: float | None = None
    continue_on_error: bool = False
    known_hosts: str | None = None
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    executor_cache_dir: str = "~/.rook/executors"
    remote_dir: str = "~/.rook"

    def validate(self) -> "RookConfig":
        """Check value ranges, returning self for chaining.

        Raises:
            ValueError: On an out-of-range setting
        """
        if self.parallel < 1:
            raise ValueError(f"parallel must be at least 1, got {self.parallel}")
        if self.parallel > MAX_PARALLEL:
            raise ValueError(f"parallel must be at most {MAX_PARALLEL}, got {self.parallel}")
        for name in ("host_timeout", "action_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive, got {value}")
        return self

    def with_overrides(self, **overrides: Any) -> "RookConfig":
        """Return a copy with the given settings replaced; None values are ignored."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RookConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config setting(s): {', '.join(unknown)}")
        return cls(**data)


def load_config(path: str | Path | None = None) -> RookConfig:
    """Load configuration from a YAML file.

    With no path, ``~/.rook/config.yml`` is used when it exists and the
    built-in defaults otherwise.

    Raises:
        ValueError: If the file is not valid YAML, not a mapping or has unknown settings
        FileNotFoundError: If an explicit path does not exist
    """
    if path is None:
        default = DEFAULT_CONFIG_PATH.expanduser()
        if not default.exists():
            return RookConfig()
        config_path = default
    else:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

    logger.debug(f"Loading config from {config_path}")
    with open(config_path) as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")

    return RookConfig.from_dict(data).validate()
