"""package action: install, remove or upgrade system packages.

The package manager is detected on the target from /etc/os-release, falling
back to whichever known manager is on PATH.
"""

import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from rook.actions.context import ActionContext, capture_command, run_command
from rook.actions.exceptions import ActionFailed
from rook.actions.schema import ActionDefinition, ParamShape, ParamSpec


@dataclass(frozen=True)
class PackageProvider:
    name: str
    program: str
    install: tuple[str, ...]
    remove: tuple[str, ...]
    upgrade: tuple[str, ...]
    query: tuple[str, ...]

    def command_for(self, state: str) -> tuple[str, ...]:
        return {"present": self.install, "absent": self.remove, "latest": self.upgrade}[state]

    async def is_installed(self, package: str) -> bool:
        program, *args = self.query
        try:
            rc, stdout = await capture_command(program, [*args, package])
        except FileNotFoundError:
            return False
        if self.name == "apt":
            return rc == 0 and "install ok installed" in stdout
        return rc == 0


PROVIDERS = {
    "apt": PackageProvider(
        "apt", "apt-get", ("install", "-y"), ("remove", "-y"), ("install", "-y"),
        ("dpkg-query", "-W", "-f=${Status}"),
    ),
    "dnf": PackageProvider(
        "dnf", "dnf", ("install", "-y"), ("remove", "-y"), ("upgrade", "-y"), ("rpm", "-q"),
    ),
    "yum": PackageProvider(
        "yum", "yum", ("install", "-y"), ("remove", "-y"), ("update", "-y"), ("rpm", "-q"),
    ),
    "zypper": PackageProvider(
        "zypper", "zypper", ("install", "-y"), ("remove", "-y"), ("update", "-y"), ("rpm", "-q"),
    ),
    "pacman": PackageProvider(
        "pacman", "pacman", ("-S", "--noconfirm", "--needed"), ("-R", "--noconfirm"),
        ("-S", "--noconfirm"), ("pacman", "-Q"),
    ),
    "apk": PackageProvider(
        "apk", "apk", ("add",), ("del",), ("add", "--upgrade"), ("apk", "info", "-e"),
    ),
    "brew": PackageProvider(
        "brew", "brew", ("install",), ("uninstall",), ("upgrade",), ("brew", "list", "--versions"),
    ),
}

OS_FAMILIES = {
    "debian": "apt", "ubuntu": "apt", "linuxmint": "apt", "pop": "apt",
    "fedora": "dnf", "rhel": "dnf", "centos": "dnf", "rocky": "dnf", "almalinux": "dnf",
    "opensuse": "zypper", "sles": "zypper", "suse": "zypper",
    "arch": "pacman", "manjaro": "pacman",
    "alpine": "apk",
}


def read_os_release(path: Path = Path("/etc/os-release")) -> dict[str, str]:
    values: dict[str, str] = {}
    try:
        text = path.read_text()
    except OSError:
        return values
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip().strip('"')
    return values


def detect_provider(os_release: dict[str, str] | None = None) -> PackageProvider:
    """Pick the package manager for this machine.

    Raises:
        ActionFailed: If no supported package manager is found
    """
    if sys.platform == "darwin":
        return PROVIDERS["brew"]

    info = read_os_release() if os_release is None else os_release
    candidates = [info.get("ID", "")] + info.get("ID_LIKE", "").split()
    for candidate in candidates:
        for prefix, provider in OS_FAMILIES.items():
            if candidate.lower().startswith(prefix):
                chosen = PROVIDERS[provider]
                if chosen.name == "dnf" and not shutil.which("dnf") and shutil.which("yum"):
                    return PROVIDERS["yum"]
                return chosen

    for provider in PROVIDERS.values():
        if shutil.which(provider.program):
            return provider

    raise ActionFailed(f"Can't find the package manager for OS {info.get('ID', sys.platform)}")


async def package(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    names = params["name"]
    packages = [names] if isinstance(names, str) else list(names)
    state = params["state"]
    provider = detect_provider()

    if state == "present":
        pending = [p for p in packages if not await provider.is_installed(p)]
    elif state == "absent":
        pending = [p for p in packages if await provider.is_installed(p)]
    else:
        pending = packages

    if not pending:
        return {"changed": False, "output": f"{', '.join(packages)}: already {state}"}

    try:
        rc = await run_command(ctx, provider.program, [*provider.command_for(state), *pending])
    except FileNotFoundError:
        raise ActionFailed(f"package manager not found: {provider.program}")
    if rc != 0:
        raise ActionFailed(f"{provider.name} {state} failed with status {rc}", output=ctx.output)
    return {"changed": True, "output": ctx.output}


PACKAGE = ActionDefinition(
    name="package",
    description="Install, remove or upgrade packages with the system package manager.",
    params=(
        ParamSpec(
            "name",
            (ParamShape.STRING, ParamShape.LIST_OF_STRING),
            required=True,
            description="Package name or list of package names",
        ),
        ParamSpec(
            "state",
            (ParamShape.ENUM,),
            required=True,
            choices=("present", "absent", "latest"),
            description="Whether the packages should be installed, removed or upgraded",
        ),
    ),
    handler=package,
)
