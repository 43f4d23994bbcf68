"""Executor archive building.

Builds the self-contained ``rook_executor_<hash>.pyz`` zipapp that is
pushed to SSH targets. The archive holds the parts of the ``rook`` package
the executor needs (wire protocol, action handlers, executor loop), all of
which depend on the standard library only, so targets need nothing but a
Python 3 interpreter.

Archives are cached by a hash of their source files and interpreter, so an
unchanged installation never rebuilds or re-uploads.
"""

import hashlib
import logging
import shutil
import tempfile
import zipapp
from dataclasses import dataclass, field
from pathlib import Path

import rook
from rook.exceptions import ExecutorBuildError

logger = logging.getLogger(__name__)

ARCHIVE_PREFIX = "rook_executor_"

# Paths relative to the rook package directory
BUNDLED_MODULES = ("__init__.py", "message.py")
BUNDLED_PACKAGES = ("actions", "executor")

MAIN_ENTRY = "from rook.executor.__main__ import run\n\nrun()\n"


def archive_name(executor_hash: str) -> str:
    return f"{ARCHIVE_PREFIX}{executor_hash}.pyz"


@dataclass
class ExecutorBuildConfig:
    """Inputs of an executor archive.

    Attributes:
        interpreter: Interpreter written to the archive's shebang line
        package_dir: Directory of the rook package to bundle
    """

    interpreter: str = "/usr/bin/env python3"
    package_dir: Path = field(default_factory=lambda: Path(rook.__file__).parent)

    def source_files(self) -> list[Path]:
        files = [self.package_dir / name for name in BUNDLED_MODULES]
        for package in BUNDLED_PACKAGES:
            files.extend(sorted((self.package_dir / package).glob("*.py")))
        return files

    def compute_hash(self) -> str:
        """SHA256 over the interpreter and every bundled source file.

        Raises:
            ExecutorBuildError: If a source file cannot be read
        """
        h = hashlib.sha256()
        h.update(self.interpreter.encode())
        for source in self.source_files():
            try:
                h.update(str(source.relative_to(self.package_dir)).encode())
                h.update(source.read_bytes())
            except OSError as e:
                raise ExecutorBuildError(f"Cannot read executor source {source}: {e}") from e
        return h.hexdigest()


class ExecutorBuilder:
    """Builds and caches executor archives.

    Example:
        >>> builder = ExecutorBuilder("~/.rook/executors")
        >>> path, executor_hash = builder.build()
    """

    def __init__(self, cache_dir: str | Path = "~/.rook/executors") -> None:
        self.cache_dir = Path(cache_dir).expanduser()
        logger.debug(f"ExecutorBuilder initialized with cache_dir={self.cache_dir}")

    def build(self, config: ExecutorBuildConfig | None = None) -> tuple[Path, str]:
        """Return the archive for config, building it on a cache miss.

        Returns:
            (archive_path, executor_hash)

        Raises:
            ExecutorBuildError: If the archive cannot be built
        """
        config = config or ExecutorBuildConfig()
        executor_hash = config.compute_hash()
        cached = self.cache_dir / archive_name(executor_hash)

        if cached.exists() and cached.stat().st_size > 0:
            logger.debug(f"Reusing cached executor: {cached}")
            return cached, executor_hash

        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self._build_archive(config, cached)
        except OSError as e:
            raise ExecutorBuildError(f"Executor construction failed: {e}", path=str(cached)) from e

        logger.info(f"Built new executor: {cached}")
        return cached, executor_hash

    def _build_archive(self, config: ExecutorBuildConfig, target: Path) -> None:
        tempdir = Path(tempfile.mkdtemp())
        try:
            root = tempdir / "rook_executor"
            package = root / "rook"
            package.mkdir(parents=True)

            for source in config.source_files():
                dest = package / source.relative_to(config.package_dir)
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(source, dest)

            (root / "__main__.py").write_text(MAIN_ENTRY)

            archive = tempdir / "rook_executor.pyz"
            zipapp.create_archive(str(root), str(archive), config.interpreter)
            # Copy then rename so a concurrent reader never sees a partial archive
            partial = target.with_suffix(".partial")
            shutil.copy(archive, partial)
            partial.replace(target)
        finally:
            shutil.rmtree(tempdir, ignore_errors=True)
