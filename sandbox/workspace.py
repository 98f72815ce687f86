"""
Per-executor sandbox directory and child environment construction.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Iterable, Mapping
from pathlib import Path

from sandbox.errors import SandboxSetupError, SecurityViolation
from sandbox.policy import RULE_UNSAFE_PATH

logger = logging.getLogger(__name__)

SUBDIRECTORIES = ("work", "tmp", "output")
DIRECTORY_PREFIX = "sandbox-exec-"

_ENV_KEY_CHARS = set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789_")


class SandboxDirectory:
    """A uniquely named, owner-only directory tree with work/, tmp/ and output/."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._removed = False

    @classmethod
    def create(cls, parent: str | Path | None = None) -> "SandboxDirectory":
        try:
            root = Path(tempfile.mkdtemp(prefix=DIRECTORY_PREFIX, dir=parent))
            os.chmod(root, 0o700)
            for name in SUBDIRECTORIES:
                (root / name).mkdir(mode=0o700, exist_ok=True)
        except OSError as exc:
            raise SandboxSetupError(
                f"Failed to create sandbox directory: {exc}",
                details={"parent": str(parent) if parent else tempfile.gettempdir()},
            ) from exc
        logger.debug("Created sandbox directory %s", root)
        return cls(root)

    @property
    def work_dir(self) -> Path:
        return self.root / "work"

    @property
    def tmp_dir(self) -> Path:
        return self.root / "tmp"

    @property
    def output_dir(self) -> Path:
        return self.root / "output"

    @property
    def removed(self) -> bool:
        return self._removed

    def resolve_cwd(self, relative: str | None) -> Path:
        """Resolve a working directory override, which must stay inside work/."""
        work = self.work_dir.resolve()
        if not relative:
            return work
        candidate = (work / relative).resolve()
        if candidate != work and work not in candidate.parents:
            raise SecurityViolation(
                f"Working directory escapes sandbox: {relative}",
                rule=RULE_UNSAFE_PATH,
                details={"argument": relative},
            )
        candidate.mkdir(parents=True, exist_ok=True)
        return candidate

    def remove(self) -> None:
        if self._removed:
            return
        self._removed = True
        try:
            shutil.rmtree(self.root)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Failed to cleanup sandbox directory %s: %s", self.root, exc)


def build_environment(
    directory: SandboxDirectory,
    allowed_vars: Iterable[str],
    overrides: Mapping[str, str] | None = None,
    source: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Reduce the ambient environment to the allow-list and pin sandbox paths."""
    source = os.environ if source is None else source
    env = {key: source[key] for key in allowed_vars if source.get(key)}

    for key, value in (overrides or {}).items():
        if key and set(key) <= _ENV_KEY_CHARS:
            env[key] = str(value)
        else:
            logger.warning("Dropping environment override with invalid name %r", key)

    env["SANDBOX"] = "true"
    env["SANDBOX_DIR"] = str(directory.root)
    env["TMPDIR"] = str(directory.tmp_dir)
    env["HOME"] = str(directory.work_dir)
    return env
