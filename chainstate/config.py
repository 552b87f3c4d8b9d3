"""Project root and state directory resolution.

Settings come from environment variables, read at call time:

- ``CHAINSTATE_PROJECT_ROOT``: project whose ``.analysis`` tree holds state.
- ``CHAINSTATE_STATE_DIR``: state root, relative to the project root unless
  absolute (default ``.analysis/.state``).
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import List, Optional

PROJECT_ROOT_ENV = "CHAINSTATE_PROJECT_ROOT"
STATE_DIR_ENV = "CHAINSTATE_STATE_DIR"
DEFAULT_STATE_DIR = Path(".analysis") / ".state"
PROJECT_MARKER_DIRECTORIES = (".analysis",)

logger = logging.getLogger("chainstate.config")


def _candidate_bases(start: Optional[Path] = None) -> List[Path]:
    cwd = (start or Path.cwd()).resolve()
    return [cwd, *cwd.parents]


def locate_marked_root(start: Optional[Path] = None) -> Optional[Path]:
    """Return the nearest ancestor holding an ``.analysis`` directory."""
    for base in _candidate_bases(start):
        for marker in PROJECT_MARKER_DIRECTORIES:
            if (base / marker).is_dir():
                return base
    return None


def git_toplevel(start: Optional[Path] = None) -> Optional[Path]:
    """Return the git work tree root containing ``start``, if there is one."""
    try:
        completed = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=str(start or Path.cwd()),
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        # git is not installed
        return None
    if completed.returncode != 0:
        return None
    output = completed.stdout.strip()
    return Path(output).resolve() if output else None


def resolve_root(root: Optional[str | Path] = None) -> Path:
    """Determine the project root that owns the chain state.

    Order: explicit ``root``, ``CHAINSTATE_PROJECT_ROOT``, the git top-level,
    the nearest ancestor with an ``.analysis`` directory, the current
    directory.
    """
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolved

    env_root = os.getenv(PROJECT_ROOT_ENV)
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable {PROJECT_ROOT_ENV} points to '{env_root}', which does not exist."
            )
        return env_path

    detected = git_toplevel() or locate_marked_root()
    if detected:
        return detected

    logger.debug("No git work tree or .analysis directory found; using the current directory")
    return Path.cwd().resolve()


def state_root(project_root: str | Path) -> Path:
    """Directory under which each chain gets its own state directory."""
    configured = os.getenv(STATE_DIR_ENV)
    state_dir = Path(configured).expanduser() if configured else DEFAULT_STATE_DIR
    if state_dir.is_absolute():
        return state_dir
    return Path(project_root) / state_dir
