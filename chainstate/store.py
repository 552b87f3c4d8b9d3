"""Filesystem persistence for chain stage documents.

A state directory holds one JSON file per completed stage plus
``latest.json``, a copy of the most recently saved document. Documents are
parsed and validated before anything on disk changes, and each file is
replaced through a temp file so a reader never sees half a document.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .chain_logging import log_operation, log_performance, log_stage_saved
from .errors import InvalidStageNameError, InvalidStateError, MalformedStateError, NotFoundError
from .models import LATEST_NAME, NONE_STAGE, STAGE_FILENAME_PATTERN, UNKNOWN_CHAIN, parse_stage_name
from .state import parse_state, validate_state

logger = logging.getLogger("chainstate.store")

STATE_SUFFIX = ".json"
_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def _atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to ``path`` through a temp file and ``os.replace``."""
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _serialize(data: Dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def _completion_key(path: Path) -> Optional[Tuple[int, int, str]]:
    key = parse_stage_name(path.name)
    if key is None:
        return None
    try:
        modified = path.stat().st_mtime_ns
    except OSError:
        return None
    # Branch letters never order stages; 03a and 03b are alternatives, so the
    # one written last wins and the name only breaks exact ties.
    return (key.ordinal, modified, path.name)


class StateStore:
    """Persist and query stage documents under one state directory."""

    def __init__(self, state_dir: Path | str, *, chain_id: Optional[str] = None):
        self.state_dir = Path(state_dir)
        self.chain_id = chain_id

    @classmethod
    def for_chain(cls, state_root: Path | str, chain_id: str) -> "StateStore":
        """Return the store for ``chain_id`` under ``state_root``.

        Each chain gets its own directory, and the store refuses documents
        belonging to another chain.
        """
        if not chain_id or not _SAFE_NAME.match(chain_id):
            raise InvalidStateError(f"chain_id '{chain_id}' cannot be used as a state directory name")
        return cls(Path(state_root) / chain_id, chain_id=chain_id)

    def __repr__(self) -> str:
        return f"StateStore({str(self.state_dir)!r}, chain_id={self.chain_id!r})"

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @property
    def latest_path(self) -> Path:
        return self.state_dir / f"{LATEST_NAME}{STATE_SUFFIX}"

    def stage_path(self, stage_name: str) -> Path:
        """Get the file path for a stage, rejecting unusable names."""
        if not stage_name:
            raise InvalidStageNameError(stage_name, "stage name is empty")
        if stage_name == LATEST_NAME:
            raise InvalidStageNameError(stage_name, f"'{LATEST_NAME}' is reserved for the latest pointer")
        if not _SAFE_NAME.match(stage_name):
            raise InvalidStageNameError(
                stage_name, "use letters, digits, '.', '_' or '-' and start with a letter or digit"
            )
        return self.state_dir / f"{stage_name}{STATE_SUFFIX}"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def init(self) -> Path:
        """Ensure the state directory exists."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized state directory: {self.state_dir}")
        return self.state_dir

    @log_performance("save_state")
    def save(self, stage_name: str, document: Any) -> Dict[str, Any]:
        """Validate ``document`` and persist it for ``stage_name``.

        The document is checked for well-formedness first, then for the
        required fields. Only when both pass are the stage file and the
        latest pointer written. Returns the saved document.

        Raises:
            InvalidStageNameError: ``stage_name`` is not usable as a file name.
            MalformedStateError: ``document`` is not a JSON object.
            InvalidStateError: Required fields are missing or empty, or the
                document belongs to another chain.
        """
        path = self.stage_path(stage_name)
        data = parse_state(document)

        result = validate_state(data)
        if not result:
            raise InvalidStateError(result.reason, stage=stage_name)
        if self.chain_id is not None and data["chain_id"] != self.chain_id:
            raise InvalidStateError(
                f"chain_id '{data['chain_id']}' does not match this state directory's chain '{self.chain_id}'",
                stage=stage_name,
            )

        content = _serialize(data)
        with log_operation("save_state", stage=stage_name, chain_id=data["chain_id"]):
            self._write_stage_and_latest(path, content)

        log_stage_saved(data["chain_id"], stage_name, path)
        return data

    def _write_stage_and_latest(self, path: Path, content: str) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        previous = path.read_text(encoding="utf-8") if path.is_file() else None

        _atomic_write_text(path, content)
        try:
            _atomic_write_text(self.latest_path, content)
        except OSError:
            logger.error(f"Failed to update {self.latest_path}; restoring {path.name}")
            try:
                if previous is None:
                    path.unlink(missing_ok=True)
                else:
                    _atomic_write_text(path, previous)
            except OSError as rollback_error:
                logger.error(f"Could not restore {path}: {rollback_error}")
            raise

    def _read(self, path: Path, name: str) -> Dict[str, Any]:
        if not path.is_file():
            raise NotFoundError(name, str(path))
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedStateError(f"State file {path} is not valid JSON: {e}", stage=name) from e
        if not isinstance(data, dict):
            raise MalformedStateError(f"State file {path} does not hold a JSON object", stage=name)
        return data

    def load(self, stage_name: str) -> Dict[str, Any]:
        """Load the document saved for ``stage_name``.

        Raises:
            NotFoundError: The stage has not been saved.
        """
        return self._read(self.stage_path(stage_name), stage_name)

    def load_latest(self) -> Dict[str, Any]:
        """Load the latest pointer.

        Raises:
            NotFoundError: Nothing has been saved in this state directory.
        """
        return self._read(self.latest_path, LATEST_NAME)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_stage_complete(self, stage_name: str) -> bool:
        """Check whether a document has been saved for the stage."""
        try:
            return self.stage_path(stage_name).is_file()
        except InvalidStageNameError:
            return False

    def get_chain_id(self) -> str:
        """Return the chain id recorded in the latest pointer, or ``"unknown"``."""
        try:
            latest = self.load_latest()
        except (NotFoundError, MalformedStateError):
            return UNKNOWN_CHAIN
        except OSError as e:
            logger.warning(f"Could not read {self.latest_path}: {e}")
            return UNKNOWN_CHAIN
        chain_id = latest.get("chain_id")
        return chain_id if isinstance(chain_id, str) and chain_id else UNKNOWN_CHAIN

    def list_stages(self) -> List[str]:
        """List saved stage names in completion order.

        Only files following the ``NN[ab]-slug.json`` convention count;
        ``latest.json`` and anything else in the directory is ignored.
        """
        if not self.state_dir.is_dir():
            return []
        try:
            entries = list(self.state_dir.iterdir())
        except OSError as e:
            logger.warning(f"Could not list {self.state_dir}: {e}")
            return []

        keyed = []
        for entry in entries:
            if not STAGE_FILENAME_PATTERN.match(entry.name) or not entry.is_file():
                continue
            key = _completion_key(entry)
            if key is not None:
                keyed.append((key, entry.name[: -len(STATE_SUFFIX)]))
        return [name for _, name in sorted(keyed)]

    def last_completed_stage(self) -> str:
        """Return the stage with the highest ordinal, or ``"none"``.

        Reads the directory listing rather than the latest pointer. A
        missing directory means the chain never started.
        """
        stages = self.list_stages()
        return stages[-1] if stages else NONE_STAGE


def list_chains(state_root: Path | str) -> List[str]:
    """List chain ids under ``state_root``, most recently written first."""
    root = Path(state_root)
    if not root.is_dir():
        return []

    chains = []
    for entry in root.iterdir():
        if not entry.is_dir() or not _SAFE_NAME.match(entry.name):
            continue
        latest = entry / f"{LATEST_NAME}{STATE_SUFFIX}"
        marker = latest if latest.is_file() else entry
        try:
            modified = marker.stat().st_mtime_ns
        except OSError:
            continue
        chains.append((modified, entry.name))
    return [name for _, name in sorted(chains, reverse=True)]
