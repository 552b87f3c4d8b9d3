"""Exception types raised by the chain state core.

Every failure names the check that failed so an orchestrator can tell
"nothing saved yet" apart from "corrupt input". Filesystem errors are not
wrapped; they propagate as ``OSError``.
"""

from __future__ import annotations

from typing import Optional


class ChainStateError(Exception):
    """Base class for chain state failures."""


class MalformedStateError(ChainStateError, ValueError):
    """Candidate state is not well-formed structured data."""

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.stage = stage


class InvalidStateError(ChainStateError, ValueError):
    """State is well-formed but fails schema validation."""

    def __init__(self, reason: str, *, stage: Optional[str] = None):
        super().__init__(f"Invalid state: {reason}")
        self.reason = reason
        self.stage = stage


class InvalidStageNameError(ChainStateError, ValueError):
    """Stage name cannot be used as a state file name."""

    def __init__(self, stage: str, reason: str):
        super().__init__(f"Invalid stage name '{stage}': {reason}")
        self.stage = stage
        self.reason = reason


class NotFoundError(ChainStateError, LookupError):
    """Requested stage (or the latest pointer) has never been saved."""

    def __init__(self, stage: str, path: Optional[str] = None):
        location = f" at {path}" if path else ""
        super().__init__(f"No saved state for '{stage}'{location}")
        self.stage = stage
        self.path = path
