"""Pure operations on chain state documents.

Nothing in this module touches the filesystem. Every function returns a
new value and leaves its inputs unmodified; persistence lives in
:mod:`chainstate.store`.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Set

from .errors import MalformedStateError
from .models import StageDocument, ValidationResult

logger = logging.getLogger("chainstate.state")

CHAIN_ID_LENGTH = 8
REQUIRED_FIELDS = ("chain_id", "timestamp")


def utc_timestamp() -> str:
    """Current UTC time as ISO-8601 with second precision, e.g. ``2025-11-14T10:00:00Z``."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def generate_chain_id() -> str:
    """Return a short hex token identifying a new chain.

    Falls back to hashing the current time when the system random source
    is unavailable, so this never fails. Uniqueness is best-effort.
    """
    try:
        return secrets.token_hex(CHAIN_ID_LENGTH // 2)
    except (NotImplementedError, OSError) as e:
        logger.warning(f"Secure random source unavailable ({e}); deriving chain id from the clock")
        digest = hashlib.sha256(str(time.time_ns()).encode("ascii")).hexdigest()
        return digest[:CHAIN_ID_LENGTH]


def _find_non_string_key(value: Any, path: str, active: Set[int]) -> Optional[str]:
    """Return the location of the first mapping key that is not a string."""
    if not isinstance(value, (Mapping, list, tuple)) or id(value) in active:
        return None
    active.add(id(value))
    try:
        if isinstance(value, Mapping):
            for key, item in value.items():
                if not isinstance(key, str):
                    return f"{path}.{key!r}" if path else repr(key)
                found = _find_non_string_key(item, f"{path}.{key}" if path else key, active)
                if found:
                    return found
        else:
            for index, item in enumerate(value):
                found = _find_non_string_key(item, f"{path}[{index}]", active)
                if found:
                    return found
        return None
    finally:
        active.discard(id(value))


def parse_state(document: Any) -> Dict[str, Any]:
    """Turn a candidate document into a plain JSON object.

    ``document`` may be JSON text, a mapping or a :class:`StageDocument`.
    The result is a fresh deep copy that is guaranteed to serialize.

    Raises:
        MalformedStateError: The input is not JSON, not a JSON object, or
            holds values that cannot be written as JSON, including
            mapping keys that are not strings.
    """
    if isinstance(document, StageDocument):
        document = document.to_dict()

    if isinstance(document, (bytes, bytearray)):
        try:
            document = document.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedStateError(f"Invalid JSON format: state is not UTF-8 text ({e})") from e

    if isinstance(document, str):
        try:
            data = json.loads(document)
        except json.JSONDecodeError as e:
            raise MalformedStateError(
                f"Invalid JSON format: {e.msg} (line {e.lineno}, column {e.colno})"
            ) from e
    elif isinstance(document, Mapping):
        data = document
    else:
        raise MalformedStateError(
            f"Invalid JSON format: expected a JSON object, got {type(document).__name__}"
        )

    if not isinstance(data, Mapping):
        raise MalformedStateError(
            f"Invalid JSON format: expected a JSON object, got {type(data).__name__}"
        )

    # json.dumps would coerce these keys and can collapse 1 and "1" into one entry.
    bad_key = _find_non_string_key(data, "", set())
    if bad_key is not None:
        raise MalformedStateError(f"Invalid JSON format: object key {bad_key} is not a string")

    try:
        return json.loads(json.dumps(data, allow_nan=False))
    except (TypeError, ValueError) as e:
        raise MalformedStateError(f"Invalid JSON format: state cannot be serialized ({e})") from e


def validate_state(document: Any) -> ValidationResult:
    """Check that a document carries a non-empty ``chain_id`` and ``timestamp``.

    Never raises; malformed input yields a failed result whose reason says
    so. Any other fields are accepted as opaque payload.
    """
    if not isinstance(document, Mapping):
        try:
            document = parse_state(document)
        except MalformedStateError as e:
            return ValidationResult(False, str(e))

    empty = []
    mistyped = []
    for name in REQUIRED_FIELDS:
        value = document.get(name)
        if value is None or value == "":
            empty.append(name)
        elif not isinstance(value, str):
            mistyped.append(name)

    if empty:
        return ValidationResult(False, f"missing or empty required field(s): {', '.join(empty)}")
    if mistyped:
        return ValidationResult(False, f"required field(s) must be strings: {', '.join(mistyped)}")
    return ValidationResult(True, "state has chain_id and timestamp")


def merge_states(old: Mapping[str, Any], new: Mapping[str, Any], *, deep: bool = False) -> Dict[str, Any]:
    """Layer ``new`` over ``old``; keys in ``new`` win.

    With ``deep=True`` nested objects present on both sides are merged
    recursively instead of replaced. Lists are always replaced.
    """
    merged = copy.deepcopy(dict(old))
    for key, value in new.items():
        current = merged.get(key)
        if deep and isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_states(current, value, deep=True)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def mark_stage_complete(document: Mapping[str, Any], stage_name: str) -> Dict[str, Any]:
    """Append ``stage_name`` to ``stages_complete`` and refresh ``timestamp``.

    Duplicates are not filtered. The result is not validated here; it must
    still go through :meth:`StateStore.save`.

    Raises:
        MalformedStateError: ``stages_complete`` is present but not a list.
    """
    updated = copy.deepcopy(dict(document))
    existing = updated.get("stages_complete")
    if existing is None:
        completed = []
    elif isinstance(existing, (list, tuple)):
        completed = list(existing)
    else:
        raise MalformedStateError(
            f"stages_complete must be a list, got {type(existing).__name__}", stage=stage_name
        )
    completed.append(stage_name)
    updated["stages_complete"] = completed
    updated["timestamp"] = utc_timestamp()
    return updated


def create_initial_state(chain_id: str, *, stage: str = "initialization") -> Dict[str, Any]:
    """Build the first document of a chain."""
    timestamp = utc_timestamp()
    return {
        "chain_id": chain_id,
        "start_time": timestamp,
        "timestamp": timestamp,
        "stage": stage,
        "stages_complete": [],
        "current_stage": None,
    }
