"""MCP server exposing chain state tools for AI-driven analysis workflows."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from mcp.server.fastmcp import FastMCP

from chainstate import config
from chainstate.chain_logging import setup_logging_from_env
from chainstate.errors import (
    ChainStateError,
    InvalidStageNameError,
    InvalidStateError,
    MalformedStateError,
    NotFoundError,
)
from chainstate.models import PIPELINE_STAGES
from chainstate.state import (
    create_initial_state as _create_initial_state,
    generate_chain_id as _generate_chain_id,
    mark_stage_complete as _mark_stage_complete,
    merge_states as _merge_states,
    parse_state,
    validate_state as _validate_state,
)
from chainstate.store import list_chains as _list_chains
from chainstate.workflow import ChainManager

mcp = FastMCP("chain-state")
logger = logging.getLogger("chainstate.mcp")

StateInput = Union[Dict[str, Any], str]

_ERROR_GUIDANCE = (
    (MalformedStateError, "Pass the state as a JSON object (or JSON text encoding one).", "validate_state"),
    (InvalidStateError, "Include non-empty 'chain_id' and 'timestamp' fields belonging to this chain.", "validate_state"),
    (InvalidStageNameError, "Use a stage name from get_pipeline_guide, e.g. '01-setup-and-scope'.", "get_pipeline_guide"),
    (NotFoundError, "Nothing has been saved for this yet. Start the chain or run the stage first.", "resume_chain"),
)


def _manager(
    root: Optional[str],
    chain_id: Optional[str] = None,
    *,
    resume_latest: bool = True,
) -> ChainManager:
    return ChainManager(config.resolve_root(root), chain_id, resume_latest=resume_latest)


def _error_payload(error: ChainStateError, operation: str, **context: Any) -> Dict[str, Any]:
    logger.warning(f"{operation} rejected: {error}", extra={"extra_fields": {"operation": operation, **context}})
    suggestion, next_step = "Check the tool arguments and try again.", "get_pipeline_guide"
    for error_type, type_suggestion, type_next_step in _ERROR_GUIDANCE:
        if isinstance(error, error_type):
            suggestion, next_step = type_suggestion, type_next_step
            break
    return {
        "error": str(error),
        "error_type": type(error).__name__,
        "suggestion": suggestion,
        "next_suggested_step": next_step,
    }


def _next_step_tip(next_stages: List[str]) -> str:
    if not next_stages:
        return "All pipeline stages are complete."
    if len(next_stages) > 1:
        return f"Next: run one of {', '.join(next_stages)} depending on the analysis scope, then call record_stage"
    return f"Next: run stage '{next_stages[0]}', then call record_stage"


@mcp.tool()
def generate_chain_id() -> Dict[str, str]:
    """Generate a unique 8-character identifier for a new analysis chain."""

    return {"chain_id": _generate_chain_id()}


@mcp.tool()
def init_state_dir(chain_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Create the state directory for a chain. Safe to call more than once."""

    try:
        manager = _manager(root, chain_id)
    except ChainStateError as e:
        return _error_payload(e, "init_state_dir", chain_id=chain_id)
    state_dir = manager.store.init()
    return {"chain_id": chain_id, "state_dir": str(state_dir)}


@mcp.tool()
def start_chain(
    project_name: Optional[str] = None,
    project_path: Optional[str] = None,
    analysis_dir: Optional[str] = None,
    manifest_path: Optional[str] = None,
    chain_id: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 0: Start a new analysis chain and save its bootstrap state.
    Generates a chain id when none is given. Call this once per analysis run,
    before any stage is recorded."""

    manager = _manager(root, resume_latest=False)
    try:
        state = manager.start_chain(
            chain_id,
            project_name=project_name,
            project_path=project_path,
            analysis_dir=analysis_dir,
            manifest_path=manifest_path,
        )
    except ChainStateError as e:
        return _error_payload(e, "start_chain", chain_id=chain_id)

    info = manager.resume_info()
    return {
        "chain_id": manager.chain_id,
        "state_dir": str(manager.store.state_dir),
        "state": state,
        "next_stages": info.next_stages,
        "next_suggested_step": "record_stage",
        "workflow_tip": _next_step_tip(info.next_stages),
    }


@mcp.tool()
def record_stage(
    stage: str,
    fields: Optional[Dict[str, Any]] = None,
    deep_merge: bool = False,
    chain_id: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Record a finished stage: carry the latest state forward, layer in this
    stage's findings, mark the stage complete and save.
    The stage must be one of the stages listed by get_pipeline_guide.
    Prerequisites: the chain must have been started via start_chain."""

    try:
        manager = _manager(root, chain_id)
        state = manager.record_stage(stage, fields or {}, deep=deep_merge)
    except ChainStateError as e:
        return _error_payload(e, "record_stage", stage=stage, chain_id=chain_id)

    info = manager.resume_info()
    return {
        "chain_id": manager.chain_id,
        "stage": stage,
        "state": state,
        "next_stages": info.next_stages,
        "finished": info.finished,
        "next_suggested_step": "record_stage" if info.next_stages else "resume_chain",
        "workflow_tip": _next_step_tip(info.next_stages),
    }


@mcp.tool()
def save_state(
    stage: str,
    state: StateInput,
    chain_id: Optional[str] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Validate and save a complete state document for a stage.
    The document must carry non-empty 'chain_id' and 'timestamp' fields.
    Also updates the chain's latest state."""

    try:
        manager = _manager(root, chain_id, resume_latest=False)
        saved = manager.save_state(stage, state)
    except ChainStateError as e:
        return _error_payload(e, "save_state", stage=stage, chain_id=chain_id)

    return {
        "saved": True,
        "chain_id": manager.chain_id,
        "stage": stage,
        "path": str(manager.store.stage_path(stage)),
        "state": saved,
    }


@mcp.tool()
def load_state(stage: str, chain_id: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Load the saved state for a stage of the chain."""

    try:
        state = _manager(root, chain_id).store.load(stage)
    except ChainStateError as e:
        return _error_payload(e, "load_state", stage=stage, chain_id=chain_id)
    return {"stage": stage, "state": state}


@mcp.tool()
def load_latest_state(chain_id: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Load the most recently saved state of the chain."""

    try:
        state = _manager(root, chain_id).store.load_latest()
    except ChainStateError as e:
        return _error_payload(e, "load_latest_state", chain_id=chain_id)
    return {"state": state}


@mcp.tool()
def last_completed_stage(chain_id: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Return the last completed stage of the chain, or 'none' when nothing has run."""

    try:
        manager = _manager(root, chain_id)
    except ChainStateError as e:
        return _error_payload(e, "last_completed_stage", chain_id=chain_id)
    return {"chain_id": manager.chain_id, "last_stage": manager.last_completed_stage()}


@mcp.tool()
def is_stage_complete(stage: str, chain_id: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Check whether a stage of the chain has been saved."""

    try:
        manager = _manager(root, chain_id)
    except ChainStateError as e:
        return _error_payload(e, "is_stage_complete", stage=stage, chain_id=chain_id)
    return {"stage": stage, "complete": manager.is_stage_complete(stage)}


@mcp.tool()
def get_chain_id(root: Optional[str] = None) -> Dict[str, str]:
    """Return the chain id recorded in the most recent chain's latest state, or 'unknown'."""

    return {"chain_id": _manager(root).get_chain_id()}


@mcp.tool()
def list_chains(root: Optional[str] = None) -> Dict[str, Any]:
    """Enumerate chains in the workspace, most recently written first."""

    state_root = config.state_root(config.resolve_root(root))
    return {"state_root": str(state_root), "chains": _list_chains(state_root)}


@mcp.tool()
def resume_chain(chain_id: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Find where an interrupted chain stopped and which stage should run next.
    Defaults to the most recently written chain."""

    try:
        info = _manager(root, chain_id).resume_info()
    except ChainStateError as e:
        return _error_payload(e, "resume_chain", chain_id=chain_id)

    payload = info.to_dict()
    if not info.started:
        payload["next_suggested_step"] = "start_chain"
        payload["workflow_tip"] = "No saved state found. Start a new chain with start_chain"
    elif info.finished:
        payload["next_suggested_step"] = None
        payload["workflow_tip"] = _next_step_tip([])
    else:
        payload["next_suggested_step"] = "record_stage"
        payload["workflow_tip"] = _next_step_tip(info.next_stages)
    return payload


@mcp.tool()
def create_initial_state(chain_id: str) -> Dict[str, Any]:
    """Build (without saving) the initial state document for a chain."""

    return {"state": _create_initial_state(chain_id)}


@mcp.tool()
def validate_state(state: StateInput) -> Dict[str, Any]:
    """Check that a state document has non-empty 'chain_id' and 'timestamp' fields."""

    return _validate_state(state).to_dict()


@mcp.tool()
def merge_states(old_state: StateInput, new_fields: StateInput, deep: bool = False) -> Dict[str, Any]:
    """Merge new fields over an existing state; new values win on conflict.
    With deep=True nested objects are merged recursively."""

    try:
        merged = _merge_states(parse_state(old_state), parse_state(new_fields), deep=deep)
    except ChainStateError as e:
        return _error_payload(e, "merge_states")
    return {"state": merged}


@mcp.tool()
def mark_stage_complete(state: StateInput, stage: str) -> Dict[str, Any]:
    """Append a stage to 'stages_complete' and refresh the timestamp (not saved)."""

    try:
        updated = _mark_stage_complete(parse_state(state), stage)
    except ChainStateError as e:
        return _error_payload(e, "mark_stage_complete", stage=stage)
    return {"state": updated}


@mcp.tool()
def get_pipeline_guide() -> Dict[str, Any]:
    """Get the ordered stages of the analysis pipeline and how to drive them."""
    return {
        "workflow_overview": "Legacy code analysis pipeline, checkpointed after every stage",
        "stages": [stage.to_dict() for stage in PIPELINE_STAGES],
        "tips": [
            "Call start_chain once; it saves 00-bootstrap and returns the chain id",
            "After each stage, call record_stage with that stage's findings",
            "Run exactly one of 03a-full-app (scope A) or 03b-cross-cutting (scope B)",
            "After an interruption, call resume_chain to find the next stage",
        ],
    }


@mcp.resource("chain-state://chains")
def resource_chains() -> str:
    """Resource view listing chains and how far each has progressed."""

    try:
        root = config.resolve_root(None)
    except ValueError as e:
        return f"No project root detected: {e}"

    chains = _list_chains(config.state_root(root))
    if not chains:
        return "No analysis chains have been started yet."

    lines = ["Analysis Chains"]
    for chain_id in chains:
        info = ChainManager(root, chain_id).resume_info()
        lines.append("")
        lines.append(f"- {chain_id}: last stage {info.last_stage}")
        if not info.started:
            lines.append("  Not started")
        elif info.next_stages:
            lines.append(f"  Next: {', '.join(info.next_stages)}")
        else:
            lines.append("  Finished")
    return "\n".join(lines)


if __name__ == "__main__":
    setup_logging_from_env()
    mcp.run(transport="stdio")
