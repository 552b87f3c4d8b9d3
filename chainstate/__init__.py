"""Checkpointed stage state for AI-driven legacy code analysis chains."""

from .errors import (
    ChainStateError,
    InvalidStageNameError,
    InvalidStateError,
    MalformedStateError,
    NotFoundError,
)
from .models import (
    NONE_STAGE,
    PIPELINE_STAGES,
    PipelineStage,
    ResumeInfo,
    StageDocument,
    ValidationResult,
    next_stages,
    parse_stage_name,
)
from .state import (
    create_initial_state,
    generate_chain_id,
    mark_stage_complete,
    merge_states,
    parse_state,
    validate_state,
)
from .store import StateStore, list_chains
from .workflow import ChainManager

__version__ = "0.1.0"

__all__ = [
    "ChainManager",
    "ChainStateError",
    "InvalidStageNameError",
    "InvalidStateError",
    "MalformedStateError",
    "NONE_STAGE",
    "NotFoundError",
    "PIPELINE_STAGES",
    "PipelineStage",
    "ResumeInfo",
    "StageDocument",
    "StateStore",
    "ValidationResult",
    "create_initial_state",
    "generate_chain_id",
    "list_chains",
    "mark_stage_complete",
    "merge_states",
    "next_stages",
    "parse_stage_name",
    "parse_state",
    "validate_state",
]
