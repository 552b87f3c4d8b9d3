"""Chain orchestration on top of the state store.

This module ties the pure state operations and the store together into
the steps an orchestrator performs: start a chain, record a finished
stage, and work out where to resume after an interruption.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from . import config
from .chain_logging import log_chain_resumed, log_chain_started, log_error_with_context, log_performance
from .errors import InvalidStageNameError, InvalidStateError, MalformedStateError, NotFoundError
from .models import (
    BOOTSTRAP_STAGE,
    LATEST_NAME,
    NONE_STAGE,
    PIPELINE_STAGES,
    UNKNOWN_CHAIN,
    ResumeInfo,
    StageDocument,
    get_stage,
    next_stages,
)
from .state import create_initial_state, generate_chain_id, mark_stage_complete, merge_states, parse_state, validate_state
from .store import StateStore, list_chains

logger = logging.getLogger("chainstate.workflow")


class ChainManager:
    """Manage the checkpointed state of one analysis chain.

    When ``chain_id`` is omitted and ``resume_latest`` is set, the most
    recently written chain under the state root is picked up, which is what
    resuming needs.
    """

    def __init__(self, root: Path | str, chain_id: Optional[str] = None, *, resume_latest: bool = True):
        self.root = Path(root).resolve()
        self.state_root = config.state_root(self.root)
        if chain_id is None and resume_latest:
            chains = list_chains(self.state_root)
            chain_id = chains[0] if chains else None
        self.chain_id = chain_id

    @property
    def chain_id(self) -> Optional[str]:
        return self._chain_id

    @chain_id.setter
    def chain_id(self, value: Optional[str]) -> None:
        self._chain_id = value
        self._store = StateStore.for_chain(self.state_root, value) if value else None

    @property
    def has_chain(self) -> bool:
        return self._store is not None

    @property
    def store(self) -> StateStore:
        """The store of the current chain."""
        if self._store is None:
            raise NotFoundError(LATEST_NAME, str(self.state_root))
        return self._store

    # ------------------------------------------------------------------
    # Chain lifecycle
    # ------------------------------------------------------------------

    @log_performance("start_chain")
    def start_chain(self, chain_id: Optional[str] = None, **project_fields: Any) -> Dict[str, Any]:
        """Create a new chain and save its bootstrap document."""
        self.chain_id = chain_id or generate_chain_id()
        store = self.store
        store.init()

        if store.is_stage_complete(BOOTSTRAP_STAGE):
            raise InvalidStateError(
                f"chain '{self.chain_id}' has already been started in {store.state_dir}",
                stage=BOOTSTRAP_STAGE,
            )

        document = create_initial_state(self.chain_id, stage=BOOTSTRAP_STAGE)
        document = merge_states(document, {k: v for k, v in project_fields.items() if v is not None})
        document["chain_id"] = self.chain_id
        document = mark_stage_complete(document, BOOTSTRAP_STAGE)
        saved = store.save(BOOTSTRAP_STAGE, document)

        log_chain_started(self.chain_id, store.state_dir)
        logger.info(f"Started chain {self.chain_id} in {store.state_dir}")
        return saved

    @log_performance("record_stage")
    def record_stage(
        self,
        stage_name: str,
        fields: Optional[Mapping[str, Any]] = None,
        *,
        deep: bool = False,
    ) -> Dict[str, Any]:
        """Carry the latest state forward into a new document for ``stage_name``.

        Loads the latest pointer, layers ``fields`` over it, stamps the
        stage, marks it complete and saves the result.

        Raises:
            InvalidStageNameError: ``stage_name`` is not a pipeline stage.
            NotFoundError: The chain has not been started.
            MalformedStateError, InvalidStateError: From :meth:`StateStore.save`.
        """
        if get_stage(stage_name) is None:
            names = ", ".join(stage.name for stage in PIPELINE_STAGES)
            raise InvalidStageNameError(stage_name, f"not a pipeline stage; expected one of {names}")

        store = self.store
        try:
            latest = store.load_latest()
            merged = merge_states(latest, fields or {}, deep=deep)
            merged["stage"] = stage_name
            completed = mark_stage_complete(merged, stage_name)
            return store.save(stage_name, completed)
        except Exception as e:
            log_error_with_context(e, {
                "operation": "record_stage",
                "stage": stage_name,
                "chain_id": self.chain_id,
            })
            raise

    def save_state(self, stage_name: str, document: Any) -> Dict[str, Any]:
        """Save a caller-built document, binding to its chain if none is set."""
        if not self.has_chain:
            data = parse_state(document)
            result = validate_state(data)
            if not result:
                raise InvalidStateError(result.reason, stage=stage_name)
            self.chain_id = data["chain_id"]
            document = data
        return self.store.save(stage_name, document)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def last_completed_stage(self) -> str:
        if not self.has_chain:
            return NONE_STAGE
        return self.store.last_completed_stage()

    def is_stage_complete(self, stage_name: str) -> bool:
        if not self.has_chain:
            return False
        return self.store.is_stage_complete(stage_name)

    def get_chain_id(self) -> str:
        if not self.has_chain:
            return UNKNOWN_CHAIN
        return self.store.get_chain_id()

    def resume_info(self) -> ResumeInfo:
        """Work out where this chain stopped and which stage comes next."""
        last_stage = self.last_completed_stage()

        completed = []
        if last_stage != NONE_STAGE:
            try:
                completed = StageDocument.from_dict(self.store.load_latest()).stages_complete
            except NotFoundError:
                logger.warning(f"Chain {self.chain_id} has stage files but no latest pointer")
            except MalformedStateError as e:
                logger.warning(f"Chain {self.chain_id} has an unreadable latest pointer: {e}")

        upcoming = [stage.name for stage in next_stages(last_stage)]
        info = ResumeInfo(
            chain_id=self.chain_id,
            last_stage=last_stage,
            stages_complete=completed,
            next_stages=upcoming,
            finished=last_stage != NONE_STAGE and not upcoming,
        )
        log_chain_resumed(self.chain_id, last_stage, next_stages=upcoming)
        return info
