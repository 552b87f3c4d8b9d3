"""Data models for chain state management.

This module contains the core data structures used throughout the chain
state system: stage documents, validation results, the fixed analysis
pipeline and resume information.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional

NONE_STAGE = "none"
UNKNOWN_CHAIN = "unknown"
LATEST_NAME = "latest"

# Two-digit ordinal, optional branch letter, then the stage slug.
STAGE_NAME_PATTERN = re.compile(r"^(?P<ordinal>\d{2})(?P<branch>[ab]?)-(?P<slug>[a-z-]+)$")
STAGE_FILENAME_PATTERN = re.compile(r"^(?P<ordinal>\d{2})(?P<branch>[ab]?)-(?P<slug>[a-z-]+)\.json$")


@dataclass(slots=True)
class StageDocument:
    """Typed view over a persisted stage snapshot.

    ``chain_id`` and ``timestamp`` are the only required fields; anything
    else a stage produces is carried in ``payload`` untouched.
    """

    CORE_FIELDS: ClassVar[tuple] = ("chain_id", "timestamp", "stage", "stages_complete")

    chain_id: str
    timestamp: str
    stage: Optional[str] = None
    stages_complete: List[str] = field(default_factory=list)
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the flat JSON object stored on disk."""
        data: Dict[str, Any] = {
            "chain_id": self.chain_id,
            "timestamp": self.timestamp,
        }
        if self.stage is not None:
            data["stage"] = self.stage
        data["stages_complete"] = list(self.stages_complete)
        for key, value in self.payload.items():
            if key not in data:
                data[key] = copy.deepcopy(value)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageDocument":
        """Create from a flat JSON object."""
        completed = data.get("stages_complete")
        return cls(
            chain_id=data.get("chain_id") or "",
            timestamp=data.get("timestamp") or "",
            stage=data.get("stage"),
            stages_complete=list(completed) if isinstance(completed, (list, tuple)) else [],
            payload={
                key: copy.deepcopy(value)
                for key, value in data.items()
                if key not in cls.CORE_FIELDS
            },
        )


@dataclass(slots=True)
class ValidationResult:
    """Outcome of validating a candidate state document."""

    valid: bool
    reason: str

    def __bool__(self) -> bool:
        return self.valid

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"valid": self.valid, "reason": self.reason}


@dataclass(slots=True, frozen=True)
class StageKey:
    """Parsed components of a stage name such as ``03a-full-app``."""

    ordinal: int
    branch: Optional[str]
    slug: str


def parse_stage_name(name: str) -> Optional[StageKey]:
    """Split a stage name into ordinal, branch letter and slug.

    Accepts either the bare stage name or its ``.json`` file name. Returns
    ``None`` when the name does not follow the stage naming convention.
    """
    match = STAGE_FILENAME_PATTERN.match(name) or STAGE_NAME_PATTERN.match(name)
    if not match:
        return None
    return StageKey(
        ordinal=int(match.group("ordinal")),
        branch=match.group("branch") or None,
        slug=match.group("slug"),
    )


@dataclass(slots=True, frozen=True)
class PipelineStage:
    """A single step of the legacy-code analysis pipeline."""

    ordinal: int
    name: str
    title: str
    description: str
    branch: Optional[str] = None  # analysis scope selecting this variant, 'A' or 'B'
    expected_output: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "ordinal": self.ordinal,
            "name": self.name,
            "title": self.title,
            "description": self.description,
            "branch": self.branch,
            "expected_output": self.expected_output,
        }


# Pipeline stage definitions, in execution order. 03a and 03b are
# alternatives chosen by the analysis scope; a chain runs exactly one.
PIPELINE_STAGES = [
    PipelineStage(
        ordinal=0,
        name="00-bootstrap",
        title="Bootstrap",
        description="Enumerate the project, detect its technology stack and create the analysis workspace",
        expected_output="File manifest and analysis workspace under .analysis/",
    ),
    PipelineStage(
        ordinal=1,
        name="01-setup-and-scope",
        title="Setup and Scope",
        description="Confirm the project under analysis and choose scope A (full application) or B (cross-cutting concern)",
        expected_output="Analysis scope and project context recorded in state",
    ),
    PipelineStage(
        ordinal=2,
        name="02-file-analysis",
        title="File Analysis",
        description="Read prioritized files from the manifest and record findings per file",
        expected_output="Per-file findings recorded in state",
    ),
    PipelineStage(
        ordinal=3,
        name="03a-full-app",
        title="Full Application Analysis",
        description="Assess architecture, dependencies and modernization paths for the whole application",
        branch="A",
        expected_output="Architecture and modernization findings",
    ),
    PipelineStage(
        ordinal=3,
        name="03b-cross-cutting",
        title="Cross-Cutting Concern Analysis",
        description="Assess migrating one concern from its current implementation to a target implementation",
        branch="B",
        expected_output="Concern migration findings",
    ),
    PipelineStage(
        ordinal=4,
        name="04-report-generation",
        title="Report Generation",
        description="Write the analysis report, recommended specification, dependency audit and decision matrix",
        expected_output="analysis-report.md and companion artifacts",
    ),
]

BOOTSTRAP_STAGE = PIPELINE_STAGES[0].name


def get_stage(name: str) -> Optional[PipelineStage]:
    """Return the pipeline stage with the given name, if it is defined."""
    for stage in PIPELINE_STAGES:
        if stage.name == name:
            return stage
    return None


def stages_at(ordinal: int) -> List[PipelineStage]:
    return [stage for stage in PIPELINE_STAGES if stage.ordinal == ordinal]


def next_stages(last_stage: Optional[str]) -> List[PipelineStage]:
    """Return the stages that may run after ``last_stage``.

    Branch variants share an ordinal, so more than one stage is returned
    when the next step branches. ``None`` or ``"none"`` means nothing has
    run yet. An empty list means the pipeline is finished.
    """
    if last_stage is None or last_stage == NONE_STAGE:
        return stages_at(PIPELINE_STAGES[0].ordinal)

    key = parse_stage_name(last_stage)
    if key is None:
        raise ValueError(f"'{last_stage}' is not a pipeline stage name")

    later = [stage.ordinal for stage in PIPELINE_STAGES if stage.ordinal > key.ordinal]
    if not later:
        return []
    return stages_at(min(later))


@dataclass(slots=True)
class ResumeInfo:
    """Where an interrupted chain stands and what may run next."""

    chain_id: Optional[str]
    last_stage: str
    stages_complete: List[str] = field(default_factory=list)
    next_stages: List[str] = field(default_factory=list)
    finished: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "chain_id": self.chain_id,
            "last_stage": self.last_stage,
            "stages_complete": list(self.stages_complete),
            "next_stages": list(self.next_stages),
            "finished": self.finished,
        }

    @property
    def started(self) -> bool:
        return self.last_stage != NONE_STAGE
