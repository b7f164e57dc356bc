"""
Pipeline Protocol - Defines the stage interface and the build state.

Every pipeline stage implements the ``PipelineStage`` protocol. Stages are
composed into an ordered pipeline by ``PipelineOrchestrator``.

The ``BuildState`` dataclass is the value threaded through the pipeline.
Each stage receives its own copy and returns the state it wants the next
stage to see inside its ``StageResult``.

The ``StageResult`` dataclass captures the outcome of a single stage
execution for logging, timing, and error reporting.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from git_info import GitInfo
from schemas.manifests import BuildConfig


@dataclass
class BuildState:
    """The value threaded through the build pipeline.

    Attributes
    ----------
    environment : Path
        Root of this run's working tree (``temp/files/<run-id>``).
    source_root : Path
        Project checkout the run started from; outputs are published to
        ``<source_root>/build``.
    build_config : BuildConfig
        ``target``, ``release``, ``dist`` and ``vfs`` switches.
    config : dict
        Unified build-control config from ``config_loader.build_unified_config``.
    steps : list[str]
        Names of the stages executed so far, in order.
    stats : dict
        ``start`` (epoch ms) and ``phase_timings`` (seconds per stage).
    git : GitInfo | None
        Set by build-info creation.
    build_info : dict | None
        ``{target, stats, git, hostInfo, builtAt}``, set by build-info creation.
    merged_config : dict | None
        UI + release config merge, set by the UI config copy.
    """

    environment: Path
    source_root: Path
    build_config: BuildConfig
    config: Dict[str, Any] = field(default_factory=dict)
    steps: List[str] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)

    # -- Set once by later stages, never cleared --
    git: Optional[GitInfo] = None
    build_info: Optional[Dict[str, Any]] = None
    merged_config: Optional[Dict[str, Any]] = None

    @property
    def build_dir(self) -> Path:
        return self.environment / "build"

    @property
    def client_dir(self) -> Path:
        return self.environment / "build" / "client"

    @property
    def modules_dir(self) -> Path:
        return self.environment / "build" / "client" / "modules"

    @property
    def output_dir(self) -> Path:
        return self.source_root / self.config.get("output_dir", "build")

    def copy(self) -> "BuildState":
        return copy.deepcopy(self)

    def template_context(self) -> Dict[str, Any]:
        """Camel-cased view of the state for html/js templates."""
        return {
            "environment": {"path": str(self.environment)},
            "buildConfig": self.build_config.model_dump(),
            "steps": list(self.steps),
            "stats": self.stats,
            "git": self.git.to_dict() if self.git else None,
            "buildInfo": self.build_info,
            "mergedConfig": self.merged_config,
        }


@dataclass
class StageResult:
    """Outcome returned by each pipeline stage.

    Attributes
    ----------
    success : bool
        Whether the stage completed.
    stage_name : str
        Identifier matching ``PipelineStage.name``.
    state : BuildState | None
        The state handed to the next stage.  ``None`` only for failures.
    duration_seconds : float
        Wall-clock execution time.
    error : str | None
        Human-readable error message if the stage failed.
    skipped : bool
        ``True`` if the stage was intentionally skipped (``should_run`` false).
    skip_reason : str
        Why the stage was skipped.
    metadata : dict
        Arbitrary stage-specific metadata (file counts, versions, ...).
    """

    success: bool
    stage_name: str
    state: Optional[BuildState] = None
    duration_seconds: float = 0.0
    error: Optional[str] = None
    skipped: bool = False
    skip_reason: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class PipelineStage(Protocol):
    """Protocol that every pipeline stage must implement.

    Stages are composable, independently testable units that:
    1. Declare their name and position
    2. Check whether they should run (build switches)
    3. Transform a ``BuildState`` and its working tree
    4. Return a ``StageResult`` carrying the new state

    Example
    -------
    ::

        class MyStage:
            name = "my_stage"
            display_name = "My Custom Stage"
            phase_number = 2.5

            def should_run(self, state: BuildState) -> bool:
                return state.build_config.dist

            async def execute(self, state: BuildState) -> StageResult:
                # do work, update state
                return StageResult(success=True, stage_name=self.name, state=state)
    """

    @property
    def name(self) -> str:
        """Unique stage identifier, e.g. ``install_plugins``."""
        ...

    @property
    def display_name(self) -> str:
        """Human-readable name, e.g. ``Installing Plugins``."""
        ...

    @property
    def phase_number(self) -> float:
        """Numeric position in the fixed stage order."""
        ...

    def should_run(self, state: BuildState) -> bool:
        """Return ``False`` to skip this stage for the current build type."""
        ...

    async def execute(self, state: BuildState) -> StageResult:
        """Execute the stage and return the state for the next stage.

        Any exception aborts the build.
        """
        ...
