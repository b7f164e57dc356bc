"""
Pipeline Orchestrator - Composes and runs the build stages.

Runs the fixed, ordered stage list over a ``BuildState``:

- Conditional execution (``should_run`` checks on the build switches)
- A deep-copied snapshot of the state before every stage
- Fail-fast: the first failing stage aborts the build, no retry, no rollback
- Per-stage timing and a run summary

``run_build`` is the entry point used by the CLI: it builds the initial
state from the layered build-control config, copies the project sources
into a fresh working directory and runs the default stages.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from config_loader import (
    build_config_from,
    build_unified_config,
    find_project_root,
    validate_config,
)
from exceptions import BuildError, ConfigError
from utils import fs

from .protocol import BuildState, PipelineStage, StageResult

logger = logging.getLogger(__name__)

# Copied from the project root into each run's working directory
INITIAL_FILESYSTEM = (
    "src/client",
    "src/plugins",
    "src/test",
    "package.json",
    "release-notes",
    "config",
)


class PipelineOrchestrator:
    """Execute build stages in ``phase_number`` order.

    Parameters
    ----------
    stages : list[PipelineStage]
        Stages to run.  Automatically sorted by ``phase_number``.

    Example
    -------
    ::

        pipeline = PipelineOrchestrator(build_default_stages(config))
        final_state = await pipeline.run(initial_state)
    """

    def __init__(self, stages: List[PipelineStage]):
        self.stages = sorted(stages, key=lambda s: s.phase_number)
        self.results: List[StageResult] = []
        self.snapshots: List[Tuple[str, BuildState]] = []
        self._validate_names()

    def _validate_names(self) -> None:
        """Verify stage names are unique.

        Raises
        ------
        ValueError
            If two stages share a name.
        """
        seen = set()
        for stage in self.stages:
            if stage.name in seen:
                raise ValueError(f"Duplicate stage name in pipeline: '{stage.name}'")
            seen.add(stage.name)

    async def run(self, state: BuildState) -> BuildState:
        """Execute the full pipeline and return the final state.

        Every stage receives its own deep copy of the current state.  Any
        exception raised by a stage propagates unchanged.
        """
        self.results = []
        self.snapshots = []
        pipeline_start = time.time()

        logger.info(
            "Pipeline starting with %d stages for build '%s'",
            len(self.stages),
            state.build_config.target,
        )

        for stage in self.stages:
            if not stage.should_run(state):
                self.results.append(
                    StageResult(
                        success=True,
                        stage_name=stage.name,
                        state=state,
                        skipped=True,
                        skip_reason="Not required for this build (should_run=False)",
                    )
                )
                logger.info("Skipping %s", stage.display_name)
                continue

            self.snapshots.append((stage.name, state.copy()))
            logger.info("%s...", stage.display_name)

            result = await stage.execute(state.copy())
            self.results.append(result)

            if not result.success or result.state is None:
                raise BuildError(
                    f"Stage {stage.display_name} failed: {result.error or 'no state returned'}"
                )

            state = result.state
            logger.info("Completed %s in %.1fs", stage.display_name, result.duration_seconds)

        state.stats.setdefault("phase_timings", {})["_total"] = time.time() - pipeline_start
        logger.info(
            "Pipeline completed in %.1fs: %d stages run, %d skipped",
            state.stats["phase_timings"]["_total"],
            len([r for r in self.results if not r.skipped]),
            len([r for r in self.results if r.skipped]),
        )
        return state


# ============================================================================
# Initial state / run lifecycle
# ============================================================================


def new_run_id() -> str:
    return f"{datetime.now().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:8]}"


async def create_initial_state(
    build_type: str,
    project_root: Optional[Union[str, Path]] = None,
    config: Optional[Dict[str, Any]] = None,
) -> BuildState:
    """Create the first ``BuildState`` and its working directory.

    Raises
    ------
    UsageError
        If the build type is missing or unknown.
    ConfigError
        If the merged build-control config is invalid.
    """
    project_root = Path(project_root) if project_root else find_project_root()
    if config is None:
        config = build_unified_config(build_type, project_root)

    issues = validate_config(config)
    for issue in issues:
        logger.warning("Config: %s", issue)
    errors = [issue for issue in issues if issue.startswith("ERROR")]
    if errors:
        raise ConfigError("; ".join(errors))

    build_config = build_config_from(config)

    environment = project_root / config.get("work_dir", "temp/files") / new_run_id()
    await fs.ensure_dir(environment)
    logger.info("Creating initial state for build '%s' in %s", build_type, environment)

    for entry in INITIAL_FILESYSTEM:
        src = project_root / entry
        if src.is_dir():
            await fs.copy_tree(src, environment / entry)
        elif src.is_file():
            await fs.copy_file(src, environment / entry)
        else:
            logger.warning("Initial filesystem entry not found: %s", src)

    return BuildState(
        environment=environment,
        source_root=project_root,
        build_config=build_config,
        config=config,
        stats={"start": int(time.time() * 1000), "phase_timings": {}},
    )


async def finish(state: BuildState, keep_work_dir: Optional[bool] = None) -> None:
    """Log the run summary and remove the working directory."""
    if keep_work_dir is None:
        keep_work_dir = bool(state.config.get("keep_work_dir", False))

    elapsed = int(time.time() * 1000) - state.stats.get("start", 0)
    logger.info(
        "Build '%s' finished in %.1fs: %s",
        state.build_config.target, elapsed / 1000.0, ", ".join(state.steps),
    )

    if keep_work_dir:
        logger.info("Keeping working directory %s", state.environment)
        return
    await fs.remove_tree(state.environment)
    logger.debug("Removed working directory %s", state.environment)


async def run_build(
    build_type: str,
    project_root: Optional[Union[str, Path]] = None,
    stages: Optional[List[PipelineStage]] = None,
) -> BuildState:
    """Run a complete build and return the final state.

    Raises
    ------
    BuildError
        Any stage failure, unchanged.
    """
    from .stages import build_default_stages

    state = await create_initial_state(build_type, project_root)
    orchestrator = PipelineOrchestrator(
        stages if stages is not None else build_default_stages(state.config)
    )
    final_state = await orchestrator.run(state)
    await finish(final_state)
    return final_state
