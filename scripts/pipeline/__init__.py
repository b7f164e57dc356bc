"""
Build pipeline for the Mutant UI builder.

Key components:
- ``PipelineStage`` -- Protocol every stage implements
- ``BuildState`` -- The value threaded through the stages
- ``StageResult`` -- Outcome returned by each stage
- ``PipelineOrchestrator`` -- Runs stages in order, fail-fast
- ``BaseStage`` -- Convenience ABC for implementing stages
- ``build_default_stages`` -- Factory for the standard 16-stage build
- ``run_build`` -- Build the initial state and run the default stages
"""

import sys
from pathlib import Path

# Ensure scripts dir is importable before any submodule loads its siblings
_SCRIPT_DIR = Path(__file__).resolve().parent.parent
if str(_SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(_SCRIPT_DIR))

from .protocol import BuildState, PipelineStage, StageResult
from .orchestrator import (
    PipelineOrchestrator,
    create_initial_state,
    finish,
    run_build,
)
from .base_stage import BaseStage
from .stages import (
    SetupBuildStage,
    InstallDependenciesStage,
    RemoveSourceMapsStage,
    InstallPluginsStage,
    CopyUiConfigStage,
    CreateBuildInfoStage,
    VerifyVersionStage,
    MakeUiConfigStage,
    MakeDeployConfigStage,
    AddCacheBustingStage,
    CleanupStage,
    FixupBaseBuildStage,
    MakeBaseBuildStage,
    MakeDistBuildStage,
    CopyToDistBuildStage,
    MakeModuleVfsStage,
    build_default_stages,
)

__all__ = [
    # Core protocol
    "PipelineStage",
    "BuildState",
    "StageResult",
    # Orchestrator
    "PipelineOrchestrator",
    "create_initial_state",
    "finish",
    "run_build",
    # Base class
    "BaseStage",
    # Concrete stages
    "SetupBuildStage",
    "InstallDependenciesStage",
    "RemoveSourceMapsStage",
    "InstallPluginsStage",
    "CopyUiConfigStage",
    "CreateBuildInfoStage",
    "VerifyVersionStage",
    "MakeUiConfigStage",
    "MakeDeployConfigStage",
    "AddCacheBustingStage",
    "CleanupStage",
    "FixupBaseBuildStage",
    "MakeBaseBuildStage",
    "MakeDistBuildStage",
    "CopyToDistBuildStage",
    "MakeModuleVfsStage",
    # Factory
    "build_default_stages",
]
