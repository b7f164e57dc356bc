"""
Base Stage - Convenience base class for pipeline stages.

While the ``PipelineStage`` protocol allows any object with the right
interface, this ABC provides a convenient base with the timing, step
recording and logging boilerplate.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .protocol import BuildState, StageResult

logger = logging.getLogger(__name__)


class BaseStage(ABC):
    """Abstract base class that satisfies the ``PipelineStage`` protocol.

    Subclasses must implement:
    - ``name``, ``display_name``, ``phase_number`` (as properties or class attrs)
    - ``_execute(state)`` -- the core logic

    Optional overrides:
    - ``should_run(state)`` -- defaults to ``True``
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def phase_number(self) -> float:
        ...

    def should_run(self, state: BuildState) -> bool:
        """Override to skip the stage for some build types.  Defaults to True."""
        return True

    @abstractmethod
    async def _execute(self, state: BuildState) -> Optional[Dict[str, Any]]:
        """Core stage logic.

        Update ``state`` (the stage's own copy) and the working tree, and
        return a dict of stage-specific metadata.

        Raises
        ------
        Exception
            Any exception is logged by ``execute()`` and re-raised, aborting
            the build.
        """
        ...

    async def execute(self, state: BuildState) -> StageResult:
        """Run the stage with timing and error logging.

        Delegates to ``_execute`` and wraps the updated state in a
        ``StageResult``.
        """
        start = time.time()

        try:
            metadata = await self._execute(state) or {}
        except Exception as exc:
            logger.error(
                "%s failed after %.1fs: %s",
                self.display_name, time.time() - start, exc, exc_info=True,
            )
            raise

        duration = time.time() - start
        state.steps.append(self.name)
        state.stats.setdefault("phase_timings", {})[self.name] = duration
        return StageResult(
            success=True,
            stage_name=self.name,
            state=state,
            duration_seconds=duration,
            metadata=metadata,
        )
