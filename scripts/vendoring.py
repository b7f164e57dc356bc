"""
Dependency installation and vendoring.

``install_dependencies`` runs the package installer against
``build/package.json``.  ``DependencyVendor`` then thins and flattens the
installed ``node_modules`` tree into predictable paths under
``build/client/modules`` as declared by ``config/npmInstall.yml``:

- ``standalone: true``  -> ``modules/<name>``
- otherwise             -> ``modules/node_modules/<dir>``
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from exceptions import SourceUnavailableError
from schemas.manifests import CopySpec, VendoringManifest
from utils import fs
from utils.process import CommandResult, run_command

logger = logging.getLogger(__name__)

DEFAULT_INSTALL_COMMAND = ["yarn", "install", "--no-lockfile"]
DEFAULT_INSTALL_TIMEOUT = 300


# ============================================================================
# Dependency installation
# ============================================================================


async def install_dependencies(
    build_dir: Union[str, Path],
    command: Optional[Sequence[str]] = None,
    timeout: float = DEFAULT_INSTALL_TIMEOUT,
) -> CommandResult:
    """Install runtime dependencies declared in ``<build_dir>/package.json``.

    ``devDependencies`` are removed first.  Anything the installer prints on
    stderr is logged as a warning; only a non-zero exit or the timeout fails
    the install.

    Raises
    ------
    CommandError
        If the installer is missing, exits non-zero or exceeds *timeout*.
    """
    build_dir = Path(build_dir)
    package_path = build_dir / "package.json"

    package = await fs.read_json(package_path)
    if package.pop("devDependencies", None) is not None:
        logger.debug("Removed devDependencies from %s", package_path)
    await fs.write_json(package_path, package)

    command = list(command or DEFAULT_INSTALL_COMMAND)
    logger.info("Installing dependencies: %s", " ".join(command))
    result = await run_command(command, cwd=build_dir, timeout=timeout)

    for line in result.stderr.splitlines():
        if line.strip():
            logger.warning("installer: %s", line.rstrip())
    return result


# ============================================================================
# Vendoring
# ============================================================================


@dataclass
class ResolvedCopySpec:
    """A ``CopySpec`` with its paths resolved against the working tree."""

    label: str
    package_dir: str
    nested_cwd: List[str]
    source_globs: List[str]
    source_root: Path
    destination: Path
    standalone: bool = False
    copied: List[str] = field(default_factory=list)


class DependencyVendor:
    """Copy selected files from ``build/node_modules`` into the client tree.

    Parameters
    ----------
    environment : str | Path
        Root of the build working tree.
    """

    def __init__(self, environment: Union[str, Path]):
        self.environment = Path(environment)
        self.node_modules = self.environment / "build" / "node_modules"
        self.modules_dir = self.environment / "build" / "client" / "modules"

    def resolve(self, spec: CopySpec) -> ResolvedCopySpec:
        nested_cwd = list(spec.cwd or [])
        source_root = self.node_modules / spec.package_dir
        for part in nested_cwd:
            source_root = source_root / part

        if spec.standalone:
            destination = self.modules_dir / (spec.name or spec.package_dir)
        else:
            destination = self.modules_dir / "node_modules" / spec.package_dir

        return ResolvedCopySpec(
            label=spec.name or spec.package_dir,
            package_dir=spec.package_dir,
            nested_cwd=nested_cwd,
            source_globs=spec.source_globs,
            source_root=source_root,
            destination=destination,
            standalone=spec.standalone,
        )

    async def copy(self, resolved: ResolvedCopySpec) -> ResolvedCopySpec:
        """Copy every file matched by the spec's globs, preserving paths.

        Raises
        ------
        SourceUnavailableError
            If the spec's source root does not exist.
        """
        if not resolved.source_root.is_dir():
            raise SourceUnavailableError(
                f"Vendoring source for '{resolved.label}' not found: {resolved.source_root}"
            )

        matches: List[str] = []
        for pattern in resolved.source_globs:
            found = await fs.glob_files(resolved.source_root, pattern)
            if not found:
                logger.warning(
                    "Vendoring pattern %r for '%s' matched no files", pattern, resolved.label
                )
            matches.extend(rel for rel in found if rel not in matches)

        await asyncio.gather(
            *(
                fs.copy_file(resolved.source_root / rel, resolved.destination / rel)
                for rel in matches
            )
        )
        resolved.copied = matches
        logger.debug("Vendored %d file(s) for %s", len(matches), resolved.label)
        return resolved

    @staticmethod
    def _warn_shared_destinations(specs: List[ResolvedCopySpec]) -> None:
        by_destination: Dict[Path, List[str]] = defaultdict(list)
        for spec in specs:
            by_destination[spec.destination].append(spec.label)
        for destination, labels in by_destination.items():
            if len(labels) > 1:
                logger.warning(
                    "Copy specs %s share destination %s; their files will be merged",
                    ", ".join(labels), destination,
                )

    async def vendor(self, manifest: VendoringManifest) -> List[ResolvedCopySpec]:
        """Run every copy spec concurrently.

        All specs are awaited together so each one's failure is logged; the
        first failure (in manifest order) is then raised.
        """
        resolved = [self.resolve(spec) for spec in manifest.npm_files]
        self._warn_shared_destinations(resolved)

        outcomes = await asyncio.gather(
            *(self.copy(spec) for spec in resolved), return_exceptions=True
        )

        failures = [
            (spec, outcome) for spec, outcome in zip(resolved, outcomes)
            if isinstance(outcome, BaseException)
        ]
        for spec, exc in failures:
            logger.error("Vendoring %s failed: %s", spec.label, exc)
        if failures:
            raise failures[0][1]

        logger.info(
            "Vendored %d package(s), %d file(s)",
            len(resolved), sum(len(spec.copied) for spec in resolved),
        )
        return resolved
