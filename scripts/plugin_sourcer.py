"""
Plugin Sourcer.

Materializes every entry of ``config/plugins.yml`` into
``build/client/modules/plugins/<name>/`` and moves each plugin's ``test``
directory into the shared integration-test tree.

Three origins are supported:

- ``InternalPlugin`` -- copied from the working tree's ``plugins/<name>``
- ``ExternalPlugin`` with a ``directory`` source -- copied from
  ``<root>/<name>/<cwd>`` on the build host
- ``ExternalPlugin`` with a ``github`` source -- shallow-cloned into
  ``gitDownloads/<name>`` by ``fetch_github_plugins``, then installed from
  its ``dist.tgz`` archive or its configured ``cwd``

Usage::

    sourcer = PluginSourcer(environment, config)
    await sourcer.fetch_github_plugins(manifest)
    report = await sourcer.install_plugins(manifest)
"""

from __future__ import annotations

import asyncio
import logging
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from exceptions import SourceUnavailableError
from schemas.manifests import ExternalPlugin, InternalPlugin, PluginDescriptor, PluginManifest
from utils import fs
from utils.process import run_command

logger = logging.getLogger(__name__)


# ============================================================================
# Data model
# ============================================================================


@dataclass
class PluginInstall:
    """One plugin copied into the build tree."""

    name: str
    origin: str
    source: Path
    destination: Path
    files: List[str] = field(default_factory=list)


@dataclass
class PluginInstallReport:
    """Result of ``PluginSourcer.install_plugins``.

    Attributes
    ----------
    installed : list[PluginInstall]
        Installed plugins in manifest order.
    with_tests : list[str]
        Plugins whose ``test`` directory was moved to the integration tree.
    without_tests : list[str]
        Plugins that ship no ``test`` directory.
    """

    installed: List[PluginInstall] = field(default_factory=list)
    with_tests: List[str] = field(default_factory=list)
    without_tests: List[str] = field(default_factory=list)


# ============================================================================
# Plugin load config
# ============================================================================


def build_load_config(manifest: PluginManifest) -> Dict[str, Any]:
    """Return the ``{plugins: {name: entry}}`` document the client loads."""
    return {
        "plugins": {plugin.name: plugin.to_load_config() for plugin in manifest.plugins}
    }


# ============================================================================
# Sourcer
# ============================================================================


class PluginSourcer:
    """Resolve and install plugins for one build working tree.

    Parameters
    ----------
    environment : str | Path
        Root of the build working tree.
    config : dict
        Unified build-control config (``config_loader.build_unified_config``).
    """

    def __init__(self, environment: Union[str, Path], config: Optional[Dict[str, Any]] = None):
        config = config or {}
        self.environment = Path(environment)
        self.internal_dir = self.environment / config.get("internal_plugins_dir", "plugins")
        self.downloads_dir = self.environment / "gitDownloads"
        self.plugins_dir = self.environment / "build" / "client" / "modules" / "plugins"
        self.tests_dir = self.environment / "test" / "integration-tests" / "specs" / "plugins"
        self.directory_root = config.get("plugin_directory_root", "/kb/plugins")
        self.directory_cwd = config.get("plugin_directory_cwd", "dist/plugin")
        self.github_account = config.get("github_default_account", "kbase")
        self.github_base_url = config.get("github_base_url", "https://github.com").rstrip("/")
        self.archive_name = config.get("plugin_archive", "dist.tgz")
        self.archive_path = config.get("plugin_archive_path", "dist/plugin")

    # ------------------------------------------------------------------
    # Github fetch
    # ------------------------------------------------------------------

    def github_url(self, plugin: ExternalPlugin) -> str:
        github = plugin.source.github
        if github.url:
            return github.url
        account = github.account or self.github_account
        return f"{self.github_base_url}/{account}/{plugin.repo_name}"

    @staticmethod
    def github_branch(plugin: ExternalPlugin) -> Optional[str]:
        """Explicit branch, else ``v<version>``, else the remote default."""
        github = plugin.source.github
        if github.branch:
            return github.branch
        if plugin.version:
            return f"v{plugin.version}"
        return None

    def clone_command(self, plugin: ExternalPlugin) -> List[str]:
        command = ["git", "clone", "--quiet", "--depth", "1"]
        branch = self.github_branch(plugin)
        if branch:
            command += ["--branch", branch]
        command += [self.github_url(plugin), str(self.downloads_dir / plugin.name)]
        return command

    async def _clone(self, plugin: ExternalPlugin) -> Path:
        logger.info(
            "Cloning plugin repo %s, version %s, branch %s",
            plugin.global_name or plugin.name,
            plugin.version,
            self.github_branch(plugin) or "(default)",
        )
        await run_command(self.clone_command(plugin))
        return self.downloads_dir / plugin.name

    async def fetch_github_plugins(self, manifest: PluginManifest) -> List[Path]:
        """Shallow-clone every github plugin into ``gitDownloads``."""
        await fs.ensure_dir(self.downloads_dir)
        plugins = manifest.github()
        if not plugins:
            return []
        return list(await asyncio.gather(*(self._clone(p) for p in plugins)))

    # ------------------------------------------------------------------
    # Source resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _extract_archive(archive: Path, dest: Path) -> None:
        with tarfile.open(archive, "r:*") as tar:
            tar.extractall(dest, filter="data")

    async def _resolve_github(self, plugin: ExternalPlugin) -> Path:
        download = self.downloads_dir / plugin.name
        archive = download / self.archive_name
        if archive.is_file():
            logger.info("%s: plugin installing from %s", plugin.name, self.archive_name)
            await asyncio.to_thread(self._extract_archive, archive, download)
            return download / self.archive_path
        if plugin.cwd:
            logger.info("%s: plugin building from configured cwd: %s", plugin.name, plugin.cwd)
            return download / plugin.cwd
        raise SourceUnavailableError(
            f"git plugin {plugin.name} does not have an install method - "
            f"neither {self.archive_name} nor cwd"
        )

    async def resolve_source(self, plugin: PluginDescriptor) -> Path:
        """Return the directory whose contents become the installed plugin."""
        if isinstance(plugin, InternalPlugin):
            return self.internal_dir / plugin.name

        if plugin.source.kind == "github":
            return await self._resolve_github(plugin)

        root = plugin.source.directory.root or self.directory_root
        return Path(root) / plugin.name / (plugin.cwd or self.directory_cwd)

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------

    async def install_plugin(self, plugin: PluginDescriptor) -> PluginInstall:
        """Copy one plugin into ``build/client/modules/plugins/<name>``.

        Raises
        ------
        SourceUnavailableError
            If the resolved source directory does not exist.
        """
        source = await self.resolve_source(plugin)
        origin = "internal" if isinstance(plugin, InternalPlugin) else plugin.source.kind
        if not source.is_dir():
            raise SourceUnavailableError(
                f"Source directory for {origin} plugin '{plugin.name}' not found: {source}"
            )

        destination = self.plugins_dir / plugin.name
        await fs.ensure_dir(destination)
        files = await fs.copy_files(source, destination, "**/*")
        logger.info("Installed %s plugin %s (%d files)", origin, plugin.name, len(files))
        return PluginInstall(
            name=plugin.name,
            origin=origin,
            source=source,
            destination=destination,
            files=files,
        )

    async def relocate_tests(self, report: Optional[PluginInstallReport] = None) -> PluginInstallReport:
        """Move every installed plugin's ``test`` dir into the integration tree."""
        report = report or PluginInstallReport()
        for plugin_dir in await fs.list_dirs(self.plugins_dir):
            test_dir = plugin_dir / "test"
            if not test_dir.is_dir():
                logger.warning("plugin without tests: %s", plugin_dir.name)
                report.without_tests.append(plugin_dir.name)
                continue
            destination = self.tests_dir / plugin_dir.name
            if destination.exists():
                # merge into the existing specs dir rather than nesting test/ inside it
                await fs.copy_files(test_dir, destination, "**/*")
                await fs.remove_tree(test_dir)
            else:
                await fs.move(test_dir, destination)
            logger.info("plugin with tests: %s", plugin_dir.name)
            report.with_tests.append(plugin_dir.name)
        return report

    async def install_plugins(self, manifest: PluginManifest) -> PluginInstallReport:
        """Install every manifest entry, then relocate plugin tests."""
        installed = await asyncio.gather(
            *(self.install_plugin(plugin) for plugin in manifest.plugins)
        )
        report = PluginInstallReport(installed=list(installed))
        return await self.relocate_tests(report)

    async def write_load_config(self, manifest: PluginManifest, path: Union[str, Path]) -> Dict[str, Any]:
        """Write the plugin load config (``modules/config/plugin.yml``)."""
        load_config = build_load_config(manifest)
        await fs.write_yaml(path, load_config)
        logger.info("Wrote plugin load config with %d plugins", len(load_config["plugins"]))
        return load_config
