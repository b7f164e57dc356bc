"""
Concrete Pipeline Stages - the build's named transformations.

Each stage class wraps one step of the build into the ``PipelineStage``
protocol, delegating the heavy lifting to the component modules:

- ``plugin_sourcer``    -- github fetch, plugin install, test relocation
- ``vendoring``         -- dependency install and node_modules thinning
- ``git_info``          -- provenance for ``buildInfo``
- ``version_verifier``  -- release checks
- ``module_vfs``        -- the bundled module table

Stages are designed to be independently testable:
    - Each can be instantiated without the others
    - ``should_run`` checks the build switches before executing
    - Failures raise and abort the build
"""

from __future__ import annotations

import asyncio
import copy
import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Pattern

import jinja2
import rjsmin

from config_loader import (
    load_plugin_manifest,
    load_vendoring_manifest,
    load_yaml,
    merge_objects,
)
from git_info import GitInfoReader
from module_vfs import ModuleVfsBuilder
from plugin_sourcer import PluginSourcer
from utils import fs
from vendoring import DependencyVendor, install_dependencies
from version_verifier import verify_version

from .base_stage import BaseStage
from .protocol import BuildState

logger = logging.getLogger(__name__)

DS_STORE_RE = re.compile(r".*\.DS_Store$")

_TEMPLATES = jinja2.Environment(
    undefined=jinja2.ChainableUndefined,
    keep_trailing_newline=True,
    autoescape=True,
)


def render_template(source: str, context: Dict[str, Any]) -> str:
    """Render a ``{{ a.b }}`` template.

    Values are HTML-escaped like handlebars ``{{ }}``; missing values render empty.
    """
    return _TEMPLATES.from_string(source).render(**context)


def protected_patterns(state: BuildState) -> List[Pattern[str]]:
    """Paths that are never minified, source-map fixed or bundled."""
    return [
        re.compile(pattern)
        for pattern in state.config.get("protected_paths", [r"/modules/plugins/.*?/iframe_root/"])
    ]


def _config_path(state: BuildState, *parts: str) -> Path:
    return state.environment.joinpath("config", *parts)


# ============================================================================
# Setup
# ============================================================================


class SetupBuildStage(BaseStage):
    """Reorganize the source tree into the build layout and fetch plugins.

    ``src/client`` becomes ``build/client``; tests, internal plugins and
    ``package.json`` move to their build locations.  Github plugins are
    cloned and the plugin load config is written.
    """

    name = "setup_build"
    display_name = "Setting up build"
    phase_number = 1

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        env = state.environment
        await fs.delete_matching_files(env, DS_STORE_RE)

        await fs.move(env / "src" / "client", env / "build" / "client")
        await fs.move(env / "src" / "test", env / "test")
        await fs.move(env / "src" / "plugins", env / "plugins")
        await fs.move(env / "package.json", env / "build" / "package.json")
        await fs.remove_tree(env / "src")

        manifest = await asyncio.to_thread(load_plugin_manifest, _config_path(state, "plugins.yml"))
        sourcer = PluginSourcer(env, state.config)

        logger.info("Fetch plugins from github")
        cloned = await sourcer.fetch_github_plugins(manifest)

        logger.info("Inject plugins into config")
        await sourcer.write_load_config(manifest, state.modules_dir / "config" / "plugin.yml")

        return {"plugins": len(manifest.plugins), "github_cloned": len(cloned)}


# ============================================================================
# Dependencies
# ============================================================================


class InstallDependenciesStage(BaseStage):
    """Install runtime packages, then vendor them into the client tree."""

    name = "install_dependencies"
    display_name = "Installing dependencies"
    phase_number = 2

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        await install_dependencies(
            state.build_dir,
            command=state.config.get("install_command"),
            timeout=state.config.get("install_timeout", 300),
        )
        await fs.remove_tree(state.build_dir / "package.json")

        manifest = await asyncio.to_thread(
            load_vendoring_manifest, _config_path(state, "npmInstall.yml")
        )
        vendored = await DependencyVendor(state.environment).vendor(manifest)
        return {
            "packages_vendored": len(vendored),
            "files_vendored": sum(len(spec.copied) for spec in vendored),
        }


class RemoveSourceMapsStage(BaseStage):
    """Strip ``sourceMappingURL`` comments before plugins are introduced."""

    name = "remove_source_maps"
    display_name = "Removing source maps"
    phase_number = 3

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        css = await fs.strip_source_maps(state.client_dir, "css")
        js = await fs.strip_source_maps(state.client_dir, "js")
        return {"css_fixed": len(css), "js_fixed": len(js)}


# ============================================================================
# Plugins
# ============================================================================


class InstallPluginsStage(BaseStage):
    name = "install_plugins"
    display_name = "Installing plugins"
    phase_number = 4

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        manifest = await asyncio.to_thread(load_plugin_manifest, _config_path(state, "plugins.yml"))
        report = await PluginSourcer(state.environment, state.config).install_plugins(manifest)
        return {
            "installed": [install.name for install in report.installed],
            "with_tests": report.with_tests,
            "without_tests": report.without_tests,
        }


# ============================================================================
# Config and build info
# ============================================================================


class CopyUiConfigStage(BaseStage):
    """Merge the UI config files into ``merged_config`` and ``ui.yml``."""

    name = "copy_ui_config"
    display_name = "Copying config files"
    phase_number = 5

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        files = state.config.get("ui_config_files", ["release.yml"])
        configs = await asyncio.gather(
            *(fs.read_yaml(_config_path(state, name)) for name in files)
        )
        state.merged_config = merge_objects([{}] + list(configs))
        await fs.write_yaml(state.modules_dir / "config" / "ui.yml", state.merged_config)
        return {"files_merged": len(files)}


class CreateBuildInfoStage(BaseStage):
    """Record target, timing and git provenance as ``buildInfo``."""

    name = "create_build_info"
    display_name = "Creating build record"
    phase_number = 6

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        reader = GitInfoReader(state.source_root)
        state.git = await reader.read(release=state.build_config.release)
        state.build_info = {
            "target": state.build_config.target,
            "stats": copy.deepcopy(state.stats),
            "git": state.git.to_dict(),
            "hostInfo": None,
            "builtAt": int(time.time() * 1000),
        }
        await fs.write_yaml(
            state.modules_dir / "config" / "buildInfo.yml",
            {"buildInfo": state.build_info},
        )
        return {"commit": state.git.commit_abbreviated_hash, "tag": state.git.tag}


class VerifyVersionStage(BaseStage):
    """Release builds: declared version, git tag and release notes must agree."""

    name = "verify_version"
    display_name = "Verifying version"
    phase_number = 7

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        version = verify_version(
            state.build_config.release,
            state.merged_config,
            state.git,
            state.environment / "release-notes",
        )
        return {"version": version}


class MakeUiConfigStage(BaseStage):
    """Render ``build-info.js`` and merge ``ui.yml`` + ``buildInfo.yml``
    into ``modules/config/config.json``."""

    name = "make_ui_config"
    display_name = "Making UI config"
    phase_number = 8

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        config_dir = state.modules_dir / "config"
        await fs.ensure_dir(state.modules_dir / "deploy")

        template_path = state.client_dir / "build-info.js.txt"
        if template_path.is_file():
            template = await fs.read_text(template_path)
            await fs.write_text(
                state.client_dir / "build-info.js",
                render_template(template, state.build_info or {}),
            )
            await fs.remove_tree(template_path)
        else:
            logger.warning("No build-info template at %s", template_path)

        sources = [config_dir / "ui.yml", config_dir / "buildInfo.yml"]
        documents = await asyncio.gather(*(fs.read_yaml(path) for path in sources))
        await fs.write_json(config_dir / "config.json", merge_objects(documents))
        await asyncio.gather(*(fs.remove_tree(path) for path in sources))
        return {}


class MakeDeployConfigStage(BaseStage):
    """Convert each ``config/deploy/<env>.yml`` to ``build/deploy/cfg/<env>.json``."""

    name = "make_deploy_config"
    display_name = "Making deploy configs"
    phase_number = 9

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        source_dir = _config_path(state, "deploy")
        cfg_dir = state.build_dir / "deploy" / "cfg"
        await fs.ensure_dir(cfg_dir)

        matches = await fs.glob_files(source_dir, "*.yml") if source_dir.is_dir() else []

        async def convert(rel: str) -> None:
            document = await fs.read_yaml(source_dir / rel)
            await fs.write_json(cfg_dir / f"{Path(rel).stem}.json", document)

        await asyncio.gather(*(convert(rel) for rel in matches))
        return {"deploy_configs": [Path(rel).stem for rel in matches]}


class AddCacheBustingStage(BaseStage):
    """Render the html entry points with the build state as context."""

    name = "add_cache_busting"
    display_name = "Adding cache busting to html templates"
    phase_number = 10

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        context = state.template_context()
        names = state.config.get("cache_bust_templates", ["index.html", "load-narrative.html"])

        async def render(name: str) -> None:
            path = state.client_dir / name
            await fs.write_text(path, render_template(await fs.read_text(path), context))

        await asyncio.gather(*(render(name) for name in names))
        return {"templates": list(names)}


# ============================================================================
# Base build
# ============================================================================


class CleanupStage(BaseStage):
    name = "cleanup"
    display_name = "Cleaning up"
    phase_number = 11

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        await fs.remove_tree(state.build_dir / "node_modules")
        return {}


class FixupBaseBuildStage(BaseStage):
    """Strip css source-map comments that arrived with plugins."""

    name = "fixup_base_build"
    display_name = "Fixing up base build"
    phase_number = 12

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        fixed = await fs.strip_source_maps(
            state.modules_dir,
            "css",
            exclude=protected_patterns(state),
            key_prefix="/modules",
        )
        for rel in fixed:
            logger.warning("Fixed up css file to remove mapping: %s", rel)
        return {"css_fixed": len(fixed)}


class MakeBaseBuildStage(BaseStage):
    """Publish ``build`` and ``test`` to the project's output directory."""

    name = "make_base_build"
    display_name = "Making base build"
    phase_number = 13

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        out = state.output_dir
        await fs.remove_tree(out / "build")
        await fs.remove_tree(out / "test")

        logger.info("Copying config...")
        await fs.move(state.environment / "config", state.build_dir / "config")
        logger.info("Copying build...")
        await fs.copy_tree(state.build_dir, out / "build")
        logger.info("Copying test...")
        await fs.copy_tree(state.environment / "test", out / "test")
        return {"output": str(out)}


# ============================================================================
# Distribution
# ============================================================================


def _minify(path: Path) -> bool:
    """Minify one JS file in place; ``False`` when the result is empty."""
    minified = rjsmin.jsmin(path.read_text(encoding="utf-8"))
    if not minified.strip():
        return False
    path.write_text(minified, encoding="utf-8")
    return True


class MakeDistBuildStage(BaseStage):
    """Copy the build to ``dist``, minify its JS and publish it."""

    name = "make_dist_build"
    display_name = "Making dist build"
    phase_number = 14

    def should_run(self, state: BuildState) -> bool:
        return state.build_config.dist

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        dist = state.environment / "dist"
        await fs.copy_tree(state.build_dir, dist)

        modules = dist / "client" / "modules"
        protected = protected_patterns(state)
        scripts = [
            rel for rel in await fs.glob_files(modules, "**/*.js")
            if not any(regex.search(f"/modules/{rel}") for regex in protected)
        ]
        written = await asyncio.gather(
            *(asyncio.to_thread(_minify, modules / rel) for rel in scripts)
        )
        for rel, ok in zip(scripts, written):
            if not ok:
                logger.warning("Skipping empty file: %s", rel)

        out = state.output_dir / "dist"
        await fs.remove_tree(out)
        await fs.copy_tree(dist, out)
        return {"minified": sum(1 for ok in written if ok)}


class CopyToDistBuildStage(BaseStage):
    """Publish the plain build as ``dist`` for non-distribution builds."""

    name = "copy_to_dist_build"
    display_name = "Copying build to dist"
    phase_number = 15

    def should_run(self, state: BuildState) -> bool:
        return not state.build_config.dist

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        out = state.output_dir / "dist"
        await fs.remove_tree(out)
        await fs.copy_tree(state.build_dir, out)
        return {}


class MakeModuleVfsStage(BaseStage):
    """Bundle the dist modules into ``client/moduleVfs.js``."""

    name = "make_module_vfs"
    display_name = "Making module VFS"
    phase_number = 16

    def should_run(self, state: BuildState) -> bool:
        return state.build_config.vfs and state.build_config.dist

    async def _execute(self, state: BuildState) -> Dict[str, Any]:
        builder = ModuleVfsBuilder(
            state.environment / "dist" / "client",
            max_file_size=state.config.get("vfs_max_file_size", 200000),
            strict_resources=state.config.get("vfs_strict_resources", False),
            exclude=protected_patterns(state),
        )
        report = await builder.build(state.output_dir / "dist" / "client" / "moduleVfs.js")
        return {
            "included": dict(report.included),
            "skipped": dict(report.skipped),
            "warnings": len(report.warnings),
        }


# ============================================================================
# Factory: Build default pipeline
# ============================================================================


def build_default_stages(config: Dict[str, Any]) -> List[BaseStage]:
    """Build the fixed, ordered set of build stages.

    Returns all stages; the orchestrator uses ``should_run`` to skip the
    distribution and VFS stages for build types that do not need them.
    """
    return [
        SetupBuildStage(),
        InstallDependenciesStage(),
        RemoveSourceMapsStage(),
        InstallPluginsStage(),
        CopyUiConfigStage(),
        CreateBuildInfoStage(),
        VerifyVersionStage(),
        MakeUiConfigStage(),
        MakeDeployConfigStage(),
        AddCacheBustingStage(),
        CleanupStage(),
        FixupBaseBuildStage(),
        MakeBaseBuildStage(),
        MakeDistBuildStage(),
        CopyToDistBuildStage(),
        MakeModuleVfsStage(),
    ]
