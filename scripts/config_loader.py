"""
Configuration Loader for the Mutant build pipeline.

Implements a layered build-control configuration:
    hardcoded defaults < config/build/defaults.yml < config/build/configs/<type>.yml < env vars

It also loads and validates the declarative manifests the stages consume
(``plugins.yml``, ``npmInstall.yml``) and provides the YAML helpers shared
by the stage library.

Usage:
    from config_loader import build_unified_config, build_config_from
    config = build_unified_config("prod", project_root)
    build_config = build_config_from(config)
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml
from pydantic import ValidationError

from exceptions import ConfigError, UsageError
from schemas.manifests import BuildConfig, PluginManifest, VendoringManifest

logger = logging.getLogger(__name__)

BUILD_CONFIG_DIR = Path("config") / "build"

# ---------------------------------------------------------------------------
# Project root detection
# ---------------------------------------------------------------------------

def find_project_root(start: Optional[Union[str, Path]] = None) -> Path:
    """Find the project root by looking for the build-control defaults file.

    Walks up from *start* (default: the current directory).  Falls back to
    *start* itself when no marker is found.
    """
    current = Path(start or os.getcwd()).resolve()
    for ancestor in [current, *current.parents]:
        if (ancestor / BUILD_CONFIG_DIR / "defaults.yml").is_file():
            return ancestor
    return current

# ---------------------------------------------------------------------------
# Default configuration
# ---------------------------------------------------------------------------

def get_default_config() -> Dict[str, Any]:
    """Return all build-control parameters with sensible defaults.

    This is the lowest-priority layer.  Every configurable key must appear
    here so that downstream code never needs to guard against missing keys.
    """
    return {
        # -- Build type --
        "target": "",
        "release": False,
        "dist": False,
        "vfs": False,

        # -- Layout --
        "work_dir": "temp/files",
        "output_dir": "build",
        "keep_work_dir": False,

        # -- Plugins --
        "internal_plugins_dir": "plugins",
        "plugin_directory_root": "/kb/plugins",
        "plugin_directory_cwd": "dist/plugin",
        "github_default_account": "kbase",
        "github_base_url": "https://github.com",
        "plugin_archive": "dist.tgz",
        "plugin_archive_path": "dist/plugin",

        # -- Dependencies --
        "install_command": ["yarn", "install", "--no-lockfile"],
        "install_timeout": 300,

        # -- Config merge / templates --
        "ui_config_files": ["release.yml"],
        "cache_bust_templates": ["index.html", "load-narrative.html"],

        # -- Protected paths (never minified nor bundled) --
        "protected_paths": [r"/modules/plugins/.*?/iframe_root/"],

        # -- Module VFS --
        "vfs_max_file_size": 200000,
        "vfs_strict_resources": False,

        # -- Output --
        "verbose": False,
    }

# ---------------------------------------------------------------------------
# YAML helpers
# ---------------------------------------------------------------------------

def load_yaml(path: Union[str, Path]) -> Any:
    """Load a YAML document.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ConfigError
        If the document is not valid YAML.
    """
    with open(path, "r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc


def _load_yaml_mapping(path: Union[str, Path]) -> dict:
    payload = load_yaml(path)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ConfigError(f"Config file must contain a YAML mapping: {path}")
    return payload


def _deep_merge_nested(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (nested dicts)."""
    merged = dict(base)
    for key, value in override.items():
        if (
            key in merged
            and isinstance(merged[key], dict)
            and isinstance(value, dict)
        ):
            merged[key] = _deep_merge_nested(merged[key], value)
        else:
            merged[key] = value
    return merged


def merge_objects(objects: Iterable[Optional[dict]]) -> dict:
    """Deep-merge a sequence of mappings, later ones winning."""
    merged: dict = {}
    for obj in objects:
        if obj:
            merged = _deep_merge_nested(merged, obj)
    return merged

# ---------------------------------------------------------------------------
# Build type loading
# ---------------------------------------------------------------------------

def _build_type_path(project_root: Path, build_type: str) -> Path:
    return project_root / BUILD_CONFIG_DIR / "configs" / f"{build_type}.yml"


def _load_raw_build_type(
    project_root: Path,
    build_type: str,
    _chain: Optional[List[str]] = None,
) -> dict:
    """Load raw YAML dict for *build_type*, resolving ``_extends``.

    Raises
    ------
    UsageError
        If no config file exists for the build type.
    ConfigError
        If a circular ``_extends`` chain is detected.
    """
    if _chain is None:
        _chain = []

    if build_type in _chain:
        raise ConfigError(
            f"Circular build config inheritance detected: "
            f"{' -> '.join(_chain)} -> {build_type}"
        )
    _chain.append(build_type)

    path = _build_type_path(project_root, build_type)
    if not path.is_file():
        available = list_available_build_types(project_root)
        raise UsageError(
            f"Unknown build type '{build_type}': {path} not found.  "
            f"Available: {', '.join(available) or 'none'}"
        )

    logger.info("Loading build config '%s' from %s", build_type, path)
    raw = _load_yaml_mapping(path)

    parent_name = raw.pop("_extends", None)
    if parent_name:
        parent = _load_raw_build_type(project_root, parent_name, _chain=_chain)
        raw = _deep_merge_nested(parent, raw)

    return raw


def load_build_type(build_type: str, project_root: Union[str, Path]) -> Dict[str, Any]:
    """Load the shared defaults YAML merged with the named build type's YAML."""
    project_root = Path(project_root)
    defaults_path = project_root / BUILD_CONFIG_DIR / "defaults.yml"
    defaults = _load_yaml_mapping(defaults_path) if defaults_path.is_file() else {}
    if not defaults:
        logger.debug("No build defaults at %s", defaults_path)
    return _deep_merge_nested(defaults, _load_raw_build_type(project_root, build_type))

# ---------------------------------------------------------------------------
# Environment variable overrides
# ---------------------------------------------------------------------------

# Mapping: (env_var_name, ...) -> (config_key, type)
_ENV_MAPPINGS: List[tuple] = [
    (("UI_BUILD_TARGET",),                "target",                "str"),
    (("UI_BUILD_RELEASE",),               "release",               "bool"),
    (("UI_BUILD_DIST",),                  "dist",                  "bool"),
    (("UI_BUILD_VFS",),                   "vfs",                   "bool"),
    (("UI_BUILD_KEEP_WORK_DIR",),         "keep_work_dir",         "bool"),
    (("UI_BUILD_PLUGIN_ROOT",),           "plugin_directory_root", "str"),
    (("UI_BUILD_INSTALL_TIMEOUT",),       "install_timeout",       "int"),
    (("UI_BUILD_VFS_STRICT",),            "vfs_strict_resources",  "bool"),
    (("UI_BUILD_VERBOSE",),               "verbose",               "bool"),
]


def _coerce(raw: str, type_tag: str) -> Any:
    """Convert a raw env-var string to the appropriate Python type."""
    if type_tag == "bool":
        return raw.lower() in ("true", "1", "yes")
    if type_tag == "int":
        return int(raw)
    return raw


def load_env_overrides() -> Dict[str, Any]:
    """Load configuration values from explicitly-set environment variables.

    Only variables that are **present** in ``os.environ`` are returned, so
    that defaults or build-type values are not accidentally overwritten.
    """
    overrides: Dict[str, Any] = {}

    for env_names, config_key, type_tag in _ENV_MAPPINGS:
        for env_name in env_names:
            if env_name in os.environ:
                try:
                    overrides[config_key] = _coerce(os.environ[env_name], type_tag)
                except (ValueError, TypeError) as exc:
                    logger.warning(
                        "Ignoring env var %s: could not convert %r to %s (%s)",
                        env_name, os.environ[env_name], type_tag, exc,
                    )
                break

    return overrides

# ---------------------------------------------------------------------------
# Merge helpers
# ---------------------------------------------------------------------------

def deep_merge(base: dict, override: dict) -> dict:
    """Merge *override* into *base*.  Only non-None override values win.

    This operates on **flat** dicts (no recursive descent).
    """
    merged = dict(base)
    for key, value in override.items():
        if value is not None:
            merged[key] = value
    return merged

# ---------------------------------------------------------------------------
# Main entry point
# ---------------------------------------------------------------------------

def build_unified_config(
    build_type: str,
    project_root: Union[str, Path],
) -> Dict[str, Any]:
    """Build a fully-merged build-control configuration dict.

    Layer precedence (last wins):
        1. Hard-coded defaults          (``get_default_config()``)
        2. ``config/build/defaults.yml`` + ``configs/<type>.yml``
        3. Environment variables        (``load_env_overrides()``)

    The build type name becomes the ``target`` unless a layer sets one.

    Raises
    ------
    UsageError
        If *build_type* is empty or has no config file.
    """
    if not build_type:
        raise UsageError("Build config not specified")

    config = get_default_config()
    config["target"] = build_type

    config = deep_merge(config, load_build_type(build_type, project_root))
    logger.info("Applied build config '%s'", build_type)

    env_overrides = load_env_overrides()
    if env_overrides:
        config = deep_merge(config, env_overrides)
        logger.debug("Applied %d env-var overrides", len(env_overrides))

    return config


def build_config_from(config: Dict[str, Any]) -> BuildConfig:
    """Extract the typed ``BuildConfig`` switches from a unified config."""
    try:
        return BuildConfig.model_validate(config)
    except ValidationError as exc:
        raise ConfigError(f"Invalid build config: {exc}") from exc

# ---------------------------------------------------------------------------
# Build type discovery
# ---------------------------------------------------------------------------

def list_available_build_types(project_root: Union[str, Path]) -> List[str]:
    """Return the names of all build types under ``config/build/configs``."""
    directory = Path(project_root) / BUILD_CONFIG_DIR / "configs"
    if not directory.is_dir():
        return []
    return sorted(path.stem for path in directory.glob("*.yml"))

# ---------------------------------------------------------------------------
# Manifests
# ---------------------------------------------------------------------------

def load_plugin_manifest(path: Union[str, Path]) -> PluginManifest:
    """Load and validate ``plugins.yml``.

    Raises
    ------
    ConfigError
        If the manifest is malformed (bad YAML, bad descriptor, duplicate
        plugin names).
    """
    raw = _load_yaml_mapping(path)
    try:
        return PluginManifest.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid plugin manifest {path}: {exc}") from exc


def load_vendoring_manifest(path: Union[str, Path]) -> VendoringManifest:
    """Load and validate ``npmInstall.yml``."""
    raw = _load_yaml_mapping(path)
    try:
        return VendoringManifest.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid vendoring manifest {path}: {exc}") from exc

# ---------------------------------------------------------------------------
# Configuration validation
# ---------------------------------------------------------------------------

def validate_config(config: Dict[str, Any]) -> List[str]:
    """Validate a configuration dict and return a list of warnings/errors.

    Returns
    -------
    list[str]
        Human-readable warning/error messages.  An empty list means the
        config is valid.
    """
    issues: List[str] = []

    if not config.get("target"):
        issues.append("ERROR: target must be a non-empty string.")

    if config.get("vfs") and not config.get("dist"):
        issues.append(
            "WARNING: vfs is true but dist is false. "
            "The module VFS is only built for dist builds and will be skipped."
        )

    timeout = config.get("install_timeout", 300)
    if not isinstance(timeout, (int, float)) or timeout <= 0:
        issues.append("ERROR: install_timeout must be a positive number of seconds.")

    max_size = config.get("vfs_max_file_size", 200000)
    if not isinstance(max_size, int) or max_size < 1:
        issues.append("ERROR: vfs_max_file_size must be a positive integer.")

    command = config.get("install_command")
    if not isinstance(command, list) or not command:
        issues.append("ERROR: install_command must be a non-empty list.")

    return issues
