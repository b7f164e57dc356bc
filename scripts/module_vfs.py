"""
Module Virtual Filesystem (VFS) Builder.

Bundles the finished ``client/modules`` tree into one generated script,
``client/moduleVfs.js``, so the deployed app can resolve modules and
resources without a network fetch per file::

    window.require_modules = {"/modules/a.js": function () { ... }, ...};
    window.require_resources = {"json": {...}, "text": {...}, "css": {...}}

Classification by extension:

- ``js``                 -> scripts table, source wrapped in a thunk
- ``yaml``/``yml``/``json`` -> parsed into ``resources.json`` under the base path
- ``text``/``txt``       -> ``resources.text`` verbatim
- ``css``                -> ``resources.css`` verbatim, unless it uses
  ``@import`` or ``@font-face``
- anything else, files without an extension and files of
  ``max_file_size`` bytes or more are skipped (they stay in the physical tree)

Unparseable resources and json-map base-name collisions are reported as
``ResourceParseWarning``: logged and skipped by default, fatal when
``strict_resources`` is set.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Pattern, Tuple, Union

import yaml

from exceptions import ResourceParseWarning
from utils import fs

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = frozenset(["js", "yaml", "yml", "json", "text", "txt", "css"])
EXTENSION_RE = re.compile(r"^(.*)\.([^./]+)$")
CSS_EXCEPTIONS = (re.compile(r"@import"), re.compile(r"@font-face"))
PROTECTED_PATHS = (re.compile(r"/modules/plugins/.*?/iframe_root/"),)
RUNTIME_CONFIG_PATH = "/modules/deploy/config.json"
MAX_FILE_SIZE = 200000


# ============================================================================
# Resource variants
# ============================================================================


@dataclass(frozen=True)
class ScriptResource:
    path: str
    source: str


@dataclass(frozen=True)
class JsonResource:
    path: str
    base: str
    value: Any


@dataclass(frozen=True)
class TextResource:
    path: str
    base: str
    text: str


@dataclass(frozen=True)
class CssResource:
    path: str
    base: str
    text: str


@dataclass(frozen=True)
class SkippedResource:
    """A file left out of the VFS; ``reason`` is the report bucket."""

    path: str
    reason: str


# ============================================================================
# VFS + report
# ============================================================================


@dataclass
class ModuleVfs:
    scripts: Dict[str, str] = field(default_factory=dict)
    resources: Dict[str, Dict[str, Any]] = field(
        default_factory=lambda: {"json": {}, "text": {}, "css": {}}
    )

    def render(self) -> str:
        """Return the ``moduleVfs.js`` source."""
        modules = "{" + ", \n".join(
            f"{json.dumps(path)}: {thunk}" for path, thunk in self.scripts.items()
        ) + "}"
        return ";\n".join([
            "window.require_modules = " + modules,
            "window.require_resources = " + json.dumps(self.resources, indent=4, default=str),
        ])


@dataclass
class VfsReport:
    """Per-bucket counts of skipped and included files."""

    skipped: Counter = field(default_factory=Counter)
    included: Counter = field(default_factory=Counter)
    warnings: List[ResourceParseWarning] = field(default_factory=list)

    @staticmethod
    def ranked(counts: Counter) -> List[Tuple[str, int]]:
        return sorted(counts.items(), key=lambda item: (-item[1], item[0]))

    def log(self) -> None:
        logger.info("vfs created")
        logger.info("skipped:")
        for key, count in self.ranked(self.skipped):
            logger.info("  %s: %d", key, count)
        logger.info("included:")
        for key, count in self.ranked(self.included):
            logger.info("  %s: %d", key, count)


# ============================================================================
# Classification
# ============================================================================


def split_extension(path: str) -> Optional[Tuple[str, str]]:
    """Return ``(base, ext)`` for *path*, or ``None`` without an extension."""
    match = EXTENSION_RE.match(path)
    if not match:
        return None
    return match.group(1), match.group(2)


def _parse_structured(ext: str, contents: str) -> Any:
    if ext == "json":
        return json.loads(contents)
    return yaml.safe_load(contents)


def classify(path: str, ext: str, base: str, contents: str) -> Any:
    """Turn one file's contents into a resource variant.

    Raises
    ------
    ResourceParseWarning
        If a json/yaml resource cannot be parsed.
    """
    if ext == "js":
        return ScriptResource(path=path, source=contents)
    if ext in ("yaml", "yml", "json"):
        try:
            value = _parse_structured(ext, contents)
        except (ValueError, yaml.YAMLError) as exc:
            raise ResourceParseWarning(
                f"Error parsing {ext} file: {path}: {exc}", path=path
            ) from exc
        return JsonResource(path=path, base=base, value=value)
    if ext in ("text", "txt"):
        return TextResource(path=path, base=base, text=contents)
    if ext == "css":
        if any(regex.search(contents) for regex in CSS_EXCEPTIONS):
            return SkippedResource(path=path, reason="css excluded")
        return CssResource(path=path, base=base, text=contents)
    return SkippedResource(path=path, reason=ext)


# ============================================================================
# Builder
# ============================================================================


class ModuleVfsBuilder:
    """Build the module VFS for one ``client`` directory.

    Parameters
    ----------
    client_dir : str | Path
        The ``client`` directory whose ``modules`` tree is bundled.
    max_file_size : int
        Files of this many bytes or more are left out.
    strict_resources : bool
        Raise ``ResourceParseWarning`` instead of skipping the file.
    exclude : iterable of compiled regex
        Key patterns excluded from the VFS (iframe plugin roots by default).
    """

    def __init__(
        self,
        client_dir: Union[str, Path],
        max_file_size: int = MAX_FILE_SIZE,
        strict_resources: bool = False,
        exclude: Optional[Iterable[Pattern[str]]] = None,
    ):
        self.client_dir = Path(client_dir)
        self.modules_dir = self.client_dir / "modules"
        self.max_file_size = max_file_size
        self.strict_resources = strict_resources
        self.exclude = list(exclude) if exclude is not None else list(PROTECTED_PATHS)

    def _recover(self, warning: ResourceParseWarning, report: VfsReport) -> None:
        if self.strict_resources:
            raise warning
        logger.warning("%s", warning)
        report.warnings.append(warning)
        report.skipped["error"] += 1

    def _load(self, rel: str) -> Any:
        """Read and classify one file (runs on a worker thread)."""
        path = "/modules/" + rel
        if path == RUNTIME_CONFIG_PATH or any(regex.search(path) for regex in self.exclude):
            return SkippedResource(path=path, reason="excluded")

        split = split_extension(rel)
        if split is None:
            logger.warning("module vfs cannot include file without extension: %s", path)
            return SkippedResource(path=path, reason="no extension")
        base, ext = split
        base = "/modules/" + base
        if ext not in SUPPORTED_EXTENSIONS:
            return SkippedResource(path=path, reason=ext)

        file_path = self.modules_dir / rel
        size = file_path.stat().st_size
        if size >= self.max_file_size:
            logger.warning(
                "omitting file from bundle because too big (%d bytes): %s", size, path
            )
            return SkippedResource(path=path, reason="toobig")

        try:
            contents = file_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            return ResourceParseWarning(f"Error decoding {path}: {exc}", path=path)
        try:
            return classify(path, ext, base, contents)
        except ResourceParseWarning as warning:
            return warning

    def _fold(self, vfs: ModuleVfs, resource: Any, report: VfsReport) -> None:
        if isinstance(resource, ResourceParseWarning):
            self._recover(resource, report)
        elif isinstance(resource, SkippedResource):
            report.skipped[resource.reason] += 1
        elif isinstance(resource, ScriptResource):
            vfs.scripts[resource.path] = "function () { " + resource.source + " }"
            report.included["js"] += 1
        elif isinstance(resource, JsonResource):
            if resource.base in vfs.resources["json"]:
                self._recover(
                    ResourceParseWarning(
                        f"duplicate entry for json detected: {resource.path}",
                        path=resource.path,
                    ),
                    report,
                )
                return
            vfs.resources["json"][resource.base] = resource.value
            report.included[resource.path.rsplit(".", 1)[-1]] += 1
        elif isinstance(resource, TextResource):
            vfs.resources["text"][resource.base] = resource.text
            report.included[resource.path.rsplit(".", 1)[-1]] += 1
        elif isinstance(resource, CssResource):
            vfs.resources["css"][resource.base] = resource.text
            report.included["css"] += 1
        else:
            raise TypeError(f"Unhandled VFS resource: {resource!r}")

    async def collect(self) -> Tuple[ModuleVfs, VfsReport]:
        """Read every module file concurrently and fold in sorted path order."""
        rels = await fs.glob_files(self.modules_dir, "**/*")
        loaded = await asyncio.gather(
            *(asyncio.to_thread(self._load, rel) for rel in rels)
        )

        vfs = ModuleVfs()
        report = VfsReport()
        for resource in loaded:
            self._fold(vfs, resource, report)
        return vfs, report

    async def build(self, dest: Optional[Union[str, Path]] = None) -> VfsReport:
        """Write ``moduleVfs.js`` (default ``<client_dir>/moduleVfs.js``)."""
        vfs, report = await self.collect()
        report.log()
        dest = Path(dest) if dest is not None else self.client_dir / "moduleVfs.js"
        await fs.write_text(dest, vfs.render())
        logger.info(
            "Wrote %s: %d scripts, %d json, %d text, %d css",
            dest,
            len(vfs.scripts),
            len(vfs.resources["json"]),
            len(vfs.resources["text"]),
            len(vfs.resources["css"]),
        )
        return report
