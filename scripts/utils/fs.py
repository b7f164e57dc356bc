"""
Async filesystem helpers for the build stages.

Blocking ``shutil``/``pathlib`` work is pushed onto a worker thread with
``asyncio.to_thread`` so stages can fan file operations out with
``asyncio.gather`` without stalling the event loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
from pathlib import Path
from typing import Any, Iterable, List, Optional, Pattern, Union

import yaml

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# sourceMappingURL comments emitted by bundlers
JS_SOURCE_MAP_RE = re.compile(r"^\s*//[#@]\s*sourceMappingURL=.*$", re.MULTILINE)
CSS_SOURCE_MAP_RE = re.compile(r"/\*#\s*sourceMappingURL.*?\*/", re.DOTALL)


# ---------------------------------------------------------------------------
# Directory / file primitives
# ---------------------------------------------------------------------------

async def ensure_dir(path: PathLike) -> Path:
    path = Path(path)
    await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
    return path


def _is_hidden(rel: str) -> bool:
    return any(part.startswith(".") for part in rel.split("/"))


def _glob_files(root: Path, pattern: str) -> List[str]:
    # dotfiles only match patterns that name them explicitly
    dot = pattern.startswith(".") or "/." in pattern
    matches = (match.relative_to(root).as_posix() for match in root.glob(pattern) if match.is_file())
    return sorted(rel for rel in matches if dot or not _is_hidden(rel))


async def glob_files(root: PathLike, pattern: str) -> List[str]:
    """Return files under *root* matching *pattern*, relative and sorted.

    Directories are never returned, mirroring a ``nodir`` glob.  Hidden
    files and directories are skipped unless the pattern names them.
    """
    return await asyncio.to_thread(_glob_files, Path(root), pattern)


async def copy_file(src: PathLike, dest: PathLike) -> None:
    def _copy() -> None:
        Path(dest).parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dest)

    await asyncio.to_thread(_copy)


async def copy_files(src_root: PathLike, dest_root: PathLike, pattern: str = "**/*") -> List[str]:
    """Copy every file under *src_root* matching *pattern* into *dest_root*.

    Relative paths are preserved.  Returns the relative paths copied.
    """
    src_root = Path(src_root)
    dest_root = Path(dest_root)
    matches = await glob_files(src_root, pattern)
    await asyncio.gather(
        *(copy_file(src_root / rel, dest_root / rel) for rel in matches)
    )
    return matches


async def copy_tree(src: PathLike, dest: PathLike) -> None:
    await asyncio.to_thread(shutil.copytree, src, dest, dirs_exist_ok=True)


async def move(src: PathLike, dest: PathLike) -> None:
    def _move() -> None:
        Path(dest).parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(src), str(dest))

    await asyncio.to_thread(_move)


async def remove_tree(path: PathLike) -> None:
    """Remove a directory tree or file.  Missing paths are ignored."""

    def _remove() -> None:
        target = Path(path)
        if target.is_dir():
            shutil.rmtree(target)
        elif target.exists():
            target.unlink()

    await asyncio.to_thread(_remove)


async def list_dirs(path: PathLike) -> List[Path]:
    """Return the immediate subdirectories of *path*, sorted by name."""

    def _list() -> List[Path]:
        root = Path(path)
        if not root.is_dir():
            return []
        return sorted(child for child in root.iterdir() if child.is_dir())

    return await asyncio.to_thread(_list)


async def delete_matching_files(root: PathLike, pattern: Pattern[str]) -> int:
    """Delete every file below *root* whose path matches *pattern*."""

    def _delete() -> int:
        removed = 0
        for candidate in Path(root).rglob("*"):
            if candidate.is_file() and pattern.search(candidate.as_posix()):
                candidate.unlink()
                removed += 1
        return removed

    removed = await asyncio.to_thread(_delete)
    if removed:
        logger.info("Deleted %d file(s) matching %s", removed, pattern.pattern)
    return removed


# ---------------------------------------------------------------------------
# Text / structured documents
# ---------------------------------------------------------------------------

async def read_text(path: PathLike) -> str:
    return await asyncio.to_thread(Path(path).read_text, encoding="utf-8")


async def write_text(path: PathLike, contents: str) -> None:
    def _write() -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(contents, encoding="utf-8")

    await asyncio.to_thread(_write)


async def read_yaml(path: PathLike) -> Any:
    from config_loader import load_yaml

    return await asyncio.to_thread(load_yaml, path)


async def write_yaml(path: PathLike, data: Any) -> None:
    await write_text(path, yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


async def read_json(path: PathLike) -> Any:
    return json.loads(await read_text(path))


async def write_json(path: PathLike, data: Any) -> None:
    await write_text(path, json.dumps(data, indent=4))


# ---------------------------------------------------------------------------
# Source map stripping
# ---------------------------------------------------------------------------

def _strip_file(path: Path, pattern: Pattern[str]) -> bool:
    contents = path.read_text(encoding="utf-8", errors="replace")
    if not pattern.search(contents):
        return False
    path.write_text(pattern.sub("", contents), encoding="utf-8")
    return True


async def strip_source_maps(
    root: PathLike,
    suffix: str,
    exclude: Optional[Iterable[Pattern[str]]] = None,
    key_prefix: str = "",
) -> List[str]:
    """Remove ``sourceMappingURL`` comments from ``*.{suffix}`` files under *root*.

    Files whose key (``key_prefix + "/" + relative path``) matches any
    *exclude* pattern are left alone.
    Returns the relative paths that were rewritten.
    """
    root = Path(root)
    pattern = CSS_SOURCE_MAP_RE if suffix == "css" else JS_SOURCE_MAP_RE
    excluded = list(exclude or [])
    matches = await glob_files(root, f"**/*.{suffix}")
    candidates = [
        rel for rel in matches
        if not any(regex.search(f"{key_prefix}/{rel}") for regex in excluded)
    ]
    changed = await asyncio.gather(
        *(asyncio.to_thread(_strip_file, root / rel, pattern) for rel in candidates)
    )
    fixed = [rel for rel, was_changed in zip(candidates, changed) if was_changed]
    for rel in fixed:
        logger.debug("Removed source map reference from %s", rel)
    return fixed
