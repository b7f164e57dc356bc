"""
Release Version Verifier.

A release build is only allowed when three sources agree on the version:
the declared ``release.version`` in the merged UI config, the exact git tag
on HEAD, and a release-notes file for that version.  Non-release builds are
never checked.

Checks run in order and the first failure raises ``VersionMismatchError``:

1. the declared version is present
2. the declared version ends in ``MAJOR.MINOR.PATCH``
3. the git tag is ``vMAJOR.MINOR.PATCH``
4. the tag's numbers equal the declared version exactly
5. ``release-notes/RELEASE_NOTES_<version>.md`` exists
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional, Union

from exceptions import VersionMismatchError
from git_info import GitInfo, derive_version

logger = logging.getLogger(__name__)

DECLARED_VERSION_RE = re.compile(r"\d+\.\d+\.\d+$")
GIT_TAG_RE = re.compile(r"^v\d+\.\d+\.\d+$")


def declared_version(merged_config: Optional[Dict[str, Any]]) -> Optional[Any]:
    """Return ``release.version`` from the merged config, if any."""
    release = (merged_config or {}).get("release") or {}
    if not isinstance(release, dict):
        return None
    return release.get("version")


def release_notes_path(release_notes_dir: Union[str, Path], version: str) -> Path:
    return Path(release_notes_dir) / f"RELEASE_NOTES_{version}.md"


def verify_release(
    merged_config: Optional[Dict[str, Any]],
    git: Optional[GitInfo],
    release_notes_dir: Union[str, Path],
) -> str:
    """Run the five release checks and return the verified version.

    Raises
    ------
    VersionMismatchError
        On the first failing check, naming the mismatching values.
    """
    version = declared_version(merged_config)
    if not version or not isinstance(version, str):
        raise VersionMismatchError(
            "this is a release build, and the release version is missing."
        )

    if not DECLARED_VERSION_RE.search(version):
        raise VersionMismatchError(
            "on a release build, and the release version doesn't look like "
            f"a semver tag: {version}"
        )
    logger.info("good release version")

    tag = git.tag if git is not None else ""
    if not GIT_TAG_RE.match(tag or ""):
        raise VersionMismatchError(
            f"on a release build, and the git tag doesn't look like a semver tag: {tag!r}"
        )
    logger.info("good git tag version")

    git_version = derive_version(tag)
    if git_version != version:
        raise VersionMismatchError(
            f'Release and git versions are different; release says "{version}", '
            f'git says "{git_version}"'
        )
    logger.info("release and git agree on version %s", version)

    notes = release_notes_path(release_notes_dir, version)
    if not notes.is_file():
        raise VersionMismatchError(
            f"Release notes not found for this version {version}, but required "
            f"for a release: {notes}"
        )
    logger.info("have release notes")

    return version


def verify_version(
    release: bool,
    merged_config: Optional[Dict[str, Any]],
    git: Optional[GitInfo],
    release_notes_dir: Union[str, Path],
) -> Optional[str]:
    """Verify a release build; log and return ``None`` for any other build."""
    if not release:
        logger.info("In a non-release build, release version not checked.")
        return None
    return verify_release(merged_config, git, release_notes_dir)
