"""
Git Provenance Reader.

Collects the commit, branch and tag metadata stamped into every build's
``buildInfo``.  All git interaction goes through ``GitInfoReader._run_git``
so the textual-output parsing in ``parse_git_info`` can be tested without a
repository.

Usage::

    reader = GitInfoReader("/path/to/checkout")
    info = asyncio.run(reader.read(release=False))
    info.version   # "3.2.1" when HEAD is tagged v3.2.1, else None
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from exceptions import CommandError, VersionMismatchError
from utils.process import run_command

logger = logging.getLogger(__name__)

# hash, abbreviated hash, author name, author time, committer name, commit time
GIT_LOG_FORMAT = "%H%n%h%n%an%n%at%n%cn%n%ct"

RELEASE_TAG_RE = re.compile(r"^v(\d+)\.(\d+)\.(\d+)$")


@dataclass
class GitInfo:
    """Provenance of the commit a build was produced from.

    Attributes
    ----------
    author_date, committer_date : str
        ISO-8601 UTC timestamps derived from git's unix seconds.
    origin_url : str
        ``remote.origin.url`` with any trailing ``.git`` removed.
    tag : str
        Exact-match tag on HEAD, or ``""`` when HEAD is untagged.
    version : str | None
        ``MAJOR.MINOR.PATCH`` derived from a ``vX.Y.Z`` tag, else ``None``.
    """

    commit_hash: str
    commit_abbreviated_hash: str
    author_name: str
    author_date: str
    committer_name: str
    committer_date: str
    subject: str = ""
    commit_notes: str = ""
    origin_url: str = ""
    branch: str = ""
    tag: str = ""
    version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize with the camelCase keys the client reads."""
        return {
            "commitHash": self.commit_hash,
            "commitAbbreviatedHash": self.commit_abbreviated_hash,
            "authorName": self.author_name,
            "authorDate": self.author_date,
            "committerName": self.committer_name,
            "committerDate": self.committer_date,
            "subject": self.subject,
            "commitNotes": self.commit_notes,
            "originUrl": self.origin_url,
            "branch": self.branch,
            "tag": self.tag,
            "version": self.version,
        }


def derive_version(tag: str) -> Optional[str]:
    """Return ``X.Y.Z`` for a strict ``vX.Y.Z`` tag, otherwise ``None``."""
    match = RELEASE_TAG_RE.match(tag or "")
    if not match:
        return None
    return ".".join(match.groups())


def _iso_from_unix(seconds: str) -> str:
    stamp = datetime.fromtimestamp(int(seconds), tz=timezone.utc)
    return stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{stamp.microsecond // 1000:03d}Z"


def _strip_git_suffix(url: str) -> str:
    url = url.strip()
    if url.endswith(".git"):
        url = url[:-4]
    return url


def parse_git_info(
    log_output: str,
    subject: str = "",
    notes: str = "",
    origin_url: str = "",
    branch: str = "",
    tag: str = "",
) -> GitInfo:
    """Build a ``GitInfo`` from raw git output.

    ``log_output`` is the result of ``git log -1`` with ``GIT_LOG_FORMAT``.

    Raises
    ------
    ValueError
        If ``log_output`` does not hold the six expected lines.
    """
    lines = log_output.strip("\n").splitlines()
    if len(lines) < 6:
        raise ValueError(
            f"Unexpected git log output: expected 6 lines, got {len(lines)}"
        )

    tag = tag.strip()
    return GitInfo(
        commit_hash=lines[0].strip(),
        commit_abbreviated_hash=lines[1].strip(),
        author_name=lines[2].strip(),
        author_date=_iso_from_unix(lines[3].strip()),
        committer_name=lines[4].strip(),
        committer_date=_iso_from_unix(lines[5].strip()),
        subject=subject.strip("\n"),
        commit_notes=notes.strip("\n"),
        origin_url=_strip_git_suffix(origin_url),
        branch=branch.strip(),
        tag=tag,
        version=derive_version(tag),
    )


class GitInfoReader:
    """Read provenance for the checkout at ``repo_path``."""

    def __init__(self, repo_path: Union[str, Path] = "."):
        self.repo_path = Path(repo_path)

    async def _run_git(self, args: List[str]) -> str:
        """Run a git command and return stdout.

        Raises
        ------
        CommandError
            If git is not installed or the command exits with non-zero status.
        """
        result = await run_command(["git"] + args, cwd=self.repo_path)
        return result.stdout

    async def read_tag(self, release: bool) -> str:
        """Return the exact-match tag on HEAD.

        An untagged HEAD yields ``""`` for ordinary builds; release builds
        require the tag.

        Raises
        ------
        VersionMismatchError
            If this is a release build and HEAD carries no tag.
        """
        try:
            return (await self._run_git(["describe", "--exact-match", "--tags", "HEAD"])).strip()
        except CommandError as exc:
            if release:
                raise VersionMismatchError(
                    "This is a release build, a semver tag is required"
                ) from exc
            logger.info("Not on a tag, but that is ok since this is not a release build")
            logger.info("version will be unavailable in the ui")
            return ""

    async def read(self, release: bool = False) -> GitInfo:
        """Collect provenance for HEAD."""
        log_output, subject, notes, origin_url, branch = await asyncio.gather(
            self._run_git(["log", "-1", f"--pretty=format:{GIT_LOG_FORMAT}"]),
            self._run_git(["log", "-1", "--pretty=%s"]),
            self._run_git(["log", "-1", "--pretty=%N"]),
            self._run_git(["config", "--get", "remote.origin.url"]),
            self._run_git(["rev-parse", "--abbrev-ref", "HEAD"]),
        )
        tag = await self.read_tag(release)

        info = parse_git_info(
            log_output,
            subject=subject,
            notes=notes,
            origin_url=origin_url,
            branch=branch,
            tag=tag,
        )
        logger.info(
            "Git: %s on %s (tag=%s, version=%s)",
            info.commit_abbreviated_hash, info.branch, info.tag or "-", info.version,
        )
        return info
