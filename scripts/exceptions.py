#!/usr/bin/env python3
"""
Mutant Build Exceptions Module

Custom exception classes for the build pipeline.
Centralized exception definitions for consistent error handling.
"""

__all__ = [
    "BuildError",
    "UsageError",
    "ConfigError",
    "SourceUnavailableError",
    "VersionMismatchError",
    "ResourceParseWarning",
    "CommandError",
]


class BuildError(Exception):
    """Base exception for all build pipeline errors"""
    pass


class UsageError(BuildError):
    """Raised when the build is invoked with a missing or unknown build type"""
    pass


class ConfigError(BuildError):
    """Raised when a manifest or config file is malformed or incomplete"""
    pass


class SourceUnavailableError(BuildError):
    """Raised when a plugin or vendored package has no viable source"""
    pass


class VersionMismatchError(BuildError):
    """Raised when a release build fails version/tag/release-notes checks"""
    pass


class ResourceParseWarning(BuildError):
    """Raised for a single unusable module VFS resource.

    Recovered locally by the VFS builder unless strict resources are enabled.
    """

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path


class CommandError(BuildError):
    """Raised when a subprocess (git, tar, installer) fails or times out"""

    def __init__(self, message: str, command=None, returncode=None, stderr: str = ""):
        super().__init__(message)
        self.command = list(command or [])
        self.returncode = returncode
        self.stderr = stderr
