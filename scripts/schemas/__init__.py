"""
Pydantic schemas for the Mutant build pipeline

This package contains the typed models for every declarative input the
pipeline reads (build controls, plugin manifest, vendoring manifest).
Schemas catch malformed manifests at load time, before any stage runs
against them.
"""

from .manifests import (
    BuildConfig,
    CopySpec,
    DirectorySource,
    ExternalPlugin,
    GithubSource,
    InternalPlugin,
    PluginDescriptor,
    PluginManifest,
    PluginSource,
    VendoringManifest,
)

__all__ = [
    # Build control
    "BuildConfig",
    # Plugin descriptors
    "GithubSource",
    "DirectorySource",
    "PluginSource",
    "InternalPlugin",
    "ExternalPlugin",
    "PluginDescriptor",
    "PluginManifest",
    # Vendoring
    "CopySpec",
    "VendoringManifest",
]
