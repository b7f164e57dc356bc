"""
Manifest Schemas - Typed models for the declarative build inputs.

These models replace the raw YAML dicts read from ``config/`` and make the
plugin-source and copy-spec variants explicit:

Hierarchy:
    BuildConfig         - build-type controls (target, release, dist, vfs)
    GithubSource        - plugin fetched by git clone
    DirectorySource     - plugin copied from a local repository checkout
    PluginSource        - wrapper holding exactly one of the above
    InternalPlugin      - bare-name plugin shipped in the source tree
    ExternalPlugin      - plugin with a declared origin
    PluginManifest      - ordered ``plugins:`` list from ``plugins.yml``
    CopySpec            - one vendoring entry from ``npmInstall.yml``
    VendoringManifest   - ordered ``npmFiles:`` list
"""

from __future__ import annotations

from typing import Any, List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Build control
# ---------------------------------------------------------------------------


class BuildConfig(BaseModel):
    """The four switches that select what kind of build is produced."""

    target: str
    release: bool = False
    dist: bool = False
    vfs: bool = False

    model_config = {"extra": "ignore"}

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("target must be a non-empty string")
        return v.strip()


# ---------------------------------------------------------------------------
# Plugin descriptors
# ---------------------------------------------------------------------------


class GithubSource(BaseModel):
    """Clone coordinates for a github-hosted plugin.

    ``name`` is the repository name; it falls back to the plugin's
    ``globalName`` when omitted.
    """

    account: Optional[str] = None
    name: Optional[str] = None
    branch: Optional[str] = None
    url: Optional[str] = None

    model_config = {"extra": "forbid"}


class DirectorySource(BaseModel):
    """A plugin copied from ``<root>/<plugin name>/<cwd>``."""

    root: Optional[str] = None

    model_config = {"extra": "forbid"}


class PluginSource(BaseModel):
    """Exactly one of ``github`` or ``directory``."""

    github: Optional[GithubSource] = None
    directory: Optional[DirectorySource] = None

    model_config = {"extra": "forbid"}

    @model_validator(mode="after")
    def validate_single_kind(self) -> "PluginSource":
        kinds = [k for k in ("github", "directory") if getattr(self, k) is not None]
        if len(kinds) != 1:
            raise ValueError(
                "plugin source must declare exactly one of 'github' or "
                f"'directory', got {kinds or 'none'}"
            )
        return self

    @property
    def kind(self) -> str:
        return "github" if self.github is not None else "directory"


class InternalPlugin(BaseModel):
    """A plugin living in the source tree's internal plugins directory."""

    name: str

    def to_load_config(self) -> dict:
        return {
            "name": self.name,
            "directory": f"plugins/{self.name}",
            "disabled": False,
        }


class ExternalPlugin(BaseModel):
    """A plugin installed from github or from a local directory."""

    name: str
    global_name: Optional[str] = Field(default=None, alias="globalName")
    version: Optional[str] = None
    cwd: Optional[str] = None
    source: PluginSource

    model_config = {"extra": "allow", "populate_by_name": True}

    @field_validator("version", mode="before")
    @classmethod
    def coerce_version(cls, v: Any) -> Any:
        # YAML reads ``version: 1.0`` as a float
        if v is not None and not isinstance(v, str):
            return str(v)
        return v

    @property
    def repo_name(self) -> str:
        github = self.source.github
        return (github.name if github and github.name else None) or self.global_name or self.name

    def to_load_config(self) -> dict:
        data = self.model_dump(by_alias=True, exclude_none=True)
        data["directory"] = f"plugins/{self.name}"
        return data


PluginDescriptor = Union[InternalPlugin, ExternalPlugin]


class PluginManifest(BaseModel):
    """The ordered plugin list from ``config/plugins.yml``."""

    plugins: List[PluginDescriptor] = Field(default_factory=list)

    @field_validator("plugins", mode="before")
    @classmethod
    def parse_descriptors(cls, v: Any) -> Any:
        if v is None:
            return []
        if not isinstance(v, list):
            raise ValueError("plugins must be a list")
        parsed: List[PluginDescriptor] = []
        for item in v:
            if isinstance(item, str):
                parsed.append(InternalPlugin(name=item))
            elif isinstance(item, dict):
                parsed.append(ExternalPlugin.model_validate(item))
            else:
                raise ValueError(
                    f"plugin entries must be a name or a mapping, got {type(item).__name__}"
                )
        return parsed

    @model_validator(mode="after")
    def validate_unique_names(self) -> "PluginManifest":
        seen = set()
        for plugin in self.plugins:
            if plugin.name in seen:
                raise ValueError(f"duplicate plugin name in manifest: '{plugin.name}'")
            seen.add(plugin.name)
        return self

    def internal(self) -> List[InternalPlugin]:
        return [p for p in self.plugins if isinstance(p, InternalPlugin)]

    def github(self) -> List[ExternalPlugin]:
        return [
            p for p in self.plugins
            if isinstance(p, ExternalPlugin) and p.source.kind == "github"
        ]

    def directory(self) -> List[ExternalPlugin]:
        return [
            p for p in self.plugins
            if isinstance(p, ExternalPlugin) and p.source.kind == "directory"
        ]


# ---------------------------------------------------------------------------
# Vendoring
# ---------------------------------------------------------------------------


class CopySpec(BaseModel):
    """One ``npmFiles`` entry: which files of an installed package to vendor.

    ``dir`` is the package's top-level directory in ``node_modules`` and
    defaults to ``name``.  ``src`` is one or more glob patterns relative to
    the package directory (after descending into ``cwd``) and defaults to
    ``<name>.js``.
    """

    name: Optional[str] = None
    dir: Optional[str] = None
    cwd: Optional[List[str]] = None
    src: Optional[List[str]] = None
    standalone: bool = False

    model_config = {"extra": "forbid"}

    @field_validator("src", mode="before")
    @classmethod
    def coerce_src(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("cwd", mode="before")
    @classmethod
    def coerce_cwd(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [part for part in v.replace(",", "/").split("/") if part]
        return v

    @model_validator(mode="after")
    def validate_required(self) -> "CopySpec":
        if not (self.name or self.dir):
            raise ValueError(
                "Either the name or dir property must be provided to "
                "establish the top level directory"
            )
        if not (self.src or self.name):
            raise ValueError(
                "Either the src or name must be provided in order to have "
                "something to copy"
            )
        return self

    @property
    def package_dir(self) -> str:
        return self.dir or self.name  # type: ignore[return-value]

    @property
    def source_globs(self) -> List[str]:
        return list(self.src) if self.src else [f"{self.name}.js"]


class VendoringManifest(BaseModel):
    """The ordered ``npmFiles`` list from ``config/npmInstall.yml``."""

    npm_files: List[CopySpec] = Field(default_factory=list, alias="npmFiles")

    model_config = {"populate_by_name": True}
