"""
Tests for plugin sourcing

Tests plugin_sourcer.py: internal / directory / github resolution,
clone command construction, archive installs, test relocation, the
plugin load config, and order-independence of installs.  ``git clone`` is
mocked at ``plugin_sourcer.run_command``.
"""

import asyncio
import io
import sys
import tarfile
import tomllib
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "scripts"))

from exceptions import SourceUnavailableError
from plugin_sourcer import PluginSourcer, build_load_config
from schemas.manifests import PluginManifest
from utils.process import CommandResult


def _files(root: Path):
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())


def _touch(path: Path, text: str = "x") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


@pytest.fixture
def env(tmp_path):
    environment = tmp_path / "work"
    _touch(environment / "plugins" / "pluginA" / "plugin.yml", "package: {}")
    _touch(environment / "plugins" / "pluginA" / "modules" / "panel.js", "define([], {});")
    _touch(environment / "plugins" / "pluginA" / "test" / "pluginA.yaml", "tests: []")
    (environment / "build" / "client" / "modules" / "plugins").mkdir(parents=True)
    return environment


@pytest.fixture
def repo_root(tmp_path):
    root = tmp_path / "repos"
    _touch(root / "pluginB" / "dist" / "plugin" / "config.yml", "name: pluginB")
    _touch(root / "pluginB" / "dist" / "plugin" / "iframe_root" / "index.html", "<html/>")
    _touch(root / "pluginB" / "src" / "ignored.js", "")
    return root


def scenario_manifest(root=None):
    directory = {"root": str(root)} if root else {}
    return PluginManifest.model_validate({
        "plugins": [
            "pluginA",
            {"name": "pluginB", "source": {"directory": directory}, "version": "1.0.0"},
        ]
    })


# ============================================================================
# Directory and internal plugins
# ============================================================================


class TestInstallScenario:
    def test_internal_and_directory_default_subpath(self, env, repo_root):
        sourcer = PluginSourcer(env, {"plugin_directory_root": str(repo_root)})
        report = asyncio.run(sourcer.install_plugins(scenario_manifest()))

        plugins = env / "build" / "client" / "modules" / "plugins"
        assert _files(plugins / "pluginA") == ["modules/panel.js", "plugin.yml"]
        assert _files(plugins / "pluginB") == _files(repo_root / "pluginB" / "dist" / "plugin")
        assert [i.name for i in report.installed] == ["pluginA", "pluginB"]
        assert report.installed[1].origin == "directory"

    def test_explicit_directory_root(self, env, repo_root):
        sourcer = PluginSourcer(env, {})
        asyncio.run(sourcer.install_plugins(scenario_manifest(repo_root)))
        assert (env / "build" / "client" / "modules" / "plugins" / "pluginB" / "config.yml").is_file()

    def test_directory_cwd_override(self, env, repo_root):
        manifest = PluginManifest.model_validate({
            "plugins": [{"name": "pluginB", "cwd": "src", "source": {"directory": {"root": str(repo_root)}}}]
        })
        asyncio.run(PluginSourcer(env, {}).install_plugins(manifest))
        plugin_dir = env / "build" / "client" / "modules" / "plugins" / "pluginB"
        assert _files(plugin_dir) == ["ignored.js"]

    def test_default_directory_root(self, env):
        sourcer = PluginSourcer(env, {})
        manifest = scenario_manifest()
        source = asyncio.run(sourcer.resolve_source(manifest.plugins[1]))
        assert source == Path("/kb/plugins/pluginB/dist/plugin")

    def test_missing_source_directory(self, env, tmp_path):
        sourcer = PluginSourcer(env, {"plugin_directory_root": str(tmp_path / "nowhere")})
        with pytest.raises(SourceUnavailableError, match="pluginB"):
            asyncio.run(sourcer.install_plugins(scenario_manifest()))

    def test_order_independent(self, tmp_path, repo_root):
        results = []
        for order, label in ((["pluginA", "pluginB"], "one"), (["pluginB", "pluginA"], "two")):
            environment = tmp_path / label
            _touch(environment / "plugins" / "pluginA" / "plugin.yml", "package: {}")
            _touch(environment / "plugins" / "pluginA" / "test" / "t.yaml", "tests: []")
            entries = {
                "pluginA": "pluginA",
                "pluginB": {"name": "pluginB", "source": {"directory": {"root": str(repo_root)}}},
            }
            manifest = PluginManifest.model_validate({"plugins": [entries[name] for name in order]})
            asyncio.run(PluginSourcer(environment, {}).install_plugins(manifest))
            results.append((
                _files(environment / "build" / "client" / "modules" / "plugins"),
                _files(environment / "test"),
            ))
        assert results[0] == results[1]


# ============================================================================
# Test relocation
# ============================================================================


class TestRelocateTests:
    def test_tests_moved_not_copied(self, env, repo_root):
        report = asyncio.run(
            PluginSourcer(env, {}).install_plugins(scenario_manifest(repo_root))
        )
        moved = env / "test" / "integration-tests" / "specs" / "plugins" / "pluginA"
        assert (moved / "pluginA.yaml").is_file()
        assert not (env / "build" / "client" / "modules" / "plugins" / "pluginA" / "test").exists()
        assert report.with_tests == ["pluginA"]
        assert report.without_tests == ["pluginB"]

    def test_plugin_without_tests_is_warned(self, env, repo_root, caplog):
        with caplog.at_level("WARNING"):
            asyncio.run(PluginSourcer(env, {}).install_plugins(scenario_manifest(repo_root)))
        assert "plugin without tests: pluginB" in caplog.text

    def test_merges_into_existing_specs_dir(self, env, repo_root):
        existing = env / "test" / "integration-tests" / "specs" / "plugins" / "pluginA"
        _touch(existing / "shared.yaml", "tests: []")
        asyncio.run(PluginSourcer(env, {}).install_plugins(scenario_manifest(repo_root)))
        assert _files(existing) == ["pluginA.yaml", "shared.yaml"]
        assert not (env / "build" / "client" / "modules" / "plugins" / "pluginA" / "test").exists()


# ============================================================================
# Github plugins
# ============================================================================


def github_manifest(**github):
    return PluginManifest.model_validate({
        "plugins": [{
            "name": "catalog",
            "globalName": "kbase-ui-plugin-catalog",
            "version": "2.0.1",
            "source": {"github": github},
        }]
    })


def _dist_archive(dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(dest, "w:gz") as tar:
        for name, text in (("dist/plugin/config.yml", "name: catalog"),
                           ("dist/plugin/test/catalog.yaml", "tests: []")):
            data = text.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))


class TestGithubPlugins:
    def test_clone_command_uses_version_branch(self, env):
        sourcer = PluginSourcer(env, {})
        plugin = github_manifest().plugins[0]
        assert sourcer.clone_command(plugin) == [
            "git", "clone", "--quiet", "--depth", "1",
            "--branch", "v2.0.1",
            "https://github.com/kbase/kbase-ui-plugin-catalog",
            str(env / "gitDownloads" / "catalog"),
        ]

    def test_explicit_branch_account_and_repo(self, env):
        sourcer = PluginSourcer(env, {})
        plugin = github_manifest(account="eapearson", name="catalog-repo", branch="develop").plugins[0]
        command = sourcer.clone_command(plugin)
        assert command[command.index("--branch") + 1] == "develop"
        assert "https://github.com/eapearson/catalog-repo" in command

    def test_explicit_url(self, env):
        plugin = github_manifest(url="https://example.org/x.git").plugins[0]
        assert PluginSourcer(env, {}).github_url(plugin) == "https://example.org/x.git"

    def test_no_version_uses_remote_default(self, env):
        manifest = PluginManifest.model_validate({
            "plugins": [{"name": "p", "globalName": "g", "source": {"github": {}}}]
        })
        assert "--branch" not in PluginSourcer(env, {}).clone_command(manifest.plugins[0])

    def test_fetch_and_install_from_archive(self, env):
        calls = []

        async def fake_run(command, cwd=None, timeout=None):
            calls.append(command)
            _dist_archive(Path(command[-1]) / "dist.tgz")
            return CommandResult(command=list(command), returncode=0)

        sourcer = PluginSourcer(env, {})
        manifest = github_manifest()
        with patch("plugin_sourcer.run_command", new=fake_run):
            asyncio.run(sourcer.fetch_github_plugins(manifest))
        report = asyncio.run(sourcer.install_plugins(manifest))

        assert len(calls) == 1
        plugin_dir = env / "build" / "client" / "modules" / "plugins" / "catalog"
        assert (plugin_dir / "config.yml").read_text() == "name: catalog"
        assert "catalog" in report.with_tests
        assert (env / "test" / "integration-tests" / "specs" / "plugins" / "catalog" / "catalog.yaml").is_file()

    def test_install_from_cwd_without_archive(self, env):
        _touch(env / "gitDownloads" / "catalog" / "build" / "plugin" / "config.yml")
        manifest = PluginManifest.model_validate({
            "plugins": [{"name": "catalog", "cwd": "build/plugin", "source": {"github": {}}}]
        })
        asyncio.run(PluginSourcer(env, {}).install_plugins(manifest))
        assert (env / "build" / "client" / "modules" / "plugins" / "catalog" / "config.yml").is_file()

    def test_declared_python_supports_extraction_filter(self):
        pyproject = Path(__file__).resolve().parent.parent / "pyproject.toml"
        with open(pyproject, "rb") as fh:
            requires = tomllib.load(fh)["project"]["requires-python"]
        assert requires == ">=3.12"
        assert hasattr(tarfile, "data_filter")

    def test_archive_preferred_over_cwd(self, env):
        download = env / "gitDownloads" / "catalog"
        _dist_archive(download / "dist.tgz")
        _touch(download / "build" / "plugin" / "from-cwd.yml")
        manifest = PluginManifest.model_validate({
            "plugins": [{"name": "catalog", "cwd": "build/plugin", "source": {"github": {}}}]
        })
        asyncio.run(PluginSourcer(env, {}).install_plugins(manifest))
        plugin_dir = env / "build" / "client" / "modules" / "plugins" / "catalog"
        assert _files(plugin_dir) == ["config.yml"]

    def test_no_install_method(self, env):
        (env / "gitDownloads" / "catalog").mkdir(parents=True)
        with pytest.raises(SourceUnavailableError, match="install method"):
            asyncio.run(PluginSourcer(env, {}).install_plugins(github_manifest()))

    def test_clone_failure_propagates(self, env):
        from exceptions import CommandError

        async def failing_run(command, cwd=None, timeout=None):
            raise CommandError("clone failed", command=command, returncode=128)

        with patch("plugin_sourcer.run_command", new=failing_run):
            with pytest.raises(CommandError):
                asyncio.run(PluginSourcer(env, {}).fetch_github_plugins(github_manifest()))


# ============================================================================
# Plugin load config
# ============================================================================


class TestLoadConfig:
    def test_build_load_config(self):
        load_config = build_load_config(scenario_manifest())
        assert load_config["plugins"]["pluginA"] == {
            "name": "pluginA", "directory": "plugins/pluginA", "disabled": False,
        }
        assert load_config["plugins"]["pluginB"]["directory"] == "plugins/pluginB"
        assert load_config["plugins"]["pluginB"]["version"] == "1.0.0"
        assert load_config["plugins"]["pluginB"]["source"] == {"directory": {}}

    def test_global_name_kept_camel_case(self):
        entry = build_load_config(github_manifest())["plugins"]["catalog"]
        assert entry["globalName"] == "kbase-ui-plugin-catalog"

    def test_write_load_config(self, env):
        path = env / "build" / "client" / "modules" / "config" / "plugin.yml"
        asyncio.run(PluginSourcer(env, {}).write_load_config(scenario_manifest(), path))
        assert list(yaml.safe_load(path.read_text())["plugins"]) == ["pluginA", "pluginB"]
