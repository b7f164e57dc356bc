"""
Tests for the concrete build stages

Tests pipeline/stages.py stage by stage against a real working tree, then
runs complete dev and prod builds through ``run_build`` with the installer
(``vendoring.run_command``) and git (``GitInfoReader._run_git``) mocked.
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "scripts"))

from config_loader import get_default_config
from exceptions import UsageError, VersionMismatchError
from git_info import GitInfoReader
from pipeline.orchestrator import PipelineOrchestrator, create_initial_state, run_build
from pipeline.protocol import BuildState
from pipeline.stages import (
    AddCacheBustingStage,
    CleanupStage,
    CreateBuildInfoStage,
    FixupBaseBuildStage,
    MakeDeployConfigStage,
    MakeDistBuildStage,
    MakeUiConfigStage,
    SetupBuildStage,
    render_template,
)
from schemas.manifests import BuildConfig
from utils.process import CommandResult

LOG_OUTPUT = "\n".join(["f" * 40, "fffffff", "Alice", "1577836800", "Bob", "1577836800"])


def _touch(path: Path, text: str = "") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


def _yaml(path: Path, data) -> Path:
    return _touch(path, yaml.safe_dump(data))


def make_state(env: Path, source_root: Path, **switches) -> BuildState:
    return BuildState(
        environment=env,
        source_root=source_root,
        build_config=BuildConfig(target="dev", **switches),
        config=dict(get_default_config(), target="dev", **switches),
        stats={"start": 0, "phase_timings": {}},
    )


def fake_git(tag="v1.2.3\n"):
    responses = {
        "log -1 --pretty=format:": LOG_OUTPUT,
        "log -1 --pretty=%s": "Release 1.2.3\n",
        "log -1 --pretty=%N": "",
        "config --get remote.origin.url": "https://github.com/kbase/kbase-ui.git\n",
        "rev-parse --abbrev-ref HEAD": "main\n",
        "describe --exact-match --tags HEAD": tag,
    }

    async def _run_git(self, args):
        key = " ".join(args)
        for prefix, value in responses.items():
            if key.startswith(prefix):
                return value
        raise AssertionError(f"unexpected git call: {key}")

    return _run_git


async def fake_installer(command, cwd=None, timeout=None):
    _touch(Path(cwd) / "node_modules" / "require" / "require.js", "var requirejs = function () {};\n")
    return CommandResult(command=list(command), returncode=0, stderr="warning: no license\n")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("UI_BUILD_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    config = root / "config"
    _yaml(config / "build" / "defaults.yml", {"keep_work_dir": False})
    _yaml(config / "build" / "configs" / "dev.yml", {"target": "dev"})
    _yaml(
        config / "build" / "configs" / "prod.yml",
        {"target": "prod", "release": True, "dist": True, "vfs": True},
    )
    _yaml(config / "plugins.yml", {"plugins": ["pluginA"]})
    _yaml(config / "npmInstall.yml", {"npmFiles": [{"name": "require", "standalone": True}]})
    _yaml(config / "release.yml", {"release": {"version": "1.2.3"}})
    _yaml(config / "deploy" / "ci.yml", {"services": {"url": "https://ci.kbase.us"}})

    client = root / "src" / "client"
    _touch(client / "index.html", "<script src=\"app.js?v={{ buildInfo.builtAt }}\"></script>\n")
    _touch(client / "load-narrative.html", "<p>{{ buildConfig.target }}</p>\n")
    _touch(
        client / "build-info.js.txt",
        "window.__build__ = {hash: '{{ git.commitAbbreviatedHash }}', target: '{{ target }}'};\n",
    )
    _touch(client / "modules" / "app" / "main.js", "var answer = 40 + 2;\n//# sourceMappingURL=main.js.map\n")
    _touch(client / "modules" / "app" / "style.css", ".a { color: red; }\n/*# sourceMappingURL=style.css.map */")
    _touch(client / "modules" / ".DS_Store", "junk")

    _touch(root / "src" / "plugins" / "pluginA" / "plugin.yml", "package:\n  name: pluginA\n")
    _touch(root / "src" / "plugins" / "pluginA" / "modules" / "panel.js", "var panel = 1;\n")
    _touch(root / "src" / "plugins" / "pluginA" / "test" / "pluginA.yaml", "tests: []\n")
    _touch(root / "src" / "test" / "integration-tests" / "specs" / "core.yaml", "tests: []\n")

    _touch(root / "package.json", json.dumps({
        "name": "ui",
        "dependencies": {"requirejs": "^2.3.6"},
        "devDependencies": {"karma": "^6.0.0"},
    }))
    _touch(root / "release-notes" / "RELEASE_NOTES_1.2.3.md", "# 1.2.3\n")
    return root


def run(build_type, project, tag="v1.2.3\n"):
    with patch("vendoring.run_command", new=fake_installer), \
            patch.object(GitInfoReader, "_run_git", new=fake_git(tag)):
        return asyncio.run(run_build(build_type, project))


# ============================================================================
# Templates
# ============================================================================


class TestRenderTemplate:
    def test_nested_lookup(self):
        assert render_template("{{ a.b }}", {"a": {"b": 7}}) == "7"

    def test_missing_values_render_empty(self):
        assert render_template("[{{ a.b.c }}]", {}) == "[]"

    def test_trailing_newline_kept(self):
        assert render_template("x\n", {}) == "x\n"

    def test_values_html_escaped(self):
        rendered = render_template(
            "var s = '{{ git.subject }}';",
            {"git": {"subject": "Fix user's <b> & stuff"}},
        )
        assert rendered == "var s = 'Fix user&#39;s &lt;b&gt; &amp; stuff';"


# ============================================================================
# Individual stages
# ============================================================================


class TestSetupBuildStage:
    def test_reorganizes_tree(self, project, tmp_path):
        state = asyncio.run(create_initial_state("dev", project))
        result = asyncio.run(SetupBuildStage().execute(state))
        env = result.state.environment

        assert (env / "build" / "client" / "index.html").is_file()
        assert (env / "build" / "package.json").is_file()
        assert (env / "plugins" / "pluginA" / "plugin.yml").is_file()
        assert (env / "test" / "integration-tests" / "specs" / "core.yaml").is_file()
        assert not (env / "src").exists()
        assert not (env / "build" / "client" / "modules" / ".DS_Store").exists()

        load_config = yaml.safe_load(
            (env / "build" / "client" / "modules" / "config" / "plugin.yml").read_text()
        )
        assert load_config["plugins"]["pluginA"]["directory"] == "plugins/pluginA"
        assert result.state.steps == ["setup_build"]


class TestCreateBuildInfoStage:
    def test_build_info_composed(self, tmp_path):
        state = make_state(tmp_path / "work", tmp_path)
        with patch.object(GitInfoReader, "_run_git", new=fake_git()):
            result = asyncio.run(CreateBuildInfoStage().execute(state))
        info = result.state.build_info
        assert info["target"] == "dev"
        assert info["hostInfo"] is None
        assert info["git"]["version"] == "1.2.3"
        assert isinstance(info["builtAt"], int)
        written = yaml.safe_load(
            (tmp_path / "work" / "build" / "client" / "modules" / "config" / "buildInfo.yml").read_text()
        )
        assert written["buildInfo"]["git"]["commitAbbreviatedHash"] == "fffffff"

    def test_later_stages_do_not_touch_build_info(self, tmp_path):
        state = make_state(tmp_path / "work", tmp_path)
        pipeline = PipelineOrchestrator([CreateBuildInfoStage(), CleanupStage()])
        with patch.object(GitInfoReader, "_run_git", new=fake_git()):
            final = asyncio.run(pipeline.run(state))

        assert final.build_info["stats"]["phase_timings"] == {}
        assert set(final.stats["phase_timings"]) == {"create_build_info", "cleanup", "_total"}
        written = yaml.safe_load(
            (final.modules_dir / "config" / "buildInfo.yml").read_text()
        )
        assert written["buildInfo"]["stats"] == final.build_info["stats"]


class TestMakeUiConfigStage:
    def test_merges_and_renders(self, tmp_path):
        state = make_state(tmp_path / "work", tmp_path)
        state.build_info = {"target": "dev", "git": {"commitAbbreviatedHash": "abc1234"}}
        config_dir = state.modules_dir / "config"
        _yaml(config_dir / "ui.yml", {"release": {"version": "1.2.3"}})
        _yaml(config_dir / "buildInfo.yml", {"buildInfo": state.build_info})
        _touch(state.client_dir / "build-info.js.txt", "hash='{{ git.commitAbbreviatedHash }}'")

        asyncio.run(MakeUiConfigStage().execute(state))

        merged = json.loads((config_dir / "config.json").read_text())
        assert merged["release"]["version"] == "1.2.3"
        assert merged["buildInfo"]["target"] == "dev"
        assert not (config_dir / "ui.yml").exists()
        assert not (config_dir / "buildInfo.yml").exists()
        assert (state.client_dir / "build-info.js").read_text() == "hash='abc1234'"
        assert not (state.client_dir / "build-info.js.txt").exists()
        assert (state.modules_dir / "deploy").is_dir()


class TestMakeDeployConfigStage:
    def test_yaml_to_json(self, tmp_path):
        state = make_state(tmp_path / "work", tmp_path)
        _yaml(state.environment / "config" / "deploy" / "ci.yml", {"a": 1})
        _yaml(state.environment / "config" / "deploy" / "prod.yml", {"a": 2})
        result = asyncio.run(MakeDeployConfigStage().execute(state))
        cfg = state.build_dir / "deploy" / "cfg"
        assert json.loads((cfg / "ci.json").read_text()) == {"a": 1}
        assert json.loads((cfg / "prod.json").read_text()) == {"a": 2}
        assert result.metadata["deploy_configs"] == ["ci", "prod"]


class TestAddCacheBustingStage:
    def test_renders_with_state(self, tmp_path):
        state = make_state(tmp_path / "work", tmp_path)
        state.build_info = {"builtAt": 1234}
        _touch(state.client_dir / "index.html", "v={{ buildInfo.builtAt }}")
        _touch(state.client_dir / "load-narrative.html", "t={{ buildConfig.target }}")
        asyncio.run(AddCacheBustingStage().execute(state))
        assert (state.client_dir / "index.html").read_text() == "v=1234"
        assert (state.client_dir / "load-narrative.html").read_text() == "t=dev"


class TestFixupBaseBuildStage:
    def test_iframe_roots_untouched(self, tmp_path):
        state = make_state(tmp_path / "work", tmp_path)
        mapped = ".a{}\n/*# sourceMappingURL=a.css.map */"
        plain = _touch(state.modules_dir / "plugins" / "p" / "style.css", mapped)
        iframe = _touch(state.modules_dir / "plugins" / "q" / "iframe_root" / "style.css", mapped)
        asyncio.run(FixupBaseBuildStage().execute(state))
        assert "sourceMappingURL" not in plain.read_text()
        assert iframe.read_text() == mapped


class TestMakeDistBuildStage:
    def test_minifies_except_iframe_roots(self, tmp_path):
        state = make_state(tmp_path / "work", tmp_path, dist=True)
        source = "function add(first, second) {\n    // sum\n    return first + second;\n}\n"
        _touch(state.modules_dir / "app" / "add.js", source)
        _touch(state.modules_dir / "plugins" / "q" / "iframe_root" / "add.js", source)

        asyncio.run(MakeDistBuildStage().execute(state))

        dist_modules = state.environment / "dist" / "client" / "modules"
        minified = (dist_modules / "app" / "add.js").read_text()
        assert "// sum" not in minified
        assert len(minified) < len(source)
        assert (dist_modules / "plugins" / "q" / "iframe_root" / "add.js").read_text() == source
        assert (state.output_dir / "dist" / "client" / "modules" / "app" / "add.js").read_text() == minified
        assert (state.modules_dir / "app" / "add.js").read_text() == source

    def test_skipped_for_non_dist(self, tmp_path):
        assert MakeDistBuildStage().should_run(make_state(tmp_path, tmp_path)) is False


# ============================================================================
# End-to-end
# ============================================================================


class TestRunBuild:
    def test_dev_build(self, project):
        final = run("dev", project)

        out = project / "build"
        client = out / "build" / "client"
        assert (client / "modules" / "plugins" / "pluginA" / "plugin.yml").is_file()
        assert (client / "modules" / "require" / "require.js").is_file()
        assert (out / "test" / "integration-tests" / "specs" / "plugins" / "pluginA" / "pluginA.yaml").is_file()
        assert not (client / "modules" / "plugins" / "pluginA" / "test").exists()
        assert not (out / "build" / "node_modules").exists()
        assert not (out / "build" / "package.json").exists()
        assert (out / "build" / "config" / "release.yml").is_file()
        assert (out / "build" / "deploy" / "cfg" / "ci.json").is_file()

        config = json.loads((client / "modules" / "config" / "config.json").read_text())
        assert config["release"]["version"] == "1.2.3"
        assert config["buildInfo"]["git"]["branch"] == "main"

        main_js = (client / "modules" / "app" / "main.js").read_text()
        assert "sourceMappingURL" not in main_js
        assert "sourceMappingURL" not in (client / "modules" / "app" / "style.css").read_text()
        assert (client / "load-narrative.html").read_text() == "<p>dev</p>\n"
        assert "fffffff" in (client / "build-info.js").read_text()

        assert (out / "dist" / "client" / "modules" / "app" / "main.js").read_text() == main_js
        assert not (out / "dist" / "client" / "moduleVfs.js").exists()

        assert final.steps[0] == "setup_build"
        assert "make_dist_build" not in final.steps
        assert "copy_to_dist_build" in final.steps
        assert final.merged_config == {"release": {"version": "1.2.3"}}
        assert final.git.version == "1.2.3"
        assert not final.environment.exists()

    def test_prod_build(self, project):
        final = run("prod", project)

        dist_client = project / "build" / "dist" / "client"
        assert (dist_client / "moduleVfs.js").is_file()
        vfs = (dist_client / "moduleVfs.js").read_text()
        assert '"/modules/app/main.js": function () {' in vfs
        assert "/modules/config/config" in vfs

        minified = (dist_client / "modules" / "app" / "main.js").read_text()
        assert minified != (project / "build" / "build" / "client" / "modules" / "app" / "main.js").read_text()
        assert final.steps[-2:] == ["make_dist_build", "make_module_vfs"]

    def test_prod_build_fails_on_tag_mismatch(self, project):
        with pytest.raises(VersionMismatchError, match="1.2.0"):
            run("prod", project, tag="v1.2.0\n")
        assert not (project / "build" / "build").exists()

    def test_unknown_build_type(self, project):
        with pytest.raises(UsageError):
            run("staging", project)

    def test_keep_work_dir(self, project):
        with patch.dict("os.environ", {"UI_BUILD_KEEP_WORK_DIR": "true"}):
            final = run("dev", project)
        assert final.environment.is_dir()
