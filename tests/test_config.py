"""
Tests for configuration loading and path resolution.
"""

import json

import pytest

from buildgraph.config import BuildConfig, load_build_config, load_config
from buildgraph.errors import ConfigError


class TestBuildConfig:

    def test_defaults(self, project):
        cfg = BuildConfig.from_params({}, project_root=project, env={})

        assert cfg.out_root == project / "out"
        assert cfg.build_root == project / "build"
        assert cfg.addons_dir == project / "src" / "addons"
        assert cfg.coverage_dir == project / "coverage"
        assert cfg.test_suffixes == ("test", "integration")
        assert cfg.fail_on_empty_selection is False

    def test_default_coverage_hooks_loading(self, project):
        cfg = BuildConfig.from_params({}, project_root=project, env={})

        assert cfg.coverage_data_dir == project / ".nyc_output"
        assert cfg.instrument_command == []
        assert "--in-place" not in cfg.test_command + cfg.report_command
        assert cfg.test_command[:3] == ["npx", "nyc", "--silent"]
        assert "{data_dir}" in cfg.test_command
        assert "{data_dir}" in cfg.report_command

    def test_build_dir_from_environment(self, project):
        cfg = BuildConfig.from_params(
            {"paths": {"build_dir": "dist"}}, project_root=project, env={"BUILD_DIR": "lib/bundles"}
        )

        assert cfg.build_root == project / "lib" / "bundles"

    def test_out_dir_falls_back_to_tsconfig(self, project):
        (project / "tsconfig.json").write_text(json.dumps({"compilerOptions": {"outDir": "./lib/"}}))

        cfg = BuildConfig.from_params({}, project_root=project, env={})

        assert cfg.out_root == project / "lib"

    def test_absolute_out_dir_is_kept(self, project, tmp_path_factory):
        elsewhere = tmp_path_factory.mktemp("compiled")

        cfg = BuildConfig.from_params({"paths": {"out_dir": str(elsewhere)}}, project_root=project, env={})

        assert cfg.out_root == elsewhere

    def test_unknown_main_key(self, project):
        with pytest.raises(ConfigError):
            BuildConfig.from_params({"main": {"entry": "x.js", "bogus": 1}}, project_root=project, env={})

    def test_overrides(self, project):
        cfg = BuildConfig.from_params(
            {
                "tests": {"command": ["node", "run.js", "{files}"], "suffixes": ["spec"], "fail_on_empty": True},
                "commands": {"timeout": 120},
            },
            project_root=project,
            env={},
        )

        assert cfg.test_command == ["node", "run.js", "{files}"]
        assert cfg.test_suffixes == ("spec",)
        assert cfg.fail_on_empty_selection is True
        assert cfg.command_timeout == 120


class TestLoadConfig:

    def test_missing_file_means_defaults(self, tmp_path):
        assert load_config(tmp_path / "missing.yaml") == {}

    def test_invalid_yaml(self, tmp_path):
        p = tmp_path / "bad.yaml"
        p.write_text("paths: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config(p)

    def test_load_build_config_reads_yaml(self, project, monkeypatch):
        monkeypatch.delenv("BUILD_DIR", raising=False)
        (project / "configs").mkdir()
        (project / "configs" / "build.yaml").write_text("main:\n  standalone: Terminal\npaths:\n  build_dir: dist\n")

        cfg = load_build_config(project_root=project)

        assert cfg.main.standalone == "Terminal"
        assert cfg.build_root == project / "dist"
