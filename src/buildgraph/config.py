from __future__ import annotations

"""Build configuration: YAML file + environment, resolved to absolute paths."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import yaml
from dotenv import load_dotenv

from .errors import ConfigError
from .logging import get_logger


DEFAULT_CONFIG_PATH = "configs/build.yaml"
BUILD_DIR_ENV = "BUILD_DIR"

log = get_logger("buildgraph.config")


def _get(d: Dict, *keys, default=None):
    cur = d
    for k in keys:
        if not isinstance(cur, dict):
            return default
        cur = cur.get(k)
        if cur is None:
            return default
    return cur


def load_config(path: str | Path) -> dict:
    p = Path(path)
    if not p.exists():
        log.info("No config file at %s, using defaults", p)
        return {}
    try:
        with open(p, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read config {p}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config {p} must be a mapping, got {type(data).__name__}")
    return data


def tsconfig_out_dir(project_root: Path) -> Optional[str]:
    """``compilerOptions.outDir`` of ``tsconfig.json``, if there is one."""
    p = project_root / "tsconfig.json"
    if not p.exists():
        return None
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Could not read {p}: {e}") from e
    return _get(data, "compilerOptions", "outDir")


def _absolute(root: Path, value: str | Path) -> Path:
    p = Path(os.path.normpath(value))
    return p if p.is_absolute() else (root / p).resolve()


@dataclass(frozen=True)
class MainArtifact:
    entry: str = "main.js"
    output: str = "main.js"
    standalone: str = "main"
    # Compiled module addons reference instead of bundling it.
    external: str = "main.js"


DEFAULT_BUNDLER_COMMAND = [
    "npx", "browserify", "{entry}",
    "--debug",
    "--standalone", "{standalone}",
    "--basedir", "{basedir}",
    "{external_args}",
]
# nyc hooks require() in the test process and writes its counters to
# {data_dir}; the compiled tree under out_root is never rewritten.
DEFAULT_TEST_COMMAND = ["npx", "nyc", "--silent", "--temp-dir", "{data_dir}", "mocha", "{files}"]
# Empty: instrumentation only resets {data_dir}, the hook does the rest.
DEFAULT_INSTRUMENT_COMMAND: List[str] = []
DEFAULT_REPORT_COMMAND = [
    "npx", "nyc", "report",
    "--temp-dir", "{data_dir}",
    "--reporter=lcov", "--reporter=text-summary",
    "--report-dir", "{report_dir}",
]


@dataclass(frozen=True)
class BuildConfig:
    project_root: Path
    out_root: Path
    build_root: Path
    addons_dir: Path
    coverage_dir: Path
    coverage_data_dir: Path
    main: MainArtifact = field(default_factory=MainArtifact)
    script_ext: str = ".js"
    stylesheet_ext: str = ".css"
    bundler_command: List[str] = field(default_factory=lambda: list(DEFAULT_BUNDLER_COMMAND))
    bundler_external_args: List[str] = field(default_factory=lambda: ["-x", "{external}"])
    command_timeout: Optional[float] = None
    test_command: List[str] = field(default_factory=lambda: list(DEFAULT_TEST_COMMAND))
    instrument_command: List[str] = field(default_factory=lambda: list(DEFAULT_INSTRUMENT_COMMAND))
    report_command: List[str] = field(default_factory=lambda: list(DEFAULT_REPORT_COMMAND))
    test_suffixes: Tuple[str, ...] = ("test", "integration")
    fail_on_empty_selection: bool = False
    coveralls_endpoint: str = "https://coveralls.io/api/v1/jobs"
    upload_timeout: float = 30.0

    @property
    def addons_out_root(self) -> Path:
        return self.out_root / "addons"

    @property
    def addons_build_root(self) -> Path:
        return self.build_root / "addons"

    @classmethod
    def from_params(
        cls,
        params: dict,
        project_root: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> "BuildConfig":
        env = os.environ if env is None else env
        root = (project_root or Path.cwd()).resolve()

        out_dir = _get(params, "paths", "out_dir") or tsconfig_out_dir(root) or "out"
        build_dir = env.get(BUILD_DIR_ENV) or _get(params, "paths", "build_dir", default="build")
        addons_dir = _get(params, "paths", "addons_dir", default="src/addons")
        coverage_dir = _get(params, "paths", "coverage_dir", default="coverage")
        coverage_data_dir = _get(params, "coverage", "data_dir", default=".nyc_output")

        main_params = _get(params, "main", default={}) or {}
        unknown = set(main_params) - {"entry", "output", "standalone", "external"}
        if unknown:
            raise ConfigError(f"Unknown keys under 'main': {sorted(unknown)}")
        main = MainArtifact(**main_params)

        kwargs = {}
        for key, value in (
            ("bundler_command", _get(params, "bundler", "command")),
            ("bundler_external_args", _get(params, "bundler", "external_args")),
            ("command_timeout", _get(params, "commands", "timeout")),
            ("test_command", _get(params, "tests", "command")),
            ("instrument_command", _get(params, "coverage", "instrument_command")),
            ("report_command", _get(params, "coverage", "report_command")),
            ("fail_on_empty_selection", _get(params, "tests", "fail_on_empty")),
            ("coveralls_endpoint", _get(params, "coveralls", "endpoint")),
            ("upload_timeout", _get(params, "coveralls", "timeout")),
            ("script_ext", _get(params, "paths", "script_ext")),
            ("stylesheet_ext", _get(params, "paths", "stylesheet_ext")),
        ):
            if value is not None:
                kwargs[key] = value
        suffixes = _get(params, "tests", "suffixes")
        if suffixes is not None:
            kwargs["test_suffixes"] = tuple(suffixes)

        return cls(
            project_root=root,
            out_root=_absolute(root, out_dir),
            build_root=_absolute(root, build_dir),
            addons_dir=_absolute(root, addons_dir),
            coverage_dir=_absolute(root, coverage_dir),
            coverage_data_dir=_absolute(root, coverage_data_dir),
            main=main,
            **kwargs,
        )


def load_build_config(path: str | Path = DEFAULT_CONFIG_PATH, project_root: Path | None = None) -> BuildConfig:
    root = (project_root or Path.cwd()).resolve()
    load_dotenv(root / ".env")
    config_path = Path(path)
    if not config_path.is_absolute():
        config_path = root / config_path
    return BuildConfig.from_params(load_config(config_path), project_root=root)
