"""Pytest configuration and fixtures for buildgraph tests."""

import logging
import os
from pathlib import Path
from typing import List, Optional

import pytest

from buildgraph.config import BuildConfig
from buildgraph.errors import PipelineError
from buildsteps.mappings import SourceMap, encode_mappings, strip_map_reference

# Configure logging
logging.basicConfig(level=logging.INFO)


def identity_mappings(n_lines: int, source: int = 0) -> List[list]:
    return [[(0, source, i, 0)] for i in range(n_lines)]


def write_compiled(project: Path, compiled_rel: str, authored_rel: str, marker: str) -> Path:
    """Write an authored source and its compiled script + compiler map.

    Returns the compiled script path. Every compiled line maps to the same
    line of the authored file.
    """
    authored = project / "src" / authored_rel
    authored.parent.mkdir(parents=True, exist_ok=True)
    body = [f"// {marker} line {i}" for i in range(3)]
    authored.write_text("\n".join(body) + "\n", encoding="utf-8")

    compiled = project / "out" / compiled_rel
    compiled.parent.mkdir(parents=True, exist_ok=True)
    compiled.write_text(
        "\n".join(body) + f"\n//# sourceMappingURL={compiled.name}.map\n", encoding="utf-8"
    )
    smap = SourceMap(
        sources=[os.path.relpath(authored, compiled.parent)],
        mappings=identity_mappings(len(body)),
        file=compiled.name,
    )
    compiled.with_name(compiled.name + ".map").write_text(smap.to_json(), encoding="utf-8")
    return compiled


class FakeBundler:
    """Bundles only the entry itself; externals are never inlined."""

    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.requests = []

    async def bundle(self, request):
        self.requests.append(request)
        if request.standalone in self.fail_for:
            raise PipelineError(f"bundler failed for {request.standalone}")
        text = request.entry.read_text(encoding="utf-8")
        script = strip_map_reference(text)
        raw_map = {
            "version": 3,
            "sources": [os.path.relpath(request.entry, request.basedir)],
            "sourcesContent": [text],
            "names": [],
            "mappings": encode_mappings(identity_mappings(len(script.splitlines()))),
        }
        return script, raw_map

    def request_for(self, standalone: str):
        return next(r for r in self.requests if r.standalone == standalone)


class FakeExecutor:
    def __init__(self, returncode: int = 0, events: Optional[list] = None):
        self.returncode = returncode
        self.events = events if events is not None else []
        self.calls = []

    async def execute(self, files):
        self.calls.append(list(files))
        self.events.append("execute")
        return self.returncode


class FakeCoverage:
    def __init__(self, events: Optional[list] = None):
        self.events = events if events is not None else []

    async def instrument(self, out_root):
        self.events.append("instrument")

    async def write_reports(self, report_dir):
        self.events.append("reports")
        report_dir.mkdir(parents=True, exist_ok=True)
        lcov = report_dir / "lcov.info"
        lcov.write_text("SF:src/main.ts\nDA:1,1\nend_of_record\n", encoding="utf-8")
        return [lcov]


@pytest.fixture
def project(tmp_path) -> Path:
    (tmp_path / "src" / "addons").mkdir(parents=True)
    (tmp_path / "out").mkdir()
    return tmp_path


@pytest.fixture
def config(project) -> BuildConfig:
    return BuildConfig.from_params(
        {
            "paths": {"out_dir": "out", "build_dir": "build"},
            "main": {"entry": "main.js", "output": "main.js", "standalone": "Main", "external": "main.js"},
        },
        project_root=project,
        env={},
    )


@pytest.fixture
def compiled_main(project) -> Path:
    return write_compiled(project, "main.js", "main.ts", "MAIN")


def add_addon(project: Path, addon: str) -> Path:
    (project / "src" / "addons" / addon).mkdir(parents=True, exist_ok=True)
    return write_compiled(project, f"addons/{addon}/{addon}.js", f"addons/{addon}/{addon}.ts", addon.upper())
