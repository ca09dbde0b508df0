"""Test selection, coverage instrumentation and the test run itself."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple

from buildgraph.config import BuildConfig
from buildgraph.errors import PipelineError, TestExecutionError, TestSelectionError
from buildgraph.logging import get_logger
from buildgraph.utils import format_command, run_command


log = get_logger("buildgraph.testing")


@dataclass(frozen=True)
class TestSelector:
    """All ``*test`` / ``*integration`` scripts, or one exact base name."""

    __test__ = False

    name: Optional[str] = None
    suffixes: Tuple[str, ...] = ("test", "integration")
    extension: str = ".js"

    def matches(self, path: Path) -> bool:
        if not path.name.endswith(self.extension):
            return False
        base = path.name[: -len(self.extension)]
        if self.name is not None:
            return base == self.name
        return any(base.endswith(s) for s in self.suffixes)

    def select(self, root: Path) -> List[Path]:
        if not root.is_dir():
            return []
        return sorted(p for p in root.rglob(f"*{self.extension}") if p.is_file() and self.matches(p))


class TestExecutor(Protocol):
    async def execute(self, files: Sequence[Path]) -> int:
        """Run ``files`` as one test process and return its exit status."""
        ...


class CoverageCollaborator(Protocol):
    async def instrument(self, out_root: Path) -> None: ...

    async def write_reports(self, report_dir: Path) -> List[Path]: ...


class CommandTestExecutor:
    __test__ = False

    def __init__(self, config: BuildConfig):
        self.command = config.test_command
        self.data_dir = config.coverage_data_dir
        self.cwd = config.project_root
        self.timeout = config.command_timeout

    async def execute(self, files: Sequence[Path]) -> int:
        args = format_command(self.command, files=[str(f) for f in files], data_dir=self.data_dir)
        result = await run_command(args, cwd=self.cwd, timeout=self.timeout)
        out = result.stdout.decode("utf-8", errors="replace").rstrip()
        if out:
            log.info("%s", out)
        if result.returncode != 0:
            log.error("Test process failed:\n%s", result.stderr_tail())
        return result.returncode


class CommandCoverage:
    def __init__(self, config: BuildConfig):
        self.instrument_command = config.instrument_command
        self.report_command = config.report_command
        self.data_dir = config.coverage_data_dir
        self.cwd = config.project_root
        self.timeout = config.command_timeout

    async def instrument(self, out_root: Path) -> None:
        """Reset the counter directory; the test command hooks loading of out_root."""
        if self.data_dir.exists():
            shutil.rmtree(self.data_dir)
        self.data_dir.mkdir(parents=True)
        if not self.instrument_command:
            return
        args = format_command(self.instrument_command, out_root=out_root, data_dir=self.data_dir)
        result = await run_command(args, cwd=self.cwd, timeout=self.timeout)
        if result.returncode != 0:
            raise PipelineError(f"Instrumentation failed ({result.returncode}):\n{result.stderr_tail()}")

    async def write_reports(self, report_dir: Path) -> List[Path]:
        report_dir.mkdir(parents=True, exist_ok=True)
        args = format_command(self.report_command, report_dir=report_dir, data_dir=self.data_dir)
        result = await run_command(args, cwd=self.cwd, timeout=self.timeout)
        if result.returncode != 0:
            raise PipelineError(f"Coverage report failed ({result.returncode}):\n{result.stderr_tail()}")
        return sorted(p for p in report_dir.rglob("*") if p.is_file())


class TestRunner:
    __test__ = False

    def __init__(self, config: BuildConfig, executor: TestExecutor, coverage: CoverageCollaborator):
        self.config = config
        self.executor = executor
        self.coverage = coverage
        self.instrumented = False

    def selector(self, name: Optional[str] = None) -> TestSelector:
        return TestSelector(name=name, suffixes=self.config.test_suffixes, extension=self.config.script_ext)

    async def instrument(self) -> None:
        log.info("Instrumenting %s", self.config.out_root)
        await self.coverage.instrument(self.config.out_root)
        self.instrumented = True

    def select(self, name: Optional[str] = None) -> List[Path]:
        files = self.selector(name).select(self.config.out_root)
        if name is not None:
            log.info("Run test by name: %s", name)
            if not files:
                if self.config.fail_on_empty_selection:
                    raise TestSelectionError(f"No test named {name!r} under {self.config.out_root}")
                log.warning("No test named %r under %s; running nothing", name, self.config.out_root)
        log.info("Selected %d test file(s)", len(files))
        return files

    async def execute(self, files: Sequence[Path]) -> None:
        if not self.instrumented:
            raise PipelineError("Tests must not load before instrumentation has completed")
        if not files:
            return
        returncode = await self.executor.execute(files)
        if returncode != 0:
            raise TestExecutionError(f"Test run failed with exit status {returncode}", returncode)

    async def write_reports(self) -> List[Path]:
        written = await self.coverage.write_reports(self.config.coverage_dir)
        log.info("Coverage reports written to %s", self.config.coverage_dir)
        return written

    async def run(self, name: Optional[str] = None) -> List[Path]:
        if not self.instrumented:
            await self.instrument()
        await self.execute(self.select(name))
        return await self.write_reports()
