"""
Tests for test selection, instrumentation ordering and fail-fast execution.
"""

from dataclasses import replace

import pytest

from buildgraph.errors import PipelineError, TestExecutionError, TestSelectionError
from buildsteps.testing import CommandCoverage, CommandTestExecutor, TestRunner, TestSelector

from conftest import FakeCoverage, FakeExecutor


def touch(root, *names):
    for name in names:
        p = root / name
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text("")


@pytest.fixture
def compiled_tests(config):
    touch(
        config.out_root,
        "Terminal.js",
        "Terminal.test.js",
        "Buffer.integration.js",
        "input/InputHandler.test.js",
        "input/InputHandler.js",
        "Foo.js",
        "sub/Foo.js",
        "FooBar.js",
        "sub/FooBar.test.js",
        "notes.test.txt",
    )
    return config.out_root


class TestSelection:

    def test_default_selects_test_and_integration_files(self, compiled_tests):
        selected = TestSelector().select(compiled_tests)

        assert [p.relative_to(compiled_tests).as_posix() for p in selected] == [
            "Buffer.integration.js",
            "Terminal.test.js",
            "input/InputHandler.test.js",
            "sub/FooBar.test.js",
        ]

    def test_named_selection_is_exact_base_name(self, compiled_tests):
        selected = TestSelector(name="Foo").select(compiled_tests)

        assert [p.relative_to(compiled_tests).as_posix() for p in selected] == ["Foo.js", "sub/Foo.js"]

    def test_named_selection_accepts_dotted_names(self, compiled_tests):
        selected = TestSelector(name="InputHandler.test").select(compiled_tests)

        assert [p.name for p in selected] == ["InputHandler.test.js"]

    def test_missing_root_selects_nothing(self, tmp_path):
        assert TestSelector().select(tmp_path / "nope") == []


class TestRunnerBehaviour:

    def test_named_selection_without_match_proceeds_empty(self, config, compiled_tests, caplog):
        runner = TestRunner(config, FakeExecutor(), FakeCoverage())

        with caplog.at_level("WARNING"):
            assert runner.select("Nope") == []
        assert "No test named 'Nope'" in caplog.text

    def test_named_selection_without_match_can_fail(self, config, compiled_tests):
        runner = TestRunner(replace(config, fail_on_empty_selection=True), FakeExecutor(), FakeCoverage())

        with pytest.raises(TestSelectionError):
            runner.select("Nope")

    @pytest.mark.asyncio
    async def test_instrumentation_precedes_execution_and_reports(self, config, compiled_tests):
        events = []
        executor = FakeExecutor(events=events)
        runner = TestRunner(config, executor, FakeCoverage(events=events))

        written = await runner.run()

        assert events == ["instrument", "execute", "reports"]
        assert len(executor.calls) == 1
        assert len(executor.calls[0]) == 4
        assert written == [config.coverage_dir / "lcov.info"]

    @pytest.mark.asyncio
    async def test_execute_refuses_to_run_uninstrumented(self, config, compiled_tests):
        runner = TestRunner(config, FakeExecutor(), FakeCoverage())

        with pytest.raises(PipelineError):
            await runner.execute(runner.select())

    @pytest.mark.asyncio
    async def test_failing_run_skips_reports(self, config, compiled_tests):
        events = []
        runner = TestRunner(config, FakeExecutor(returncode=3, events=events), FakeCoverage(events=events))

        with pytest.raises(TestExecutionError) as exc_info:
            await runner.run()

        assert exc_info.value.returncode == 3
        assert events == ["instrument", "execute"]
        assert not (config.coverage_dir / "lcov.info").exists()

    @pytest.mark.asyncio
    async def test_empty_selection_does_not_start_a_process(self, config, compiled_tests):
        executor = FakeExecutor()
        runner = TestRunner(config, executor, FakeCoverage())

        await runner.run("Nope")

        assert executor.calls == []


def snapshot(root):
    return {p.relative_to(root): p.read_bytes() for p in sorted(root.rglob("*")) if p.is_file()}


@pytest.fixture
def command_config(config):
    return replace(
        config,
        # Stand-ins for the hooked test process and the report step: the first
        # leaves counters in the data directory, the second turns them into lcov.
        test_command=["sh", "-c", 'touch "$0/counters.json"', "{data_dir}", "{files}"],
        report_command=["sh", "-c", 'test -f "$0/counters.json" && touch "$1/lcov.info"', "{data_dir}", "{report_dir}"],
    )


class TestCommandCollaborators:

    @pytest.mark.asyncio
    async def test_compiled_files_are_untouched_by_a_covered_run(self, command_config, compiled_main):
        (command_config.out_root / "main.test.js").write_text("require('./main');\n")
        before = snapshot(command_config.out_root)
        runner = TestRunner(command_config, CommandTestExecutor(command_config), CommandCoverage(command_config))

        written = await runner.run()

        assert snapshot(command_config.out_root) == before
        assert (command_config.coverage_data_dir / "counters.json").exists()
        assert written == [command_config.coverage_dir / "lcov.info"]

    @pytest.mark.asyncio
    async def test_instrument_resets_counters(self, command_config):
        data_dir = command_config.coverage_data_dir
        data_dir.mkdir(parents=True)
        (data_dir / "stale.json").write_text("{}")

        await CommandCoverage(command_config).instrument(command_config.out_root)

        assert data_dir.is_dir()
        assert list(data_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_reports_fail_without_counters(self, command_config):
        coverage = CommandCoverage(command_config)
        await coverage.instrument(command_config.out_root)

        with pytest.raises(PipelineError, match="Coverage report failed"):
            await coverage.write_reports(command_config.coverage_dir)
