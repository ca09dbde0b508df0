"""Instrument compiled output, run the tests, publish coverage."""

from __future__ import annotations

from buildgraph import alias, task
from buildgraph.errors import UploadError
from buildgraph.logging import get_logger

from ..context import BuildContext


@task(name="instrument")
async def instrument(ctx: BuildContext) -> None:
    await ctx.tests.instrument()


@task(name="run-tests", deps=["instrument"])
async def run_tests(ctx: BuildContext) -> None:
    await ctx.tests.execute(ctx.tests.select())
    await ctx.tests.write_reports()


@task(name="run-test", deps=["instrument"])
async def run_test(ctx: BuildContext) -> None:
    """Run a single compiled test by base name, e.g. ``InputHandler.test``."""
    if not ctx.test_name:
        raise ValueError("run-test needs a test name (--test NAME)")
    await ctx.tests.execute(ctx.tests.select(ctx.test_name))
    await ctx.tests.write_reports()


@task(name="upload-coverage")
async def upload_coverage(ctx: BuildContext) -> None:
    logger = get_logger("buildgraph.tasks.upload-coverage")
    try:
        await ctx.uploader.upload()
    except UploadError as e:
        logger.warning("Coverage upload skipped: %s", e)


TEST = alias("test", ["run-tests"])
