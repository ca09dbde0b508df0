"""Bundle the main artifact and every addon, then resolve their source maps."""

from __future__ import annotations

from buildgraph import alias, task
from buildgraph.logging import get_logger

from ..context import BuildContext


@task(name="bundle")
async def bundle(ctx: BuildContext) -> None:
    result = await ctx.pipeline.run(ctx.plan.main)
    ctx.results[result.identifier] = result


@task(name="bundle-addons")
async def bundle_addons(ctx: BuildContext) -> None:
    logger = get_logger("buildgraph.tasks.bundle-addons")
    if not ctx.plan.addons:
        logger.info("No addons to bundle")
        return
    for result in await ctx.pipeline.run_all(ctx.plan.addons):
        ctx.results[result.identifier] = result


@task(name="resolve-maps", deps=["bundle"])
async def resolve_maps(ctx: BuildContext) -> None:
    await ctx.resolver.resolve(ctx.results[ctx.plan.main.identifier])


@task(name="resolve-maps-addons", deps=["bundle-addons"])
async def resolve_maps_addons(ctx: BuildContext) -> None:
    await ctx.resolver.resolve_all(ctx.results[i] for i in ctx.plan.addon_ids())


BUILD = alias("build", ["resolve-maps", "resolve-maps-addons"])
DEFAULT = alias("default", ["build"])
