from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from buildgraph.config import BuildConfig

from .artifacts import ArtifactPlan, BundleResult, plan_artifacts
from .bundle import BundlePipeline, Bundler, CommandBundler
from .sourcemaps import SourceMapResolver
from .testing import CommandCoverage, CommandTestExecutor, CoverageCollaborator, TestExecutor, TestRunner
from .upload import CoverallsUploader


@dataclass
class BuildContext:
    """Everything one invocation's tasks share. Built once, never reused."""

    config: BuildConfig
    plan: ArtifactPlan
    pipeline: BundlePipeline
    resolver: SourceMapResolver
    tests: TestRunner
    uploader: CoverallsUploader
    test_name: Optional[str] = None
    results: Dict[str, BundleResult] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        config: BuildConfig,
        addon_ids: Iterable[str],
        bundler: Bundler | None = None,
        executor: TestExecutor | None = None,
        coverage: CoverageCollaborator | None = None,
        uploader: CoverallsUploader | None = None,
        test_name: str | None = None,
    ) -> "BuildContext":
        return cls(
            config=config,
            plan=plan_artifacts(config, addon_ids),
            pipeline=BundlePipeline(config, bundler or CommandBundler(config)),
            resolver=SourceMapResolver(intermediate_roots=(config.out_root, config.build_root)),
            tests=TestRunner(
                config,
                executor or CommandTestExecutor(config),
                coverage or CommandCoverage(config),
            ),
            uploader=uploader or CoverallsUploader(config),
            test_name=test_name,
        )
