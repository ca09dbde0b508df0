"""Build and test steps for a main artifact plus its addons."""

from .artifacts import ArtifactEntry, ArtifactPlan, BundleResult, discover_addons, plan_artifacts
from .context import BuildContext

__all__ = [
    "ArtifactEntry",
    "ArtifactPlan",
    "BundleResult",
    "BuildContext",
    "discover_addons",
    "plan_artifacts",
]
