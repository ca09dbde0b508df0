"""Addon discovery and the per-invocation artifact plan."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Tuple

from buildgraph.config import BuildConfig
from buildgraph.errors import DiscoveryError
from buildgraph.logging import get_logger


log = get_logger("buildgraph.artifacts")


@dataclass(frozen=True)
class ArtifactEntry:
    identifier: str
    entry: Path
    output: Path
    standalone: str
    external: Optional[Path] = None
    # Stylesheets under asset_root are copied to the same relative path under asset_dest.
    asset_root: Optional[Path] = None
    asset_dest: Optional[Path] = None
    asset_excludes: Tuple[Path, ...] = ()

    @property
    def map_output(self) -> Path:
        return self.output.with_name(self.output.name + ".map")

    @property
    def is_addon(self) -> bool:
        return self.external is not None


@dataclass(frozen=True)
class ArtifactPlan:
    main: ArtifactEntry
    addons: Tuple[ArtifactEntry, ...] = ()

    @property
    def entries(self) -> Tuple[ArtifactEntry, ...]:
        return (self.main,) + self.addons

    def addon_ids(self) -> Tuple[str, ...]:
        return tuple(a.identifier for a in self.addons)


def discover_addons(addons_dir: Path) -> Tuple[str, ...]:
    """List addon identifiers once.

    An empty directory is a valid, empty addon set. A directory that cannot be
    read aborts the build.
    """
    try:
        children = list(Path(addons_dir).iterdir())
    except OSError as e:
        raise DiscoveryError(f"Cannot enumerate addons in {addons_dir}: {e}") from e
    ids = sorted(p.name for p in children if p.is_dir() and not p.name.startswith("."))
    log.info("Discovered %d addon(s): %s", len(ids), ", ".join(ids) or "-")
    return tuple(ids)


def plan_artifacts(config: BuildConfig, addon_ids: Iterable[str]) -> ArtifactPlan:
    ext = config.script_ext
    main_entry = config.out_root / config.main.entry
    main = ArtifactEntry(
        identifier="main",
        entry=main_entry,
        output=config.build_root / config.main.output,
        standalone=config.main.standalone,
        asset_root=config.out_root,
        asset_dest=config.build_root,
        asset_excludes=(config.addons_out_root,),
    )
    external = config.out_root / config.main.external

    addons = []
    seen = {main.identifier}
    for addon in addon_ids:
        if not addon or "/" in addon or "\\" in addon or addon in (".", ".."):
            raise DiscoveryError(f"Invalid addon identifier: {addon!r}")
        if addon in seen:
            raise DiscoveryError(f"Duplicate addon identifier: {addon}")
        seen.add(addon)
        src_dir = config.addons_out_root / addon
        dest_dir = config.addons_build_root / addon
        addons.append(
            ArtifactEntry(
                identifier=addon,
                entry=src_dir / f"{addon}{ext}",
                output=dest_dir / f"{addon}{ext}",
                standalone=addon,
                external=external,
                asset_root=src_dir,
                asset_dest=dest_dir,
            )
        )
    return ArtifactPlan(main=main, addons=tuple(addons))


@dataclass(frozen=True)
class BundleResult:
    """A bundled script and its map. Both exist or neither does."""

    identifier: str
    script: Path
    map: Path
