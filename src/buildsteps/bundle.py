"""Bundling: one compiled entry point in, one script + raw source map out."""

from __future__ import annotations

import asyncio
import json
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Protocol, Tuple

from buildgraph.config import BuildConfig
from buildgraph.errors import PipelineError
from buildgraph.logging import get_logger
from buildgraph.utils import format_command, join_first_failure, run_command

from .artifacts import ArtifactEntry, BundleResult
from .mappings import extract_inline_map, map_comment


log = get_logger("buildgraph.bundle")


@dataclass(frozen=True)
class BundleRequest:
    entry: Path
    basedir: Path
    standalone: str
    external: Optional[Path] = None
    debug: bool = True
    # Per-invocation caches an in-process bundler may fill; never shared between builds.
    cache: dict = field(default_factory=dict, compare=False, hash=False)
    package_cache: dict = field(default_factory=dict, compare=False, hash=False)


class Bundler(Protocol):
    async def bundle(self, request: BundleRequest) -> Tuple[str, dict]:
        """Return the bundled script and its raw source map."""
        ...


class CommandBundler:
    """Runs an external bundler that prints the bundle with an inline map."""

    def __init__(self, config: BuildConfig):
        self.command = config.bundler_command
        self.external_args = config.bundler_external_args
        self.cwd = config.project_root
        self.timeout = config.command_timeout

    def command_for(self, request: BundleRequest) -> List[str]:
        external_args = None
        if request.external is not None:
            external_args = format_command(self.external_args, external=request.external)
        return format_command(
            self.command,
            entry=request.entry,
            basedir=request.basedir,
            standalone=request.standalone,
            external=request.external,
            external_args=external_args,
        )

    async def bundle(self, request: BundleRequest) -> Tuple[str, dict]:
        args = self.command_for(request)
        log.debug("Bundler command: %s", " ".join(args))
        result = await run_command(args, cwd=self.cwd, timeout=self.timeout)
        if result.returncode != 0:
            raise PipelineError(
                f"Bundler exited with {result.returncode} for {request.entry}:\n{result.stderr_tail()}"
            )
        script, raw_map = extract_inline_map(result.stdout.decode("utf-8"))
        if raw_map is None:
            raise PipelineError(f"Bundler produced no inline source map for {request.entry}")
        return script, raw_map


def _write_pair(output: Path, script: str, raw_map: dict) -> None:
    map_path = output.with_name(output.name + ".map")
    script_tmp = output.with_name(f".{output.name}.tmp")
    map_tmp = map_path.with_name(f".{map_path.name}.tmp")
    try:
        map_tmp.write_text(json.dumps(raw_map), encoding="utf-8")
        script_tmp.write_text(
            script.rstrip("\n") + "\n" + map_comment(map_path.name) + "\n", encoding="utf-8"
        )
        os.replace(map_tmp, map_path)
        os.replace(script_tmp, output)
    finally:
        for tmp in (script_tmp, map_tmp):
            if tmp.exists():
                tmp.unlink()


def _copy_stylesheets(entry: ArtifactEntry, ext: str) -> List[Path]:
    if entry.asset_root is None or entry.asset_dest is None or not entry.asset_root.is_dir():
        return []
    copied = []
    for src in sorted(entry.asset_root.rglob(f"*{ext}")):
        if any(src.is_relative_to(ex) for ex in entry.asset_excludes):
            continue
        dest = entry.asset_dest / src.relative_to(entry.asset_root)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dest)
        copied.append(dest)
    return copied


class BundlePipeline:
    def __init__(self, config: BuildConfig, bundler: Bundler):
        self.config = config
        self.bundler = bundler

    def request_for(self, entry: ArtifactEntry) -> BundleRequest:
        return BundleRequest(
            entry=entry.entry,
            basedir=entry.output.parent,
            standalone=entry.standalone,
            external=entry.external,
        )

    async def run(self, entry: ArtifactEntry) -> BundleResult:
        log.info("Bundling %s: %s -> %s", entry.identifier, entry.entry, entry.output)
        entry.output.parent.mkdir(parents=True, exist_ok=True)
        try:
            script, raw_map = await self.bundler.bundle(self.request_for(entry))
        except PipelineError as e:
            if e.identifier is None:
                e.identifier = entry.identifier
            raise
        except Exception as e:  # noqa: BLE001
            raise PipelineError(f"Bundling {entry.identifier} failed: {e}", entry.identifier) from e
        await asyncio.to_thread(_write_pair, entry.output, script, raw_map)
        copied = await asyncio.to_thread(_copy_stylesheets, entry, self.config.stylesheet_ext)
        if copied:
            log.info("Copied %d stylesheet(s) for %s", len(copied), entry.identifier)
        return BundleResult(identifier=entry.identifier, script=entry.output, map=entry.map_output)

    async def run_all(self, entries: Iterable[ArtifactEntry]) -> List[BundleResult]:
        """Bundle every entry concurrently; succeed only if all succeed."""
        return await join_first_failure(
            [self.run(e) for e in entries], logger=log, settle=True
        )
