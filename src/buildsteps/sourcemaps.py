"""Collapse a bundle's source map chain back to the authored sources.

The bundler maps the bundle onto compiled scripts; the compiler maps each
compiled script onto its authored source. Resolution walks that chain for
every mapped segment and rewrites the bundle's map in place. Nothing is
written unless the whole chain resolved.
"""

from __future__ import annotations

import asyncio
import bisect
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import unquote

from buildgraph.errors import MapResolutionError, SourceMapFormatError
from buildgraph.logging import get_logger
from buildgraph.utils import atomic_write_text, is_within, join_first_failure, relative_posix

from .artifacts import BundleResult
from .mappings import (
    Segment,
    SourceMap,
    decode_data_uri,
    find_map_reference,
    is_data_uri,
    read_map,
)


log = get_logger("buildgraph.sourcemaps")

Traced = Tuple["SourceNode", int, int, Optional[str]]


def _segment_at(segments: Sequence[Segment], column: int) -> Optional[Segment]:
    idx = bisect.bisect_right([s[0] for s in segments], column)
    return segments[idx - 1] if idx else None


@dataclass(eq=False)
class SourceNode:
    path: Path
    content: Optional[str] = None
    map: Optional[SourceMap] = None
    sources: List["SourceNode"] = field(default_factory=list)

    def trace(self, line: int, column: int, name: Optional[str] = None) -> Optional[Traced]:
        if self.map is None:
            return self, line, column, name
        if not 0 <= line < len(self.map.mappings):
            return None
        seg = _segment_at(self.map.mappings[line], column)
        if seg is None or len(seg) == 1:
            return None
        if len(seg) == 5:
            name = self.map.names[seg[4]]
        return self.sources[seg[1]].trace(seg[2], seg[3], name)


def _source_path(map_dir: Path, source_root: str, source: str) -> Path:
    if source.startswith("file://"):
        source = unquote(source[len("file://"):])
    joined = os.path.join(str(map_dir), source_root, source)
    return Path(os.path.normpath(joined))


class _ChainLoader:
    def __init__(self):
        self._nodes: Dict[Path, SourceNode] = {}
        self._active: set = set()

    def load_root(self, script: Path, map_path: Path) -> SourceNode:
        try:
            smap = read_map(map_path)
        except (OSError, SourceMapFormatError) as e:
            raise MapResolutionError(f"Cannot load source map {map_path}: {e}", map_path) from e
        root = SourceNode(path=script, map=smap)
        self._active.add(script)
        root.sources = self._children(smap, map_path.parent)
        self._active.discard(script)
        return root

    def _children(self, smap: SourceMap, map_dir: Path) -> List[SourceNode]:
        children = []
        for i, source in enumerate(smap.sources):
            path = _source_path(map_dir, smap.source_root, source)
            content = smap.sources_content[i] if smap.sources_content else None
            children.append(self._load(path, content))
        return children

    def _load(self, path: Path, content: Optional[str]) -> SourceNode:
        if path in self._active:
            raise MapResolutionError(f"Source map chain loops back to {path}")
        node = self._nodes.get(path)
        if node is not None:
            return node
        if content is None and path.is_file():
            try:
                content = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                raise MapResolutionError(f"Cannot read {path}: {e}") from e
        node = SourceNode(path=path, content=content)
        found = self._find_map(path, content)
        if found is not None:
            node.map, map_dir = found
            self._active.add(path)
            node.sources = self._children(node.map, map_dir)
            self._active.discard(path)
        self._nodes[path] = node
        return node

    def _find_map(self, path: Path, content: Optional[str]) -> Optional[Tuple[SourceMap, Path]]:
        reference = find_map_reference(content) if content else None
        try:
            if reference and is_data_uri(reference):
                return SourceMap.from_dict(decode_data_uri(reference)), path.parent
            if reference:
                map_path = Path(os.path.normpath(path.parent / unquote(reference)))
                if not map_path.is_file():
                    raise MapResolutionError(f"{path} references missing map {map_path}", map_path)
                return read_map(map_path), map_path.parent
            sibling = path.with_name(path.name + ".map")
            if sibling.is_file():
                return read_map(sibling), sibling.parent
        except (OSError, SourceMapFormatError) as e:
            raise MapResolutionError(f"Cannot load source map for {path}: {e}") from e
        return None


class SourceMapResolver:
    """Rewrites a bundle's raw map so every source is an authored file.

    ``intermediate_roots`` are directories holding generated files (the
    compiled output and the build output); a leaf inside one of them means a
    stage map is missing and fails resolution.
    """

    def __init__(self, intermediate_roots: Iterable[Path] = ()):
        self.intermediate_roots = tuple(Path(r) for r in intermediate_roots)

    def load_chain(self, result: BundleResult) -> SourceNode:
        return _ChainLoader().load_root(result.script, result.map)

    def collapse(self, root: SourceNode, map_dir: Path) -> SourceMap:
        sources: List[SourceNode] = []
        source_index: Dict[int, int] = {}
        names: List[str] = []
        name_index: Dict[str, int] = {}
        lines: List[List[Segment]] = []
        for line in root.map.mappings:
            out: List[Segment] = []
            for seg in line:
                if len(seg) == 1:
                    continue
                name = root.map.names[seg[4]] if len(seg) == 5 else None
                traced = root.sources[seg[1]].trace(seg[2], seg[3], name)
                if traced is None:
                    continue
                leaf, src_line, src_col, name = traced
                self._check_leaf(leaf)
                if id(leaf) not in source_index:
                    source_index[id(leaf)] = len(sources)
                    sources.append(leaf)
                resolved = (seg[0], source_index[id(leaf)], src_line, src_col)
                if name is not None:
                    if name not in name_index:
                        name_index[name] = len(names)
                        names.append(name)
                    resolved += (name_index[name],)
                out.append(resolved)
            lines.append(out)
        return SourceMap(
            sources=[relative_posix(s.path, map_dir) for s in sources],
            sources_content=[s.content for s in sources],
            names=names,
            mappings=lines,
            file=root.map.file or root.path.name,
        )

    def _check_leaf(self, leaf: SourceNode) -> None:
        for root in self.intermediate_roots:
            if is_within(leaf.path, root):
                raise MapResolutionError(
                    f"{leaf.path} is generated output but has no source map; chain is incomplete"
                )

    def resolve_sync(self, result: BundleResult) -> SourceMap:
        chain = self.load_chain(result)
        resolved = self.collapse(chain, result.map.parent)
        atomic_write_text(result.map, resolved.to_json())
        log.info("Resolved %s (%d sources)", result.map, len(resolved.sources))
        return resolved

    async def resolve(self, result: BundleResult) -> BundleResult:
        await asyncio.to_thread(self.resolve_sync, result)
        return result

    async def resolve_all(self, results: Iterable[BundleResult]) -> List[BundleResult]:
        return await join_first_failure(
            [self.resolve(r) for r in results], logger=log, settle=True
        )
