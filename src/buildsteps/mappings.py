"""Source map v3 codec.

Decodes and encodes the base64 VLQ ``mappings`` field, parses map documents
and locates ``sourceMappingURL`` references (file or inline data URI) in
generated scripts and stylesheets.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple
from urllib.parse import unquote

from buildgraph.errors import SourceMapFormatError


_BASE64 = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/"
_LOOKUP = {ch: i for i, ch in enumerate(_BASE64)}

# Segment: (generated column,) or
# (generated column, source index, source line, source column[, name index])
Segment = Tuple[int, ...]

_MAP_URL = re.compile(
    r"(?://[#@]|/\*[#@])[ \t]*sourceMappingURL=([^\s'\"*]+)[ \t]*(?:\*/)?[ \t]*$",
    re.MULTILINE,
)
_DATA_URI = re.compile(r"^data:application/json(?:;charset=[\w-]+)?(;base64)?,(.*)$", re.DOTALL)


def encode_vlq(value: int) -> str:
    vlq = ((-value) << 1) | 1 if value < 0 else value << 1
    out = []
    while True:
        digit = vlq & 31
        vlq >>= 5
        if vlq:
            digit |= 32
        out.append(_BASE64[digit])
        if not vlq:
            return "".join(out)


def decode_vlq(text: str) -> List[int]:
    values: List[int] = []
    value = shift = 0
    for ch in text:
        try:
            digit = _LOOKUP[ch]
        except KeyError:
            raise SourceMapFormatError(f"Invalid base64 VLQ character {ch!r}") from None
        value += (digit & 31) << shift
        if digit & 32:
            shift += 5
            continue
        negative = value & 1
        value >>= 1
        values.append(-value if negative else value)
        value = shift = 0
    if shift:
        raise SourceMapFormatError(f"Truncated VLQ sequence in {text!r}")
    return values


def decode_mappings(mappings: str) -> List[List[Segment]]:
    """Decode to absolute values, one list of segments per generated line."""
    lines: List[List[Segment]] = []
    src = src_line = src_col = name = 0
    for raw_line in mappings.split(";"):
        col = 0
        segments: List[Segment] = []
        for raw in raw_line.split(","):
            if not raw:
                continue
            fields = decode_vlq(raw)
            if len(fields) not in (1, 4, 5):
                raise SourceMapFormatError(f"Segment {raw!r} has {len(fields)} fields")
            col += fields[0]
            if len(fields) == 1:
                segments.append((col,))
                continue
            src += fields[1]
            src_line += fields[2]
            src_col += fields[3]
            if len(fields) == 5:
                name += fields[4]
                segments.append((col, src, src_line, src_col, name))
            else:
                segments.append((col, src, src_line, src_col))
        lines.append(segments)
    return lines


def encode_mappings(lines: Sequence[Sequence[Segment]]) -> str:
    out_lines = []
    src = src_line = src_col = name = 0
    for segments in lines:
        col = 0
        parts = []
        for seg in segments:
            text = encode_vlq(seg[0] - col)
            col = seg[0]
            if len(seg) > 1:
                text += encode_vlq(seg[1] - src)
                text += encode_vlq(seg[2] - src_line)
                text += encode_vlq(seg[3] - src_col)
                src, src_line, src_col = seg[1], seg[2], seg[3]
                if len(seg) == 5:
                    text += encode_vlq(seg[4] - name)
                    name = seg[4]
            parts.append(text)
        out_lines.append(",".join(parts))
    return ";".join(out_lines)


@dataclass
class SourceMap:
    sources: List[str]
    mappings: List[List[Segment]]
    names: List[str] = field(default_factory=list)
    sources_content: Optional[List[Optional[str]]] = None
    file: Optional[str] = None
    source_root: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "SourceMap":
        if not isinstance(data, dict):
            raise SourceMapFormatError("Source map must be a JSON object")
        if "sections" in data:
            raise SourceMapFormatError("Indexed source maps are not supported")
        if data.get("version") != 3:
            raise SourceMapFormatError(f"Unsupported source map version: {data.get('version')!r}")
        sources = data.get("sources")
        mappings = data.get("mappings")
        if not isinstance(sources, list) or not isinstance(mappings, str):
            raise SourceMapFormatError("Source map needs 'sources' (list) and 'mappings' (string)")
        content = data.get("sourcesContent")
        if content is not None and (not isinstance(content, list) or len(content) != len(sources)):
            raise SourceMapFormatError("'sourcesContent' does not match 'sources'")
        if any(s is not None and not isinstance(s, str) for s in sources):
            raise SourceMapFormatError("'sources' entries must be strings")
        if content is not None and any(c is not None and not isinstance(c, str) for c in content):
            raise SourceMapFormatError("'sourcesContent' entries must be strings or null")
        names = data.get("names") or []
        if not isinstance(names, list) or any(not isinstance(n, str) for n in names):
            raise SourceMapFormatError("'names' must be a list of strings")
        source_root = data.get("sourceRoot") or ""
        if not isinstance(source_root, str):
            raise SourceMapFormatError("'sourceRoot' must be a string")
        decoded = decode_mappings(mappings)
        names = list(names)
        for segments in decoded:
            for seg in segments:
                if len(seg) > 1 and not 0 <= seg[1] < len(sources):
                    raise SourceMapFormatError(f"Segment references missing source #{seg[1]}")
                if len(seg) == 5 and not 0 <= seg[4] < len(names):
                    raise SourceMapFormatError(f"Segment references missing name #{seg[4]}")
        return cls(
            sources=[s if s is not None else "" for s in sources],
            mappings=decoded,
            names=names,
            sources_content=list(content) if content is not None else None,
            file=data.get("file"),
            source_root=source_root,
        )

    @classmethod
    def from_json(cls, text: str) -> "SourceMap":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise SourceMapFormatError(f"Source map is not valid JSON: {e}") from e
        return cls.from_dict(data)

    def to_dict(self) -> dict:
        data = {"version": 3}
        if self.file is not None:
            data["file"] = self.file
        if self.source_root:
            data["sourceRoot"] = self.source_root
        data["sources"] = list(self.sources)
        if self.sources_content is not None:
            data["sourcesContent"] = list(self.sources_content)
        data["names"] = list(self.names)
        data["mappings"] = encode_mappings(self.mappings)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))


def read_map(path: Path) -> SourceMap:
    return SourceMap.from_json(Path(path).read_text(encoding="utf-8"))


def find_map_reference(text: str) -> Optional[str]:
    """Last ``sourceMappingURL`` in ``text``; it wins over earlier ones."""
    found = None
    for m in _MAP_URL.finditer(text):
        found = m.group(1)
    return found


def is_data_uri(reference: str) -> bool:
    return reference.startswith("data:")


def decode_data_uri(reference: str) -> dict:
    m = _DATA_URI.match(reference)
    if not m:
        raise SourceMapFormatError("Unsupported inline source map encoding")
    try:
        if m.group(1):
            payload = base64.b64decode(m.group(2), validate=True).decode("utf-8")
        else:
            payload = unquote(m.group(2))
        return json.loads(payload)
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise SourceMapFormatError(f"Inline source map could not be decoded: {e}") from e


def strip_map_reference(text: str) -> str:
    return _MAP_URL.sub("", text).rstrip() + "\n"


def extract_inline_map(script: str) -> Tuple[str, Optional[dict]]:
    """Split a script carrying an inline data-URI map into (script, map)."""
    reference = find_map_reference(script)
    if reference is None or not is_data_uri(reference):
        return script, None
    return strip_map_reference(script), decode_data_uri(reference)


def map_comment(map_name: str) -> str:
    return f"//# sourceMappingURL={map_name}"
