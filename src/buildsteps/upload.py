"""Forward the lcov coverage summary to a Coveralls-compatible aggregator."""

from __future__ import annotations

import asyncio
import hashlib
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import requests

from buildgraph.config import BuildConfig
from buildgraph.errors import UploadError
from buildgraph.logging import get_logger
from buildgraph.utils import relative_posix


log = get_logger("buildgraph.upload")


@dataclass
class FileCoverage:
    path: str
    lines: Dict[int, int] = field(default_factory=dict)


def parse_lcov(text: str) -> List[FileCoverage]:
    files: List[FileCoverage] = []
    current: Optional[FileCoverage] = None
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if line.startswith("SF:"):
            current = FileCoverage(path=line[3:])
        elif line.startswith("DA:") and current is not None:
            parts = line[3:].split(",")
            try:
                number, hits = int(parts[0]), int(parts[1])
            except (IndexError, ValueError) as e:
                raise UploadError(f"Malformed lcov record on line {lineno}: {raw!r}") from e
            current.lines[number] = current.lines.get(number, 0) + hits
        elif line == "end_of_record" and current is not None:
            files.append(current)
            current = None
    return files


def source_file_payload(cov: FileCoverage, project_root: Path) -> dict:
    path = Path(cov.path)
    if not path.is_absolute():
        path = project_root / path
    try:
        source = path.read_bytes()
    except OSError:
        source = b""
    line_count = max(len(source.splitlines()), max(cov.lines, default=0))
    coverage = [cov.lines.get(n) for n in range(1, line_count + 1)]
    return {
        "name": relative_posix(path, project_root),
        "source_digest": hashlib.md5(source).hexdigest(),
        "coverage": coverage,
    }


class CoverallsUploader:
    def __init__(self, config: BuildConfig, env: Mapping[str, str] | None = None):
        self.config = config
        self.env = os.environ if env is None else env

    def find_summary(self) -> Path:
        found = sorted(self.config.coverage_dir.glob("**/lcov.info"))
        if not found:
            raise UploadError(f"No lcov.info under {self.config.coverage_dir}")
        return found[0]

    def build_payload(self, summary: Path) -> dict:
        try:
            text = summary.read_text(encoding="utf-8")
        except OSError as e:
            raise UploadError(f"Cannot read {summary}: {e}") from e
        payload = {
            "service_name": self.env.get("COVERALLS_SERVICE_NAME", "local"),
            "source_files": [
                source_file_payload(c, self.config.project_root) for c in parse_lcov(text)
            ],
        }
        token = self.env.get("COVERALLS_REPO_TOKEN")
        if token:
            payload["repo_token"] = token
        job_id = self.env.get("COVERALLS_SERVICE_JOB_ID") or self.env.get("TRAVIS_JOB_ID")
        if job_id:
            payload["service_job_id"] = job_id
        return payload

    def upload_sync(self) -> dict:
        summary = self.find_summary()
        payload = self.build_payload(summary)
        try:
            resp = requests.post(
                self.config.coveralls_endpoint,
                files={"json_file": ("coverage.json", json.dumps(payload), "application/json")},
                timeout=self.config.upload_timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise UploadError(f"Coverage upload failed: {e}") from e
        log.info("Uploaded coverage for %d file(s)", len(payload["source_files"]))
        try:
            return resp.json()
        except ValueError:
            return {}

    async def upload(self) -> dict:
        return await asyncio.to_thread(self.upload_sync)
