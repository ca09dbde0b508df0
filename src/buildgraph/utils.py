from __future__ import annotations

"""Small helpers shared by tasks: joins, subprocesses, paths and writes."""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Dict, Iterable, List, Optional, Sequence

from .errors import PipelineError


async def join_first_failure(
    aws: Iterable[Awaitable],
    logger: Optional[logging.Logger] = None,
    settle: bool = False,
) -> list:
    """Await all of ``aws`` and raise the first failure observed.

    Pending work is never cancelled. With ``settle`` the remaining awaitables
    are allowed to finish before the first failure is raised, and any further
    failures are logged instead of aggregated.
    """
    tasks = [asyncio.ensure_future(a) for a in aws]
    if not tasks:
        return []
    _, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    failed = [t for t in tasks if t.done() and not t.cancelled() and t.exception()]
    if not failed:
        return [t.result() for t in tasks]
    first = failed[0]
    if settle and pending:
        await asyncio.wait(pending)
        failed = [t for t in tasks if not t.cancelled() and t.exception()]
    if logger is not None:
        for t in failed:
            if t is not first:
                logger.error("Additional failure (not surfaced): %s", t.exception())
    raise first.exception()


@dataclass
class CommandResult:
    args: List[str]
    returncode: int
    stdout: bytes
    stderr: bytes

    def stderr_tail(self, lines: int = 20) -> str:
        text = self.stderr.decode("utf-8", errors="replace").strip()
        return "\n".join(text.splitlines()[-lines:])


def format_command(template: Sequence[str], **values) -> List[str]:
    """Fill ``{placeholders}`` in a command template.

    An element that is exactly ``{name}`` with a list value expands into
    several arguments; ``None`` values drop the element.
    """
    args: List[str] = []
    for part in template:
        key = part[1:-1] if part.startswith("{") and part.endswith("}") else None
        if key is not None and key in values:
            value = values[key]
            if value is None:
                continue
            if isinstance(value, (list, tuple)):
                args.extend(str(v) for v in value)
                continue
            args.append(str(value))
            continue
        args.append(part.format(**{k: v for k, v in values.items() if v is not None}))
    return args


async def run_command(
    args: Sequence[str],
    cwd: Path | None = None,
    env: Dict[str, str] | None = None,
    timeout: float | None = None,
) -> CommandResult:
    merged_env = dict(os.environ)
    if env:
        merged_env.update(env)
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            env=merged_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise PipelineError(f"Could not start {args[0]!r}: {e}") from e
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise PipelineError(f"Command timed out after {timeout}s: {' '.join(args)}") from e
    return CommandResult(list(args), proc.returncode, stdout, stderr)


def relative_posix(path: Path, start: Path) -> str:
    return Path(os.path.relpath(path, start)).as_posix()


def is_within(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


def atomic_write_text(path: Path, text: str) -> None:
    """Write through a sibling temporary file, then replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)
