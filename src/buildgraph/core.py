from __future__ import annotations

import asyncio
import functools
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

from .errors import TaskGraphError
from .logging import get_logger
from .utils import join_first_failure


# An action takes no arguments once bound; it may return an awaitable.
Action = Optional[Callable[..., Any]]


@dataclass
class TaskSpec:
    name: str
    deps: tuple[str, ...] = ()
    fn: Action = None


def task(name: str, deps: Sequence[str] = ()):
    """Decorator to declare a task on a function.

    The wrapped function receives the per-invocation context as its only
    argument and may be a coroutine function.
    """

    def deco(fn: Callable[..., Any]):
        spec = TaskSpec(name=name, deps=tuple(deps), fn=fn)
        setattr(fn, "_task_spec", spec)
        return fn

    return deco


def alias(name: str, deps: Sequence[str]) -> TaskSpec:
    """Composite task: a no-op node joining ``deps``."""
    return TaskSpec(name=name, deps=tuple(deps), fn=None)


def topo_sort(nodes: Iterable[str], edges: Iterable[tuple[str, str]]) -> list[str]:
    nodes = list(nodes)
    incoming = {n: set() for n in nodes}
    outgoing = {n: set() for n in nodes}
    for u, v in edges:
        if u not in incoming or v not in incoming:
            raise TaskGraphError(f"Edge references unknown task: {(u, v)}")
        outgoing[u].add(v)
        incoming[v].add(u)
    ordered: list[str] = []
    roots = [n for n in nodes if not incoming[n]]
    while roots:
        n = roots.pop()
        ordered.append(n)
        for m in list(outgoing[n]):
            incoming[m].discard(n)
            outgoing[n].discard(m)
            if not incoming[m]:
                roots.append(m)
    if any(incoming[n] for n in nodes):
        cyclic = sorted(n for n in nodes if incoming[n])
        raise TaskGraphError(f"Cycle detected between tasks: {', '.join(cyclic)}")
    return ordered


@dataclass
class TaskOutcome:
    name: str
    executed: list[str] = field(default_factory=list)
    failed_task: str | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error


class TaskGraph:
    """Registry and executor for named build steps.

    ``run`` starts each task of the requested closure at most once, runs
    independent dependencies concurrently and stops starting new actions as
    soon as one action fails.
    """

    def __init__(self, name: str = "build"):
        self.name = name
        self.tasks: dict[str, TaskSpec] = {}
        self.logger = get_logger(f"buildgraph.{self.name}")

    @classmethod
    def from_specs(cls, specs: Iterable[TaskSpec], context: Any = None, name: str = "build") -> "TaskGraph":
        graph = cls(name=name)
        for spec in specs:
            fn = spec.fn
            if fn is not None and context is not None:
                fn = functools.partial(fn, context)
            graph.register(spec.name, spec.deps, fn)
        return graph

    def register(self, name: str, deps: Sequence[str], action: Action) -> None:
        if name in self.tasks:
            raise TaskGraphError(f"Task already registered: {name}")
        self.tasks[name] = TaskSpec(name=name, deps=tuple(deps), fn=action)

    def add(self, spec: TaskSpec) -> None:
        self.register(spec.name, spec.deps, spec.fn)

    def validate(self, name: str) -> list[str]:
        """Return the closure of ``name`` in dependency order."""
        closure: list[str] = []
        stack = [name]
        while stack:
            current = stack.pop()
            if current in closure:
                continue
            if current not in self.tasks:
                raise TaskGraphError(f"Unknown task: {current}")
            closure.append(current)
            stack.extend(self.tasks[current].deps)
        edges = [(dep, n) for n in closure for dep in self.tasks[n].deps]
        return topo_sort(closure, edges)

    async def run(self, name: str) -> TaskOutcome:
        order = self.validate(name)
        self.logger.info("Selected tasks: %s", " → ".join(order))
        execution = _Execution(self)
        try:
            await execution.ensure(name)
        except Exception as e:  # noqa: BLE001
            if execution.error is None:
                execution.error = e
        finally:
            # No cancellation: let actions already in flight finish. A running
            # task may still ensure() new ones, so repeat until none appear.
            awaited = 0
            while awaited < len(execution.started):
                pending = list(execution.started.values())
                awaited = len(pending)
                await asyncio.gather(*pending, return_exceptions=True)
        return TaskOutcome(
            name=name,
            executed=list(execution.executed),
            failed_task=execution.failed_task,
            error=execution.error,
        )


class _Execution:
    """State of a single ``TaskGraph.run`` call."""

    def __init__(self, graph: TaskGraph):
        self.graph = graph
        self.started: dict[str, asyncio.Task] = {}
        self.executed: list[str] = []
        self.failed_task: str | None = None
        self.error: BaseException | None = None

    def ensure(self, name: str) -> asyncio.Task:
        t = self.started.get(name)
        if t is None:
            t = asyncio.create_task(self._execute(name), name=f"task:{name}")
            self.started[name] = t
        return t

    async def _execute(self, name: str) -> None:
        spec = self.graph.tasks[name]
        if spec.deps:
            await join_first_failure([self.ensure(dep) for dep in spec.deps])
        if self.error is not None:
            raise _Aborted(name)
        logger = get_logger(f"buildgraph.{self.graph.name}.{name}")
        logger.info("Run: %s", name)
        try:
            if spec.fn is not None:
                result = spec.fn()
                if inspect.isawaitable(result):
                    await result
        except Exception as e:  # noqa: BLE001
            if self.error is None:
                self.error = e
                self.failed_task = name
            logger.error("Task failed (%s): %s", name, e)
            raise
        self.executed.append(name)


class _Aborted(Exception):
    """A task was not started because another task already failed."""
