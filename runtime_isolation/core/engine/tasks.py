"""
Task list — the corrective operations queued by one processor sweep.

Tasks are keyed by ``(operation, key)`` and at most one task per key is
pending at any time: queueing the same key again in the same sweep is
merged into the pending task, never duplicated.

Two shapes of task exist:

    Task            one operation on one unit (repositories, bundles)
    CompoundTask    one operation on a batch of units whose ids are
                    merged into a shared payload (features, per region)

A task list is used for one layer of one pass: the processor fills it,
the orchestrator executes it, and the processor fills it again until it
stays empty. A key that keeps coming back more than ``max_attempts``
times is reported as a failure instead of being queued forever.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from runtime_isolation.core.engine.errors import ServiceError
from runtime_isolation.core.engine.report import SnapshotReport
from runtime_isolation.core.models.outcome import TaskOutcome
from runtime_isolation.core.models.state import Operation

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5

T = TypeVar("T")

Executor = Callable[[SnapshotReport], TaskOutcome]


@dataclass
class Task:
    """A single corrective operation on one unit."""

    operation: Operation
    key: str
    executor: Executor

    @property
    def keys(self) -> list[str]:
        return [self.key]

    def execute(self, report: SnapshotReport) -> TaskOutcome:
        return self.executor(report)

    def describe(self) -> str:
        return f"{self.operation.value} {self.key}"


@dataclass
class CompoundTask(Generic[T]):
    """A batched corrective operation whose payload grows as units are merged."""

    operation: Operation
    payload: T
    executor: Callable[[T, SnapshotReport], TaskOutcome]
    keys: list[str] = field(default_factory=list)
    on_key: Callable[[Operation, str], bool] | None = None

    def add(self, key: str, merge: Callable[[T], object]) -> CompoundTask[T]:
        """Merge one unit into this task's payload. Chainable.

        A key already merged is ignored.
        """
        if key in self.keys:
            return self
        if self.on_key is not None and not self.on_key(self.operation, key):
            return self
        self.keys.append(key)
        merge(self.payload)
        return self

    def execute(self, report: SnapshotReport) -> TaskOutcome:
        return self.executor(self.payload, report)

    def describe(self) -> str:
        return f"{self.operation.value} [{', '.join(sorted(self.keys))}]"


class TaskList:
    """Deduplicated corrective tasks for one layer (``kind``) of a pass."""

    def __init__(
        self,
        kind: str,
        report: SnapshotReport,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self._kind = kind
        self._report = report
        self._max_attempts = max_attempts
        self._tasks: dict[tuple[Operation, str], Task] = {}
        self._compounds: dict[Operation, CompoundTask] = {}
        self._queued: dict[tuple[Operation, str], int] = {}
        self._exhausted: list[ServiceError] = []

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def report(self) -> SnapshotReport:
        return self._report

    def add(self, operation: Operation, key: str, executor: Executor) -> bool:
        """Queue a single-unit task.

        Returns:
            True if queued, False if a task for the same key was already
            pending (merged) or the key ran out of attempts.
        """
        if (operation, key) in self._tasks:
            return False
        if not self._count(operation, key):
            return False
        self._tasks[(operation, key)] = Task(operation, key, executor)
        return True

    def add_if_absent(
        self,
        operation: Operation,
        seed: Callable[[], T],
        executor: Callable[[T, SnapshotReport], TaskOutcome],
    ) -> CompoundTask[T]:
        """Get the pending batched task for ``operation``, creating it if needed."""
        compound = self._compounds.get(operation)
        if compound is None:
            compound = CompoundTask(
                operation=operation,
                payload=seed(),
                executor=executor,
                on_key=self._count,
            )
            self._compounds[operation] = compound
        return compound

    def is_empty(self) -> bool:
        """True when nothing is pending and no key ran out of attempts."""
        if self._exhausted:
            return False
        return not self._tasks and not any(c.keys for c in self._compounds.values())

    def pending(self) -> list[Task | CompoundTask]:
        """Pending tasks in execution order."""
        return [*self._tasks.values(), *(c for c in self._compounds.values() if c.keys)]

    def describe(self) -> list[str]:
        return [f"{self._kind}: {task.describe()}" for task in self.pending()]

    def execute(self) -> bool:
        """Execute every pending task and clear the list.

        Returns:
            True if every task succeeded; False if at least one failed or a
            key ran out of attempts. Failures are recorded in the report.
        """
        ok = True
        for error in self._exhausted:
            self._report.record(TaskOutcome.soft_failure(error))
            ok = False
        if self._exhausted:
            self._exhausted.clear()
            self.clear()
            return ok

        for task in self.pending():
            self._report.record_task()
            outcome = task.execute(self._report)
            self._report.record(outcome)
            if outcome.failed:
                ok = False
        self.clear()
        return ok

    def clear(self) -> None:
        self._tasks.clear()
        self._compounds.clear()

    def _count(self, operation: Operation, key: str) -> bool:
        count = self._queued.get((operation, key), 0) + 1
        self._queued[(operation, key)] = count
        if count <= self._max_attempts:
            return True
        error = ServiceError(
            f"Task error: too many attempts to {operation.value} {self._kind} [{key}]"
        )
        logger.debug("%s", error)
        self._exhausted.append(error)
        return False

    def __len__(self) -> int:
        return len(self.pending())

    def __repr__(self) -> str:
        return f"<TaskList kind={self._kind!r} pending={len(self)}>"
