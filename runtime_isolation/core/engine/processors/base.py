"""
Processor base — the contract shared by the three unit kinds.

A processor compares the live runtime against a profile and queues
corrective tasks; it never changes the runtime while comparing. The
orchestrator treats every unit kind the same way through ``UnitKind``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Protocol

from runtime_isolation.adapters.base import FatalRuntimeError, RuntimeFacade
from runtime_isolation.core.engine.errors import ServiceError
from runtime_isolation.core.engine.report import SnapshotReport
from runtime_isolation.core.engine.tasks import TaskList
from runtime_isolation.core.models.outcome import TaskOutcome
from runtime_isolation.core.models.profile import Profile
from runtime_isolation.core.models.state import Operation

logger = logging.getLogger(__name__)


class UnitKind(Protocol):
    """One layer of the runtime: repositories, bundles or features."""

    name: str

    def reconcile(self, profile: Profile, tasks: TaskList) -> None:
        """Queue the tasks that move the live runtime toward ``profile``."""
        ...


class Processor:
    """Common plumbing for processors: wraps runtime calls into outcomes."""

    name = "unit"

    def __init__(self, runtime: RuntimeFacade, abort_on_fatal: bool = False):
        self._runtime = runtime
        self._abort_on_fatal = abort_on_fatal

    @property
    def runtime(self) -> RuntimeFacade:
        return self._runtime

    def reconcile(self, profile: Profile, tasks: TaskList) -> None:
        raise NotImplementedError

    def _run(
        self,
        report: SnapshotReport,
        operation: Operation,
        key: str,
        calls: list[Callable[[], object]],
        failure: Callable[[Exception], str],
        labels: list[str] | None = None,
    ) -> TaskOutcome:
        """Run one or more runtime calls as a single corrective task.

        Args:
            report: Report used for the attempt counter.
            operation: Operation being performed.
            key: Attempt counter key (unit id, or region for batches).
            calls: Runtime calls, run in order; the first failure stops them.
            failure: Builds the error message from the runtime exception.
            labels: Unit names to log; defaults to ``[key]``.
        """
        attempt = report.attempt_string(self.name, operation, key)
        for label in labels or [key]:
            logger.info("%s %s '%s'%s", operation.operating_name, self.name, label, attempt)
        try:
            for call in calls:
                call()
        except Exception as e:
            error = ServiceError(f"{failure(e)}; {e}", cause=e)
            if self._abort_on_fatal and isinstance(e, FatalRuntimeError):
                return TaskOutcome.hard_failure(error)
            return TaskOutcome.soft_failure(error)
        return TaskOutcome.success()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} runtime={self._runtime!r}>"
