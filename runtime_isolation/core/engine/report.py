"""
Snapshot report — the per-restore ledger of attempts and failures.

One report lives for the duration of a single restore invocation and is
reset at the start of every pass:

    attempt counters    survive reset(); they feed the "(3rd attempt)"
                        suffix of the log lines for the whole restore
    outcomes            cleared on reset(); failures of the current pass
    recorded tasks      cleared on reset(); whether the pass had to
                        correct anything at all

The report does not decide whether a failure is fatal. The orchestrator
calls fail_if_errors() at the end of a pass and says whether that pass
was the final attempt.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from runtime_isolation.core.engine.errors import ServiceError
from runtime_isolation.core.models.outcome import TaskOutcome
from runtime_isolation.core.models.state import Operation

logger = logging.getLogger(__name__)

_ORDINAL_SUFFIXES = ("th", "st", "nd", "rd", "th", "th", "th", "th", "th", "th")


def ordinal(n: int) -> str:
    """``1`` → ``1st``, ``12`` → ``12th``, ``23`` → ``23rd``."""
    if n % 100 in (11, 12, 13):
        return f"{n}th"
    return f"{n}{_ORDINAL_SUFFIXES[n % 10]}"


class SnapshotReport:
    """Attempt counters and failures for one restore invocation."""

    def __init__(self) -> None:
        # kind -> (operation, key) -> attempts
        self._attempts: dict[str, dict[tuple[Operation, str], int]] = defaultdict(dict)
        self._soft: list[ServiceError] = []
        self._hard: list[ServiceError] = []
        self._recorded_tasks = False
        self.tasks_executed = 0
        self.suppressed_total = 0

    # ── Pass lifecycle ───────────────────────────────────────────

    def reset(self) -> SnapshotReport:
        """Start a new pass. Attempt counters are kept."""
        self._soft.clear()
        self._hard.clear()
        self._recorded_tasks = False
        return self

    def record_task(self) -> SnapshotReport:
        """Note that the current pass had to execute a corrective task."""
        self._recorded_tasks = True
        self.tasks_executed += 1
        return self

    def has_recorded_tasks(self) -> bool:
        return self._recorded_tasks

    # ── Outcomes ─────────────────────────────────────────────────

    def record(self, outcome: TaskOutcome) -> SnapshotReport:
        """Record the outcome of a task execution."""
        if outcome.ok or outcome.error is None:
            return self
        error = outcome.error
        if not isinstance(error, ServiceError):
            error = ServiceError(str(error), cause=error)
        if outcome.hard:
            logger.debug("Execution error: %s", error, exc_info=error)
            self._hard.append(error)
        else:
            logger.debug("Deferred execution error: %s", error, exc_info=error)
            self._soft.append(error)
        return self

    def has_soft_failures(self) -> bool:
        return bool(self._soft)

    def was_successful(self) -> bool:
        return not (self._soft or self._hard)

    @property
    def errors(self) -> list[ServiceError]:
        """Failures of the current pass, hard ones first."""
        return [*self._hard, *self._soft]

    def fail_if_errors(self, final_attempt: bool) -> None:
        """Raise the aggregated failure of this pass, if it has one.

        Hard failures always raise. Soft failures only raise on the final
        attempt; before that they are suppressed and the pass is retried.

        Raises:
            ServiceError: the first error, with the others attached as
                suppressed errors.
        """
        if self._hard or (final_attempt and self._soft):
            errors = self.errors
            first = errors[0]
            for other in errors[1:]:
                first.add_suppressed(other)
            raise first
        if self._soft:
            self.suppressed_total += len(self._soft)
            for error in self._soft:
                logger.debug("Suppressed execution error: %s", error)

    # ── Attempt counters ─────────────────────────────────────────

    def attempt(self, kind: str, operation: Operation, key: str) -> int:
        """Count one more attempt at ``operation`` on ``key`` and return it."""
        counters = self._attempts[kind]
        count = counters.get((operation, key), 0) + 1
        counters[(operation, key)] = count
        return count

    def attempt_string(self, kind: str, operation: Operation, key: str) -> str:
        """Count an attempt and return its log suffix (empty on the 1st)."""
        count = self.attempt(kind, operation, key)
        if count > 1:
            return f" ({ordinal(count)} attempt)"
        return ""
