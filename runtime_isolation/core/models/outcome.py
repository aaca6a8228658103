"""
TaskOutcome — the result of executing one corrective task.

Tasks never raise for runtime failures. They return an outcome instead
and the orchestrator decides what a failure means for the current pass:

    ok              the runtime accepted the change
    soft_failure    failed, probably because of ordering; retry next pass
    hard_failure    failed in a way more passes will not fix; abort
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal


@dataclass(frozen=True)
class TaskOutcome:
    """Tagged result of a task execution."""

    status: Literal["ok", "soft_failure", "hard_failure"] = "ok"
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        return self.status != "ok"

    @property
    def hard(self) -> bool:
        return self.status == "hard_failure"

    @classmethod
    def success(cls) -> TaskOutcome:
        return cls()

    @classmethod
    def soft_failure(cls, error: Exception) -> TaskOutcome:
        return cls(status="soft_failure", error=error)

    @classmethod
    def hard_failure(cls, error: Exception) -> TaskOutcome:
        return cls(status="hard_failure", error=error)
