"""
Engine errors.

ServiceError carries a list of suppressed errors so that a single raise
can report every unit that failed to converge.
"""

from __future__ import annotations


class ServiceError(Exception):
    """Raised when the runtime cannot be brought to the desired state."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.suppressed: list[BaseException] = []
        if cause is not None:
            self.__cause__ = cause

    def add_suppressed(self, error: BaseException) -> None:
        self.suppressed.append(error)

    def __str__(self) -> str:
        message = super().__str__()
        if not self.suppressed:
            return message
        others = "; ".join(str(e) for e in self.suppressed)
        return f"{message} (+{len(self.suppressed)} more: {others})"


class ServiceTimeoutError(ServiceError):
    """Raised when units fail to stabilize within the allotted time."""
