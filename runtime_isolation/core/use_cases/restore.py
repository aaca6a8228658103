"""
Restore use cases — snapshot, plan and restore against a runtime fixture.

The vertical slice behind the CLI: load settings and YAML documents,
build an in-memory runtime and a reconciler, run one operation and
return a result that knows how to render itself as JSON.

Failures never raise out of here: they land in ``result.error``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from runtime_isolation.adapters.memory import InMemoryRuntime
from runtime_isolation.core.config.loader import (
    ConfigError,
    IsolationSettings,
    load_profile,
    load_runtime_fixture,
    load_settings,
)
from runtime_isolation.core.engine.errors import ServiceError
from runtime_isolation.core.engine.reconciler import Reconciler, RestoreResult
from runtime_isolation.core.models.profile import Profile

logger = logging.getLogger(__name__)


@dataclass
class SnapshotResult:
    """Profile captured from a runtime fixture."""

    profile: Profile | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        return {"profile": self.profile.to_dict() if self.profile else {}}


@dataclass
class PlanResult:
    """Tasks the first sweep would queue."""

    tasks: list[str] = field(default_factory=list)
    overlay: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        if self.error:
            return {"error": self.error}
        return {"overlay": self.overlay, "tasks": self.tasks}


@dataclass
class RestoreCommandResult:
    """Outcome of a restore run against a runtime fixture."""

    result: RestoreResult | None = None
    calls: list[str] = field(default_factory=list)
    metrics: dict = field(default_factory=dict)
    error: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"calls": self.calls, "metrics": self.metrics}
        if self.error:
            data["error"] = self.error
        if self.result:
            data["result"] = self.result.to_dict()
        return data


def _settings(settings_path: Path | None) -> IsolationSettings:
    return load_settings(settings_path)


def capture_snapshot(runtime_path: Path, settings_path: Path | None = None) -> SnapshotResult:
    """Capture the profile of a runtime fixture."""
    result = SnapshotResult()
    try:
        runtime = load_runtime_fixture(runtime_path)
        reconciler = Reconciler(runtime, _settings(settings_path))
        result.profile = reconciler.capture()
    except (ConfigError, ServiceError) as e:
        result.error = str(e)
    return result


def plan_restore(
    runtime_path: Path,
    profile_path: Path,
    overlay: bool | None = None,
    settings_path: Path | None = None,
) -> PlanResult:
    """List what restoring ``profile_path`` would do first. Nothing runs."""
    result = PlanResult()
    try:
        runtime = load_runtime_fixture(runtime_path)
        profile = load_profile(profile_path, overlay=overlay)
        reconciler = Reconciler(runtime, _settings(settings_path))
        result.overlay = profile.should_only_process_snapshot()
        result.tasks = reconciler.plan(profile)
    except (ConfigError, ServiceError) as e:
        result.error = str(e)
    return result


def run_restore(
    runtime_path: Path,
    profile_path: Path,
    overlay: bool | None = None,
    settings_path: Path | None = None,
) -> RestoreCommandResult:
    """Restore a profile onto a runtime fixture and report every call made."""
    result = RestoreCommandResult()
    runtime: InMemoryRuntime | None = None
    reconciler: Reconciler | None = None
    try:
        runtime = load_runtime_fixture(runtime_path)
        profile = load_profile(profile_path, overlay=overlay)
        reconciler = Reconciler(runtime, _settings(settings_path))
        result.result = reconciler.restore(profile)
    except (ConfigError, ServiceError) as e:
        logger.debug("Restore failed", exc_info=True)
        result.error = str(e)

    if runtime is not None:
        result.calls = [str(c) for c in runtime.call_log]
    if reconciler is not None:
        result.metrics = reconciler.metrics.to_dict()
    return result
