"""
Reconciler — restore a runtime to a profile through repeated passes.

A pass sweeps the three unit kinds in order. Each kind loops on its own
until it has nothing left to correct or a task fails:

    repositories  →  bundles  →  features (only if both converged)

A pass converges when it found nothing to correct and nothing failed,
i.e. the runtime already matched the profile when it was looked at.
Correcting something means another pass is needed to confirm it:

    for attempt in 1..attempt_count:
        report.reset()
        converged = pass(profile, report)
        report.fail_if_errors(final_attempt=attempt == attempt_count)
        if converged: stabilize; done
    raise "too many attempts"

Failures of the non-final attempts are suppressed, because most of them
are ordering problems the next pass fixes. Failures of the final attempt
raise one ServiceError carrying all the others.

The baseline profile is captured once per reconciler, the first time it
is needed, and every restore is serialized under the same lock: the
runtime does not cope with concurrent structural changes.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from runtime_isolation.adapters.base import RuntimeFacade
from runtime_isolation.core.config.loader import IsolationSettings
from runtime_isolation.core.engine import stabilizer as stabilizing
from runtime_isolation.core.engine.desired_state import DesiredStateProvider, EmptyStateProvider
from runtime_isolation.core.engine.errors import ServiceError
from runtime_isolation.core.engine.processors.base import UnitKind
from runtime_isolation.core.engine.processors.bundle import BundleProcessor
from runtime_isolation.core.engine.processors.feature import FeatureProcessor
from runtime_isolation.core.engine.processors.repository import RepositoryProcessor
from runtime_isolation.core.engine.report import SnapshotReport
from runtime_isolation.core.engine.tasks import TaskList
from runtime_isolation.core.models.profile import Profile
from runtime_isolation.core.models.snapshot import FeatureSnapshot
from runtime_isolation.core.models.state import BundleState, FeatureState, SimpleBundleState
from runtime_isolation.core.observability import metrics as m

logger = logging.getLogger(__name__)

ATTEMPT_COUNT = 5


@dataclass
class RestoreResult:
    """What a successful restore took."""

    overlay: bool
    attempts: int
    tasks_executed: int
    suppressed_errors: int
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "overlay": self.overlay,
            "attempts": self.attempts,
            "tasks_executed": self.tasks_executed,
            "suppressed_errors": self.suppressed_errors,
            "duration_ms": round(self.duration_ms, 2),
        }


class Reconciler:
    """Captures a runtime's baseline and drives the runtime back to it.

    Args:
        runtime: Facade over the runtime to reconcile.
        settings: Attempt budget, timeouts, fatal-error policy.
        provider: Supplies the per-test overlay for ``isolation()``.
        metrics: Registry receiving restore metrics.
        stabilizer: Override the stabilizer (tests inject fake clocks).
    """

    def __init__(
        self,
        runtime: RuntimeFacade,
        settings: IsolationSettings | None = None,
        provider: DesiredStateProvider | None = None,
        metrics: m.MetricsRegistry | None = None,
        stabilizer: stabilizing.Stabilizer | None = None,
    ):
        self._runtime = runtime
        self._settings = settings or IsolationSettings(attempt_count=ATTEMPT_COUNT)
        self._provider: DesiredStateProvider = provider or EmptyStateProvider()
        self._metrics = metrics or m.MetricsRegistry()
        self._stabilizer = stabilizer or stabilizing.Stabilizer(
            runtime, poll_interval=self._settings.poll_interval
        )
        abort = self._settings.abort_on_fatal
        self._repositories = RepositoryProcessor(runtime, abort)
        self._bundles = BundleProcessor(runtime, abort)
        self._features = FeatureProcessor(runtime, abort)
        self._lock = threading.RLock()
        self._baseline: Profile | None = None

    @property
    def runtime(self) -> RuntimeFacade:
        return self._runtime

    @property
    def settings(self) -> IsolationSettings:
        return self._settings

    @property
    def metrics(self) -> m.MetricsRegistry:
        return self._metrics

    @property
    def baseline(self) -> Profile | None:
        """The captured baseline, or None before the first snapshot()."""
        return self._baseline

    @property
    def kinds(self) -> list[UnitKind]:
        """Unit kinds in the order a pass sweeps them."""
        return [self._repositories, self._bundles, self._features]

    # ── Snapshots ────────────────────────────────────────────────

    def snapshot(self) -> Profile:
        """Capture the baseline the first time; return the cached one after."""
        if self._baseline is not None:
            return self._baseline
        with self._lock:
            if self._baseline is None:
                self.stabilize()
                logger.info("Snapshooting runtime repositories, features, and bundles")
                self._baseline = self.capture()
        return self._baseline

    def capture(self) -> Profile:
        """Capture the live runtime as a full-restore profile. Not cached."""
        profile = Profile()
        for uri, repository in self._repositories.list_repositories("Snapshot").items():
            logger.debug("snapshooting: repository[name=%s, uri=%s]", repository.name, uri)
            profile.add_repository(uri)
        for feature in self._features.list_features("Snapshot"):
            try:
                snapshot = FeatureSnapshot.capture(feature, self._runtime)
            except Exception as e:
                raise ServiceError(
                    f"Snapshot error: failed to retrieve state of feature [{feature.id}]; {e}",
                    cause=e,
                ) from e
            logger.debug("snapshooting: %s", snapshot)
            profile.add(snapshot)
        for bundle in self._bundles.list_bundles().values():
            logger.debug("snapshooting: %s", bundle)
            profile.add(bundle)
        return profile

    # ── Restore ──────────────────────────────────────────────────

    def restore(self, profile: Profile | None = None) -> RestoreResult:
        """Restore ``profile``, or the baseline when None.

        Raises:
            ServiceError: the final attempt failed or still had work to do.
            ServiceTimeoutError: the runtime did not stabilize afterwards.
        """
        if profile is None:
            profile = self.snapshot()
        overlay = profile.should_only_process_snapshot()

        with self._lock:
            self._metrics.counter(m.INVOCATIONS).inc()
            if not overlay:
                logger.info("Restoring runtime repositories, features, and bundles")
            report = SnapshotReport()
            try:
                with self._metrics.timer(m.DURATION_MS) as timer:
                    attempts = self._restore(profile, report)
            except ServiceError:
                self._metrics.counter(m.FAILURES).inc()
                raise
            finally:
                self._metrics.counter(m.SUPPRESSED_ERRORS).inc(report.suppressed_total)

        return RestoreResult(
            overlay=overlay,
            attempts=attempts,
            tasks_executed=report.tasks_executed,
            suppressed_errors=report.suppressed_total,
            duration_ms=timer.elapsed_ms,
        )

    def _restore(self, profile: Profile, report: SnapshotReport) -> int:
        count = self._settings.attempt_count
        for attempt in range(1, count + 1):
            final = attempt == count
            if final:
                logger.debug("verifying profile")
            else:
                logger.debug("restoring profile (attempt %d out of %d)", attempt, count)
            if self._restore_pass(profile, report.reset(), final):
                self.stabilize(profile=profile)
                return attempt

        if profile.should_only_process_snapshot():
            raise ServiceError("too many attempts to process overlay")
        raise ServiceError("too many attempts to restore snapshot")

    def _restore_pass(self, profile: Profile, report: SnapshotReport, final: bool) -> bool:
        """Run one pass; True when nothing needed correcting.

        Raises:
            ServiceError: hard failures, or any failure on the final attempt.
        """
        self._metrics.counter(m.PASSES).inc()
        if self._converge(self._repositories, profile, report) and self._converge(
            self._bundles, profile, report
        ):
            self._converge(self._features, profile, report)
        report.fail_if_errors(final_attempt=final)
        return not (report.has_soft_failures() or report.has_recorded_tasks())

    def _converge(self, kind: UnitKind, profile: Profile, report: SnapshotReport) -> bool:
        """Loop one unit kind to its fixed point; False if a task failed."""
        tasks = TaskList(kind.name, report, self._settings.attempt_count)
        while True:
            kind.reconcile(profile, tasks)
            if tasks.is_empty():
                logger.debug("No (or no more) %s tasks to execute", kind.name)
                return True
            self._metrics.counter(m.TASKS, kind=kind.name).inc(len(tasks))
            if not tasks.execute():
                logger.debug("Failed to execute some %s tasks", kind.name)
                return False

    def plan(self, profile: Profile | None = None) -> list[str]:
        """Tasks the first sweep of each kind would queue. Nothing is executed."""
        if profile is None:
            profile = self.snapshot()
        report = SnapshotReport()
        planned: list[str] = []
        for kind in self.kinds:
            tasks = TaskList(kind.name, report, self._settings.attempt_count)
            kind.reconcile(profile, tasks)
            planned.extend(tasks.describe())
        return planned

    # ── Stabilization ────────────────────────────────────────────

    def stabilize(self, timeout: float | None = None, profile: Profile | None = None) -> None:
        """Wait for the runtime's bundles to settle.

        Bundles the baseline (or ``profile``) records as installed but not
        active are expected to stay that way. Before a baseline exists,
        installed or resolved bundles are left alone unless they have been
        started, in which case they are waited for until active.

        Raises:
            ServiceError: a bundle is in the failure state.
            ServiceTimeoutError: still settling after ``timeout`` seconds.
        """
        timeout = self._settings.stabilize_timeout if timeout is None else timeout
        logger.info("Waiting for runtime to stabilize (timeout %gs)", timeout)
        self._stabilizer.wait_for_bundles(timeout, inactive=self._expected_inactive(profile))

    def wait_for_feature(
        self,
        name: str,
        state: FeatureState | stabilizing.FeaturePredicate = FeatureState.STARTED,
        timeout: float | None = None,
        version: str | None = None,
    ) -> None:
        timeout = self._settings.stabilize_timeout if timeout is None else timeout
        self._stabilizer.wait_for_feature(name, state, timeout, version=version)

    def wait_for_features(
        self,
        names: Iterable[str],
        predicate: FeatureState | stabilizing.FeaturePredicate = FeatureState.STARTED,
        timeout: float | None = None,
    ) -> None:
        timeout = self._settings.stabilize_timeout if timeout is None else timeout
        self._stabilizer.wait_for_features(names, predicate, timeout)

    def _expected_inactive(self, profile: Profile | None) -> set[str]:
        """Bundles allowed to settle as installed or resolved.

        Full restores take these from the profiles. Before a baseline, and
        for bundles an overlay does not name, the runtime is left as it is:
        anything installed or resolved that nothing is about to start.
        """
        profiles = [p for p in (self._baseline, profile) if p is not None]
        if not profiles:
            return self._idle_bundles()
        expected = {
            b.full_name
            for p in profiles
            for b in p.bundles
            if b.simple_state == SimpleBundleState.INSTALLED
        }
        if profile is not None and profile.should_only_process_snapshot():
            expected |= self._idle_bundles() - {b.full_name for b in profile.bundles}
        return expected

    def _idle_bundles(self) -> set[str]:
        return {
            b.full_name
            for b in self._runtime.list_bundles()
            if b.state in (BundleState.INSTALLED, BundleState.RESOLVED)
            and not self._runtime.is_bundle_persistently_started(b.full_name)
        }

    # ── Test isolation ───────────────────────────────────────────

    @contextmanager
    def isolation(self, context: Any = None) -> Iterator[Reconciler]:
        """Run a test body against the baseline plus its desired overlay.

        The baseline is captured before anything else. The overlay from
        the provider is applied if it is not empty. The baseline is always
        restored on the way out, even when the body fails.
        """
        baseline = self.snapshot()
        try:
            overlay = self._provider.desired_profile(context)
            if not overlay.is_empty():
                self.restore(overlay)
            yield self
        finally:
            self.restore(baseline)

    def __repr__(self) -> str:
        state = "captured" if self._baseline is not None else "pending"
        return f"<Reconciler runtime={self._runtime!r} baseline={state}>"
