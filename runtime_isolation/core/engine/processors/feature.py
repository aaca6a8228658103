"""
Feature processor — drive each feature to its recorded state and
required flag.

Features follow the same one-transition-per-sweep rule as bundles, with
``resolved`` standing for "present but stopped":

    target \\ live   uninstalled   installed/resolved   started
    ─────────────   ───────────   ──────────────────   ─────────
    uninstalled     -             UNINSTALL            UNINSTALL
    installed       INSTALL       -                    STOP
    resolved        INSTALL       STOP (if installed)  STOP
    started         INSTALL       START                -

On top of the lifecycle, a recorded required flag that differs from the
runtime's queues an UPDATE. The flag is left alone when not recorded.

Differences with bundles:

    * A feature recorded without a version matches the newest live
      version of that name.
    * Install, uninstall and update are batched: one task per operation
      carries the feature ids of every region, and the runtime gets one
      call per region.
    * Uninstalling first marks the features required again, since the
      runtime only uninstalls features it considers required.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable

from runtime_isolation.core.engine.errors import ServiceError
from runtime_isolation.core.engine.processors.base import Processor
from runtime_isolation.core.engine.report import SnapshotReport
from runtime_isolation.core.engine.tasks import TaskList
from runtime_isolation.core.models.outcome import TaskOutcome
from runtime_isolation.core.models.profile import Profile
from runtime_isolation.core.models.snapshot import FeatureInfo, FeatureSnapshot, version_key
from runtime_isolation.core.models.state import (
    NO_AUTO_REFRESH,
    ROOT_REGION,
    FeatureState,
    Operation,
)

logger = logging.getLogger(__name__)

SnapshotsByRegion = dict[str, set[FeatureSnapshot]]
FeaturesByRegion = dict[str, set[FeatureInfo]]


def _by_region() -> defaultdict[str, set]:
    return defaultdict(set)


class FeatureProcessor(Processor):
    """Reconciles feature lifecycle states and required flags."""

    name = "feature"

    def list_features(self, purpose: str = "Restore") -> list[FeatureInfo]:
        """Every feature known to the runtime.

        Raises:
            ServiceError: if the runtime cannot list them.
        """
        try:
            features = self._runtime.list_features()
        except Exception as e:
            raise ServiceError(f"{purpose} error: failed to retrieve features; {e}", cause=e) from e
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Runtime features: %s",
                ", ".join(f"{f.id} ({self._describe(f.id)})" for f in features),
            )
        return features

    # ── Batched operations ───────────────────────────────────────

    def install_features(self, report: SnapshotReport, features: SnapshotsByRegion) -> TaskOutcome:
        """Install features, one runtime call per region."""
        return self._per_region(features, lambda region, batch: self._install(report, region, batch))

    def uninstall_features(self, report: SnapshotReport, features: FeaturesByRegion) -> TaskOutcome:
        """Mark features required, then uninstall them, one region at a time."""
        return self._per_region(
            features, lambda region, batch: self._uninstall(report, region, batch)
        )

    def update_requirements(self, report: SnapshotReport, features: SnapshotsByRegion) -> TaskOutcome:
        """Set the required flag of features, one region at a time."""
        return self._per_region(features, lambda region, batch: self._update(report, region, batch))

    # ── Single-feature operations ────────────────────────────────

    def start_feature(self, report: SnapshotReport, feature: FeatureInfo, region: str) -> TaskOutcome:
        return self._single(
            report,
            Operation.START,
            feature,
            lambda: self._runtime.start_feature(feature.id, region, NO_AUTO_REFRESH),
        )

    def stop_feature(self, report: SnapshotReport, feature: FeatureInfo, region: str) -> TaskOutcome:
        """Stop a feature by moving it back to the resolved state."""
        return self._single(
            report,
            Operation.STOP,
            feature,
            lambda: self._runtime.stop_feature(feature.id, region, NO_AUTO_REFRESH),
        )

    # ── Reconciliation ───────────────────────────────────────────

    def reconcile(self, profile: Profile, tasks: TaskList) -> None:
        leftover = self.reconcile_snapshot(profile, tasks)
        if not profile.should_only_process_snapshot():
            self.reconcile_leftovers(leftover, tasks)

    def reconcile_snapshot(self, profile: Profile, tasks: TaskList) -> dict[str, FeatureInfo]:
        """Queue tasks for every feature recorded in the profile.

        Returns:
            Live features not matched by the profile, keyed by id.
        """
        # newest version first so a versionless entry takes the latest one
        live = {
            f.id: f
            for f in sorted(
                self.list_features(),
                key=lambda f: (f.name, version_key(f.version)),
                reverse=True,
            )
        }
        for snapshot in profile.features:
            if snapshot.has_version:
                feature = live.pop(snapshot.id, None)
            else:
                feature = self._pop_newest(live, snapshot.name)
            self.reconcile_feature(snapshot, feature, tasks)
        return live

    def reconcile_leftovers(self, leftover: dict[str, FeatureInfo], tasks: TaskList) -> None:
        """Queue uninstallation of every live feature the profile does not know about."""
        for feature in leftover.values():
            if not self._queue_uninstall(feature, ROOT_REGION, tasks):
                logger.debug("Skipping feature '%s'; already uninstalled", feature.id)

    def reconcile_feature(
        self, snapshot: FeatureSnapshot, feature: FeatureInfo | None, tasks: TaskList
    ) -> None:
        """Compare one recorded feature with its live counterpart (None if unknown)."""
        if feature is None:
            if snapshot.state != FeatureState.UNINSTALLED:
                self._queue_install(snapshot, tasks)
            return

        if snapshot.state == FeatureState.UNINSTALLED:
            self._queue_uninstall(feature, snapshot.effective_region, tasks)
            return

        state = self._state(feature.id)
        if state == FeatureState.UNINSTALLED:
            # one transition per sweep; start/stop happens on the next one
            self._queue_install(snapshot, tasks)
            return

        region = snapshot.effective_region
        if snapshot.state == FeatureState.STARTED:
            if state != FeatureState.STARTED:
                tasks.add(
                    Operation.START,
                    feature.id,
                    lambda r: self.start_feature(r, feature, region),
                )
        elif snapshot.state == FeatureState.INSTALLED:
            if state == FeatureState.STARTED:
                tasks.add(
                    Operation.STOP,
                    feature.id,
                    lambda r: self.stop_feature(r, feature, region),
                )
        elif state != FeatureState.RESOLVED:
            tasks.add(
                Operation.STOP,
                feature.id,
                lambda r: self.stop_feature(r, feature, region),
            )

        if snapshot.required is not None and snapshot.required != self._required(feature.id):
            self._queue_update(snapshot, tasks)

    # ── Task queueing ────────────────────────────────────────────

    def _queue_install(self, snapshot: FeatureSnapshot, tasks: TaskList) -> None:
        # whether it ends up with the right required flag is checked on a later sweep
        tasks.add_if_absent(
            Operation.INSTALL, _by_region, lambda batches, r: self.install_features(r, batches)
        ).add(
            snapshot.id,
            lambda batches: batches[snapshot.effective_region].add(snapshot),
        )

    def _queue_uninstall(self, feature: FeatureInfo, region: str, tasks: TaskList) -> bool:
        if self._state(feature.id) == FeatureState.UNINSTALLED:
            return False
        tasks.add_if_absent(
            Operation.UNINSTALL, _by_region, lambda batches, r: self.uninstall_features(r, batches)
        ).add(
            feature.id,
            lambda batches: batches[region].add(feature),
        )
        return True

    def _queue_update(self, snapshot: FeatureSnapshot, tasks: TaskList) -> None:
        tasks.add_if_absent(
            Operation.UPDATE, _by_region, lambda batches, r: self.update_requirements(r, batches)
        ).add(
            snapshot.id,
            lambda batches: batches[snapshot.effective_region].add(snapshot),
        )

    # ── Runtime calls ────────────────────────────────────────────

    def _install(self, report: SnapshotReport, region: str, batch: set[FeatureSnapshot]) -> TaskOutcome:
        ids = {f.id for f in batch}
        return self._batch(
            report,
            Operation.INSTALL,
            region,
            ids,
            [lambda: self._runtime.install_features(ids, region, NO_AUTO_REFRESH)],
        )

    def _uninstall(self, report: SnapshotReport, region: str, batch: set[FeatureInfo]) -> TaskOutcome:
        ids = {f.id for f in batch}
        requirements = {f.to_requirement() for f in batch}
        return self._batch(
            report,
            Operation.UNINSTALL,
            region,
            ids,
            [
                lambda: self._runtime.add_requirements(region, requirements, NO_AUTO_REFRESH),
                lambda: self._runtime.uninstall_features(ids, region, NO_AUTO_REFRESH),
            ],
        )

    def _update(self, report: SnapshotReport, region: str, batch: set[FeatureSnapshot]) -> TaskOutcome:
        grouped: dict[bool, set[str]] = defaultdict(set)
        for snapshot in batch:
            grouped[bool(snapshot.required)].add(snapshot.to_requirement())

        calls: list[Callable[[], object]] = []
        if grouped[True]:
            calls.append(
                lambda: self._runtime.add_requirements(region, grouped[True], NO_AUTO_REFRESH)
            )
        if grouped[False]:
            calls.append(
                lambda: self._runtime.remove_requirements(region, grouped[False], NO_AUTO_REFRESH)
            )
        return self._batch(report, Operation.UPDATE, region, {f.id for f in batch}, calls)

    def _batch(
        self,
        report: SnapshotReport,
        operation: Operation,
        region: str,
        ids: set[str],
        calls: list[Callable[[], object]],
    ) -> TaskOutcome:
        return self._run(
            report,
            operation,
            region,
            calls,
            lambda e: f"Task error: failed to {operation.value} features for region [{region}]",
            labels=sorted(ids),
        )

    def _single(
        self,
        report: SnapshotReport,
        operation: Operation,
        feature: FeatureInfo,
        call: Callable[[], object],
    ) -> TaskOutcome:
        return self._run(
            report,
            operation,
            feature.id,
            [call],
            lambda e: (
                f"Task error: failed to {operation.value} feature [{feature.id}] "
                f"from state [{self._describe(feature.id)}]"
            ),
        )

    @staticmethod
    def _per_region(
        batches: dict[str, set], run: Callable[[str, set], TaskOutcome]
    ) -> TaskOutcome:
        for region, batch in batches.items():
            outcome = run(region, batch)
            if outcome.failed:
                return outcome
        return TaskOutcome.success()

    @staticmethod
    def _pop_newest(live: dict[str, FeatureInfo], name: str) -> FeatureInfo | None:
        for feature_id, feature in live.items():
            if feature.name == name:
                return live.pop(feature_id)
        return None

    def _state(self, feature_id: str) -> FeatureState:
        try:
            return self._runtime.get_feature_state(feature_id)
        except Exception as e:
            raise ServiceError(
                f"Restore error: failed to retrieve state of feature [{feature_id}]; {e}", cause=e
            ) from e

    def _required(self, feature_id: str) -> bool:
        try:
            return self._runtime.is_feature_required(feature_id)
        except Exception as e:
            raise ServiceError(
                f"Restore error: failed to retrieve requirement of feature [{feature_id}]; {e}",
                cause=e,
            ) from e

    def _describe(self, feature_id: str) -> str:
        """``state/required`` for diagnostics; never raises."""
        try:
            state = self._runtime.get_feature_state(feature_id).value
            required = "required" if self._runtime.is_feature_required(feature_id) else "not required"
        except Exception:
            return "unknown"
        return f"{state}/{required}"
