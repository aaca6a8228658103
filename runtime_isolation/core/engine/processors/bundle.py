"""
Bundle processor — drive each bundle to its recorded lifecycle state.

    target \\ live   uninstalled      installed       active
    ─────────────   ──────────────   ─────────────   ─────────────
    uninstalled     -                UNINSTALL       UNINSTALL
    installed       INSTALL          -               STOP
    active          INSTALL          START           -

Only one transition is queued per bundle per sweep. A bundle that must
go from uninstalled to active is installed in this sweep and started in
the next one, once the runtime reports it installed.

Fragments never become active: for them, installed is as far as it goes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from runtime_isolation.core.engine.errors import ServiceError
from runtime_isolation.core.engine.processors.base import Processor
from runtime_isolation.core.engine.report import SnapshotReport
from runtime_isolation.core.engine.tasks import TaskList
from runtime_isolation.core.models.outcome import TaskOutcome
from runtime_isolation.core.models.profile import Profile
from runtime_isolation.core.models.snapshot import BundleSnapshot
from runtime_isolation.core.models.state import BundleState, Operation, SimpleBundleState

logger = logging.getLogger(__name__)

_UNINSTALLED = BundleState.UNINSTALLED.describe()


class BundleProcessor(Processor):
    """Reconciles bundle lifecycle states."""

    name = "bundle"

    def list_bundles(self) -> dict[str, BundleSnapshot]:
        """Live bundles keyed by ``name/version``.

        Raises:
            ServiceError: if the runtime cannot list them.
        """
        try:
            bundles = self._runtime.list_bundles()
        except Exception as e:
            raise ServiceError(f"Restore error: failed to retrieve bundles; {e}", cause=e) from e
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Runtime bundles: %s",
                ", ".join(f"{b.full_name} ({b.state.describe()})" for b in bundles),
            )
        return {b.full_name: b for b in bundles}

    # ── Corrective operations ────────────────────────────────────

    def install_bundle(
        self, report: SnapshotReport, name: str, location: str, state: str = _UNINSTALLED
    ) -> TaskOutcome:
        return self._run(
            report,
            Operation.INSTALL,
            name,
            [lambda: self._runtime.install_bundle(location)],
            lambda e: _failure(Operation.INSTALL, name, state),
        )

    def uninstall_bundle(self, report: SnapshotReport, bundle: BundleSnapshot) -> TaskOutcome:
        return self._transition(report, Operation.UNINSTALL, bundle, self._runtime.uninstall_bundle)

    def start_bundle(self, report: SnapshotReport, bundle: BundleSnapshot) -> TaskOutcome:
        return self._transition(report, Operation.START, bundle, self._runtime.start_bundle)

    def stop_bundle(self, report: SnapshotReport, bundle: BundleSnapshot) -> TaskOutcome:
        return self._transition(report, Operation.STOP, bundle, self._runtime.stop_bundle)

    # ── Reconciliation ───────────────────────────────────────────

    def reconcile(self, profile: Profile, tasks: TaskList) -> None:
        leftover = self.reconcile_snapshot(profile, tasks)
        if not profile.should_only_process_snapshot():
            self.reconcile_leftovers(leftover, tasks)

    def reconcile_snapshot(self, profile: Profile, tasks: TaskList) -> dict[str, BundleSnapshot]:
        """Queue tasks for every bundle recorded in the profile.

        Returns:
            Live bundles not recorded in the profile.
        """
        live = self.list_bundles()
        for snapshot in profile.ordered_bundles():
            self.reconcile_bundle(snapshot, live.pop(snapshot.full_name, None), tasks)
        return live

    def reconcile_leftovers(self, leftover: dict[str, BundleSnapshot], tasks: TaskList) -> None:
        """Queue uninstallation of every live bundle the profile does not know about."""
        for bundle in leftover.values():
            if not self._queue_uninstall(bundle, tasks):
                logger.debug(
                    "Skipping bundle '%s'; already %s", bundle.full_name, bundle.simple_state.value
                )

    def reconcile_bundle(
        self, snapshot: BundleSnapshot, bundle: BundleSnapshot | None, tasks: TaskList
    ) -> None:
        """Compare one recorded bundle with its live counterpart (None if missing)."""
        target = snapshot.simple_state
        observed = bundle.simple_state if bundle is not None else SimpleBundleState.UNINSTALLED

        if target == SimpleBundleState.UNINSTALLED:
            if bundle is not None:
                self._queue_uninstall(bundle, tasks)
            return

        if bundle is None or observed == SimpleBundleState.UNINSTALLED:
            # one transition per sweep; start/stop happens on the next one
            name = snapshot.full_name
            location = bundle.location if bundle is not None and bundle.location else snapshot.location
            tasks.add(
                Operation.INSTALL,
                name,
                lambda r: self.install_bundle(r, name, location),
            )
            return

        if target == SimpleBundleState.ACTIVE:
            if snapshot.fragment or bundle.fragment:
                return
            if observed != SimpleBundleState.ACTIVE:
                tasks.add(Operation.START, bundle.full_name, lambda r: self.start_bundle(r, bundle))
        elif observed == SimpleBundleState.ACTIVE:
            tasks.add(Operation.STOP, bundle.full_name, lambda r: self.stop_bundle(r, bundle))

    def _queue_uninstall(self, bundle: BundleSnapshot, tasks: TaskList) -> bool:
        if bundle.simple_state == SimpleBundleState.UNINSTALLED:
            return False
        tasks.add(Operation.UNINSTALL, bundle.full_name, lambda r: self.uninstall_bundle(r, bundle))
        return True

    def _transition(
        self,
        report: SnapshotReport,
        operation: Operation,
        bundle: BundleSnapshot,
        call: Callable[[str], None],
    ) -> TaskOutcome:
        name = bundle.full_name
        return self._run(
            report,
            operation,
            name,
            [lambda: call(name)],
            lambda e: _failure(operation, name, bundle.state.describe()),
        )


def _failure(operation: Operation, name: str, state: str) -> str:
    return f"Reset error: failed to {operation.value} bundle [{name}] from state [{state}]"
