"""
Repository processor — add missing repositories, remove leftovers.

Repositories are either present or absent, so every difference maps to
exactly one task:

    in profile, not in runtime  → INSTALL (add, without installing features)
    in runtime, not in profile  → UNINSTALL (full restore only)
"""

from __future__ import annotations

import logging

from runtime_isolation.core.engine.errors import ServiceError
from runtime_isolation.core.engine.processors.base import Processor
from runtime_isolation.core.engine.report import SnapshotReport
from runtime_isolation.core.engine.tasks import TaskList
from runtime_isolation.core.models.outcome import TaskOutcome
from runtime_isolation.core.models.profile import Profile
from runtime_isolation.core.models.snapshot import RepositoryInfo
from runtime_isolation.core.models.state import Operation

logger = logging.getLogger(__name__)


class RepositoryProcessor(Processor):
    """Reconciles the set of repository URIs."""

    name = "repository"

    def list_repositories(self, purpose: str = "Restore") -> dict[str, RepositoryInfo]:
        """Live repositories keyed by URI.

        Raises:
            ServiceError: if the runtime cannot list them.
        """
        try:
            repositories = self._runtime.list_repositories()
        except Exception as e:
            raise ServiceError(
                f"{purpose} error: failed to retrieve repositories; {e}", cause=e
            ) from e
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Runtime repositories: %s",
                ", ".join(f"{r.name}: {r.uri}" for r in repositories),
            )
        return {r.uri: r for r in repositories}

    def install_repository(self, report: SnapshotReport, uri: str) -> TaskOutcome:
        return self._run(
            report,
            Operation.INSTALL,
            uri,
            [lambda: self._runtime.add_repository(uri)],
            lambda e: f"Reset error: failed to install repository [{uri}]",
        )

    def uninstall_repository(self, report: SnapshotReport, uri: str) -> TaskOutcome:
        return self._run(
            report,
            Operation.UNINSTALL,
            uri,
            [lambda: self._runtime.remove_repository(uri)],
            lambda e: f"Reset error: failed to uninstall repository [{uri}]",
        )

    def reconcile(self, profile: Profile, tasks: TaskList) -> None:
        leftover = self.reconcile_snapshot(profile, tasks)
        if not profile.should_only_process_snapshot():
            self.reconcile_leftovers(leftover, tasks)

    def reconcile_snapshot(self, profile: Profile, tasks: TaskList) -> dict[str, RepositoryInfo]:
        """Queue installs for profile repositories missing from the runtime.

        Returns:
            Live repositories not recorded in the profile.
        """
        live = self.list_repositories()
        for uri in sorted(profile.repositories):
            if live.pop(uri, None) is None:
                tasks.add(Operation.INSTALL, uri, lambda r, uri=uri: self.install_repository(r, uri))
        return live

    def reconcile_leftovers(self, leftover: dict[str, RepositoryInfo], tasks: TaskList) -> None:
        """Queue removal of every repository the profile does not know about."""
        for uri in leftover:
            tasks.add(Operation.UNINSTALL, uri, lambda r, uri=uri: self.uninstall_repository(r, uri))
