"""
Runtime facade — the contract between the engine and a live runtime.

The engine never talks to a runtime directly, only through this
interface. A concrete facade wraps the real runtime client; the
in-memory facade in ``adapters.memory`` backs tests and the CLI.

Listing and query methods should be cheap and are called at the start
of every pass. Mutating methods are synchronous: when they return, the
runtime has accepted the change (its side effects may still be settling,
see stabilization).

Mutating methods raise RuntimeFacadeError on failure. Raise
FatalRuntimeError for failures that retrying cannot fix (security
violations, illegal runtime state).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Set

from runtime_isolation.core.models.snapshot import BundleSnapshot, FeatureInfo, RepositoryInfo
from runtime_isolation.core.models.state import FeatureState, RuntimeOption


class RuntimeFacadeError(Exception):
    """A runtime operation failed. Usually transient."""


class FatalRuntimeError(RuntimeFacadeError):
    """A runtime operation failed in a way more passes will not fix."""


class RuntimeFacade(ABC):
    """Abstract access to repositories, features and bundles of a runtime."""

    # ── Repositories ─────────────────────────────────────────────

    @abstractmethod
    def list_repositories(self) -> list[RepositoryInfo]:
        """All repositories currently added to the runtime."""

    @abstractmethod
    def add_repository(self, uri: str) -> None:
        """Add a repository without installing any of its features."""

    @abstractmethod
    def remove_repository(self, uri: str) -> None:
        """Remove a repository."""

    # ── Features ─────────────────────────────────────────────────

    @abstractmethod
    def list_features(self) -> list[FeatureInfo]:
        """All features known to the runtime, installed or not."""

    @abstractmethod
    def get_feature_state(self, feature_id: str) -> FeatureState:
        """Lifecycle state of a feature (``name/version``)."""

    @abstractmethod
    def is_feature_required(self, feature_id: str) -> bool:
        """Whether the runtime's requirement table marks the feature required."""

    @abstractmethod
    def install_features(
        self, ids: Set[str], region: str, options: Set[RuntimeOption]
    ) -> None:
        """Install a set of features in one region with a single call."""

    @abstractmethod
    def uninstall_features(
        self, ids: Set[str], region: str, options: Set[RuntimeOption]
    ) -> None:
        """Uninstall a set of features from one region.

        Runtimes only uninstall features they consider required.
        """

    @abstractmethod
    def start_feature(self, feature_id: str, region: str, options: Set[RuntimeOption]) -> None:
        """Move an installed feature to the started state."""

    @abstractmethod
    def stop_feature(self, feature_id: str, region: str, options: Set[RuntimeOption]) -> None:
        """Move a started feature back to the resolved state."""

    @abstractmethod
    def add_requirements(
        self, region: str, requirements: Iterable[str], options: Set[RuntimeOption]
    ) -> None:
        """Mark features required (``feature:name/[v,v]`` strings)."""

    @abstractmethod
    def remove_requirements(
        self, region: str, requirements: Iterable[str], options: Set[RuntimeOption]
    ) -> None:
        """Mark features no longer required."""

    # ── Bundles ──────────────────────────────────────────────────

    @abstractmethod
    def list_bundles(self) -> list[BundleSnapshot]:
        """Live capture of every bundle in the runtime."""

    @abstractmethod
    def install_bundle(self, location: str) -> None:
        """Install a bundle from its location."""

    @abstractmethod
    def uninstall_bundle(self, full_name: str) -> None:
        """Uninstall the bundle identified by ``name/version``."""

    @abstractmethod
    def start_bundle(self, full_name: str) -> None:
        """Start an installed bundle."""

    @abstractmethod
    def stop_bundle(self, full_name: str) -> None:
        """Stop an active bundle."""

    @abstractmethod
    def is_bundle_persistently_started(self, full_name: str) -> bool:
        """Whether the runtime has been asked to start the bundle.

        True while an installed or resolved bundle is on its way to
        active; False once it has been stopped or was never started.
        """

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
