"""
Unit states and operations — the vocabulary shared by every layer.

Each unit kind has its own lifecycle:

    Repository:  absent | present                       (binary)
    Bundle:      uninstalled → installed → active       (fragments stop at installed)
    Feature:     uninstalled → installed → resolved ⇄ started

Bundles report a fine-grained state; the engine only ever reasons about
its simplified three-state view.
"""

from __future__ import annotations

from enum import StrEnum

ROOT_REGION = "root"


class BundleState(StrEnum):
    """Fine-grained bundle state as reported by the runtime."""

    UNINSTALLED = "uninstalled"
    INSTALLED = "installed"
    RESOLVED = "resolved"
    STARTING = "starting"
    STOPPING = "stopping"
    ACTIVE = "active"
    FAILURE = "failure"

    @property
    def simple(self) -> SimpleBundleState:
        """Collapse into the three states the engine reconciles."""
        if self == BundleState.UNINSTALLED:
            return SimpleBundleState.UNINSTALLED
        if self in (BundleState.STARTING, BundleState.ACTIVE):
            return SimpleBundleState.ACTIVE
        # installed, resolved, stopping or failure
        return SimpleBundleState.INSTALLED

    def describe(self) -> str:
        """Diagnostic form, e.g. ``INSTALLED/resolved``."""
        return f"{self.simple.name}/{self.value}"


class SimpleBundleState(StrEnum):
    """Simplified bundle lifecycle."""

    UNINSTALLED = "uninstalled"
    INSTALLED = "installed"
    ACTIVE = "active"


class FeatureState(StrEnum):
    """Feature lifecycle. ``resolved`` means present but stopped."""

    UNINSTALLED = "uninstalled"
    INSTALLED = "installed"
    RESOLVED = "resolved"
    STARTED = "started"


class Operation(StrEnum):
    """Corrective operation kinds."""

    INSTALL = "install"
    UNINSTALL = "uninstall"
    START = "start"
    STOP = "stop"
    UPDATE = "update"

    @property
    def operating_name(self) -> str:
        """Progressive form used in log lines (``Installing``)."""
        return _OPERATING_NAMES[self]


_OPERATING_NAMES = {
    Operation.INSTALL: "Installing",
    Operation.UNINSTALL: "Uninstalling",
    Operation.START: "Starting",
    Operation.STOP: "Stopping",
    Operation.UPDATE: "Updating",
}


class RuntimeOption(StrEnum):
    """Options passed along with feature calls to the runtime."""

    NO_AUTO_REFRESH_BUNDLES = "no_auto_refresh_bundles"


NO_AUTO_REFRESH = frozenset({RuntimeOption.NO_AUTO_REFRESH_BUNDLES})
