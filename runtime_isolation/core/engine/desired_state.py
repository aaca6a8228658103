"""
Desired state — what a test wants the runtime to look like.

Before a test runs, the reconciler asks a DesiredStateProvider for an
overlay profile and applies it on top of the baseline. Only the units
named in the overlay are touched.

DeclaredStateProvider builds the overlay from plain declarations:

    FeatureStart(name, version, region, repository_url)
        add the repository (if given) and start the feature
    FeatureStop(name)
        uninstall the feature, whatever version is present

Declarations made at class scope apply to every test; declarations
keyed by a test id apply to that test only, after the class ones.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol

from pydantic import BaseModel

from runtime_isolation.core.models.profile import Profile
from runtime_isolation.core.models.snapshot import FeatureSnapshot
from runtime_isolation.core.models.state import ROOT_REGION

logger = logging.getLogger(__name__)


class DesiredStateProvider(Protocol):
    """Supplies the overlay profile for a test."""

    def desired_profile(self, context: Any = None) -> Profile:
        """Return an overlay profile (``only_process_snapshot=True``)."""
        ...


class EmptyStateProvider:
    """Provider for tests that need nothing beyond the baseline."""

    def desired_profile(self, context: Any = None) -> Profile:
        return Profile.overlay()


# ── Declarations ────────────────────────────────────────────────


class FeatureStart(BaseModel):
    """Declares a feature that must be started for the test."""

    name: str
    version: str | None = None
    region: str = ROOT_REGION
    repository_url: str | None = None

    def apply(self, profile: Profile) -> None:
        if self.repository_url:
            profile.add_repository(self.repository_url)
        profile.add(FeatureSnapshot.started(self.name, self.version, self.region))


class FeatureStop(BaseModel):
    """Declares a feature that must not be installed during the test."""

    name: str

    def apply(self, profile: Profile) -> None:
        profile.add(FeatureSnapshot.stopped(self.name))


Declaration = FeatureStart | FeatureStop

_KINDS: dict[str, type[BaseModel]] = {"start": FeatureStart, "stop": FeatureStop}


def parse_declaration(raw: Mapping[str, Any]) -> Declaration:
    """Build a declaration from ``{"start": {...}}`` or ``{"stop": {...}}``.

    Raises:
        ValueError: if the mapping names no known declaration.
    """
    if len(raw) != 1:
        raise ValueError(f"Expected exactly one of {sorted(_KINDS)}, got {sorted(raw)}")
    (kind, body), = raw.items()
    model = _KINDS.get(kind)
    if model is None:
        raise ValueError(f"Unknown declaration '{kind}'; expected one of {sorted(_KINDS)}")
    if isinstance(body, str):
        body = {"name": body}
    return model.model_validate(body or {})


def context_key(context: Any) -> str | None:
    """Test id for a context: a string, or anything with a pytest-style ``nodeid``."""
    if context is None or isinstance(context, str):
        return context
    return getattr(context, "nodeid", None) or str(context)


class DeclaredStateProvider:
    """Builds overlay profiles from class-wide and per-test declarations.

    ``class_declarations`` may be a callable; it is then resolved once, on
    first use, and cached for the life of the provider.
    """

    def __init__(
        self,
        class_declarations: Iterable[Declaration] | Callable[[], Iterable[Declaration]] = (),
        test_declarations: Mapping[str, Iterable[Declaration]] | None = None,
    ):
        self._class_source = class_declarations
        self._class_cache: list[Declaration] | None = None
        self._tests: dict[str, list[Declaration]] = {
            k: list(v) for k, v in (test_declarations or {}).items()
        }
        self._lock = threading.Lock()

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> DeclaredStateProvider:
        """Build a provider from ``{"class": [...], "tests": {test_id: [...]}}``."""
        class_decls = [parse_declaration(d) for d in data.get("class") or []]
        tests = {
            test_id: [parse_declaration(d) for d in decls or []]
            for test_id, decls in (data.get("tests") or {}).items()
        }
        return cls(class_decls, tests)

    def declare_class(self, *declarations: Declaration) -> DeclaredStateProvider:
        with self._lock:
            self._class_cache = [*self._class_declarations(), *declarations]
        return self

    def declare(self, test_id: str, *declarations: Declaration) -> DeclaredStateProvider:
        self._tests.setdefault(test_id, []).extend(declarations)
        return self

    def declarations_for(self, context: Any = None) -> list[Declaration]:
        with self._lock:
            found = list(self._class_declarations())
        key = context_key(context)
        if key is not None:
            found.extend(self._tests.get(key, []))
        return found

    def desired_profile(self, context: Any = None) -> Profile:
        profile = Profile.overlay()
        for declaration in self.declarations_for(context):
            declaration.apply(profile)
        if not profile.is_empty():
            logger.debug("Desired state for %s: %s", context_key(context) or "<class>", profile)
        return profile

    def _class_declarations(self) -> list[Declaration]:
        # caller holds the lock
        if self._class_cache is None:
            source = self._class_source
            self._class_cache = list(source() if callable(source) else source)
        return self._class_cache
