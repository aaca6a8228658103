"""
In-memory runtime — a RuntimeFacade backed by dictionaries.

Used by the tests and the CLI in place of a live runtime. It behaves
like one where the engine can tell the difference:

    * repositories make their features available; adding an unknown URI fails
    * installing a feature marks it required in its region, starts it and
      installs and starts its bundles
    * only required features can be uninstalled
    * fragments cannot be started; they stop at resolved
    * with ``settle_after=N`` a started bundle reports ``starting`` for its
      next N listings before becoming active
    * a started bundle that is still installed or resolved moves one step
      towards active on each listing (installed, resolved, then starting)

Failures can be injected per (method, key) for a number of calls, and
every mutating call is recorded in ``call_log``.

A runtime is usually built from a fixture mapping::

    repositories:
      - uri: mvn:org.example/features/1.0/xml/features
        features:
          - name: web
            version: 1.0.0
            bundles: [mvn:org.example/web/1.0.0]
            state: started
    bundles:
      - name: org.example.web
        version: 1.0.0
        location: mvn:org.example/web/1.0.0
        state: active
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Set
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from runtime_isolation.adapters.base import FatalRuntimeError, RuntimeFacade, RuntimeFacadeError
from runtime_isolation.core.models.snapshot import (
    NO_VERSION,
    BundleSnapshot,
    FeatureInfo,
    RepositoryInfo,
    parse_requirement,
    version_key,
)
from runtime_isolation.core.models.state import (
    ROOT_REGION,
    BundleState,
    FeatureState,
    RuntimeOption,
)

logger = logging.getLogger(__name__)

_PRESENT = {FeatureState.INSTALLED, FeatureState.RESOLVED, FeatureState.STARTED}


# ── Fixture schema ──────────────────────────────────────────────


class BundleDefinition(BaseModel):
    """A bundle the runtime can install from ``location``."""

    name: str
    version: str
    location: str
    state: BundleState = BundleState.UNINSTALLED   # initial state
    fragment: bool = False
    start: bool | None = None                      # persistently started; defaults to "active"


class FeatureDefinition(BaseModel):
    name: str
    version: str
    bundles: list[str] = Field(default_factory=list)   # bundle locations
    state: FeatureState = FeatureState.UNINSTALLED
    required: bool | None = None                       # defaults to "installed"
    region: str = ROOT_REGION


class RepositoryDefinition(BaseModel):
    uri: str
    name: str = ""
    added: bool = True
    features: list[FeatureDefinition] = Field(default_factory=list)


class RuntimeFixture(BaseModel):
    """Initial content of an in-memory runtime."""

    settle_after: int = Field(default=0, ge=0)
    repositories: list[RepositoryDefinition] = Field(default_factory=list)
    bundles: list[BundleDefinition] = Field(default_factory=list)


# ── Runtime state ───────────────────────────────────────────────


@dataclass
class Call:
    """One mutating call received by the runtime."""

    method: str
    args: tuple[Any, ...]

    def __str__(self) -> str:
        rendered = []
        for arg in self.args:
            if isinstance(arg, (set, frozenset, list, tuple)):
                arg = "[" + ", ".join(sorted(map(str, arg))) + "]"
            rendered.append(str(arg))
        return f"{self.method}({', '.join(rendered)})"


@dataclass
class _Bundle:
    definition: BundleDefinition
    id: int = 0
    state: BundleState = BundleState.UNINSTALLED
    settling: int = 0
    persistent: bool = False   # start requested and not stopped since

    @property
    def full_name(self) -> str:
        return f"{self.definition.name}/{self.definition.version}"

    def snapshot(self) -> BundleSnapshot:
        return BundleSnapshot(
            name=self.definition.name,
            version=self.definition.version,
            id=self.id,
            state=self.state,
            location=self.definition.location,
            fragment=self.definition.fragment,
        )


@dataclass
class _Feature:
    definition: FeatureDefinition
    repository: str
    state: FeatureState = FeatureState.UNINSTALLED
    required: bool = False
    region: str = ROOT_REGION

    @property
    def id(self) -> str:
        return f"{self.definition.name}/{self.definition.version}"


@dataclass
class _Failure:
    remaining: int
    message: str
    fatal: bool


@dataclass
class _Repository:
    definition: RepositoryDefinition
    added: bool = False
    features: list[str] = field(default_factory=list)


class InMemoryRuntime(RuntimeFacade):
    """Dictionary-backed runtime facade."""

    def __init__(self, fixture: RuntimeFixture | None = None):
        fixture = fixture or RuntimeFixture()
        self._settle_after = fixture.settle_after
        self._repositories: dict[str, _Repository] = {}
        self._features: dict[str, _Feature] = {}
        self._bundles: dict[str, _Bundle] = {}     # by location
        self._failures: dict[tuple[str, str], _Failure] = {}
        self._call_log: list[Call] = []
        self._next_id = 1

        for bundle in fixture.bundles:
            self.define_bundle(bundle)
        for repository in fixture.repositories:
            self.define_repository(repository)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> InMemoryRuntime:
        return cls(RuntimeFixture.model_validate(dict(data)))

    # ── Catalog ─────────────────────────────────────────────────

    def define_bundle(self, definition: BundleDefinition) -> None:
        """Make a bundle installable, installing it if its state says so."""
        bundle = _Bundle(definition)
        self._bundles[definition.location] = bundle
        if definition.state != BundleState.UNINSTALLED:
            bundle.id = self._allocate_id()
            bundle.state = definition.state
            started = definition.state in (BundleState.STARTING, BundleState.ACTIVE)
            bundle.persistent = not definition.fragment and (
                started if definition.start is None else definition.start
            )

    def define_repository(self, definition: RepositoryDefinition) -> None:
        """Make a repository and its features known to the runtime."""
        repository = _Repository(definition, added=definition.added)
        for feature_def in definition.features:
            for location in feature_def.bundles:
                if location not in self._bundles:
                    raise ValueError(
                        f"feature {feature_def.name}/{feature_def.version} "
                        f"references unknown bundle {location}"
                    )
            feature = _Feature(
                feature_def,
                definition.uri,
                state=feature_def.state,
                region=feature_def.region,
            )
            installed = feature_def.state != FeatureState.UNINSTALLED
            feature.required = installed if feature_def.required is None else feature_def.required
            self._features[feature.id] = feature
            repository.features.append(feature.id)
        self._repositories[definition.uri] = repository

    # ── Test controls ───────────────────────────────────────────

    @property
    def call_log(self) -> list[Call]:
        """Every mutating call received, in order."""
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    def calls(self, method: str) -> list[Call]:
        return [c for c in self._call_log if c.method == method]

    def fail(
        self,
        method: str,
        key: str,
        times: int = 1,
        message: str = "injected failure",
        fatal: bool = False,
    ) -> None:
        """Make the next ``times`` calls of ``method`` on ``key`` fail.

        ``key`` is what the call operates on: a repository URI, a feature
        id or region, a bundle ``name/version`` or location.
        """
        self._failures[(method, key)] = _Failure(times, message, fatal)

    def reset(self) -> None:
        """Clear the call log and injected failures."""
        self._call_log.clear()
        self._failures.clear()

    def bundle(self, full_name: str) -> BundleSnapshot | None:
        """Current snapshot of a bundle, without the settling side effect."""
        found = self._installed_bundle(full_name)
        return found.snapshot() if found else None

    # ── Repositories ────────────────────────────────────────────

    def list_repositories(self) -> list[RepositoryInfo]:
        return [
            RepositoryInfo(
                uri=uri,
                name=r.definition.name,
                features=[self._info(self._features[fid]) for fid in r.features],
            )
            for uri, r in self._repositories.items()
            if r.added
        ]

    def add_repository(self, uri: str) -> None:
        self._record("add_repository", uri)
        repository = self._repositories.get(uri)
        if repository is None:
            raise RuntimeFacadeError(f"Unable to resolve repository {uri}")
        repository.added = True

    def remove_repository(self, uri: str) -> None:
        self._record("remove_repository", uri)
        repository = self._repositories.get(uri)
        if repository is None or not repository.added:
            raise RuntimeFacadeError(f"Repository {uri} is not added")
        repository.added = False

    # ── Features ────────────────────────────────────────────────

    def list_features(self) -> list[FeatureInfo]:
        # features of removed repositories stay listed while installed
        return [
            self._info(f)
            for f in self._features.values()
            if self._repositories[f.repository].added or f.state != FeatureState.UNINSTALLED
        ]

    def get_feature_state(self, feature_id: str) -> FeatureState:
        return self._feature(feature_id).state

    def is_feature_required(self, feature_id: str) -> bool:
        return self._feature(feature_id).required

    def install_features(self, ids: Set[str], region: str, options: Set[RuntimeOption]) -> None:
        self._record("install_features", set(ids), region, keys=[region, *ids])
        features = [self._feature(i) for i in ids]
        for feature in features:
            if not self._repositories[feature.repository].added:
                raise RuntimeFacadeError(f"No matching features for {feature.id}")
        for feature in features:
            feature.required = True
            feature.region = region
            feature.state = FeatureState.STARTED
            for location in feature.definition.bundles:
                bundle = self._bundles[location]
                if bundle.state == BundleState.UNINSTALLED:
                    self._install(bundle)
                self._start(bundle)

    def uninstall_features(self, ids: Set[str], region: str, options: Set[RuntimeOption]) -> None:
        self._record("uninstall_features", set(ids), region, keys=[region, *ids])
        features = [self._feature(i) for i in ids]
        for feature in features:
            if feature.state == FeatureState.UNINSTALLED:
                raise RuntimeFacadeError(f"Feature named '{feature.id}' is not installed")
            if not feature.required:
                raise RuntimeFacadeError(f"Feature '{feature.id}' is not required in region {region}")
        for feature in features:
            feature.state = FeatureState.UNINSTALLED
            feature.required = False
        for feature in features:
            for location in feature.definition.bundles:
                if not self._used_by(location, _PRESENT):
                    bundle = self._bundles[location]
                    bundle.state = BundleState.UNINSTALLED
                    bundle.persistent = False

    def start_feature(self, feature_id: str, region: str, options: Set[RuntimeOption]) -> None:
        self._record("start_feature", feature_id, region)
        feature = self._feature(feature_id)
        if feature.state == FeatureState.UNINSTALLED:
            raise RuntimeFacadeError(f"Feature named '{feature_id}' is not installed")
        feature.state = FeatureState.STARTED
        for location in feature.definition.bundles:
            self._start(self._bundles[location])

    def stop_feature(self, feature_id: str, region: str, options: Set[RuntimeOption]) -> None:
        self._record("stop_feature", feature_id, region)
        feature = self._feature(feature_id)
        if feature.state == FeatureState.UNINSTALLED:
            raise RuntimeFacadeError(f"Feature named '{feature_id}' is not installed")
        feature.state = FeatureState.RESOLVED
        for location in feature.definition.bundles:
            bundle = self._bundles[location]
            if not bundle.definition.fragment and not self._used_by(location, {FeatureState.STARTED}):
                bundle.state = BundleState.RESOLVED
                bundle.persistent = False

    def add_requirements(
        self, region: str, requirements: Iterable[str], options: Set[RuntimeOption]
    ) -> None:
        requirements = set(requirements)
        self._record("add_requirements", region, requirements, keys=[region, *requirements])
        for feature in self._requirements(requirements):
            feature.required = True

    def remove_requirements(
        self, region: str, requirements: Iterable[str], options: Set[RuntimeOption]
    ) -> None:
        requirements = set(requirements)
        self._record("remove_requirements", region, requirements, keys=[region, *requirements])
        for feature in self._requirements(requirements):
            feature.required = False

    # ── Bundles ─────────────────────────────────────────────────

    def list_bundles(self) -> list[BundleSnapshot]:
        listed = []
        for bundle in sorted(self._bundles.values(), key=lambda b: b.id):
            if bundle.state == BundleState.UNINSTALLED:
                continue
            listed.append(bundle.snapshot())
            if bundle.state == BundleState.STARTING:
                bundle.settling -= 1
                if bundle.settling <= 0:
                    bundle.state = BundleState.ACTIVE
            elif bundle.persistent and bundle.state == BundleState.INSTALLED:
                bundle.state = BundleState.RESOLVED
            elif bundle.persistent and bundle.state == BundleState.RESOLVED:
                self._activate(bundle)
        return listed

    def is_bundle_persistently_started(self, full_name: str) -> bool:
        found = self._installed_bundle(full_name)
        return found is not None and found.persistent

    def install_bundle(self, location: str) -> None:
        self._record("install_bundle", location)
        bundle = self._bundles.get(location)
        if bundle is None:
            raise RuntimeFacadeError(f"Unable to locate bundle at {location}")
        if bundle.state != BundleState.UNINSTALLED:
            raise RuntimeFacadeError(f"Bundle {bundle.full_name} is already installed")
        self._install(bundle)

    def uninstall_bundle(self, full_name: str) -> None:
        self._record("uninstall_bundle", full_name)
        bundle = self._require_bundle(full_name)
        bundle.state = BundleState.UNINSTALLED
        bundle.persistent = False

    def start_bundle(self, full_name: str) -> None:
        self._record("start_bundle", full_name)
        bundle = self._require_bundle(full_name)
        if bundle.definition.fragment:
            raise RuntimeFacadeError(f"Fragment bundles can not be started: {full_name}")
        self._start(bundle)

    def stop_bundle(self, full_name: str) -> None:
        self._record("stop_bundle", full_name)
        bundle = self._require_bundle(full_name)
        bundle.persistent = False
        if not bundle.definition.fragment:
            bundle.state = BundleState.RESOLVED

    # ── Internals ───────────────────────────────────────────────

    def _record(self, method: str, *args: Any, keys: Iterable[str] | None = None) -> None:
        """Log the call, then raise an injected failure if one matches.

        ``keys`` are the failure injection keys; by default the string args.
        """
        self._call_log.append(Call(method, args))
        logger.debug("%s", self._call_log[-1])
        if keys is None:
            keys = [a for a in args if isinstance(a, str)]
        for key in keys:
            failure = self._failures.get((method, key))
            if failure is None or failure.remaining <= 0:
                continue
            failure.remaining -= 1
            error = FatalRuntimeError if failure.fatal else RuntimeFacadeError
            raise error(f"{failure.message} ({method} {key})")

    def _feature(self, feature_id: str) -> _Feature:
        """Look a feature up; ``name`` or ``name/0.0.0`` means its newest version."""
        feature = self._features.get(feature_id)
        if feature is not None:
            return feature
        name, _, version = feature_id.partition("/")
        if version in ("", NO_VERSION):
            candidates = [f for f in self._features.values() if f.definition.name == name]
            if candidates:
                return max(candidates, key=lambda f: version_key(f.definition.version))
        raise RuntimeFacadeError(f"No feature named '{feature_id}' available")

    def _requirements(self, requirements: Iterable[str]) -> list[_Feature]:
        found = []
        for requirement in requirements:
            parsed = parse_requirement(requirement)
            if parsed is None:
                raise RuntimeFacadeError(f"Invalid requirement: {requirement}")
            name, version = parsed
            found.append(self._feature(name if version is None else f"{name}/{version}"))
        return found

    def _used_by(self, location: str, states: set[FeatureState]) -> bool:
        return any(
            f.state in states and location in f.definition.bundles
            for f in self._features.values()
        )

    def _installed_bundle(self, full_name: str) -> _Bundle | None:
        for bundle in self._bundles.values():
            if bundle.full_name == full_name and bundle.state != BundleState.UNINSTALLED:
                return bundle
        return None

    def _require_bundle(self, full_name: str) -> _Bundle:
        bundle = self._installed_bundle(full_name)
        if bundle is None:
            raise RuntimeFacadeError(f"Bundle {full_name} is not installed")
        return bundle

    def _install(self, bundle: _Bundle) -> None:
        bundle.id = self._allocate_id()
        bundle.state = BundleState.RESOLVED if bundle.definition.fragment else BundleState.INSTALLED
        bundle.persistent = False

    def _start(self, bundle: _Bundle) -> None:
        if bundle.definition.fragment:
            bundle.state = BundleState.RESOLVED
        else:
            bundle.persistent = True
            if bundle.state not in (BundleState.ACTIVE, BundleState.STARTING):
                self._activate(bundle)

    def _activate(self, bundle: _Bundle) -> None:
        if self._settle_after > 0:
            bundle.state = BundleState.STARTING
            bundle.settling = self._settle_after
        else:
            bundle.state = BundleState.ACTIVE

    def _allocate_id(self) -> int:
        allocated = self._next_id
        self._next_id += 1
        return allocated

    @staticmethod
    def _info(feature: _Feature) -> FeatureInfo:
        return FeatureInfo(name=feature.definition.name, version=feature.definition.version)

    def __repr__(self) -> str:
        installed = sum(b.state != BundleState.UNINSTALLED for b in self._bundles.values())
        return f"<InMemoryRuntime repositories={len(self._repositories)} bundles={installed}>"
