"""
Unit snapshots — immutable captures of one installable unit.

A snapshot records identity and lifecycle state at a point in time.
Repositories need no snapshot type of their own: a repository is fully
identified by its URI and is either present or absent.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from runtime_isolation.core.models.state import (
    ROOT_REGION,
    BundleState,
    FeatureState,
    SimpleBundleState,
)

if TYPE_CHECKING:
    from runtime_isolation.adapters.base import RuntimeFacade

NO_VERSION = "0.0.0"

_NO_VERSION_REQUIREMENT = "feature:{name}/0"
_REQUIREMENT = "feature:{name}/[{version},{version}]"
_REQUIREMENT_RE = re.compile(r"^feature:(?P<name>[^/]+)/(?:0|\[(?P<low>[^,\]]+),(?P<high>[^\]]+)\])$")


def version_key(version: str) -> tuple[int, int, int, str]:
    """Sort key for ``major.minor.micro[.qualifier]`` versions.

    Numeric parts compare as integers; missing parts count as zero.
    Anything that does not parse is kept as a qualifier so that ordering
    stays total.
    """
    parts = version.split(".", 3)
    numbers = [0, 0, 0]
    qualifier = ""
    for i, part in enumerate(parts):
        if i == 3:
            qualifier = part
            break
        if part.isdigit():
            numbers[i] = int(part)
        else:
            qualifier = ".".join(parts[i:])
            break
    return numbers[0], numbers[1], numbers[2], qualifier


class BundleSnapshot(BaseModel):
    """Snapshot of a bundle: ``name/version`` identifies it."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    id: int = 0                     # runtime-assigned, orders processing
    state: BundleState = BundleState.INSTALLED
    location: str = ""              # where to reinstall it from
    fragment: bool = False

    @property
    def full_name(self) -> str:
        return f"{self.name}/{self.version}"

    @property
    def simple_state(self) -> SimpleBundleState:
        return self.state.simple

    def __str__(self) -> str:
        return (
            f"bundle[name={self.name}, version={self.version}, id={self.id}, "
            f"state={self.state.describe()}, location={self.location}]"
        )


class FeatureInfo(BaseModel):
    """A feature definition as listed by the runtime."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str

    @property
    def id(self) -> str:
        return f"{self.name}/{self.version}"

    def to_requirement(self) -> str:
        return _REQUIREMENT.format(name=self.name, version=self.version)


class FeatureSnapshot(BaseModel):
    """Snapshot of a feature.

    ``version`` may be omitted, meaning "whichever version is newest in
    the runtime". ``required`` may be omitted, meaning the required flag is
    left alone when restoring.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str | None = None
    state: FeatureState = FeatureState.STARTED
    required: bool | None = None
    region: str | None = None

    @property
    def has_version(self) -> bool:
        return self.version is not None

    @property
    def effective_version(self) -> str:
        return self.version if self.version is not None else NO_VERSION

    @property
    def id(self) -> str:
        return f"{self.name}/{self.effective_version}"

    @property
    def effective_region(self) -> str:
        return self.region if self.region is not None else ROOT_REGION

    def to_requirement(self) -> str:
        """Requirement string understood by the runtime's requirement table."""
        if self.version is None:
            return _NO_VERSION_REQUIREMENT.format(name=self.name)
        return _REQUIREMENT.format(name=self.name, version=self.version)

    @classmethod
    def capture(cls, feature: FeatureInfo, runtime: RuntimeFacade) -> FeatureSnapshot:
        """Capture the live state of a feature."""
        return cls(
            name=feature.name,
            version=feature.version,
            state=runtime.get_feature_state(feature.id),
            required=runtime.is_feature_required(feature.id),
        )

    @classmethod
    def started(
        cls,
        name: str,
        version: str | None = None,
        region: str | None = None,
    ) -> FeatureSnapshot:
        """Desired state: feature present and started."""
        return cls(name=name, version=version or None, state=FeatureState.STARTED, region=region)

    @classmethod
    def stopped(cls, name: str) -> FeatureSnapshot:
        """Desired state: feature uninstalled, whatever its version."""
        return cls(name=name, state=FeatureState.UNINSTALLED)

    def __str__(self) -> str:
        return (
            f"feature[name={self.name}, version={self.effective_version}, id={self.id}, "
            f"state={self.state.value}, required={self.required}, "
            f"region={self.effective_region}]"
        )


def parse_requirement(requirement: str) -> tuple[str, str | None] | None:
    """Split a requirement string into ``(name, version)``.

    Returns None when the string is not a feature requirement. The version
    is None for versionless requirements.
    """
    match = _REQUIREMENT_RE.match(requirement)
    if match is None:
        return None
    return match.group("name"), match.group("low")


class RepositoryInfo(BaseModel):
    """A repository as listed by the runtime."""

    model_config = ConfigDict(frozen=True)

    uri: str
    name: str = ""
    features: list[FeatureInfo] = Field(default_factory=list)
