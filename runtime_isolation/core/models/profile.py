"""
Profile — the aggregate desired state of a runtime.

A profile holds repository URIs, feature snapshots and bundle snapshots.
It is used in two modes:

    full restore    (only_process_snapshot=False)
        Anything in the runtime that is not in the profile is removed.
        This is how the baseline is restored after each test.

    overlay         (only_process_snapshot=True)
        Only the units named in the profile are touched; everything
        else in the runtime is left alone.
"""

from __future__ import annotations

from urllib.parse import urlparse

from pydantic import BaseModel, Field

from runtime_isolation.core.models.snapshot import BundleSnapshot, FeatureSnapshot


class Profile(BaseModel):
    """Snapshot profile: repositories, features and bundles."""

    repositories: set[str] = Field(default_factory=set)
    features: list[FeatureSnapshot] = Field(default_factory=list)   # insertion order
    bundles: list[BundleSnapshot] = Field(default_factory=list)
    only_process_snapshot: bool = False

    @classmethod
    def overlay(cls) -> Profile:
        """An empty profile whose restore leaves leftovers untouched."""
        return cls(only_process_snapshot=True)

    def should_only_process_snapshot(self) -> bool:
        return self.only_process_snapshot

    def add(self, unit: str | FeatureSnapshot | BundleSnapshot) -> Profile:
        """Record a repository URI, a feature or a bundle. Chainable."""
        if isinstance(unit, FeatureSnapshot):
            self.features.append(unit)
        elif isinstance(unit, BundleSnapshot):
            self.bundles.append(unit)
        else:
            self.add_repository(unit)
        return self

    def add_repository(self, uri: str) -> Profile:
        if not urlparse(uri).scheme:
            raise ValueError(f"Invalid repository URI: {uri!r}")
        self.repositories.add(uri)
        return self

    def ordered_bundles(self) -> list[BundleSnapshot]:
        """Bundles in ascending bundle-id order, the order they get processed in."""
        return sorted(self.bundles, key=lambda b: b.id)

    def is_empty(self) -> bool:
        return not (self.repositories or self.features or self.bundles)

    def to_dict(self) -> dict:
        return {
            "only_process_snapshot": self.only_process_snapshot,
            "repositories": sorted(self.repositories),
            "features": [f.model_dump(mode="json", exclude_none=True) for f in self.features],
            "bundles": [b.model_dump(mode="json") for b in self.ordered_bundles()],
        }

    def __str__(self) -> str:
        units = [*sorted(self.repositories), *map(str, self.features), *map(str, self.bundles)]
        return f"profile [{', '.join(units)}]"
