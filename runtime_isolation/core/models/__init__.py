"""
Domain models — snapshots, profiles and states.

All models are re-exported here for convenient access:

    from runtime_isolation.core.models import Profile, BundleSnapshot, FeatureSnapshot
"""

from runtime_isolation.core.models.outcome import TaskOutcome
from runtime_isolation.core.models.profile import Profile
from runtime_isolation.core.models.snapshot import (
    BundleSnapshot,
    FeatureInfo,
    FeatureSnapshot,
    RepositoryInfo,
    parse_requirement,
    version_key,
)
from runtime_isolation.core.models.state import (
    NO_AUTO_REFRESH,
    ROOT_REGION,
    BundleState,
    FeatureState,
    Operation,
    RuntimeOption,
    SimpleBundleState,
)

__all__ = [
    # state.py
    "BundleState",
    "FeatureState",
    "NO_AUTO_REFRESH",
    "Operation",
    "ROOT_REGION",
    "RuntimeOption",
    "SimpleBundleState",
    # snapshot.py
    "BundleSnapshot",
    "FeatureInfo",
    "FeatureSnapshot",
    "RepositoryInfo",
    "parse_requirement",
    "version_key",
    # profile.py
    "Profile",
    # outcome.py
    "TaskOutcome",
]
