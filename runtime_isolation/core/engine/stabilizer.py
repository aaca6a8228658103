"""
Stabilizer — wait for the runtime to finish settling.

Corrective operations return as soon as the runtime accepts them, but
bundles keep starting and stopping in the background for a while. The
stabilizer polls the runtime at a fixed interval until everything has
settled or the timeout expires.

A bundle is settled when:

    fragment        its state is resolved
    other bundles   its state is active, or installed/resolved when the
                    caller says that bundle is expected to be inactive

A bundle in the failure state is never going to settle and fails the
wait immediately.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Collection, Iterable

from runtime_isolation.adapters.base import RuntimeFacade
from runtime_isolation.core.engine.errors import ServiceError, ServiceTimeoutError
from runtime_isolation.core.models.snapshot import BundleSnapshot, FeatureInfo, version_key
from runtime_isolation.core.models.state import BundleState, FeatureState

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 1.0

FeaturePredicate = Callable[[FeatureState], bool]

_INACTIVE_OK = (BundleState.INSTALLED, BundleState.RESOLVED)


class Stabilizer:
    """Polls a runtime until bundles or features reach the expected states."""

    def __init__(
        self,
        runtime: RuntimeFacade,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._runtime = runtime
        self._poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    def wait_for_bundles(
        self,
        timeout: float,
        prefix: str = "",
        inactive: Collection[str] = (),
    ) -> None:
        """Wait for bundles whose symbolic name starts with ``prefix`` to settle.

        Args:
            timeout: Maximum seconds to wait.
            prefix: Symbolic-name prefix; empty means every bundle.
            inactive: Full names of bundles expected to stay installed.

        Raises:
            ServiceError: if a bundle is in the failure state.
            ServiceTimeoutError: if bundles are still settling at the deadline.
        """
        end = self._clock() + timeout
        while True:
            ready = True
            for bundle in self._runtime.list_bundles():
                if not bundle.name.startswith(prefix):
                    continue
                if bundle.fragment:
                    if bundle.state != BundleState.RESOLVED:
                        logger.info("%s bundle not ready yet", bundle.full_name)
                        ready = False
                elif bundle.state == BundleState.FAILURE:
                    self.log_inactive_bundles()
                    raise ServiceError(f"bundle {bundle.full_name} failed")
                elif bundle.state != BundleState.ACTIVE and not (
                    bundle.full_name in inactive and bundle.state in _INACTIVE_OK
                ):
                    logger.info(
                        "%s bundle not ready with state %s", bundle.full_name, bundle.state.value
                    )
                    ready = False
            if ready:
                return
            if self._clock() > end:
                self.log_inactive_bundles()
                raise ServiceTimeoutError(
                    "timed out waiting for features and bundles to stabilize "
                    f"within {timeout:g} seconds"
                )
            self._sleep(self._poll_interval)

    def wait_for_feature(
        self,
        name: str,
        predicate: FeaturePredicate | FeatureState,
        timeout: float,
        version: str | None = None,
    ) -> None:
        """Wait for one feature (newest version unless given) to satisfy ``predicate``.

        Raises:
            ServiceError: if no such feature is known to the runtime.
            ServiceTimeoutError: if the deadline passes first.
        """
        self.wait_for_features([name if version is None else f"{name}/{version}"], predicate, timeout)

    def wait_for_features(
        self,
        names: Iterable[str],
        predicate: FeaturePredicate | FeatureState,
        timeout: float,
    ) -> None:
        """Wait for several features to satisfy ``predicate``.

        Names may be ``name`` (newest version) or ``name/version``.
        """
        test = _as_predicate(predicate)
        end = self._clock() + timeout
        waiting = [self._resolve(name) for name in names]

        while waiting:
            feature = waiting[0]
            if test(self._runtime.get_feature_state(feature.id)):
                waiting.pop(0)
                continue
            if self._clock() > end:
                self.log_inactive_bundles()
                raise ServiceTimeoutError(
                    f"timed out waiting for features '{', '.join(f.name for f in waiting)}' "
                    f"to stabilize to state '{_describe(predicate)}' within {timeout:g} seconds"
                )
            self._sleep(self._poll_interval)

    def log_inactive_bundles(self, log: Callable[..., None] | None = None) -> list[BundleSnapshot]:
        """Log every non-fragment bundle that is not active and return them."""
        log = log or logger.error
        log("Listing inactive bundles")
        inactive = [
            b
            for b in self._runtime.list_bundles()
            if not b.fragment and b.state != BundleState.ACTIVE
        ]
        for bundle in inactive:
            log("  Bundle: %s_v%s | %s", bundle.name, bundle.version, bundle.state.value.upper())
        return inactive

    def _resolve(self, name: str) -> FeatureInfo:
        base, _, version = name.partition("/")
        matches = [f for f in self._runtime.list_features() if f.name == base]
        if version:
            matches = [f for f in matches if f.version == version]
        if not matches:
            raise ServiceError(f"No feature named '{name}' is known to the runtime")
        return max(matches, key=lambda f: version_key(f.version))


def _as_predicate(predicate: FeaturePredicate | FeatureState) -> FeaturePredicate:
    if isinstance(predicate, FeatureState):
        return lambda state: state == predicate
    return predicate


def _describe(predicate: FeaturePredicate | FeatureState) -> str:
    if isinstance(predicate, FeatureState):
        return predicate.value
    return getattr(predicate, "__name__", repr(predicate))
