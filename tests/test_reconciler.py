"""
Tests for the reconciler — baseline capture, restore passes, isolation.

Everything runs against the in-memory runtime; the call log shows what
a restore actually asked the runtime to do.
"""

import logging
import threading
import time

import pytest

from conftest import OTHER_URI, REPO_URI, bundle, feature, location
from runtime_isolation.adapters.memory import InMemoryRuntime
from runtime_isolation.core.config.loader import IsolationSettings
from runtime_isolation.core.engine.desired_state import DeclaredStateProvider, FeatureStart, FeatureStop
from runtime_isolation.core.engine.errors import ServiceError, ServiceTimeoutError
from runtime_isolation.core.engine.reconciler import Reconciler
from runtime_isolation.core.engine.stabilizer import Stabilizer
from runtime_isolation.core.models import (
    BundleSnapshot,
    BundleState,
    FeatureSnapshot,
    FeatureState,
    Profile,
)
from runtime_isolation.core.observability import metrics as m


def _settings(**overrides) -> IsolationSettings:
    return IsolationSettings(poll_interval=0.001, stabilize_timeout=0.5, **overrides)


def _methods(runtime: InMemoryRuntime) -> list[str]:
    return [c.method for c in runtime.call_log]


# ── Baseline ─────────────────────────────────────────────────────────


class TestSnapshot:
    def test_captures_everything(self, runtime, fast_settings):
        baseline = Reconciler(runtime, fast_settings).snapshot()
        assert baseline.repositories == {REPO_URI}
        assert {(f.id, f.state, f.required) for f in baseline.features} == {
            ("web/1.0.0", FeatureState.STARTED, True),
            ("extra/1.0.0", FeatureState.UNINSTALLED, False),
        }
        assert [b.full_name for b in baseline.ordered_bundles()] == [
            "org.example.core/1.0.0",
            "org.example.web/1.0.0",
        ]
        assert not baseline.should_only_process_snapshot()

    def test_captured_once(self, runtime, fast_settings):
        reconciler = Reconciler(runtime, fast_settings)
        assert reconciler.baseline is None
        first = reconciler.snapshot()
        runtime.uninstall_bundle("org.example.core/1.0.0")
        assert reconciler.snapshot() is first
        assert reconciler.baseline is first
        assert len(first.bundles) == 2

    def test_capture_is_not_cached(self, runtime, fast_settings):
        reconciler = Reconciler(runtime, fast_settings)
        runtime.uninstall_bundle("org.example.core/1.0.0")
        assert len(reconciler.capture().bundles) == 1
        assert reconciler.baseline is None

    def test_feature_state_failure(self, example_fixture, fast_settings):
        class Broken(InMemoryRuntime):
            def get_feature_state(self, feature_id):
                raise RuntimeError("down")

        reconciler = Reconciler(Broken.from_mapping(example_fixture), fast_settings)
        with pytest.raises(ServiceError, match=r"Snapshot error: failed to retrieve state of feature"):
            reconciler.capture()


# ── Restore ──────────────────────────────────────────────────────────


class TestRestore:
    def test_in_sync_runtime_is_untouched(self, runtime, fast_settings):
        reconciler = Reconciler(runtime, fast_settings)
        result = reconciler.restore()
        assert result.attempts == 1
        assert result.tasks_executed == 0
        assert runtime.call_count == 0

    def test_missing_bundle_installed_then_started(self, fast_settings):
        runtime = InMemoryRuntime.from_mapping({"bundles": [bundle("b")]})
        reconciler = Reconciler(runtime, fast_settings)
        reconciler.snapshot()
        runtime.uninstall_bundle("b/1.0.0")
        runtime.reset()

        result = reconciler.restore()

        assert _methods(runtime) == ["install_bundle", "start_bundle"]
        assert result.attempts == 2
        assert result.tasks_executed == 2
        assert runtime.bundle("b/1.0.0").state == BundleState.ACTIVE

    def test_restore_is_idempotent(self, fast_settings):
        runtime = InMemoryRuntime.from_mapping({"bundles": [bundle("b")]})
        reconciler = Reconciler(runtime, fast_settings)
        reconciler.snapshot()
        runtime.uninstall_bundle("b/1.0.0")
        reconciler.restore()
        runtime.reset()

        assert reconciler.restore().attempts == 1
        assert runtime.call_count == 0

    def test_overlay_only_touches_named_features(self, fast_settings):
        runtime = InMemoryRuntime.from_mapping(
            {
                "repositories": [
                    {"uri": REPO_URI, "features": [feature("f", state="resolved"), feature("g", state="started")]}
                ]
            }
        )
        overlay = Profile(features=[FeatureSnapshot.started("f", "1.0.0")], only_process_snapshot=True)

        result = Reconciler(runtime, fast_settings).restore(overlay)

        assert result.overlay
        assert [str(c) for c in runtime.call_log] == ["start_feature(f/1.0.0, root)"]
        assert runtime.get_feature_state("g/1.0.0") == FeatureState.STARTED

    def test_leftover_repository_removed(self, fast_settings):
        runtime = InMemoryRuntime.from_mapping(
            {"repositories": [{"uri": REPO_URI}, {"uri": OTHER_URI, "added": False}]}
        )
        reconciler = Reconciler(runtime, fast_settings)
        reconciler.snapshot()
        runtime.add_repository(OTHER_URI)
        runtime.reset()

        result = reconciler.restore()

        assert [str(c) for c in runtime.call_log] == [f"remove_repository({OTHER_URI})"]
        assert result.attempts == 2

    def test_required_flag_only_update(self, fast_settings):
        runtime = InMemoryRuntime.from_mapping(
            {"repositories": [{"uri": REPO_URI, "features": [feature("f", state="started", required=False)]}]}
        )
        overlay = Profile(
            features=[FeatureSnapshot(name="f", version="1.0.0", required=True)],
            only_process_snapshot=True,
        )
        Reconciler(runtime, fast_settings).restore(overlay)
        assert [str(c) for c in runtime.call_log] == [
            "add_requirements(root, [feature:f/[1.0.0,1.0.0]])"
        ]

    def test_features_wait_for_bundles(self, fast_settings):
        runtime = InMemoryRuntime.from_mapping(
            {
                "repositories": [{"uri": REPO_URI, "features": [feature("f", state="resolved")]}],
                "bundles": [bundle("x")],
            }
        )
        runtime.fail("stop_bundle", "x/1.0.0")
        overlay = Profile(
            bundles=[BundleSnapshot(name="x", version="1.0.0", id=1, state=BundleState.RESOLVED, location=location("x"))],
            features=[FeatureSnapshot.started("f", "1.0.0")],
            only_process_snapshot=True,
        )

        result = Reconciler(runtime, fast_settings).restore(overlay)

        assert _methods(runtime) == ["stop_bundle", "stop_bundle", "start_feature"]
        assert result.attempts == 3
        assert result.suppressed_errors == 1


class TestRetries:
    @pytest.fixture
    def stopped_baseline(self):
        """Runtime whose baseline has ``x`` resolved while it is now active."""
        runtime = InMemoryRuntime.from_mapping({"bundles": [bundle("x", state="resolved")]})
        reconciler = Reconciler(runtime, _settings())
        reconciler.snapshot()
        runtime.start_bundle("x/1.0.0")
        runtime.reset()
        return runtime, reconciler

    def test_failure_on_every_attempt_raises(self, stopped_baseline):
        runtime, reconciler = stopped_baseline
        runtime.fail("stop_bundle", "x/1.0.0", times=5)
        with pytest.raises(ServiceError) as info:
            reconciler.restore()
        assert str(info.value) == (
            "Reset error: failed to stop bundle [x/1.0.0] from state [ACTIVE/active]; "
            "injected failure (stop_bundle x/1.0.0)"
        )
        assert len(runtime.calls("stop_bundle")) == 5
        assert reconciler.metrics.value(m.FAILURES) == 1
        assert reconciler.metrics.value(m.SUPPRESSED_ERRORS) == 4

    def test_success_on_last_attempt_is_not_enough(self, stopped_baseline):
        runtime, reconciler = stopped_baseline
        runtime.fail("stop_bundle", "x/1.0.0", times=4)
        with pytest.raises(ServiceError, match="too many attempts to restore snapshot"):
            reconciler.restore()

    def test_transient_failures_are_suppressed(self, stopped_baseline, caplog):
        runtime, reconciler = stopped_baseline
        runtime.fail("stop_bundle", "x/1.0.0", times=3)
        with caplog.at_level(logging.INFO):
            result = reconciler.restore()
        assert result.attempts == 5
        assert result.suppressed_errors == 3
        assert "Stopping bundle 'x/1.0.0' (4th attempt)" in caplog.messages
        assert runtime.bundle("x/1.0.0").state == BundleState.RESOLVED

    def test_overlay_exhaustion_message(self):
        runtime = InMemoryRuntime.from_mapping({"bundles": [bundle("x")]})
        runtime.fail("stop_bundle", "x/1.0.0")
        overlay = Profile(
            bundles=[BundleSnapshot(name="x", version="1.0.0", id=1, state=BundleState.RESOLVED)],
            only_process_snapshot=True,
        )
        reconciler = Reconciler(runtime, _settings(attempt_count=2))
        with pytest.raises(ServiceError, match="too many attempts to process overlay"):
            reconciler.restore(overlay)

    def test_fatal_error_retried_by_default(self, stopped_baseline):
        runtime, reconciler = stopped_baseline
        runtime.fail("stop_bundle", "x/1.0.0", fatal=True)
        result = reconciler.restore()
        assert result.attempts == 3
        assert result.suppressed_errors == 1

    def test_fatal_error_aborts_when_configured(self):
        runtime = InMemoryRuntime.from_mapping({"bundles": [bundle("x", state="resolved")]})
        reconciler = Reconciler(runtime, _settings(abort_on_fatal=True))
        reconciler.snapshot()
        runtime.start_bundle("x/1.0.0")
        runtime.reset()
        runtime.fail("stop_bundle", "x/1.0.0", fatal=True)

        with pytest.raises(ServiceError, match="failed to stop bundle"):
            reconciler.restore()
        assert len(runtime.calls("stop_bundle")) == 1


# ── Plan, metrics, stabilization ─────────────────────────────────────


class TestPlan:
    def test_plan_executes_nothing(self, fast_settings):
        runtime = InMemoryRuntime.from_mapping({"bundles": [bundle("b")]})
        reconciler = Reconciler(runtime, fast_settings)
        reconciler.snapshot()
        runtime.uninstall_bundle("b/1.0.0")
        runtime.reset()

        assert reconciler.plan() == ["bundle: install b/1.0.0"]
        assert runtime.call_count == 0

    def test_plan_of_in_sync_runtime_is_empty(self, runtime, fast_settings):
        assert Reconciler(runtime, fast_settings).plan() == []


class TestMetrics:
    def test_restore_metrics(self, fast_settings):
        runtime = InMemoryRuntime.from_mapping({"bundles": [bundle("b")]})
        reconciler = Reconciler(runtime, fast_settings)
        reconciler.snapshot()
        runtime.uninstall_bundle("b/1.0.0")
        result = reconciler.restore()

        metrics = reconciler.metrics
        assert metrics.value(m.INVOCATIONS) == 1
        assert metrics.value(m.PASSES) == 2
        assert metrics.value(m.TASKS, kind="bundle") == 2
        assert metrics.value(m.FAILURES) == 0
        assert metrics.histogram(m.DURATION_MS).count == 1
        assert result.to_dict()["tasks_executed"] == 2


class TestStabilize:
    def test_waits_for_starting_bundles(self):
        runtime = InMemoryRuntime.from_mapping({"settle_after": 5, "bundles": [bundle("b")]})
        reconciler = Reconciler(runtime, _settings())
        reconciler.snapshot()
        runtime.stop_bundle("b/1.0.0")

        reconciler.restore()

        assert runtime.bundle("b/1.0.0").state == BundleState.ACTIVE

    def test_baseline_waits_for_bundles_still_starting(self):
        runtime = InMemoryRuntime.from_mapping(
            {
                "bundles": [
                    bundle("core"),
                    bundle("idle", state="resolved"),
                    bundle("late", state="installed", start=True),
                ]
            }
        )
        reconciler = Reconciler(runtime, _settings())

        states = {b.full_name: b.state for b in reconciler.snapshot().bundles}
        assert states["late/1.0.0"] == BundleState.ACTIVE
        assert states["idle/1.0.0"] == BundleState.RESOLVED

        reconciler.restore()
        assert runtime.calls("stop_bundle") == []

    def test_overlay_leaves_unrelated_inactive_bundles_alone(self):
        runtime = InMemoryRuntime.from_mapping(
            {
                "repositories": [{"uri": REPO_URI, "features": [feature("web", bundles=[location("web")])]}],
                "bundles": [bundle("stopped", state="resolved"), bundle("web", state="uninstalled")],
            }
        )
        overlay = Profile(features=[FeatureSnapshot.started("web", "1.0.0")], only_process_snapshot=True)

        result = Reconciler(runtime, _settings()).restore(overlay)

        assert result.attempts == 2
        assert len(runtime.calls("install_features")) == 1
        assert runtime.get_feature_state("web/1.0.0") == FeatureState.STARTED
        assert runtime.bundle("stopped/1.0.0").state == BundleState.RESOLVED

    def test_timeout(self):
        runtime = InMemoryRuntime.from_mapping(
            {"bundles": [bundle("frag", state="installed", fragment=True)]}
        )
        with pytest.raises(ServiceTimeoutError):
            Reconciler(runtime, _settings()).stabilize(timeout=0.01)

    def test_wait_for_feature(self, runtime, fast_settings):
        reconciler = Reconciler(runtime, fast_settings)
        reconciler.wait_for_feature("web")
        with pytest.raises(ServiceTimeoutError):
            reconciler.wait_for_feature("extra", timeout=0.01)


# ── Concurrency and interrupts ───────────────────────────────────────


class _TrackingRuntime(InMemoryRuntime):
    """Records the most threads ever inside ``list_bundles`` at once."""

    def __init__(self, fixture=None):
        super().__init__(fixture)
        self.inside = 0
        self.peak = 0
        self._guard = threading.Lock()

    def list_bundles(self):
        with self._guard:
            self.inside += 1
            self.peak = max(self.peak, self.inside)
        try:
            time.sleep(0.002)
            return super().list_bundles()
        finally:
            with self._guard:
                self.inside -= 1


def _run_in_threads(target, count: int) -> None:
    threads = [threading.Thread(target=target) for _ in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()


class TestConcurrency:
    def test_baseline_captured_once_across_threads(self, runtime, fast_settings):
        captures = []

        class Counting(Reconciler):
            def capture(self):
                captures.append(threading.get_ident())
                time.sleep(0.01)
                return super().capture()

        reconciler = Counting(runtime, fast_settings)
        barrier = threading.Barrier(8)
        baselines = []

        def take():
            barrier.wait()
            baselines.append(reconciler.snapshot())

        _run_in_threads(take, 8)

        assert len(captures) == 1
        assert len(baselines) == 8
        assert all(b is baselines[0] for b in baselines)

    def test_restores_are_serialized(self, example_fixture, fast_settings):
        runtime = _TrackingRuntime.from_mapping(example_fixture)
        reconciler = Reconciler(runtime, fast_settings)
        overlay = Profile(features=[FeatureSnapshot.started("extra")], only_process_snapshot=True)
        results = []

        def restore():
            results.append(reconciler.restore(overlay))

        _run_in_threads(restore, 4)

        assert len(results) == 4
        assert runtime.peak == 1
        assert len(runtime.calls("install_features")) == 1
        assert reconciler.metrics.value(m.INVOCATIONS) == 4

    def test_interrupt_while_stabilizing_is_not_retried(self):
        runtime = InMemoryRuntime.from_mapping(
            {"settle_after": 5, "bundles": [bundle("b", state="resolved")]}
        )
        sleeps = []

        def interrupted(seconds):
            sleeps.append(seconds)
            raise KeyboardInterrupt

        reconciler = Reconciler(
            runtime, _settings(), stabilizer=Stabilizer(runtime, poll_interval=1.0, sleep=interrupted)
        )
        overlay = Profile(
            bundles=[BundleSnapshot(name="b", version="1.0.0", id=1, state=BundleState.ACTIVE)],
            only_process_snapshot=True,
        )

        with pytest.raises(KeyboardInterrupt):
            reconciler.restore(overlay)

        assert sleeps == [1.0]
        assert len(runtime.calls("start_bundle")) == 1
        assert reconciler.metrics.value(m.PASSES) == 2
        assert reconciler.metrics.value(m.FAILURES) == 0


# ── Isolation ────────────────────────────────────────────────────────


class TestIsolation:
    def test_overlay_applied_then_baseline_restored(self, runtime, fast_settings):
        provider = DeclaredStateProvider(
            [FeatureStart(name="extra")],
            {"t::stops_web": [FeatureStop(name="web")]},
        )
        reconciler = Reconciler(runtime, fast_settings, provider=provider)

        with reconciler.isolation("t::stops_web"):
            assert runtime.get_feature_state("extra/1.0.0") == FeatureState.STARTED
            assert runtime.get_feature_state("web/1.0.0") == FeatureState.UNINSTALLED

        assert runtime.get_feature_state("extra/1.0.0") == FeatureState.UNINSTALLED
        assert runtime.get_feature_state("web/1.0.0") == FeatureState.STARTED
        assert runtime.bundle("org.example.extra/1.0.0") is None
        assert runtime.bundle("org.example.web/1.0.0").state == BundleState.ACTIVE

    def test_baseline_restored_when_body_fails(self, runtime, fast_settings):
        reconciler = Reconciler(
            runtime, fast_settings, provider=DeclaredStateProvider([FeatureStart(name="extra")])
        )
        with pytest.raises(RuntimeError):
            with reconciler.isolation():
                raise RuntimeError("test failed")
        assert runtime.get_feature_state("extra/1.0.0") == FeatureState.UNINSTALLED

    def test_empty_overlay_skips_restore(self, runtime, fast_settings):
        reconciler = Reconciler(runtime, fast_settings)
        with reconciler.isolation():
            pass
        assert reconciler.metrics.value(m.INVOCATIONS) == 1
