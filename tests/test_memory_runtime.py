"""
Tests for the in-memory runtime used in place of a live one.
"""

import pytest

from conftest import OTHER_URI, REPO_URI, bundle, feature, location
from runtime_isolation.adapters import FatalRuntimeError, InMemoryRuntime, RuntimeFacadeError
from runtime_isolation.core.models import BundleState, FeatureState


class TestFixture:
    def test_installed_bundles_get_ids(self, runtime):
        assert [(b.full_name, b.id) for b in runtime.list_bundles()] == [
            ("org.example.core/1.0.0", 1),
            ("org.example.web/1.0.0", 2),
        ]

    def test_started_feature_is_required(self, runtime):
        assert runtime.is_feature_required("web/1.0.0")
        assert not runtime.is_feature_required("extra/1.0.0")

    def test_unknown_bundle_location_rejected(self):
        with pytest.raises(ValueError, match="references unknown bundle"):
            InMemoryRuntime.from_mapping(
                {"repositories": [{"uri": REPO_URI, "features": [feature("f", bundles=["mvn:x/y/1"])]}]}
            )

    def test_invalid_fixture(self):
        with pytest.raises(Exception):
            InMemoryRuntime.from_mapping({"bundles": [{"name": "b"}]})


class TestRepositories:
    def test_add_and_remove(self):
        runtime = InMemoryRuntime.from_mapping({"repositories": [{"uri": OTHER_URI, "added": False}]})
        assert runtime.list_repositories() == []
        runtime.add_repository(OTHER_URI)
        assert [r.uri for r in runtime.list_repositories()] == [OTHER_URI]
        runtime.remove_repository(OTHER_URI)
        assert runtime.list_repositories() == []

    def test_unknown_repository(self):
        with pytest.raises(RuntimeFacadeError, match="Unable to resolve repository"):
            InMemoryRuntime().add_repository(OTHER_URI)

    def test_installed_features_outlive_their_repository(self, runtime):
        runtime.remove_repository(REPO_URI)
        assert [f.id for f in runtime.list_features()] == ["web/1.0.0"]


class TestFeatures:
    def test_install_starts_feature_and_bundles(self, runtime):
        runtime.install_features({"extra/1.0.0"}, "root", set())
        assert runtime.get_feature_state("extra/1.0.0") == FeatureState.STARTED
        assert runtime.is_feature_required("extra/1.0.0")
        assert runtime.bundle("org.example.extra/1.0.0").state == BundleState.ACTIVE

    def test_install_needs_repository(self, runtime):
        runtime.remove_repository(REPO_URI)
        with pytest.raises(RuntimeFacadeError, match="No matching features"):
            runtime.install_features({"extra/1.0.0"}, "root", set())

    def test_versionless_id_means_newest(self):
        runtime = InMemoryRuntime.from_mapping(
            {"repositories": [{"uri": REPO_URI, "features": [feature("f", "1.2.0"), feature("f", "1.10.0")]}]}
        )
        runtime.install_features({"f/0.0.0"}, "root", set())
        assert runtime.get_feature_state("f/1.10.0") == FeatureState.STARTED
        assert runtime.get_feature_state("f/1.2.0") == FeatureState.UNINSTALLED

    def test_uninstall_needs_required(self, runtime):
        runtime.remove_requirements("root", {"feature:web/[1.0.0,1.0.0]"}, set())
        with pytest.raises(RuntimeFacadeError, match="is not required"):
            runtime.uninstall_features({"web/1.0.0"}, "root", set())

    def test_uninstall_removes_unused_bundles(self, runtime):
        runtime.uninstall_features({"web/1.0.0"}, "root", set())
        assert runtime.get_feature_state("web/1.0.0") == FeatureState.UNINSTALLED
        assert runtime.bundle("org.example.web/1.0.0") is None
        assert runtime.bundle("org.example.core/1.0.0") is not None

    def test_stop_and_start(self, runtime):
        runtime.stop_feature("web/1.0.0", "root", set())
        assert runtime.get_feature_state("web/1.0.0") == FeatureState.RESOLVED
        assert runtime.bundle("org.example.web/1.0.0").state == BundleState.RESOLVED
        runtime.start_feature("web/1.0.0", "root", set())
        assert runtime.bundle("org.example.web/1.0.0").state == BundleState.ACTIVE

    def test_start_uninstalled_feature(self, runtime):
        with pytest.raises(RuntimeFacadeError, match="is not installed"):
            runtime.start_feature("extra/1.0.0", "root", set())

    def test_unknown_feature(self, runtime):
        with pytest.raises(RuntimeFacadeError, match="No feature named 'ghost/1.0.0'"):
            runtime.get_feature_state("ghost/1.0.0")

    def test_invalid_requirement(self, runtime):
        with pytest.raises(RuntimeFacadeError, match="Invalid requirement"):
            runtime.add_requirements("root", {"web"}, set())


class TestBundles:
    def test_install_and_start(self):
        runtime = InMemoryRuntime.from_mapping({"bundles": [bundle("b", state="uninstalled")]})
        runtime.install_bundle(location("b"))
        assert runtime.bundle("b/1.0.0").state == BundleState.INSTALLED
        runtime.start_bundle("b/1.0.0")
        assert runtime.bundle("b/1.0.0").state == BundleState.ACTIVE

    def test_install_twice(self, runtime):
        with pytest.raises(RuntimeFacadeError, match="already installed"):
            runtime.install_bundle(location("org.example.core"))

    def test_unknown_location(self, runtime):
        with pytest.raises(RuntimeFacadeError, match="Unable to locate bundle"):
            runtime.install_bundle("mvn:nowhere/x/1")

    def test_fragment_cannot_start(self):
        runtime = InMemoryRuntime.from_mapping(
            {"bundles": [bundle("frag", state="uninstalled", fragment=True)]}
        )
        runtime.install_bundle(location("frag"))
        assert runtime.bundle("frag/1.0.0").state == BundleState.RESOLVED
        with pytest.raises(RuntimeFacadeError, match="Fragment bundles can not be started"):
            runtime.start_bundle("frag/1.0.0")

    def test_starting_settles_after_listings(self):
        runtime = InMemoryRuntime.from_mapping(
            {"settle_after": 2, "bundles": [bundle("b", state="resolved")]}
        )
        runtime.start_bundle("b/1.0.0")
        states = [runtime.list_bundles()[0].state for _ in range(3)]
        assert states == [BundleState.STARTING, BundleState.STARTING, BundleState.ACTIVE]

    def test_started_bundle_resolves_on_its_way_to_active(self):
        runtime = InMemoryRuntime.from_mapping(
            {"bundles": [bundle("late", state="installed", start=True)]}
        )
        assert runtime.is_bundle_persistently_started("late/1.0.0")
        states = [runtime.list_bundles()[0].state for _ in range(3)]
        assert states == [BundleState.INSTALLED, BundleState.RESOLVED, BundleState.ACTIVE]

    def test_persistent_start_follows_start_and_stop(self):
        runtime = InMemoryRuntime.from_mapping(
            {"bundles": [bundle("a"), bundle("r", state="resolved"), bundle("frag", fragment=True)]}
        )
        assert runtime.is_bundle_persistently_started("a/1.0.0")
        assert not runtime.is_bundle_persistently_started("r/1.0.0")
        assert not runtime.is_bundle_persistently_started("frag/1.0.0")

        runtime.stop_bundle("a/1.0.0")
        runtime.start_bundle("r/1.0.0")
        assert not runtime.is_bundle_persistently_started("a/1.0.0")
        assert runtime.is_bundle_persistently_started("r/1.0.0")
        assert not runtime.is_bundle_persistently_started("ghost/1.0.0")

    def test_uninstalled_bundles_not_listed(self, runtime):
        runtime.uninstall_bundle("org.example.core/1.0.0")
        assert [b.name for b in runtime.list_bundles()] == ["org.example.web"]
        with pytest.raises(RuntimeFacadeError, match="is not installed"):
            runtime.stop_bundle("org.example.core/1.0.0")


class TestFailureInjection:
    def test_fails_given_number_of_times(self, runtime):
        runtime.fail("stop_bundle", "org.example.core/1.0.0", times=2, message="busy")
        for _ in range(2):
            with pytest.raises(RuntimeFacadeError, match=r"busy \(stop_bundle org.example.core/1.0.0\)"):
                runtime.stop_bundle("org.example.core/1.0.0")
        runtime.stop_bundle("org.example.core/1.0.0")
        assert len(runtime.calls("stop_bundle")) == 3

    def test_fatal_failure(self, runtime):
        runtime.fail("remove_repository", REPO_URI, fatal=True)
        with pytest.raises(FatalRuntimeError):
            runtime.remove_repository(REPO_URI)

    def test_batch_calls_fail_by_region_or_id(self, runtime):
        runtime.fail("install_features", "r1")
        with pytest.raises(RuntimeFacadeError):
            runtime.install_features({"extra/1.0.0"}, "r1", set())
        runtime.fail("install_features", "extra/1.0.0")
        with pytest.raises(RuntimeFacadeError):
            runtime.install_features({"extra/1.0.0"}, "root", set())

    def test_reset_clears_log_and_failures(self, runtime):
        runtime.fail("stop_bundle", "org.example.core/1.0.0")
        runtime.reset()
        runtime.stop_bundle("org.example.core/1.0.0")
        assert [str(c) for c in runtime.call_log] == ["stop_bundle(org.example.core/1.0.0)"]
        assert runtime.call_count == 1
