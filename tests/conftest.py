"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest
import yaml

from runtime_isolation.adapters.memory import InMemoryRuntime
from runtime_isolation.core.config.loader import IsolationSettings

REPO_URI = "mvn:org.example/example-features/1.0.0/xml/features"
OTHER_URI = "mvn:org.example/other-features/2.0.0/xml/features"


def bundle(name: str, version: str = "1.0.0", state: str = "active", **extra) -> dict:
    """Fixture entry for a bundle located at ``mvn:org.example/<name>/<version>``."""
    return {
        "name": name,
        "version": version,
        "location": f"mvn:org.example/{name}/{version}",
        "state": state,
        **extra,
    }


def feature(name: str, version: str = "1.0.0", state: str = "uninstalled", **extra) -> dict:
    return {"name": name, "version": version, "state": state, **extra}


def location(name: str, version: str = "1.0.0") -> str:
    return f"mvn:org.example/{name}/{version}"


@pytest.fixture
def fast_settings() -> IsolationSettings:
    """Settings with a tiny poll interval and timeout."""
    return IsolationSettings(poll_interval=0.001, stabilize_timeout=0.5)


@pytest.fixture
def example_fixture() -> dict:
    """A runtime with one repository, a started feature and a spare feature.

    ``web`` is started with its bundle; ``extra`` is available but not
    installed; ``org.example.core`` is an active bundle outside any feature.
    """
    return {
        "repositories": [
            {
                "uri": REPO_URI,
                "name": "example-1.0.0",
                "features": [
                    feature("web", state="started", bundles=[location("org.example.web")]),
                    feature("extra", bundles=[location("org.example.extra")]),
                ],
            },
        ],
        "bundles": [
            bundle("org.example.core"),
            bundle("org.example.web"),
            bundle("org.example.extra", state="uninstalled"),
        ],
    }


@pytest.fixture
def runtime(example_fixture: dict) -> InMemoryRuntime:
    return InMemoryRuntime.from_mapping(example_fixture)


@pytest.fixture
def write_yaml(tmp_path: Path):
    """Write a mapping to ``tmp_path/<name>`` and return the path."""

    def _write(name: str, data: dict) -> Path:
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path

    return _write
