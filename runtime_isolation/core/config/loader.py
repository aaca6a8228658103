"""
Configuration loader — reads isolation.yml and the YAML fixtures.

Settings come from three places, in increasing precedence:

    defaults        IsolationSettings field defaults
    isolation.yml   searched upward from the working directory
    env vars        RTI_ATTEMPT_COUNT, RTI_STABILIZE_TIMEOUT, RTI_POLL_INTERVAL

An env var that does not parse is ignored with a warning.

The same module loads the YAML documents the CLI and tests work with:
profiles, in-memory runtime fixtures and desired-state declarations.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from runtime_isolation.core.models.profile import Profile

if TYPE_CHECKING:
    from runtime_isolation.adapters.memory import InMemoryRuntime
    from runtime_isolation.core.engine.desired_state import DeclaredStateProvider

logger = logging.getLogger(__name__)

# Default config filename
SETTINGS_FILE = "isolation.yml"

_ENV_OVERRIDES = {
    "RTI_ATTEMPT_COUNT": ("attempt_count", int),
    "RTI_STABILIZE_TIMEOUT": ("stabilize_timeout", float),
    "RTI_POLL_INTERVAL": ("poll_interval", float),
}


class ConfigError(Exception):
    """Raised when configuration or a fixture file is invalid or missing."""


class IsolationSettings(BaseModel):
    """Tunables of the restore algorithm."""

    attempt_count: int = Field(default=5, ge=1)
    stabilize_timeout: float = Field(default=600.0, gt=0)   # seconds
    poll_interval: float = Field(default=1.0, gt=0)         # seconds
    abort_on_fatal: bool = False


def find_settings_file(start_dir: Path | None = None) -> Path | None:
    """Search for isolation.yml starting from the given directory, walking up.

    Returns:
        Path to isolation.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / SETTINGS_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def load_settings(
    path: Path | None = None,
    env: dict[str, str] | None = None,
    search: bool = True,
) -> IsolationSettings:
    """Load settings from a file (explicit or found) plus env overrides.

    Args:
        path: Explicit settings file; must exist when given.
        env: Environment to read overrides from (default: os.environ).
        search: Whether to look for isolation.yml when ``path`` is None.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    data: dict[str, Any] = {}
    if path is None and search:
        path = find_settings_file()
    if path is not None:
        raw = _read_mapping(path)
        data = dict(raw.get("isolation", raw))

    environ = os.environ if env is None else env
    for var, (field, convert) in _ENV_OVERRIDES.items():
        value = environ.get(var)
        if value is None or value == "":
            continue
        try:
            converted = convert(value)
        except ValueError:
            converted = None
        if converted is None or converted <= 0:
            logger.warning("Ignoring invalid %s=%r", var, value)
            continue
        data[field] = converted

    try:
        settings = IsolationSettings.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid isolation settings: {e}") from e

    logger.debug("Isolation settings: %s", settings.model_dump())
    return settings


def load_profile(path: Path, overlay: bool | None = None) -> Profile:
    """Load a profile document.

    Args:
        path: YAML file with ``repositories``, ``features`` and ``bundles``.
        overlay: Force the overlay flag; None keeps the file's value.
    """
    data = _read_mapping(path)
    data = dict(data.get("profile", data))
    if overlay is not None:
        data["only_process_snapshot"] = overlay
    try:
        profile = Profile.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid profile in {path}: {e}") from e

    logger.info(
        "Loaded profile with %d repositories, %d features, %d bundles",
        len(profile.repositories),
        len(profile.features),
        len(profile.bundles),
    )
    return profile


def load_runtime_fixture(path: Path) -> InMemoryRuntime:
    """Load an in-memory runtime from a fixture document."""
    from runtime_isolation.adapters.memory import InMemoryRuntime

    data = _read_mapping(path)
    try:
        return InMemoryRuntime.from_mapping(data.get("runtime", data))
    except (ValidationError, ValueError, KeyError) as e:
        raise ConfigError(f"Invalid runtime fixture in {path}: {e}") from e


def load_declarations(path: Path) -> DeclaredStateProvider:
    """Load desired-state declarations into a provider."""
    from runtime_isolation.core.engine.desired_state import DeclaredStateProvider

    data = _read_mapping(path)
    try:
        return DeclaredStateProvider.from_mapping(data)
    except (ValidationError, ValueError) as e:
        raise ConfigError(f"Invalid declarations in {path}: {e}") from e


def _read_mapping(path: Path) -> dict[str, Any]:
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading %s", path)

    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")
    return data
