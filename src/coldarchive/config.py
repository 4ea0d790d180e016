# src/coldarchive/config.py
"""
Configuration loader for coldarchive.

- Reads <config_dir>/config.yaml (missing file => defaults)
- Loads a .env file via python-dotenv, then applies environment overrides
- Converts nested mappings into typed dataclasses
- Supports safe forward-compatibility (unknown keys ignored)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from coldarchive.errors import ColdArchiveError
from coldarchive.tracking.cost import DEFAULT_TIER, make_cost_estimator
from coldarchive.tracking.staging import DEFAULT_LEDGER_FILENAME, DEFAULT_STAGING_DIR

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yaml"
REGISTRY_FILENAME = "registry.yaml"
LEGACY_LEDGER_FILENAME = "tracking.json"


# -----------------------------
# Small, typed sub-configs
# -----------------------------
@dataclass
class StagingSettings:
    """Where items are staged on each volume."""
    dir_name: str = DEFAULT_STAGING_DIR
    ledger_filename: str = DEFAULT_LEDGER_FILENAME


@dataclass
class EngineSettings:
    """Backup engine (restic) invocation."""
    executable: str = "restic"
    repository: Optional[str] = None
    password_file: Optional[str] = None
    deep_check: bool = False          # restic check --read-data
    tags: list[str] = field(default_factory=lambda: ["coldarchive"])
    env: dict[str, str] = field(default_factory=dict)


@dataclass
class CostSettings:
    """Storage cost model used by the statistics roll-up."""
    tier: str = DEFAULT_TIER
    price_per_gb_month: Optional[float] = None   # overrides the tier price
    currency: str = "USD"


@dataclass
class ArchiveSettings:
    delete_after_archive: bool = True


@dataclass
class NotificationSettings:
    enabled: bool = True


# -----------------------------
# Top-level Settings
# -----------------------------
@dataclass
class Settings:
    """
    Root configuration object for coldarchive.
    This dataclass holds everything parsed from YAML plus env overrides.
    """

    config_dir: Path = field(default_factory=lambda: default_config_dir())

    staging: StagingSettings = field(default_factory=StagingSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    cost: CostSettings = field(default_factory=CostSettings)
    archive: ArchiveSettings = field(default_factory=ArchiveSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @property
    def registry_path(self) -> Path:
        return self.config_dir / REGISTRY_FILENAME

    @property
    def legacy_ledger_path(self) -> Path:
        """Single ledger used before per-root shards existed."""
        return self.config_dir / LEGACY_LEDGER_FILENAME

    def cost_estimator(self):
        return make_cost_estimator(self.cost.tier, self.cost.price_per_gb_month)


# -----------------------------
# Helpers
# -----------------------------
def default_config_dir() -> Path:
    """
    $COLDARCHIVE_HOME, else %APPDATA%/coldarchive on Windows,
    else ~/.config/coldarchive.
    """
    home = os.getenv("COLDARCHIVE_HOME")
    if home:
        return Path(home).expanduser()
    if os.name == "nt" and os.getenv("APPDATA"):
        return Path(os.environ["APPDATA"]) / "coldarchive"
    return Path.home() / ".config" / "coldarchive"


def _as(obj: Any, cls: Any):
    """
    Minimal recursive 'constructor' to turn nested dicts into dataclass instances.
    Ignores unknown keys so YAML can be slightly ahead of code.
    """
    if obj is None or isinstance(obj, cls):
        return obj if obj is not None else cls()
    if isinstance(obj, dict):
        names = set(cls.__dataclass_fields__)
        unknown = sorted(set(obj) - names)
        if unknown:
            logger.debug(f"Ignoring unknown {cls.__name__} keys: {unknown}")
        return cls(**{k: v for k, v in obj.items() if k in names})
    raise ColdArchiveError(f"Expected a mapping for {cls.__name__}, got {type(obj).__name__}")


def _env(*names: str) -> Optional[str]:
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


def load_settings(
    config_path: str | Path | None = None,
    env_file: str | Path | None = ".env",
) -> Settings:
    """
    Load YAML into Settings and apply environment overrides.

    Args:
        config_path: Explicit YAML file; defaults to <config_dir>/config.yaml
        env_file: .env file to load first (skipped if it does not exist)

    Raises:
        ColdArchiveError: If the YAML cannot be parsed or a section is not a mapping
    """
    if env_file is not None and Path(env_file).exists():
        load_dotenv(dotenv_path=env_file)
        logger.debug(f"Loaded environment from {env_file}")

    config_dir = default_config_dir()
    p = Path(config_path).expanduser() if config_path else config_dir / CONFIG_FILENAME

    data: dict[str, Any] = {}
    if p.exists():
        try:
            data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ColdArchiveError(f"Cannot read configuration {p}: {e}") from e
        if not isinstance(data, dict):
            raise ColdArchiveError(f"Configuration must be a mapping: {p}")
        logger.debug(f"Loaded configuration from {p}")
    else:
        logger.debug(f"No configuration at {p}, using defaults")

    if data.get("config_dir"):
        config_dir = Path(str(data["config_dir"])).expanduser()

    settings = Settings(
        config_dir=config_dir,
        staging=_as(data.get("staging"), StagingSettings),
        engine=_as(data.get("engine"), EngineSettings),
        cost=_as(data.get("cost"), CostSettings),
        archive=_as(data.get("archive"), ArchiveSettings),
        notifications=_as(data.get("notifications"), NotificationSettings),
    )

    # --- Environment variable overrides ---
    repository = _env("COLDARCHIVE_REPOSITORY", "RESTIC_REPOSITORY")
    if repository:
        settings.engine.repository = repository
    password_file = _env("COLDARCHIVE_PASSWORD_FILE", "RESTIC_PASSWORD_FILE")
    if password_file:
        settings.engine.password_file = password_file
    if os.getenv("COLDARCHIVE_RESTIC"):
        settings.engine.executable = os.environ["COLDARCHIVE_RESTIC"]
    if os.getenv("COLDARCHIVE_STORAGE_TIER"):
        settings.cost.tier = os.environ["COLDARCHIVE_STORAGE_TIER"]

    try:
        settings.cost_estimator()
    except ValueError as e:
        raise ColdArchiveError(str(e)) from e

    if not settings.engine.repository:
        logger.debug("No repository configured - restic will rely on its own environment")
    return settings


__all__ = [
    "StagingSettings",
    "EngineSettings",
    "CostSettings",
    "ArchiveSettings",
    "NotificationSettings",
    "Settings",
    "default_config_dir",
    "load_settings",
]
