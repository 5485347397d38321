"""
Configuration management for toastdedup using Pydantic.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from toastdedup.errors import ConfigurationError
from toastdedup.protocols import PolicyTier
from toastdedup.utils.atomic import atomic_write_text

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Policy Models ---


class DedupPolicy(BaseModel):
    """Dedup parameters governing one tier or category."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    time_window: float = Field(gt=0, description="Seconds a cached entry stays eligible for matching.")
    similarity_threshold: float = Field(ge=0, le=1, description="Minimum composite similarity for a fuzzy match.")
    max_duplicates: int = Field(ge=1, description="Repeats tolerated before should_block turns on.")
    enabled: bool = Field(default=True, description="When False, checks under this policy never deduplicate.")


class GlobalDefaults(BaseModel):
    """Global switch and the fallback values used when resetting a category."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    default_time_window: float = Field(default=60.0, gt=0)
    default_similarity_threshold: float = Field(default=0.85, ge=0, le=1)
    default_max_duplicates: int = Field(default=2, ge=1)

    def as_policy(self) -> DedupPolicy:
        return DedupPolicy(
            time_window=self.default_time_window,
            similarity_threshold=self.default_similarity_threshold,
            max_duplicates=self.default_max_duplicates,
            enabled=True,
        )


def default_tiers() -> Dict[PolicyTier, DedupPolicy]:
    """Built-in per-tier defaults."""
    return {
        PolicyTier.DIGEST: DedupPolicy(time_window=300.0, similarity_threshold=0.80, max_duplicates=3),
        PolicyTier.TOAST: DedupPolicy(time_window=30.0, similarity_threshold=0.85, max_duplicates=1),
        PolicyTier.NOTIFICATION: DedupPolicy(time_window=120.0, similarity_threshold=0.90, max_duplicates=2),
        PolicyTier.URGENT: DedupPolicy(time_window=600.0, similarity_threshold=0.95, max_duplicates=1),
    }


class PolicyConfig(BaseModel):
    """Complete policy surface: global defaults, tier defaults and category overrides."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    global_defaults: GlobalDefaults = Field(default_factory=GlobalDefaults)
    tiers: Dict[PolicyTier, DedupPolicy] = Field(default_factory=default_tiers)
    categories: Dict[str, DedupPolicy] = Field(
        default_factory=dict, description="Category-specific overrides, keyed by category name."
    )

    @field_validator("tiers")
    @classmethod
    def fill_missing_tiers(cls, v: Dict[PolicyTier, DedupPolicy]) -> Dict[PolicyTier, DedupPolicy]:
        """Tiers not named in the input keep their built-in defaults."""
        return {**default_tiers(), **v}

    @field_validator("categories")
    @classmethod
    def normalize_category_names(cls, v: Dict[str, DedupPolicy]) -> Dict[str, DedupPolicy]:
        normalized: Dict[str, DedupPolicy] = {}
        for name, policy in v.items():
            key = name.strip().lower()
            if not key:
                raise ValueError("category names must not be empty")
            normalized[key] = policy
        return normalized


# --- Component Models ---


class CacheConfig(BaseModel):
    """Dedup cache housekeeping."""

    cleanup_interval: float = Field(default=300.0, gt=0, description="Seconds between background sweeps.")
    max_age: float = Field(default=1800.0, gt=0, description="Entries older than this (since first seen) are swept.")
    capacity: int = Field(default=100, ge=1, description="Size at which has_space() reports False.")


class OptimizerConfig(BaseModel):
    """Batching, result caching and admission control in front of the core service."""

    enable_batching: bool = True
    batch_size: int = Field(default=10, ge=1, description="Queue length that triggers an immediate flush.")
    enable_caching: bool = True
    cache_ttl: float = Field(default=300.0, gt=0, description="Lifetime of optimizer result-cache entries (seconds).")
    enable_profiling: bool = False
    max_concurrent_requests: int = Field(default=10, ge=1, description="In-flight checks admitted at once.")
    debounce_time: float = Field(default=0.05, gt=0, description="Seconds after the first queued item before a flush.")


class MonitoringConfig(BaseModel):
    """Configuration for logging and metrics."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: Optional[str] = Field(default=None, description="Path to log file. If None, logs to console.")
    json_logs: bool = Field(default=False, description="Render console logs as JSON.")
    metrics_enabled: bool = True

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "toastdedup"
    version: str = "0.1.0"
    policies: PolicyConfig = Field(default_factory=PolicyConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    optimizer: OptimizerConfig = Field(default_factory=OptimizerConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="TOASTDEDUP_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            yaml_data = {}
        try:
            return cls.model_validate(yaml_data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {path}", format_validation_errors(e)) from e

    def to_yaml(self, path: Path) -> None:
        """Persist the configuration atomically."""
        data = self.model_dump(mode="json")
        atomic_write_text(Path(path), yaml.safe_dump(data, sort_keys=False, allow_unicode=True))
        log.info("Configuration saved to %s", path)


def format_validation_errors(error: ValidationError) -> List[str]:
    """Flatten a pydantic ValidationError into 'dotted.path: message' strings."""
    return [f"{'.'.join(str(part) for part in item['loc']) or '<root>'}: {item['msg']}" for item in error.errors()]


def deep_merge(base: Mapping[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``update`` into a copy of ``base``."""
    merged: Dict[str, Any] = dict(base)
    for key, value in update.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    paths_to_check = [
        current_dir / "toastdedup.yaml",
        current_dir / "toastdedup.yml",
    ]
    for path in paths_to_check:
        if path.exists():
            return path
    return None
