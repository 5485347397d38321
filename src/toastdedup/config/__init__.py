"""Configuration models and loaders."""

from .config import (
    CacheConfig,
    Config,
    DedupPolicy,
    GlobalDefaults,
    MonitoringConfig,
    OptimizerConfig,
    PolicyConfig,
    deep_merge,
    default_tiers,
    find_config_file,
    format_validation_errors,
)

__all__ = [
    "CacheConfig",
    "Config",
    "DedupPolicy",
    "GlobalDefaults",
    "MonitoringConfig",
    "OptimizerConfig",
    "PolicyConfig",
    "deep_merge",
    "default_tiers",
    "find_config_file",
    "format_validation_errors",
]
