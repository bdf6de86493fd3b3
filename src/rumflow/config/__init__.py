"""Configuration management with YAML support and validation."""

from rumflow.config.loader import (
    config_from_dict,
    load_config,
    load_job,
    save_config,
    save_job,
    settings_path,
)
from rumflow.config.schema import (
    BlatConfig,
    IndexConfig,
    JobConfig,
    PlatformName,
    SlurmSettings,
    fix_name,
)
from rumflow.config.validation import check_config, collect_errors

__all__ = [
    "JobConfig",
    "IndexConfig",
    "BlatConfig",
    "SlurmSettings",
    "PlatformName",
    "fix_name",
    "config_from_dict",
    "load_config",
    "save_config",
    "load_job",
    "save_job",
    "settings_path",
    "check_config",
    "collect_errors",
]
