"""
YAML loader and saver for rumflow job configs.

A job's config is persisted to ``<output_dir>/.rumflow/job_settings.yaml``
the first time it is set up. Later invocations (status, kill, clean,
resume, and the jobs a cluster runs) reload that file to reattach to the
job instead of starting a new one.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import ValidationError

from rumflow.config.schema import SETTINGS_DIR, SETTINGS_FILE, JobConfig
from rumflow.errors import ConfigurationError

LOGGER = logging.getLogger(__name__)

PATH_KEYS = {
    "output_dir",
    "reads",
    "alt_genes",
    "alt_quant_model",
    "gene_annotation_file",
    "bowtie_genome_index",
    "bowtie_gene_index",
    "genome_fasta",
    "script_dir",
}


def _expand_paths(data: Dict[str, Any], base_path: Path) -> Dict[str, Any]:
    """Recursively resolve relative paths in configuration data.

    Relative paths are taken relative to the directory holding the config
    file. Environment variables are expanded first.

    Args:
        data: Configuration dictionary
        base_path: Directory containing the config file

    Returns:
        Configuration with absolute paths
    """

    def expand_value(key: str, value: Any) -> Any:
        if key in PATH_KEYS and isinstance(value, str):
            path = Path(os.path.expanduser(os.path.expandvars(value)))
            if not path.is_absolute():
                path = base_path / path
            return str(path)
        elif isinstance(value, dict):
            return {k: expand_value(k, v) for k, v in value.items()}
        elif isinstance(value, list):
            return [expand_value(key, item) for item in value]
        return value

    return {k: expand_value(k, v) for k, v in data.items()}


def _validation_messages(error: ValidationError) -> List[str]:
    """Flatten a pydantic ValidationError into one message per problem."""
    messages = []
    for err in error.errors():
        where = ".".join(str(part) for part in err["loc"]) or "config"
        messages.append(f"{where}: {err['msg']}")
    return messages


def config_from_dict(data: Dict[str, Any], base_path: Optional[Path] = None) -> JobConfig:
    """Create a JobConfig from a dictionary.

    Args:
        data: Configuration dictionary
        base_path: Base path for resolving relative paths (default: cwd)

    Returns:
        Validated JobConfig instance

    Raises:
        ConfigurationError: Listing every field pydantic rejected.
    """
    expanded = _expand_paths(data, base_path or Path.cwd())
    try:
        return JobConfig.model_validate(expanded)
    except ValidationError as e:
        raise ConfigurationError(_validation_messages(e)) from e


def load_config(path: Union[str, Path]) -> JobConfig:
    """Load a JobConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        Validated JobConfig instance

    Raises:
        FileNotFoundError: If the config file doesn't exist
        yaml.YAMLError: If the YAML is malformed
        ConfigurationError: If the configuration is invalid
    """
    path = Path(path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError([f"{path}: expected a mapping at the top level"])

    return config_from_dict(data, path.parent.absolute())


def save_config(config: JobConfig, path: Union[str, Path]) -> Path:
    """Save a JobConfig to a YAML file.

    Paths are written as absolute paths so the file can be reloaded from
    any working directory, including inside a cluster job.

    Args:
        config: Configuration to save
        path: Destination path for the YAML file

    Returns:
        The path written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    data = _expand_paths(config.model_dump(mode="json", exclude={"chunk"}), Path.cwd())

    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, width=100)
    tmp_path.replace(path)

    LOGGER.debug(f"Saved job settings to {path}")
    return path


def settings_path(output_dir: Union[str, Path]) -> Path:
    """Location of the settings artifact for a job's output directory."""
    return Path(output_dir) / SETTINGS_DIR / SETTINGS_FILE


def load_job(output_dir: Union[str, Path]) -> Optional[JobConfig]:
    """Reload the persisted config of an existing job.

    Args:
        output_dir: The job's output directory.

    Returns:
        The saved JobConfig, or None if no job has been set up there.
    """
    path = settings_path(output_dir)
    if not path.exists():
        return None
    LOGGER.debug(f"Reattaching to job settings in {path}")
    return load_config(path)


def save_job(config: JobConfig) -> Path:
    """Persist a job's global config into its output directory."""
    return save_config(config, config.settings_file)
