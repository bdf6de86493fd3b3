"""Semantic checks for a JobConfig.

Pydantic catches type errors when a config is built; these checks cover
the rules that involve several fields or the filesystem. Every rule is
evaluated and all failures are reported together, so a user can fix a
config in one pass.
"""

from __future__ import annotations

import os
from typing import List

from rumflow.config.schema import MAX_NAME_LENGTH, JobConfig, fix_name
from rumflow.errors import ConfigurationError


def collect_errors(config: JobConfig) -> List[str]:
    """Return every problem with ``config``; an empty list means it is valid."""
    errors: List[str] = []

    if config.output_dir is None:
        errors.append("Please specify an output directory with --output or -o")

    if config.name:
        if len(config.name) > MAX_NAME_LENGTH:
            errors.append(f"The name must be less than {MAX_NAME_LENGTH} characters")
    else:
        errors.append("Please specify a name with --name")

    if config.index.genome_fasta is None:
        errors.append("Please specify the genome FASTA (index.genome_fasta) in the job config")
    elif not config.index.genome_fasta.is_file():
        errors.append(f"The genome FASTA {config.index.genome_fasta} does not exist")

    reads = config.reads
    if len(reads) not in (1, 2):
        errors.append("Please provide one or two read files")
    else:
        errors.extend(f"The read file {r} does not exist" for r in reads if not r.is_file())
    if len(reads) == 2 and reads[0] == reads[1]:
        errors.append(
            "You specified the same file for the forward and reverse reads, must be an error"
        )

    if config.user_quals is not None and "/" in config.user_quals:
        errors.append(
            "Do not specify the quals file with a full path, "
            f"put it in the '{config.output_dir}' directory."
        )

    if not 0 <= config.min_identity <= 100:
        errors.append(
            "--min-identity must be an integer between zero and 100. "
            f"You have given '{config.min_identity}'."
        )

    if config.min_length is not None and config.min_length < 10:
        errors.append(
            f"--min-length must be an integer >= 10. You have given '{config.min_length}'."
        )

    if config.nu_limit is not None and config.nu_limit <= 0:
        errors.append(
            "--limit-nu must be an integer greater than zero. "
            f"You have given '{config.nu_limit}'."
        )

    if config.preserve_names and config.variable_length_reads:
        errors.append(
            "Cannot use both --preserve-names and --variable-read-lengths at the same time."
        )

    if not 0 <= config.blat.min_identity <= 100:
        errors.append("--blat-min-identity must be an integer between 0 and 100.")

    for label, path in (("alt gene file", config.alt_genes), ("alt quant model", config.alt_quant_model)):
        if path is not None and not os.access(path, os.R_OK):
            errors.append(f"Can't read from {label} {path}")

    return errors


def check_config(config: JobConfig) -> JobConfig:
    """Validate a config and return it with its name sanitised.

    Raises:
        ConfigurationError: Listing every problem found.
    """
    errors = collect_errors(config)
    if errors:
        raise ConfigurationError(errors)
    return config.model_copy(update={"name": fix_name(config.name or "")})
