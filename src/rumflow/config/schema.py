"""
Configuration schema for rumflow jobs.

This module defines Pydantic models for a job's parameters. A ``JobConfig``
is frozen: chunk configs are derived from the global config with
``for_chunk`` and changes are made with ``model_copy(update=...)``.
"""

from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

SETTINGS_DIR = ".rumflow"
SETTINGS_FILE = "job_settings.yaml"

MAX_NAME_LENGTH = 250


class PlatformName(str, Enum):
    """Execution substrates a job can run on."""

    LOCAL = "local"
    CLUSTER = "cluster"


def expand_path(path: Path) -> Path:
    """Expand environment variables and ``~`` in a path.

    Args:
        path: Path that may contain ``$VAR``, ``${VAR}`` or ``~``.

    Returns:
        Path with variables and the home directory expanded.
    """
    return Path(os.path.expanduser(os.path.expandvars(str(path))))


def fix_name(name: str) -> str:
    """Turn a job name into something safe to use in file and job names.

    Whitespace runs become ``_``, a leading or trailing illegal character is
    dropped, and any other illegal character becomes ``_``.

    Example:
        >>> fix_name("my  sample (rep 1)")
        'my_sample__rep_1'
    """
    name = re.sub(r"\s+", "_", name)
    name = re.sub(r"^[^a-zA-Z0-9_.-]", "", name)
    name = re.sub(r"[^a-zA-Z0-9_.-]$", "", name)
    return re.sub(r"[^a-zA-Z0-9_.-]", "_", name)


# =============================================================================
# Index and tool locations
# =============================================================================


class IndexConfig(BaseModel):
    """Locations of the aligner binaries and the genome/transcriptome indexes.

    Attributes:
        gene_annotation_file: Gene model file used for quantification.
        bowtie_bin: Bowtie executable.
        blat_bin: BLAT executable.
        mdust_bin: mdust executable (low-complexity masking).
        bowtie_genome_index: Bowtie index prefix for the genome.
        bowtie_gene_index: Bowtie index prefix for the transcriptome.
        genome_fasta: Genome FASTA, also used to size RAM requirements.
        script_dir: Directory holding the helper scripts each step runs.
    """

    model_config = ConfigDict(frozen=True)

    gene_annotation_file: Optional[Path] = Field(None, description="Gene model file")
    bowtie_bin: str = Field("bowtie", description="Bowtie executable")
    blat_bin: str = Field("blat", description="BLAT executable")
    mdust_bin: str = Field("mdust", description="mdust executable")
    bowtie_genome_index: Optional[Path] = Field(None, description="Bowtie genome index prefix")
    bowtie_gene_index: Optional[Path] = Field(None, description="Bowtie transcriptome index prefix")
    genome_fasta: Optional[Path] = Field(None, description="Genome FASTA file")
    script_dir: Path = Field(Path("scripts"), description="Helper script directory")

    @field_validator(
        "gene_annotation_file",
        "bowtie_genome_index",
        "bowtie_gene_index",
        "genome_fasta",
        "script_dir",
        mode="before",
    )
    @classmethod
    def expand_env_vars_in_paths(cls, v: Optional[Union[str, Path]]) -> Optional[Path]:
        """Expand environment variables and ~ in path fields."""
        if v is None:
            return None
        return expand_path(Path(v))


# =============================================================================
# BLAT parameters
# =============================================================================


class BlatConfig(BaseModel):
    """Parameters passed through to BLAT."""

    model_config = ConfigDict(frozen=True)

    min_identity: int = Field(93, description="BLAT -minIdentity")
    tile_size: int = Field(12, ge=1, description="BLAT -tileSize")
    step_size: int = Field(6, ge=1, description="BLAT -stepSize")
    rep_match: int = Field(256, ge=1, description="BLAT -repMatch")
    max_intron: int = Field(500000, ge=1, description="BLAT -maxIntron")

    def as_args(self) -> List[str]:
        """Render the parameters as BLAT command line flags."""
        return [
            f"-minIdentity={self.min_identity}",
            f"-tileSize={self.tile_size}",
            f"-stepSize={self.step_size}",
            f"-repMatch={self.rep_match}",
            f"-maxIntron={self.max_intron}",
        ]


# =============================================================================
# Cluster submission
# =============================================================================


class SlurmSettings(BaseModel):
    """SLURM settings used by the cluster platform.

    Attributes:
        preset: Named SLURM preset the other fields override.
        partition: Partition override (None keeps the preset value).
        account: Account override; ``""`` omits the directive.
        qos: QoS override; ``""`` omits the directive.
        time_limit: Wall time per job (HH:MM:SS).
        email: Address for failure notifications.
        dry_run: Write job scripts without submitting them.
        module_load: Module loaded at the top of each job script.
        conda_env: Conda environment activated in each job script.
    """

    model_config = ConfigDict(frozen=True)

    preset: str = Field("default", description="SLURM preset name")
    partition: Optional[str] = Field(None, description="Partition override")
    account: Optional[str] = Field(None, description="Account override")
    qos: Optional[str] = Field(None, description="QoS override")
    time_limit: Optional[str] = Field(None, description="Wall time override")
    email: str = Field("", description="Notification email")
    dry_run: bool = Field(False, description="Write scripts without submitting")
    module_load: str = Field("", description="Module loaded in each job script")
    conda_env: str = Field("", description="Conda environment activated in each job script")


# =============================================================================
# Job configuration
# =============================================================================


class JobConfig(BaseModel):
    """Complete configuration for one alignment job.

    The same model serves as the global config (``chunk`` is None) and as a
    chunk config. Every file a chunk writes carries the chunk index as a
    suffix, so chunks never write to the same path.

    Example:
        >>> config = JobConfig(name="sample", output_dir="out", reads=["r.fq"])
        >>> config.for_chunk(2).chunk_suffixed("RUM_Unique")
        PosixPath('out/RUM_Unique.2')
    """

    model_config = ConfigDict(frozen=True)

    name: Optional[str] = Field(None, description="Job name")
    output_dir: Optional[Path] = Field(None, description="Directory for all job output")
    reads: List[Path] = Field(default_factory=list, description="One or two read files")

    num_chunks: Optional[int] = Field(None, ge=1, description="Number of chunks")
    chunk: Optional[int] = Field(None, ge=1, description="Chunk index (chunk configs only)")
    platform: PlatformName = Field(PlatformName.LOCAL, description="Execution platform")

    ram_gb: Optional[float] = Field(None, gt=0, description="Total RAM available (GB)")
    chunk_ram_gb: Optional[float] = Field(None, gt=0, description="RAM assigned per chunk (GB)")
    ram_ok: bool = Field(False, description="RAM check already passed")

    quantify: bool = Field(False, description="Produce feature quantifications")
    strand_specific: bool = Field(False, description="Reads are strand specific")
    junctions: bool = Field(False, description="Produce junction files")
    count_mismatches: bool = Field(False, description="Count mismatches in alignments")
    max_insertions: int = Field(1, ge=0, description="Max insertions per read")
    cleanup: bool = Field(True, description="Remove intermediates when the job finishes")
    dna: bool = Field(False, description="DNA mode (genome only, no splicing)")
    genome_only: bool = Field(False, description="Skip transcriptome alignment")
    blat_only: bool = Field(False, description="Skip bowtie, align with BLAT only")

    min_length: Optional[int] = Field(None, description="Minimum alignment length")
    min_identity: int = Field(93, description="Minimum percent identity")
    nu_limit: Optional[int] = Field(None, description="Limit on non-unique mappers")
    bowtie_nu_limit: Optional[int] = Field(None, description="Limit on bowtie non-unique mappers")
    preserve_names: bool = Field(False, description="Keep original read names")
    variable_length_reads: bool = Field(False, description="Reads have variable lengths")
    user_quals: Optional[str] = Field(None, description="Quality file name in output_dir")
    alt_genes: Optional[Path] = Field(None, description="Alternate gene model file")
    alt_quant_model: Optional[Path] = Field(None, description="Alternate quantification model")

    index: IndexConfig = Field(default_factory=IndexConfig, description="Index locations")
    blat: BlatConfig = Field(default_factory=BlatConfig, description="BLAT parameters")
    slurm: SlurmSettings = Field(default_factory=SlurmSettings, description="SLURM settings")

    @field_validator("output_dir", "alt_genes", "alt_quant_model", mode="before")
    @classmethod
    def expand_env_vars_in_paths(cls, v: Optional[Union[str, Path]]) -> Optional[Path]:
        """Expand environment variables and ~ in path fields."""
        if v is None:
            return None
        return expand_path(Path(v))

    @field_validator("reads", mode="before")
    @classmethod
    def expand_read_paths(cls, v: Optional[List[Union[str, Path]]]) -> List[Path]:
        """Expand environment variables and ~ in read file paths."""
        if not v:
            return []
        return [expand_path(Path(p)) for p in v]

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def effective_num_chunks(self) -> int:
        """Number of chunks, defaulting to one."""
        return self.num_chunks or 1

    @property
    def is_paired(self) -> bool:
        """Whether the job was given a forward/reverse read pair."""
        return len(self.reads) == 2

    @property
    def settings_dir(self) -> Path:
        """Directory holding the persisted job state."""
        return self.require_output_dir() / SETTINGS_DIR

    @property
    def settings_file(self) -> Path:
        """Path of the persisted settings artifact."""
        return self.settings_dir / SETTINGS_FILE

    def require_output_dir(self) -> Path:
        if self.output_dir is None:
            raise ValueError("output_dir is not set")
        return self.output_dir

    def chunk_nums(self) -> List[int]:
        """Chunk indexes this config covers.

        A chunk config covers only its own chunk; the global config covers
        ``1..num_chunks``.
        """
        if self.chunk:
            return [self.chunk]
        return list(range(1, self.effective_num_chunks + 1))

    def for_chunk(self, chunk: int) -> "JobConfig":
        """Derive the config for one chunk.

        Args:
            chunk: 1-based chunk index.

        Returns:
            A copy identical to this config except for ``chunk``.
        """
        if chunk < 1 or chunk > self.effective_num_chunks:
            raise ValueError(f"Chunk {chunk} is outside 1..{self.effective_num_chunks}")
        return self.model_copy(update={"chunk": chunk})

    def in_output_dir(self, name: str) -> Path:
        """Path of a file directly inside the output directory."""
        return self.require_output_dir() / name

    def chunk_suffixed(self, name: str) -> Path:
        """Path of a chunk's copy of ``name``.

        Raises:
            ValueError: If this is not a chunk config.
        """
        if not self.chunk:
            raise ValueError(f"'{name}' needs a chunk config, but chunk is not set")
        return self.in_output_dir(f"{name}.{self.chunk}")
