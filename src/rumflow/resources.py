"""
RAM sizing for alignment jobs.

The aligners hold the genome index in memory, so each chunk needs RAM
roughly proportional to the genome size. This module estimates that
requirement, compares it against the RAM available per chunk and decides
how many chunks can safely run at once on one machine.

The numbers are advisory: nothing is reserved, and a user may choose to
proceed with less RAM than recommended.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Union

import psutil

from rumflow.errors import ResourceShortfall

LOGGER = logging.getLogger(__name__)

#: GB of RAM needed per GB of genome.
RAM_PER_GENOME_GB = 1.67

#: RAM a chunk is given when the genome needs less than this.
COMFORTABLE_CHUNK_RAM_GB = 6

ConfirmCallback = Callable[[str], bool]


def genome_size(path: Union[str, Path]) -> int:
    """Number of bases in a genome FASTA file.

    Computed as the file size minus the bytes of every header line and one
    byte per header line. This follows the long-standing sizing rule the
    RAM heuristic was calibrated against.

    Args:
        path: Genome FASTA file.

    Returns:
        Estimated genome size in bases.
    """
    path = Path(path)
    total = path.stat().st_size
    header_bytes = 0
    header_count = 0
    with open(path, "rb") as f:
        for line in f:
            if line.startswith(b">"):
                header_bytes += len(line)
                header_count += 1
    return total - header_bytes - header_count


def min_ram_gb(genome_bases: int) -> int:
    """Minimum RAM per chunk, in GB, for a genome of ``genome_bases``.

    Example:
        >>> min_ram_gb(3_000_000_000)
        6
    """
    return math.floor(genome_bases / 1e9 * RAM_PER_GENOME_GB) + 1


def available_ram_gb() -> float:
    """Total physical RAM on this machine in GB (0 when it cannot be read)."""
    try:
        return psutil.virtual_memory().total / 1e9
    except (OSError, RuntimeError) as e:
        LOGGER.warning(f"Could not determine available RAM: {e}")
        return 0.0


def assign_chunk_ram(min_ram: int, ram_per_chunk: float) -> float:
    """RAM to give each chunk once the minimum is known to fit.

    Small genomes get more than the bare minimum, up to
    ``COMFORTABLE_CHUNK_RAM_GB``, when the machine has room for it.
    """
    ram = float(min_ram)
    if ram < COMFORTABLE_CHUNK_RAM_GB and ram < ram_per_chunk:
        ram = min(ram_per_chunk, COMFORTABLE_CHUNK_RAM_GB)
    return ram


def safe_parallelism(total_ram_gb: Optional[float], min_ram: int, num_chunks: int) -> int:
    """How many chunks can run at once without exceeding ``total_ram_gb``.

    Unknown RAM means no bound beyond the number of chunks.
    """
    if not total_ram_gb or min_ram <= 0:
        return max(1, num_chunks)
    fits = int(total_ram_gb // min_ram)
    return max(1, min(num_chunks, fits))


def suggest_num_chunks(total_ram_gb: Optional[float], min_ram: int, cpus: Optional[int] = None) -> int:
    """Chunk count guidance when the user did not choose one.

    One chunk per CPU, limited by how many chunks fit in RAM.
    """
    cpus = cpus or psutil.cpu_count(logical=False) or 1
    if not total_ram_gb:
        return max(1, cpus)
    return max(1, min(cpus, int(total_ram_gb // max(min_ram, 1))))


@dataclass
class RamAssessment:
    """Outcome of a RAM check.

    Attributes:
        genome_bases: Genome size in bases.
        min_ram_gb: Minimum RAM per chunk.
        total_ram_gb: RAM declared or detected (0 if unknown).
        ram_per_chunk_gb: ``total_ram_gb`` divided over the chunks.
        chunk_ram_gb: RAM assigned to each chunk.
        sufficient: Whether ``ram_per_chunk_gb`` meets the minimum.
    """

    genome_bases: int
    min_ram_gb: int
    total_ram_gb: float
    ram_per_chunk_gb: float
    chunk_ram_gb: float
    sufficient: bool


class ResourceEstimator:
    """Estimates RAM needs for a job and decides whether to proceed.

    Args:
        genome_fasta: Genome FASTA used to size the job.
        declared_ram_gb: RAM the user says is available; detected when None.
        confirm: Called with a warning message when RAM looks insufficient;
            returns True to proceed anyway. None means there is nobody to
            ask, and a shortfall aborts.
    """

    def __init__(
        self,
        genome_fasta: Union[str, Path],
        declared_ram_gb: Optional[float] = None,
        confirm: Optional[ConfirmCallback] = None,
    ) -> None:
        self._genome_fasta = Path(genome_fasta)
        self._declared_ram_gb = declared_ram_gb
        self._confirm = confirm

    def total_ram_gb(self) -> float:
        if self._declared_ram_gb:
            return float(self._declared_ram_gb)
        return available_ram_gb()

    def assess(self, num_chunks: int) -> RamAssessment:
        """Compute the RAM picture for ``num_chunks`` chunks."""
        LOGGER.info("Determining how much RAM you need based on your genome.")
        bases = genome_size(self._genome_fasta)
        needed = min_ram_gb(bases)
        total = self.total_ram_gb()

        if not total:
            return RamAssessment(bases, needed, 0.0, 0.0, float(needed), True)

        per_chunk = total / max(num_chunks, 1)
        return RamAssessment(
            genome_bases=bases,
            min_ram_gb=needed,
            total_ram_gb=total,
            ram_per_chunk_gb=per_chunk,
            chunk_ram_gb=assign_chunk_ram(needed, per_chunk),
            sufficient=per_chunk >= needed,
        )

    def check(self, num_chunks: int) -> RamAssessment:
        """Assess RAM and ask for confirmation when it falls short.

        Raises:
            ResourceShortfall: When RAM per chunk is below the minimum and
                the shortfall was not confirmed.
        """
        result = self.assess(num_chunks)

        if not result.total_ram_gb:
            LOGGER.warning(
                f"Could not determine how much RAM you have. If you have less than "
                f"{result.min_ram_gb} GB per chunk this might not work; proceeding."
            )
            return result

        if result.sufficient:
            LOGGER.info(
                f"It seems like you have {result.ram_per_chunk_gb:.2f} GB of RAM per chunk. "
                "Unless too much else is running, RAM should not be a problem."
            )
            return result

        message = (
            f"You have only {result.ram_per_chunk_gb:.2f} GB of RAM per chunk. Based on the "
            f"size of your genome you will probably need more like {result.min_ram_gb} GB "
            "per chunk. Do you really want to proceed?"
        )
        LOGGER.warning(message)
        if self._confirm is None or not self._confirm(message):
            raise ResourceShortfall(result.ram_per_chunk_gb, result.min_ram_gb)
        return result
