"""
SLURM batch script generation and submission.

This module provides the job script template used by the cluster platform,
named presets for common wall-time limits, and thin wrappers around ``sbatch``
and ``scancel``.
"""

from __future__ import annotations

import logging
import math
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Literal, Optional, Sequence, Union

from rumflow.errors import PlatformError

LOGGER = logging.getLogger(__name__)

PresetType = Literal["default", "short", "long", "debug"]

_JOB_ID_RE = re.compile(r"(\d+)\s*$")


@dataclass
class SlurmConfig:
    """Configuration for SLURM job submission.

    Attributes:
        partition: SLURM partition(s) to use.
        qos: Quality of service. Set to ``""`` to omit the ``--qos`` directive.
        account: Account / allocation ID. Set to ``""`` to omit ``--account``.
        time_limit: Wall time limit (HH:MM:SS or D-HH:MM:SS).
        email: Address for failure notifications. ``""`` omits both mail
            directives.
        cpus: CPUs per task.
        memory: Memory per job (e.g. ``"8G"``). None omits ``--mem``.
        module_load: Module loaded before running (``""`` to skip).
        conda_env: Conda environment activated before running (``""`` to skip).
    """

    partition: str = "normal"
    qos: str = ""
    account: str = ""
    time_limit: str = "23:59:59"
    email: str = ""
    cpus: int = 1
    memory: Optional[str] = None
    module_load: str = ""
    conda_env: str = ""

    @classmethod
    def from_preset(cls, preset: PresetType, email: str = "") -> "SlurmConfig":
        """Create a SlurmConfig from a named preset.

        Unknown preset names fall back to ``default``.

        Args:
            preset: Preset name.
            email: Email for notifications.

        Returns:
            SlurmConfig with preset values.
        """
        presets: Dict[str, Dict] = {
            "default": {},
            "short": {"time_limit": "4:00:00"},
            "long": {"time_limit": "7-00:00:00"},
            "debug": {"partition": "debug", "time_limit": "0:30:00"},
        }

        config_dict = presets.get(preset, presets["default"])
        return cls(email=email, **config_dict)

    def with_overrides(
        self,
        partition: Optional[str] = None,
        account: Optional[str] = None,
        qos: Optional[str] = None,
        time_limit: Optional[str] = None,
        memory_gb: Optional[float] = None,
    ) -> "SlurmConfig":
        """Return a copy with the given fields replaced (None keeps a field)."""
        values = dict(self.__dict__)
        if partition is not None:
            values["partition"] = partition
        if account is not None:
            values["account"] = account
        if qos is not None:
            values["qos"] = qos
        if time_limit is not None:
            values["time_limit"] = time_limit
        if memory_gb is not None:
            values["memory"] = f"{math.ceil(memory_gb)}G"
        return SlurmConfig(**values)


@dataclass
class JobContext:
    """Context for job script template rendering.

    Attributes:
        job_name: SLURM job name.
        output_file: Path pattern for the SLURM log.
        working_dir: Directory the job runs in (the job's output directory).
        description: One-line description written into the script header.
        command: Shell command the job runs.
    """

    job_name: str
    output_file: str
    working_dir: str
    description: str
    command: str


class SlurmScriptGenerator:
    """Generator for SLURM batch scripts.

    Example:
        >>> generator = SlurmScriptGenerator(SlurmConfig.from_preset("short"))
        >>> script = generator.generate(
        ...     JobContext(
        ...         job_name="rum_sample_c1",
        ...         output_file="/out/.rumflow/slurm_logs/rum_sample_c1.%j.out",
        ...         working_dir="/out",
        ...         description="chunk 1",
        ...         command="rumflow run -o /out --child --chunk 1",
        ...     )
        ... )
    """

    JOB_TEMPLATE = """#!/bin/bash
#SBATCH --job-name={job_name}
#SBATCH --output={output_file}
#SBATCH --partition={partition}
{qos_line}
#SBATCH --nodes=1
#SBATCH --ntasks=1
#SBATCH --cpus-per-task={cpus}
{mem_line}
#SBATCH --time={time_limit}
{mail_line}
{account_line}

# =============================================================================
# rumflow job: {description}
# =============================================================================

{env_lines}

set -e

cd "{working_dir}"

echo "Starting {description} at $(date)"

{command}

echo "Finished {description} at $(date)"
"""

    def __init__(self, config: SlurmConfig) -> None:
        self._config = config

    @property
    def config(self) -> SlurmConfig:
        """Get the SLURM configuration."""
        return self._config

    # ------------------------------------------------------------------
    # Optional directive lines
    # ------------------------------------------------------------------

    def _qos_line(self) -> str:
        return f"#SBATCH --qos={self._config.qos}" if self._config.qos else ""

    def _mem_line(self) -> str:
        return f"#SBATCH --mem={self._config.memory}" if self._config.memory else ""

    def _account_line(self) -> str:
        return f"#SBATCH --account={self._config.account}" if self._config.account else ""

    def _mail_line(self) -> str:
        if self._config.email:
            return f"#SBATCH --mail-type=FAIL\n#SBATCH --mail-user={self._config.email}"
        return ""

    def _env_lines(self) -> str:
        lines = []
        if self._config.module_load:
            lines.append("module purge 2>/dev/null || true")
            lines.append(f"ml {self._config.module_load} 2>/dev/null || true")
        if self._config.conda_env:
            lines.append('eval "$(conda shell.bash hook)"')
            lines.append(f"conda activate {self._config.conda_env}")
        return "\n".join(lines)

    # ------------------------------------------------------------------

    def generate(self, context: JobContext) -> str:
        """Render a batch script for one job."""
        return self.JOB_TEMPLATE.format(
            job_name=context.job_name,
            output_file=context.output_file,
            partition=self._config.partition,
            qos_line=self._qos_line(),
            cpus=self._config.cpus,
            mem_line=self._mem_line(),
            time_limit=self._config.time_limit,
            mail_line=self._mail_line(),
            account_line=self._account_line(),
            env_lines=self._env_lines(),
            description=context.description,
            working_dir=context.working_dir,
            command=context.command,
        )

    def save_script(
        self,
        script_content: str,
        output_path: Union[str, Path],
        make_executable: bool = True,
    ) -> Path:
        """Save a script to a file.

        Args:
            script_content: Script content.
            output_path: Output file path.
            make_executable: Whether to make the script executable.

        Returns:
            Path to the saved script.
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, "w") as f:
            f.write(script_content)

        if make_executable:
            os.chmod(output_path, 0o755)

        LOGGER.debug(f"Saved script to {output_path}")
        return output_path


def parse_job_id(sbatch_stdout: str) -> str:
    """Extract the job ID from ``sbatch`` output.

    Example:
        >>> parse_job_id("Submitted batch job 123456")
        '123456'

    Raises:
        PlatformError: If the output does not end with a job ID.
    """
    match = _JOB_ID_RE.search(sbatch_stdout.strip())
    if not match:
        raise PlatformError(f"Could not find a job ID in sbatch output: {sbatch_stdout!r}")
    return match.group(1)


def sbatch(script_path: Path, dependencies: Sequence[str] = ()) -> str:
    """Submit a batch script and return its job ID.

    Args:
        script_path: Script to submit.
        dependencies: Job IDs that must finish successfully first.

    Raises:
        PlatformError: If submission fails. Submission is never retried.
    """
    cmd: List[str] = ["sbatch"]
    if dependencies:
        cmd.append(f"--dependency=afterok:{':'.join(dependencies)}")
    cmd.append(str(script_path))

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    except FileNotFoundError as e:
        raise PlatformError("sbatch not found; is SLURM available on this host?") from e
    except subprocess.CalledProcessError as e:
        LOGGER.error(f"Error submitting job: {e}")
        LOGGER.error(f"STDERR: {e.stderr}")
        raise PlatformError(f"Failed to submit {script_path}: {e.stderr}") from e

    job_id = parse_job_id(result.stdout)
    LOGGER.info(f"Submitted job {job_id} from {script_path}")
    return job_id


def scancel(job_ids: Sequence[str]) -> None:
    """Cancel submitted jobs.

    Raises:
        PlatformError: If ``scancel`` fails.
    """
    if not job_ids:
        return
    try:
        subprocess.run(["scancel", *job_ids], capture_output=True, text=True, check=True)
    except FileNotFoundError as e:
        raise PlatformError("scancel not found; is SLURM available on this host?") from e
    except subprocess.CalledProcessError as e:
        raise PlatformError(f"Failed to cancel jobs {', '.join(job_ids)}: {e.stderr}") from e
    LOGGER.info(f"Cancelled jobs {', '.join(job_ids)}")
