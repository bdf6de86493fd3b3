"""
Run a job on a SLURM cluster.

The parent process does no alignment work itself. It writes one batch
script per unit of work, submits them with ``afterok`` dependencies so the
scheduler enforces the phase order, records the job IDs and returns. Each
submitted job runs ``rumflow run --child`` for its phase, which executes
that phase on the compute node with the local platform.
"""

from __future__ import annotations

import json
import shlex
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from rumflow.errors import PlatformError
from rumflow.platform.base import Platform
from rumflow.platform.slurm import JobContext, SlurmConfig, SlurmScriptGenerator, sbatch, scancel

JOBS_FILE = "cluster_jobs.json"
SCRIPTS_SUBDIR = "job_scripts"
LOGS_SUBDIR = "slurm_logs"


@dataclass
class SubmissionResult:
    """Result of one job submission.

    Attributes:
        job_id: SLURM job ID (or a placeholder for a dry run).
        script_path: Path to the generated script.
        phase: ``preprocess``, ``process`` or ``postprocess``.
        chunk: Chunk index for process jobs.
        is_dry_run: Whether the script was written but not submitted.
    """

    job_id: str
    script_path: Path
    phase: str
    chunk: Optional[int] = None
    is_dry_run: bool = False

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "script_path": str(self.script_path),
            "phase": self.phase,
            "chunk": self.chunk,
            "is_dry_run": self.is_dry_run,
        }


class ClusterPlatform(Platform):
    """Submits the job's phases to SLURM as dependent batch jobs.

    Example:
        >>> platform = ClusterPlatform(context, orchestrator)
        >>> platform.start_parent()
        >>> [r.job_id for r in platform.submissions]
        ['1001', '1002', '1003', '1004']
    """

    def __init__(self, context, job) -> None:
        super().__init__(context, job)
        self._generator = SlurmScriptGenerator(self._slurm_config(None))
        self._submissions: List[SubmissionResult] = []

    @property
    def submissions(self) -> List[SubmissionResult]:
        return list(self._submissions)

    @property
    def scripts_dir(self) -> Path:
        return self.config.settings_dir / SCRIPTS_SUBDIR

    @property
    def jobs_file(self) -> Path:
        return self.config.settings_dir / JOBS_FILE

    def _slurm_config(self, memory_gb: Optional[float]) -> SlurmConfig:
        settings = self.config.slurm
        base = SlurmConfig.from_preset(settings.preset, email=settings.email)  # type: ignore[arg-type]
        if settings.module_load:
            base.module_load = settings.module_load
        if settings.conda_env:
            base.conda_env = settings.conda_env
        return base.with_overrides(
            partition=settings.partition,
            account=settings.account,
            qos=settings.qos,
            time_limit=settings.time_limit,
            memory_gb=memory_gb,
        )

    # ------------------------------------------------------------------
    # Scripts
    # ------------------------------------------------------------------

    def _job_name(self, label: str) -> str:
        return f"rum_{self.config.name}_{label}"

    def child_command(self, phase_args: List[str]) -> str:
        """Shell command a submitted job runs."""
        argv = [sys.executable, "-m", "rumflow", "run",
                "--output-dir", str(self.config.require_output_dir()), "--child", *phase_args]
        return shlex.join(argv)

    def write_script(self, label: str, description: str, phase_args: List[str],
                     memory_gb: Optional[float] = None) -> Path:
        """Render and save the batch script for one job."""
        generator = SlurmScriptGenerator(self._slurm_config(memory_gb)) if memory_gb else self._generator
        job_name = self._job_name(label)
        logs_dir = self.config.settings_dir / LOGS_SUBDIR
        logs_dir.mkdir(parents=True, exist_ok=True)

        context = JobContext(
            job_name=job_name,
            output_file=str(logs_dir / f"{job_name}.%j.out"),
            working_dir=str(self.config.require_output_dir()),
            description=description,
            command=self.child_command(phase_args),
        )
        return generator.save_script(generator.generate(context), self.scripts_dir / f"{label}.sh")

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def _submit_job(
        self,
        script_path: Path,
        phase: str,
        chunk: Optional[int] = None,
        dependencies: Optional[List[str]] = None,
    ) -> SubmissionResult:
        if self.config.slurm.dry_run:
            label = f"{phase}_{chunk}" if chunk else phase
            self.logger.info(f"[DRY RUN] Would submit {script_path}")
            result = SubmissionResult(f"DRY_RUN_{label}", script_path, phase, chunk, is_dry_run=True)
        else:
            job_id = sbatch(script_path, [d for d in dependencies or [] if not d.startswith("DRY_RUN")])
            result = SubmissionResult(job_id, script_path, phase, chunk)

        self._submissions.append(result)
        return result

    def preprocess(self) -> None:
        if self.job.preprocessing_workflow().is_complete():
            self.logger.info("Preprocessing is already done")
            return
        script = self.write_script("preprocess", "preprocessing", ["--preprocess"])
        self._submit_job(script, "preprocess")

    def process(self) -> None:
        after = [r.job_id for r in self._submissions if r.phase == "preprocess"]
        memory = self.config.chunk_ram_gb
        for n in self.selected_chunks():
            if self.job.chunk_workflow(n).is_complete():
                self.logger.info(f"Chunk {n} is already done")
                continue
            script = self.write_script(f"chunk{n:03d}", f"chunk {n}", ["--chunk", str(n)], memory_gb=memory)
            self._submit_job(script, "process", chunk=n, dependencies=after)

    def postprocess(self) -> None:
        if self.job.postprocessing_workflow().is_complete():
            self.logger.info("Postprocessing is already done")
            return
        after = [r.job_id for r in self._submissions if r.phase in ("preprocess", "process")]
        script = self.write_script("postprocess", "postprocessing", ["--postprocess"])
        self._submit_job(script, "postprocess", dependencies=after)

    def start_parent(self) -> None:
        """Submit the selected phases and return without waiting."""
        run_pre, run_proc, run_post = self.context.directives.phases()
        self._submissions = []

        try:
            if run_pre:
                self.preprocess()
            if run_proc:
                self.process()
            if run_post:
                self.postprocess()
        finally:
            # Record what was accepted even if a later submission failed.
            if self._submissions:
                self.save_submissions()

        if not self._submissions:
            self.logger.info("Nothing to submit; every selected phase is done")
            return

        self._log_summary()

    def save_submissions(self) -> Path:
        """Record submitted job IDs so ``stop`` can cancel them later."""
        self.jobs_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.jobs_file, "w") as f:
            json.dump([r.as_dict() for r in self._submissions], f, indent=2)
        return self.jobs_file

    def recorded_job_ids(self) -> List[str]:
        if not self.jobs_file.exists():
            return []
        with open(self.jobs_file, "r") as f:
            records = json.load(f)
        return [r["job_id"] for r in records if not r.get("is_dry_run")]

    def stop(self) -> None:
        """Cancel the jobs recorded by the last submission.

        Raises:
            PlatformError: If no jobs were recorded or ``scancel`` fails.
        """
        job_ids = self.recorded_job_ids()
        if not job_ids:
            raise PlatformError(f"No submitted jobs recorded in {self.jobs_file}")
        scancel(job_ids)

    def _log_summary(self) -> None:
        if self.config.slurm.dry_run:
            self.logger.info(f"Dry run completed. {len(self._submissions)} job scripts written to {self.scripts_dir}")
            self.logger.info("Review the scripts and run without --dry-run to submit them.")
            return

        self.logger.info(f"All {len(self._submissions)} jobs submitted successfully")
        for r in self._submissions:
            what = f"chunk {r.chunk}" if r.chunk else r.phase
            self.logger.info(f"  {what}: {r.job_id}")
        self.logger.info("Monitor progress with: squeue -u $USER")
