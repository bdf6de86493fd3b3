"""
Job orchestration.

The ``ChunkOrchestrator`` owns a job: it validates and persists the global
config, sizes the job for the available RAM, builds the preprocess, chunk
and postprocess workflows and hands them to the selected platform. It also
carries out the actions that never run a step: status, kill, clean, and
the diagram and shell-script exports.
"""

from __future__ import annotations

import logging
import math
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, Union

from rumflow import __version__
from rumflow.config.loader import load_job, save_job
from rumflow.config.schema import JobConfig
from rumflow.config.validation import check_config
from rumflow.context import Directives, RunContext
from rumflow.errors import ConfigurationError
from rumflow.platform import PLATFORMS
from rumflow.platform.base import Platform
from rumflow.platform.local import LocalPlatform
from rumflow.resources import (
    ResourceEstimator,
    genome_size,
    min_ram_gb,
    safe_parallelism,
    suggest_num_chunks,
)
from rumflow.status import StatusReporter
from rumflow.workflow.engine import Probe, SubprocessRunner, Workflow, artifact_ready
from rumflow.workflow.split_reads import count_records
from rumflow.workflow.workflows import chunk_workflow, postprocessing_workflow, preprocessing_workflow

SHELL_HEADER = "#!/bin/bash\nset -e\n\n"


def check_chunk_selection(directives: Directives, num_chunks: int) -> None:
    """Reject a selected chunk the job does not have.

    Raises:
        ConfigurationError: If ``--chunk`` is outside ``1..num_chunks``.
    """
    if directives.chunk is not None and not 1 <= directives.chunk <= num_chunks:
        raise ConfigurationError([f"--chunk {directives.chunk} is outside 1..{num_chunks}"])


def require_genome(config: JobConfig) -> Path:
    if config.index.genome_fasta is None:
        raise ConfigurationError(
            ["Please specify the genome FASTA (index.genome_fasta) in the job config"]
        )
    return config.index.genome_fasta


class ChunkOrchestrator:
    """Drives one job through its phases.

    Args:
        context: The invocation's run context.
        runner: Runs step actions; shared by every workflow of the job.
        probe: Filesystem check behind the default completion predicate.
        platforms: Mapping from platform name to implementation.

    Example:
        >>> context = RunContext(load_job("out"), Directives(status=True))
        >>> print(ChunkOrchestrator(context).status())
    """

    def __init__(
        self,
        context: RunContext,
        runner: Optional[Any] = None,
        probe: Probe = artifact_ready,
        platforms: Optional[Dict[Any, Type[Platform]]] = None,
    ) -> None:
        self._context = context
        self._runner = runner if runner is not None else SubprocessRunner()
        self._probe = probe
        self._platforms = platforms if platforms is not None else PLATFORMS

    @classmethod
    def attach(
        cls,
        output_dir: Union[str, Path],
        directives: Optional[Directives] = None,
        **kwargs: Any,
    ) -> "ChunkOrchestrator":
        """Reattach to the job saved in ``output_dir``.

        Raises:
            ConfigurationError: If no job has been set up there, or the
                directives select something the job does not have.
        """
        config = load_job(output_dir)
        if config is None:
            raise ConfigurationError(
                [f"There does not seem to be a job in {output_dir}. Start one with 'rumflow run'."]
            )
        directives = directives or Directives()
        directives.validate()
        check_chunk_selection(directives, config.effective_num_chunks)
        return cls(RunContext(config, directives), **kwargs)

    @property
    def context(self) -> RunContext:
        return self._context

    @property
    def config(self) -> JobConfig:
        return self._context.config

    @property
    def logger(self) -> logging.Logger:
        return self._context.logger

    @property
    def directives(self) -> Directives:
        return self._context.directives

    @property
    def runner(self) -> Any:
        return self._runner

    def _set_config(self, config: JobConfig) -> None:
        self._context = self._context.with_config(config)

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def setup(self) -> JobConfig:
        """Validate the config, settle the chunk count and persist it.

        Raises:
            ConfigurationError: Listing every problem with the config.
        """
        self.directives.validate()
        config = check_config(self.config)

        if config.num_chunks is None:
            config = config.model_copy(update={"num_chunks": self._suggested_chunks(config)})
            self.logger.info(f"Using {config.num_chunks} chunk(s)")
        config = self._fit_chunks_to_reads(config)
        check_chunk_selection(self.directives, config.effective_num_chunks)

        config.require_output_dir().mkdir(parents=True, exist_ok=True)
        save_job(config)
        self._set_config(config)
        return config

    def _suggested_chunks(self, config: JobConfig) -> int:
        genome = require_genome(config)
        needed = min_ram_gb(genome_size(genome))
        estimator = ResourceEstimator(genome, config.ram_gb)
        return suggest_num_chunks(estimator.total_ram_gb(), needed)

    def _fit_chunks_to_reads(self, config: JobConfig) -> JobConfig:
        """Lower the chunk count so that every chunk gets at least one read.

        Raises:
            ConfigurationError: If the first read file cannot be parsed.
        """
        wanted = config.effective_num_chunks
        try:
            available = count_records(config.reads[0], limit=wanted)
        except ValueError as e:
            raise ConfigurationError([str(e)]) from e
        if available < wanted:
            self.logger.warning(f"Only {available} read(s) for {wanted} chunks, using {available} chunk(s)")
            config = config.model_copy(update={"num_chunks": available})
        return config

    def save(self) -> Path:
        self.logger.info("Saving configuration")
        return save_job(self.config)

    def check_ram(self) -> JobConfig:
        """Make sure each chunk has enough RAM, asking the user if not.

        The outcome is saved so the check is done once per job.

        Raises:
            ResourceShortfall: If RAM is short and the user did not confirm.
        """
        config = self.config
        if config.ram_ok:
            return config

        estimator = ResourceEstimator(
            require_genome(config),
            declared_ram_gb=config.ram_gb,
            confirm=self._context.confirm,
        )
        assessment = estimator.check(config.effective_num_chunks)

        update: Dict[str, Any] = {"chunk_ram_gb": assessment.chunk_ram_gb}
        if assessment.total_ram_gb:
            update["ram_ok"] = True
            if config.ram_gb is None:
                update["ram_gb"] = assessment.total_ram_gb
        config = config.model_copy(update=update)
        save_job(config)
        self._set_config(config)
        return config

    def parallelism(self, num_chunks: int) -> int:
        """How many of ``num_chunks`` chunks to run at once on this host."""
        config = self.config
        if not config.chunk_ram_gb:
            return max(1, num_chunks)
        total = ResourceEstimator(require_genome(config), config.ram_gb).total_ram_gb()
        return safe_parallelism(total, math.ceil(config.chunk_ram_gb), num_chunks)

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    def chunk_nums(self) -> List[int]:
        if self.directives.chunk is not None:
            return [self.directives.chunk]
        return self.config.chunk_nums()

    def preprocessing_workflow(self) -> Workflow:
        return preprocessing_workflow(self.config, runner=self._runner, probe=self._probe)

    def chunk_workflow(self, chunk: int) -> Workflow:
        return chunk_workflow(self.config.for_chunk(chunk), runner=self._runner, probe=self._probe)

    def chunk_workflows(self) -> List[Workflow]:
        return [self.chunk_workflow(n) for n in self.chunk_nums()]

    def postprocessing_workflow(self) -> Workflow:
        return postprocessing_workflow(self.config, runner=self._runner, probe=self._probe)

    def platform(self) -> Platform:
        """The platform for this invocation.

        Jobs started by a platform always run their phase locally.
        """
        if self.directives.child:
            return LocalPlatform(self._context, self)
        try:
            cls = self._platforms[self.config.platform]
        except KeyError:
            raise ConfigurationError([f"Unknown platform '{self.config.platform}'"]) from None
        return cls(self._context, self)

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def execute(self) -> Union[None, str, Path, List[Path]]:
        """Carry out the invocation's directives.

        Returns:
            The status report for status, the settings file for save, the
            files written or removed for the exports and clean, otherwise
            None.
        """
        d = self.directives
        if d.kill:
            self.stop()
        elif d.shell_script:
            return self.export_shell_scripts()
        elif d.save:
            return self.save()
        elif d.diagram:
            return self.export_diagrams()
        elif d.status:
            run_pre, run_proc, run_post = d.phases()
            return self.status(preprocess=run_pre, process=run_proc, postprocess=run_post)
        elif d.clean or d.veryclean:
            return self.clean()
        else:
            self.run_pipeline()
        return None

    def run_pipeline(self) -> None:
        """Run the selected phases on the selected platform.

        A full run of a job whose postprocess phase is complete does
        nothing.
        """
        d = self.directives
        d.validate()

        if d.runs_all_phases() and self.postprocessing_workflow().is_complete():
            self.logger.info(f"Job {self.config.name} is already complete")
            return

        if not d.child:
            self.check_ram()
        self.dump_config()

        platform = self.platform()
        run_pre, run_proc, run_post = d.phases()

        if d.child:
            if run_pre:
                platform.preprocess()
            if run_proc:
                platform.process()
            if run_post:
                platform.postprocess()
            return

        if not isinstance(platform, LocalPlatform):
            self.logger.info("Submitting tasks and exiting")
        platform.start_parent()

    def stop(self) -> None:
        self.logger.info("Killing job")
        self.platform().stop()

    def dump_config(self) -> None:
        self.logger.debug("-" * 40)
        self.logger.debug("Job configuration")
        self.logger.debug(f"rumflow version: {__version__}")
        for key, value in self.config.model_dump(mode="json").items():
            if value is None:
                continue
            self.logger.debug(f"{key}: {value}")
        self.logger.debug("-" * 40)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status_reporter(self) -> StatusReporter:
        return StatusReporter(
            self.chunk_workflows(),
            self.postprocessing_workflow(),
            preprocessing=self.preprocessing_workflow(),
        )

    def status(self, preprocess: bool = True, process: bool = True, postprocess: bool = True) -> str:
        return self.status_reporter().report(
            preprocess=preprocess, process=process, postprocess=postprocess
        )

    # ------------------------------------------------------------------
    # Cleaning
    # ------------------------------------------------------------------

    def clean(self, deep: Optional[bool] = None) -> List[Path]:
        """Remove the files of the selected phases.

        With every phase selected, each chunk's files are removed
        (precious ones included) and only the merged results are kept.
        Otherwise only the selected phases are cleaned, removing precious
        files only for a deep clean.

        Args:
            deep: Also remove precious files; defaults to the ``veryclean``
                directive.

        Returns:
            The paths removed.
        """
        d = self.directives
        if deep is None:
            deep = d.veryclean
        run_pre, run_proc, run_post = d.phases()
        self.logger.info("Cleaning up")

        removed: List[Path] = []
        if d.runs_all_phases():
            removed += self.preprocessing_workflow().clean(deep=deep)
            for wf in self.chunk_workflows():
                removed += wf.clean(deep=True)
            removed += self.postprocessing_workflow().clean(deep=deep)
        else:
            if run_pre:
                removed += self.preprocessing_workflow().clean(deep=deep)
            if run_proc:
                for wf in self.chunk_workflows():
                    removed += wf.clean(deep=deep)
            if run_post:
                removed += self.postprocessing_workflow().clean(deep=deep)

        self.logger.info(f"Removed {len(removed)} file(s)")
        return removed

    def remove_intermediates(self) -> List[Path]:
        """Remove every intermediate file of the job, keeping precious and final ones."""
        removed = self.preprocessing_workflow().clean(deep=False)
        for n in self.config.chunk_nums():
            removed += self.chunk_workflow(n).clean(deep=False)
        removed += self.postprocessing_workflow().clean(deep=False)
        return removed

    # ------------------------------------------------------------------
    # Exports
    # ------------------------------------------------------------------

    def _write_diagram(self, workflow: Workflow, stem: str) -> Path:
        dot = self.config.in_output_dir(f"{stem}.dot")
        dot.write_text(workflow.diagram())
        if shutil.which("dot"):
            pdf = dot.with_suffix(".pdf")
            result = subprocess.run(
                ["dot", "-Tpdf", "-o", str(pdf), str(dot)], capture_output=True, text=True
            )
            if result.returncode != 0:
                self.logger.warning(f"Could not render {dot}: {result.stderr.strip()}")
        return dot

    def export_diagrams(self) -> List[Path]:
        """Write a Graphviz diagram of each selected workflow.

        Diagrams are rendered to PDF as well when Graphviz is installed.
        """
        run_pre, run_proc, run_post = self.directives.phases()
        written: List[Path] = []
        if run_proc:
            for n in self.chunk_nums():
                written.append(self._write_diagram(self.chunk_workflow(n), f"chunk{n:03d}"))
        if run_post:
            written.append(self._write_diagram(self.postprocessing_workflow(), "postprocessing"))
        for path in written:
            self.logger.info(f"Wrote {path}")
        return written

    def export_shell_scripts(self) -> List[Path]:
        """Write each chunk's steps, and the postprocess steps, as shell scripts."""
        self.logger.info("Generating pipeline shell script for each chunk")
        written: List[Path] = []
        for n in self.chunk_nums():
            path = self.config.in_output_dir(f"pipeline.{n}.sh")
            path.write_text(SHELL_HEADER + self.chunk_workflow(n).shell_script())
            written.append(path)

        path = self.config.in_output_dir("postprocessing.sh")
        path.write_text(SHELL_HEADER + self.postprocessing_workflow().shell_script())
        written.append(path)
        return written
