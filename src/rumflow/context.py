"""
Per-invocation run context.

A ``RunContext`` bundles everything one invocation of rumflow needs: the
job config, what the user asked for, the logger its progress goes to
and how to ask for confirmation. It is passed explicitly to the
orchestrator and the platforms instead of living in module-level state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

from rumflow.config.schema import JobConfig
from rumflow.errors import ConfigurationError
from rumflow.resources import ConfirmCallback


@dataclass
class Directives:
    """What an invocation was asked to do.

    Phase flags select which phases run; when none is set, every phase
    runs. The remaining flags are actions that never run a step.

    Attributes:
        preprocess: Run the preprocess phase.
        process: Run the process phase.
        postprocess: Run the postprocess phase.
        all: Run every phase (same as selecting no phase).
        save: Persist the settings and stop.
        status: Report progress.
        kill: Stop a running job.
        clean: Remove intermediate files.
        veryclean: Remove intermediate and precious files.
        shell_script: Export each workflow as a shell script.
        diagram: Export each workflow as a Graphviz diagram.
        child: Running inside a job a platform started.
        chunk: Run only this chunk (implies the process phase).
    """

    preprocess: bool = False
    process: bool = False
    postprocess: bool = False
    all: bool = False
    save: bool = False
    status: bool = False
    kill: bool = False
    clean: bool = False
    veryclean: bool = False
    shell_script: bool = False
    diagram: bool = False
    child: bool = False
    chunk: Optional[int] = None

    def validate(self) -> None:
        """Reject contradictory selections.

        Raises:
            ConfigurationError: If a chunk is selected together with the
                preprocess or postprocess phase.
        """
        errors = []
        if self.chunk is not None and self.preprocess:
            errors.append("--chunk cannot be used with --preprocess")
        if self.chunk is not None and self.postprocess:
            errors.append("--chunk cannot be used with --postprocess")
        if self.chunk is not None and self.all:
            errors.append("--chunk cannot be used with --all")
        if errors:
            raise ConfigurationError(errors)

    def phases(self) -> Tuple[bool, bool, bool]:
        """Which of (preprocess, process, postprocess) to run."""
        if self.chunk is not None:
            return (False, True, False)
        if self.all or not (self.preprocess or self.process or self.postprocess):
            return (True, True, True)
        return (self.preprocess, self.process, self.postprocess)

    def runs_all_phases(self) -> bool:
        return self.phases() == (True, True, True)


@dataclass
class RunContext:
    """Everything one invocation works with.

    Attributes:
        config: The job's global config.
        directives: What was asked for.
        logger: Logger the orchestrator and platforms report progress to.
        confirm: Asks the user a yes/no question; None when nobody can
            answer, in which case anything needing confirmation aborts.
    """

    config: JobConfig
    directives: Directives = field(default_factory=Directives)
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("rumflow"))
    confirm: Optional[ConfirmCallback] = None

    def with_config(self, config: JobConfig) -> "RunContext":
        return RunContext(config, self.directives, self.logger, self.confirm)
