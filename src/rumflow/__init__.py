"""
rumflow: chunked, resumable workflow runner for RNA-Seq alignment jobs.

A job's reads are split into chunks that are aligned independently, on the
local machine or as SLURM jobs, and the per-chunk results are merged at the
end. Progress is read back from the files each step writes, so an
interrupted job resumes by running it again.

Example usage:
    >>> from rumflow.config import load_config
    >>> config = load_config("job.yaml")

    >>> from rumflow import ChunkOrchestrator, RunContext
    >>> orchestrator = ChunkOrchestrator(RunContext(config))
    >>> orchestrator.setup()
    >>> orchestrator.run_pipeline()

Key modules:
    - config: Job configuration with YAML persistence and validation
    - workflow: Step-graph engine and the alignment workflows
    - platform: Local and SLURM execution
    - orchestrator: Phase ordering, status, clean and exports
"""

__version__ = "1.0.0"

__all__ = [
    "__version__",
    "JobConfig",
    "Workflow",
    "ChunkOrchestrator",
    "RunContext",
    "Directives",
    "StatusReporter",
    "ResourceEstimator",
]


def __getattr__(name: str):
    """Import the public classes only when they are first accessed."""
    if name == "JobConfig":
        from rumflow.config.schema import JobConfig

        return JobConfig

    if name == "Workflow":
        from rumflow.workflow.engine import Workflow

        return Workflow

    if name == "ChunkOrchestrator":
        from rumflow.orchestrator import ChunkOrchestrator

        return ChunkOrchestrator

    if name == "RunContext":
        from rumflow.context import RunContext

        return RunContext

    if name == "Directives":
        from rumflow.context import Directives

        return Directives

    if name == "StatusReporter":
        from rumflow.status import StatusReporter

        return StatusReporter

    if name == "ResourceEstimator":
        from rumflow.resources import ResourceEstimator

        return ResourceEstimator

    raise AttributeError(f"module 'rumflow' has no attribute {name!r}")


def __dir__():
    """Return list of available attributes for tab completion."""
    return __all__
