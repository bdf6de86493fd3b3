"""Exception hierarchy for rumflow.

Configuration problems are collected and raised together; execution
problems (a failing step, a failed submission) are raised as soon as they
happen for the unit of work they belong to.
"""

from __future__ import annotations

from typing import List, Optional, Sequence


class RumflowError(Exception):
    """Base class for all rumflow errors."""


class ConfigurationError(RumflowError):
    """One or more job parameters are missing or invalid.

    Attributes:
        errors: Every problem found, in the order they were detected.
    """

    def __init__(self, errors: Sequence[str]) -> None:
        self.errors: List[str] = list(errors)
        super().__init__(self._format())

    def _format(self) -> str:
        lines = ["Usage errors:", ""]
        lines.extend(f"* {e}" for e in self.errors)
        return "\n".join(lines)


class ResourceShortfall(RumflowError):
    """Estimated RAM per chunk is below the minimum and was not confirmed."""

    def __init__(self, available_gb: float, required_gb: int) -> None:
        self.available_gb = available_gb
        self.required_gb = required_gb
        super().__init__(
            f"Only {available_gb:.2f} GB of RAM per chunk is available, but the "
            f"genome needs about {required_gb} GB per chunk"
        )


class WorkflowDefinitionError(RumflowError):
    """A workflow was declared with a duplicate step or unknown dependency."""


class StepFailure(RumflowError):
    """A step's action exited with a non-zero status.

    Attributes:
        step: Name of the failing step.
        command: The command line that was run.
        exit_code: Exit status reported by the process.
        chunk: Chunk index of the workflow, or None outside the process phase.
    """

    def __init__(
        self,
        step: str,
        command: str,
        exit_code: int,
        chunk: Optional[int] = None,
    ) -> None:
        self.step = step
        self.command = command
        self.exit_code = exit_code
        self.chunk = chunk
        where = f"chunk {chunk} " if chunk else ""
        super().__init__(f"{where}step '{step}' failed (exit={exit_code}): {command}")


class PhaseOrderError(RumflowError):
    """A phase was requested before the phase it depends on finished."""


class PlatformError(RumflowError):
    """Submitting to or cancelling on the execution platform failed."""


class ChunkFailures(RumflowError):
    """One or more chunk workflows failed during the process phase.

    Attributes:
        failures: The StepFailure of each failed chunk, in chunk order.
    """

    def __init__(self, failures: Sequence[StepFailure]) -> None:
        self.failures: List[StepFailure] = sorted(failures, key=lambda f: f.chunk or 0)
        lines = [f"{len(self.failures)} chunk(s) failed:"]
        lines.extend(f"  {f}" for f in self.failures)
        super().__init__("\n".join(lines))
