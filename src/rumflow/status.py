"""
Progress reports for a job.

Progress is never stored: every report re-evaluates each step's completion
predicate against the filesystem.
"""

from __future__ import annotations

import textwrap
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from rumflow.workflow.engine import Workflow

NOT_STARTED = "not started"
INCOMPLETE = "incomplete"
COMPLETE = "complete"


@dataclass
class ProcessProgress:
    """Completion of each process-phase step across chunks.

    Attributes:
        chunks: Chunk indexes, in the order their marks appear.
        steps: Step names in declared order.
        marks: Per step, one ``X`` (done) or space per chunk.
        comments: Per step, its human readable comment.
    """

    chunks: List[int] = field(default_factory=list)
    steps: List[str] = field(default_factory=list)
    marks: Dict[str, str] = field(default_factory=dict)
    comments: Dict[str, str] = field(default_factory=dict)

    def num_completed(self, step: str) -> int:
        return self.marks.get(step, "").count("X")


class StatusReporter:
    """Builds the status report for a set of chunk workflows and the
    postprocess workflow.

    Args:
        chunk_workflows: One workflow per chunk, in chunk order.
        postprocessing: The postprocess workflow.
        width: Column at which lines are wrapped.
        preprocessing: The preprocess workflow, if it should be reported.
    """

    def __init__(
        self,
        chunk_workflows: Iterable[Workflow],
        postprocessing: Workflow,
        width: int = 79,
        preprocessing: Optional[Workflow] = None,
    ) -> None:
        self._chunks = list(chunk_workflows)
        self._postprocessing = postprocessing
        self._preprocessing = preprocessing
        self._width = width

    def process_progress(self) -> ProcessProgress:
        progress = ProcessProgress()
        for wf in self._chunks:
            progress.chunks.append(wf.chunk or 0)

            def handle_state(name: str, completed: bool, wf: Workflow = wf) -> None:
                if name not in progress.marks:
                    progress.steps.append(name)
                    progress.marks[name] = ""
                    progress.comments[name] = wf.comment(name)
                progress.marks[name] += "X" if completed else " "

            wf.walk_states(handle_state)
        return progress

    @staticmethod
    def _rows(workflow: Workflow) -> List[Tuple[bool, str]]:
        rows: List[Tuple[bool, str]] = []
        workflow.walk_states(lambda name, done: rows.append((done, workflow.comment(name))))
        return rows

    def preprocess_rows(self) -> List[Tuple[bool, str]]:
        if self._preprocessing is None:
            return []
        return self._rows(self._preprocessing)

    def postprocess_rows(self) -> List[Tuple[bool, str]]:
        """``(completed, comment)`` for each postprocess step, in order."""
        return self._rows(self._postprocessing)

    def job_state(self) -> str:
        """``complete``, ``incomplete`` or ``not started``."""
        if self._postprocessing.is_complete():
            return COMPLETE
        workflows = [self._preprocessing, self._postprocessing, *self._chunks]
        if any(wf is not None and wf.is_started() for wf in workflows):
            return INCOMPLETE
        return NOT_STARTED

    def format_process(self) -> str:
        progress = self.process_progress()
        title = f"Processing in {len(progress.chunks)} chunks"
        lines = [title, "-" * len(title)]
        for step in progress.steps:
            prefix = progress.marks[step] + " "
            lines.append(
                textwrap.fill(
                    progress.comments[step],
                    width=self._width,
                    initial_indent=prefix,
                    subsequent_indent=" " * len(prefix),
                )
            )
        return "\n".join(lines)

    @staticmethod
    def _format_rows(title: str, rows: List[Tuple[bool, str]]) -> str:
        lines = [title, "-" * len(title)]
        for done, comment in rows:
            lines.append(("X" if done else " ") + " " + comment)
        return "\n".join(lines)

    def format_preprocess(self) -> str:
        return self._format_rows("Preprocessing", self.preprocess_rows())

    def format_postprocess(self) -> str:
        return self._format_rows("Postprocessing", self.postprocess_rows())

    def report(self, preprocess: bool = True, process: bool = True, postprocess: bool = True) -> str:
        """The full status report.

        The preprocess section only appears when the reporter was given a
        preprocess workflow.
        """
        sections = []
        if preprocess and self._preprocessing is not None:
            sections.append(self.format_preprocess())
        if process:
            sections.append(self.format_process())
        if postprocess:
            sections.append(self.format_postprocess())
        sections.append(f"Job is {self.job_state()}")
        return "\n\n".join(sections) + "\n"
