"""
Common interface of the execution platforms.

A platform decides where the steps of a job run. Every platform exposes the
same five operations; the orchestrator picks one from ``PLATFORMS`` (see
``rumflow.platform``) by the config's ``platform`` name.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional

from rumflow.config.schema import JobConfig
from rumflow.context import RunContext

if TYPE_CHECKING:
    from rumflow.orchestrator import ChunkOrchestrator


class Platform(ABC):
    """Base class for execution platforms.

    Args:
        context: The invocation's run context.
        job: Orchestrator that builds the job's workflows.
    """

    def __init__(self, context: RunContext, job: "ChunkOrchestrator") -> None:
        self._context = context
        self._job = job

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
    def job(self) -> "ChunkOrchestrator":
        return self._job

    def selected_chunks(self) -> List[int]:
        """Chunks the invocation covers: the selected one, or all of them."""
        chunk: Optional[int] = self._context.directives.chunk
        if chunk is not None:
            return [chunk]
        return self.config.chunk_nums()

    @abstractmethod
    def start_parent(self) -> None:
        """Run (or arrange to run) the selected phases."""

    @abstractmethod
    def preprocess(self) -> None:
        """Run the preprocess phase."""

    @abstractmethod
    def process(self) -> None:
        """Run the process phase for the selected chunks."""

    @abstractmethod
    def postprocess(self) -> None:
        """Run the postprocess phase."""

    @abstractmethod
    def stop(self) -> None:
        """Stop a job that is running on this platform."""
