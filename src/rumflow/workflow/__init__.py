"""Step-graph workflow engine and the alignment workflows built on it."""

from rumflow.workflow.engine import (
    Artifact,
    ArtifactKind,
    Step,
    StepAction,
    SubprocessRunner,
    Workflow,
    artifact_ready,
)
from rumflow.workflow.split_reads import split_reads
from rumflow.workflow.workflows import chunk_workflow, postprocessing_workflow, preprocessing_workflow

__all__ = [
    "Artifact",
    "ArtifactKind",
    "Step",
    "StepAction",
    "SubprocessRunner",
    "Workflow",
    "artifact_ready",
    "split_reads",
    "preprocessing_workflow",
    "chunk_workflow",
    "postprocessing_workflow",
]
