"""Shared fixtures for the rumflow tests."""

from pathlib import Path
from typing import List, Optional, Set

import pytest

from rumflow.config.schema import BlatConfig, IndexConfig, JobConfig
from rumflow.workflow.engine import StepAction


class FakeRunner:
    """Stands in for SubprocessRunner without running anything.

    Every argument that names a file inside ``root`` (and the stdout
    target) is written, which is enough for completion predicates. A
    ``split-reads`` action writes one read file per chunk.

    Args:
        root: Directory whose files the fake actions may write.
        fail: Programs or script names whose actions exit non-zero.
    """

    def __init__(self, root: Path, fail: Optional[Set[str]] = None) -> None:
        self.root = Path(root)
        self.fail = set(fail or ())
        self.calls: List[StepAction] = []
        self.terminated = False

    def _names(self, action: StepAction) -> Set[str]:
        names = {action.program}
        if action.args:
            names.add(Path(str(action.args[0])).name)
        return names

    def run(self, action: StepAction, log_path: Optional[Path] = None) -> int:
        self.calls.append(action)
        if self._names(action) & self.fail:
            return 1

        args = [str(a) for a in action.args]
        if "split-reads" in args:
            chunks = int(args[args.index("--chunks") + 1])
            out = Path(args[args.index("--output-dir") + 1])
            for n in range(1, chunks + 1):
                (out / f"reads.fa.{n}").write_text(f">seq.{n}a\nACGT\n")
            return 0

        for arg in args:
            path = Path(arg)
            if self.root in path.parents and not path.is_dir():
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text("data\n")
        if action.stdout is not None:
            action.stdout.parent.mkdir(parents=True, exist_ok=True)
            action.stdout.write_text("data\n")
        return 0

    def terminate(self) -> None:
        self.terminated = True

    def ran(self, name: str) -> bool:
        return any(name in self._names(a) for a in self.calls)


@pytest.fixture
def genome(tmp_path: Path) -> Path:
    """A tiny two-sequence genome FASTA."""
    path = tmp_path / "genome.fa"
    path.write_text(">chr1\nACGTACGTAC\n>chr2\nGGGGCCCC\n")
    return path


@pytest.fixture
def reads_fq(tmp_path: Path) -> Path:
    path = tmp_path / "reads.fq"
    records = []
    for i in range(1, 6):
        records.append(f"@read{i}\nACGTACGT\n+\nIIIIIIII\n")
    path.write_text("".join(records))
    return path


@pytest.fixture
def job_config(tmp_path: Path, genome: Path, reads_fq: Path) -> JobConfig:
    """A valid two-chunk job in ``tmp_path / 'out'``."""
    return JobConfig(
        name="sample",
        output_dir=tmp_path / "out",
        reads=[reads_fq],
        num_chunks=2,
        ram_gb=64,
        index=IndexConfig(
            genome_fasta=genome,
            gene_annotation_file=tmp_path / "genes.txt",
            bowtie_genome_index=tmp_path / "genome_index",
            bowtie_gene_index=tmp_path / "gene_index",
            script_dir=tmp_path / "scripts",
        ),
        blat=BlatConfig(),
    )


@pytest.fixture
def fake_runner(tmp_path: Path) -> FakeRunner:
    return FakeRunner(tmp_path / "out")
