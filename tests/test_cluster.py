"""Tests for the SLURM cluster platform."""

import json
import subprocess
from itertools import count

import pytest

from conftest import FakeRunner
from rumflow.config.schema import PlatformName, SlurmSettings
from rumflow.context import Directives, RunContext
from rumflow.errors import PlatformError
from rumflow.orchestrator import ChunkOrchestrator
from rumflow.platform import slurm
from rumflow.platform.cluster import ClusterPlatform


class FakeSlurm:
    """Records sbatch/scancel command lines and hands out job IDs."""

    def __init__(self, fail_at=None) -> None:
        self.commands = []
        self.fail_at = fail_at
        self._ids = count(101)

    def __call__(self, cmd, **kwargs):
        self.commands.append(list(cmd))
        if cmd[0] == "sbatch" and len(self.submitted()) == self.fail_at:
            raise subprocess.CalledProcessError(1, cmd, stderr="sbatch: error: QOSMaxSubmitJobPerUserLimit")
        stdout = f"Submitted batch job {next(self._ids)}\n" if cmd[0] == "sbatch" else ""
        return type("Completed", (), {"stdout": stdout, "stderr": "", "returncode": 0})()

    def submitted(self):
        return [c for c in self.commands if c[0] == "sbatch"]


@pytest.fixture
def fake_slurm(monkeypatch):
    fake = FakeSlurm()
    monkeypatch.setattr(slurm.subprocess, "run", fake)
    return fake


@pytest.fixture
def cluster_config(job_config):
    return job_config.model_copy(
        update={"platform": PlatformName.CLUSTER, "slurm": SlurmSettings(preset="long", partition="rna")}
    )


def make_platform(config, runner, **directives):
    job = ChunkOrchestrator(RunContext(config, Directives(**directives)), runner=runner)
    job.setup()
    platform = job.platform()
    assert isinstance(platform, ClusterPlatform)
    return job, platform


class TestSubmission:
    def test_full_run_submits_dependent_jobs(self, cluster_config, fake_runner, fake_slurm):
        job, platform = make_platform(cluster_config, fake_runner)
        platform.start_parent()

        sub = fake_slurm.submitted()
        assert len(sub) == 4
        assert not any(a.startswith("--dependency") for a in sub[0])
        assert "--dependency=afterok:101" in sub[1]
        assert "--dependency=afterok:101" in sub[2]
        assert "--dependency=afterok:101:102:103" in sub[3]
        assert fake_runner.calls == []

    def test_scripts_run_child_phases(self, cluster_config, fake_runner, fake_slurm):
        job, platform = make_platform(cluster_config, fake_runner)
        platform.start_parent()

        script = (platform.scripts_dir / "chunk002.sh").read_text()
        assert "--child --chunk 2" in script
        assert "#SBATCH --partition=rna" in script
        assert "#SBATCH --time=7-00:00:00" in script
        assert "#SBATCH --mem=6G" not in script
        assert "--postprocess" in (platform.scripts_dir / "postprocess.sh").read_text()

    def test_chunk_memory_requested(self, cluster_config, fake_runner, fake_slurm):
        job, platform = make_platform(cluster_config.model_copy(update={"chunk_ram_gb": 6}), fake_runner)
        platform.process()
        assert "#SBATCH --mem=6G" in (platform.scripts_dir / "chunk001.sh").read_text()

    def test_job_ids_recorded(self, cluster_config, fake_runner, fake_slurm):
        job, platform = make_platform(cluster_config, fake_runner)
        platform.start_parent()

        records = json.loads(platform.jobs_file.read_text())
        assert [r["job_id"] for r in records] == ["101", "102", "103", "104"]
        assert [r["chunk"] for r in records] == [None, 1, 2, None]
        assert platform.recorded_job_ids() == ["101", "102", "103", "104"]

    def test_completed_phases_not_submitted(self, cluster_config, fake_runner, fake_slurm):
        local = ChunkOrchestrator(RunContext(cluster_config, Directives(preprocess=True, child=True)),
                                  runner=fake_runner)
        local.setup()
        local.run_pipeline()

        job, platform = make_platform(cluster_config, fake_runner)
        platform.start_parent()

        sub = fake_slurm.submitted()
        assert len(sub) == 3
        assert not any(a.startswith("--dependency") for a in sub[0])
        assert "--dependency=afterok:101:102" in sub[2]

    def test_single_chunk(self, cluster_config, fake_runner, fake_slurm):
        job, platform = make_platform(cluster_config, fake_runner, chunk=2)
        platform.start_parent()

        (sub,) = fake_slurm.submitted()
        assert sub[-1].endswith("chunk002.sh")

    def test_dry_run_submits_nothing(self, cluster_config, fake_runner, fake_slurm):
        config = cluster_config.model_copy(update={"slurm": SlurmSettings(dry_run=True)})
        job, platform = make_platform(config, fake_runner)
        platform.start_parent()

        assert fake_slurm.commands == []
        assert (platform.scripts_dir / "preprocess.sh").exists()
        assert all(r.is_dry_run for r in platform.submissions)
        assert platform.recorded_job_ids() == []

    def test_run_pipeline_returns_after_submitting(self, cluster_config, fake_runner, fake_slurm):
        job = ChunkOrchestrator(RunContext(cluster_config, Directives()), runner=fake_runner)
        job.setup()
        job.run_pipeline()
        assert len(fake_slurm.submitted()) == 4
        assert not job.postprocessing_workflow().is_started()


class TestStop:
    def test_cancels_recorded_jobs(self, cluster_config, fake_runner, fake_slurm):
        job, platform = make_platform(cluster_config, fake_runner)
        platform.start_parent()

        job.stop()
        assert fake_slurm.commands[-1] == ["scancel", "101", "102", "103", "104"]

    def test_nothing_recorded(self, cluster_config, fake_runner, fake_slurm):
        job, platform = make_platform(cluster_config, fake_runner)
        with pytest.raises(PlatformError, match="No submitted jobs"):
            platform.stop()

    def test_partial_submission_still_cancellable(self, cluster_config, fake_runner, monkeypatch):
        fake = FakeSlurm(fail_at=3)
        monkeypatch.setattr(slurm.subprocess, "run", fake)
        job, platform = make_platform(cluster_config, fake_runner)

        with pytest.raises(PlatformError, match="QOSMaxSubmitJobPerUserLimit"):
            platform.start_parent()
        assert platform.recorded_job_ids() == ["101", "102"]

        job.stop()
        assert fake.commands[-1] == ["scancel", "101", "102"]
