"""Tests for the preprocess, chunk and postprocess workflows."""

import sys

import pytest

from rumflow.workflow.engine import ArtifactKind
from rumflow.workflow.workflows import (
    chunk_workflow,
    postprocessing_workflow,
    preprocessing_workflow,
    reads_have_quals,
)


def _step_names(wf):
    return [step.name for step in wf.steps]


def _outputs(wf):
    return {a.path.name: a for step in wf.steps for a in step.outputs}


class TestPreprocessing:
    def test_split_step_runs_rumflow(self, job_config):
        wf = preprocessing_workflow(job_config)
        (step,) = wf.steps
        assert step.name == "split_reads"
        assert step.action.program == sys.executable
        assert step.action.args[:3] == ("-m", "rumflow", "split-reads")
        assert str(job_config.reads[0]) in step.action.args

    def test_complete_when_every_chunk_file_exists(self, job_config):
        wf = preprocessing_workflow(job_config)
        out = job_config.output_dir
        out.mkdir()
        (out / "reads.fa.1").write_text(">seq.1a\nACGT\n")
        assert not wf.is_complete()

        (out / "reads.fa.2").write_text(">seq.2a\nACGT\n")
        assert wf.is_complete()

    def test_fastq_input_declares_quals(self, job_config):
        assert reads_have_quals(job_config)
        names = set(_outputs(preprocessing_workflow(job_config)))
        assert {"reads.fa.1", "reads.fa.2", "quals.fa.1", "quals.fa.2"} == names


class TestChunkWorkflow:
    """The chunk workflow adapts to the alignment options."""

    def test_needs_chunk_config(self, job_config):
        with pytest.raises(ValueError):
            chunk_workflow(job_config)

    def test_default_steps(self, job_config):
        wf = chunk_workflow(job_config.for_chunk(1))
        assert _step_names(wf) == [
            "run_bowtie_on_genome",
            "make_gu_and_gnu",
            "run_bowtie_on_transcriptome",
            "make_tu_and_tnu",
            "merge_gu_and_tu",
            "make_unmapped_file",
            "run_mdust",
            "run_blat",
            "parse_blat_out",
            "merge_bowtie_and_blat",
            "clean_rum_files",
            "rum2sam",
            "sort_rum_unique",
            "sort_rum_nu",
        ]

    def test_every_output_is_chunk_suffixed(self, job_config):
        for n in (1, 2):
            wf = chunk_workflow(job_config.for_chunk(n))
            for name in _outputs(wf):
                assert name.endswith(f".{n}"), name

    def test_chunks_never_share_outputs(self, job_config):
        first = set(_outputs(chunk_workflow(job_config.for_chunk(1))))
        second = set(_outputs(chunk_workflow(job_config.for_chunk(2))))
        assert first.isdisjoint(second)

    def test_dna_skips_transcriptome(self, job_config):
        wf = chunk_workflow(job_config.model_copy(update={"dna": True}).for_chunk(1))
        assert "run_bowtie_on_transcriptome" not in _step_names(wf)
        assert wf.step("merge_gu_and_tu").depends_on == ("make_gu_and_gnu",)

    def test_blat_only_skips_bowtie(self, job_config):
        wf = chunk_workflow(job_config.model_copy(update={"blat_only": True}).for_chunk(1))
        names = _step_names(wf)
        assert not any("bowtie_on" in n for n in names)
        assert "make_unmapped_file" not in names
        assert wf.step("merge_bowtie_and_blat").depends_on == ("parse_blat_out",)

    def test_quantify_adds_step(self, job_config):
        wf = chunk_workflow(job_config.model_copy(update={"quantify": True}).for_chunk(1))
        assert _step_names(wf)[-1] == "quantify"
        assert _outputs(wf)["quant.1"].kind == ArtifactKind.PRECIOUS

    def test_sorted_outputs_are_precious(self, job_config):
        outputs = _outputs(chunk_workflow(job_config.for_chunk(1)))
        assert outputs["RUM_Unique.sorted.1"].kind == ArtifactKind.PRECIOUS
        assert outputs["RUM.sam.1"].kind == ArtifactKind.PRECIOUS
        assert outputs["X.1"].kind == ArtifactKind.INTERMEDIATE

    def test_fastq_quals_passed_to_sam(self, job_config):
        wf = chunk_workflow(job_config.for_chunk(2))
        args = wf.step("rum2sam").action.args
        assert str(job_config.output_dir / "quals.fa.2") in args

    def test_blat_parameters_passed(self, job_config):
        args = chunk_workflow(job_config.for_chunk(1)).step("run_blat").action.args
        assert "-minIdentity=93" in args
        assert "-tileSize=12" in args


class TestPostprocessing:
    def test_merged_results_are_final(self, job_config):
        wf = postprocessing_workflow(job_config)
        outputs = _outputs(wf)
        for name in ("RUM_Unique", "RUM_NU", "RUM.sam", "mapping_stats.txt", "RUM_Unique.cov"):
            assert outputs[name].kind == ArtifactKind.FINAL

    def test_merge_reads_every_chunk(self, job_config):
        args = postprocessing_workflow(job_config).step("merge_rum_unique").action.args
        assert str(job_config.output_dir / "RUM_Unique.sorted.1") in args
        assert str(job_config.output_dir / "RUM_Unique.sorted.2") in args

    def test_optional_steps(self, job_config):
        names = _step_names(postprocessing_workflow(job_config))
        assert "merge_quants" not in names
        assert "make_junctions" not in names

        config = job_config.model_copy(update={"quantify": True, "junctions": True})
        names = _step_names(postprocessing_workflow(config))
        assert "merge_quants" in names
        assert "make_junctions" in names
        assert "feature_quantifications_sample" in _outputs(postprocessing_workflow(config))
