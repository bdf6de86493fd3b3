"""
The concrete workflows of an RNA-Seq alignment job.

A job is built from three kinds of workflow:

- the preprocess workflow splits the raw reads into one file per chunk,
- one chunk workflow per chunk aligns that chunk's reads,
- the postprocess workflow merges the per-chunk results.

Every chunk workflow writes only files suffixed with its chunk index, so
chunks can run side by side in one output directory. The aligners and the
helper scripts are opaque external programs; this module only describes
what each step runs, what it writes and in which order.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, List, Optional

from rumflow.config.schema import JobConfig
from rumflow.workflow.engine import Artifact, ArtifactKind, Probe, StepAction, Workflow, artifact_ready
from rumflow.workflow.split_reads import detect_format

PRECIOUS = ArtifactKind.PRECIOUS
FINAL = ArtifactKind.FINAL


def _script(config: JobConfig, name: str) -> str:
    return str(config.index.script_dir / name)


def _perl(config: JobConfig, script: str, *args: Any, stdout: Optional[Path] = None) -> StepAction:
    return StepAction("perl", (_script(config, script), *(str(a) for a in args)), stdout=stdout)


def _out(path: Path, kind: ArtifactKind = ArtifactKind.INTERMEDIATE, tracked: bool = True) -> Artifact:
    return Artifact(path=path, kind=kind, tracked=tracked)


def reads_have_quals(config: JobConfig) -> bool:
    """Whether the job's reads carry quality strings (FASTQ input)."""
    if config.user_quals:
        return True
    if not config.reads:
        return False
    first = config.reads[0]
    if first.exists():
        try:
            return detect_format(first) == "fastq"
        except ValueError:
            return False
    return first.suffix.lower() in (".fq", ".fastq")


def reads_file(config: JobConfig, chunk: int) -> Path:
    return config.in_output_dir(f"reads.fa.{chunk}")


def quals_file(config: JobConfig, chunk: int) -> Path:
    return config.in_output_dir(f"quals.fa.{chunk}")


def _log_dir(config: JobConfig, label: str) -> Path:
    return config.in_output_dir("log") / label


# =============================================================================
# Preprocess
# =============================================================================


def preprocessing_workflow(
    config: JobConfig,
    runner: Optional[Any] = None,
    probe: Probe = artifact_ready,
) -> Workflow:
    """Workflow that splits the reads into per-chunk files.

    The split step is complete once every chunk's read file exists. Every
    chunk receives at least one read, since a job never has more chunks
    than reads.
    """
    wf = Workflow("preprocessing", config, runner=runner, probe=probe,
                  log_dir=_log_dir(config, "preprocessing"))
    chunks = config.chunk_nums()

    args: List[str] = ["-m", "rumflow", "split-reads",
                       "--chunks", str(config.effective_num_chunks),
                       "--output-dir", str(config.require_output_dir())]
    if config.preserve_names:
        args.append("--preserve-names")
    args.extend(str(r) for r in config.reads)

    outputs = [_out(reads_file(config, n), tracked=False) for n in chunks]
    if reads_have_quals(config) and not config.user_quals:
        outputs.extend(_out(quals_file(config, n), tracked=False) for n in chunks)

    wf.add_step(
        "split_reads",
        StepAction(sys.executable, tuple(args)),
        comment="Split the input reads into one file per chunk",
        outputs=outputs,
        complete_when=lambda c: all(reads_file(c, n).exists() for n in c.chunk_nums()),
    )
    return wf


# =============================================================================
# Per-chunk alignment
# =============================================================================


def chunk_workflow(
    config: JobConfig,
    runner: Optional[Any] = None,
    probe: Probe = artifact_ready,
) -> Workflow:
    """Workflow that aligns one chunk of reads.

    Args:
        config: A chunk config (``chunk`` set).
        runner: Action runner shared with the other chunks.
        probe: Filesystem check behind the default completion predicate.

    Returns:
        The chunk's workflow.
    """
    if not config.chunk:
        raise ValueError("chunk_workflow needs a chunk config")

    n = config.chunk
    c = config.chunk_suffixed
    idx = config.index
    reads = reads_file(config, n)
    paired = "paired" if config.is_paired else "single"

    wf = Workflow(f"chunk{n:03d}", config, runner=runner, probe=probe,
                  log_dir=_log_dir(config, f"chunk{n:03d}"))

    use_bowtie = not config.blat_only
    use_transcriptome = use_bowtie and not (config.dna or config.genome_only)

    if use_bowtie:
        wf.add_step(
            "run_bowtie_on_genome",
            StepAction(
                idx.bowtie_bin,
                ("-a", "--best", "--strata", "-f", str(idx.bowtie_genome_index), str(reads),
                 "-v", "3", "--suppress", "6,7,8", "-p", "1", "--quiet"),
                stdout=c("X"),
            ),
            comment="Map reads to genome using bowtie",
            outputs=[_out(c("X"))],
        )

        gu_args: List[Any] = [c("X"), "--unique", c("GU"), "--non-unique", c("GNU"), "--type", paired]
        if config.bowtie_nu_limit:
            gu_args += ["--limit", config.bowtie_nu_limit]
        wf.add_step(
            "make_gu_and_gnu",
            _perl(config, "make_GU_and_GNU.pl", *gu_args),
            comment="Separate unique and non-unique genome mappers",
            depends_on=["run_bowtie_on_genome"],
            outputs=[_out(c("GU")), _out(c("GNU"), tracked=False)],
        )

    if use_transcriptome:
        wf.add_step(
            "run_bowtie_on_transcriptome",
            StepAction(
                idx.bowtie_bin,
                ("-a", "--best", "--strata", "-f", str(idx.bowtie_gene_index), str(reads),
                 "-v", "3", "--suppress", "6,7,8", "-p", "1", "--quiet"),
                stdout=c("Y"),
            ),
            comment="Map reads to transcriptome using bowtie",
            outputs=[_out(c("Y"))],
        )
        wf.add_step(
            "make_tu_and_tnu",
            _perl(config, "make_TU_and_TNU.pl", c("Y"), idx.gene_annotation_file,
                  "--unique", c("TU"), "--non-unique", c("TNU"), "--type", paired),
            comment="Separate unique and non-unique transcriptome mappers",
            depends_on=["run_bowtie_on_transcriptome"],
            outputs=[_out(c("TU")), _out(c("TNU"), tracked=False)],
        )

    if use_bowtie:
        merge_args: List[Any] = ["--gu", c("GU"), "--gnu", c("GNU")]
        merge_deps = ["make_gu_and_gnu"]
        if use_transcriptome:
            merge_args += ["--tu", c("TU"), "--tnu", c("TNU")]
            merge_deps.append("make_tu_and_tnu")
        merge_args += ["--bowtie-unique", c("BowtieUnique"), "--cnu", c("CNU"), "--type", paired]
        wf.add_step(
            "merge_gu_and_tu",
            _perl(config, "merge_GU_and_TU.pl", *merge_args),
            comment="Merge unique mappers together and non-unique mappers together",
            depends_on=merge_deps,
            outputs=[_out(c("BowtieUnique")), _out(c("CNU"), tracked=False)],
        )
        wf.add_step(
            "make_unmapped_file",
            _perl(config, "make_unmapped_file.pl", reads, c("BowtieUnique"), c("CNU"),
                  c("R"), "--type", paired),
            comment="Make a file containing the unmapped reads, to be passed into blat",
            depends_on=["merge_gu_and_tu"],
            outputs=[_out(c("R"))],
        )
        blat_input = c("R")
        blat_deps = ["make_unmapped_file"]
    else:
        blat_input = reads
        blat_deps = []

    wf.add_step(
        "run_mdust",
        StepAction(idx.mdust_bin, (str(blat_input),), stdout=c("R.mdust")),
        comment="Mask low-complexity sequence with mdust",
        depends_on=blat_deps,
        outputs=[_out(c("R.mdust"))],
    )

    blat_args = [str(idx.genome_fasta), str(blat_input), str(c("R.blat")),
                 "-ooc=11.ooc", "-noHead", *config.blat.as_args()]
    wf.add_step(
        "run_blat",
        StepAction(idx.blat_bin, tuple(blat_args)),
        comment="Run blat on unmapped reads",
        depends_on=blat_deps,
        outputs=[_out(c("R.blat"))],
    )

    parse_args: List[Any] = [blat_input, c("R.blat"), c("R.mdust"), c("BlatUnique"), c("BlatNU")]
    if config.max_insertions:
        parse_args += ["--max-insertions", config.max_insertions]
    if config.dna:
        parse_args.append("--dna")
    wf.add_step(
        "parse_blat_out",
        _perl(config, "parse_blat_out.pl", *parse_args),
        comment="Parse blat output",
        depends_on=["run_blat", "run_mdust"],
        outputs=[_out(c("BlatUnique")), _out(c("BlatNU"), tracked=False)],
    )

    if use_bowtie:
        bb_args: List[Any] = [c("BowtieUnique"), c("BlatUnique"), c("CNU"), c("BlatNU"),
                              c("RUM_Unique_temp"), c("RUM_NU_temp"), "--type", paired]
        bb_deps = ["merge_gu_and_tu", "parse_blat_out"]
    else:
        bb_args = ["--blat-only", c("BlatUnique"), c("BlatNU"),
                   c("RUM_Unique_temp"), c("RUM_NU_temp"), "--type", paired]
        bb_deps = ["parse_blat_out"]
    if config.min_length:
        bb_args += ["--min-overlap", config.min_length]
    if config.nu_limit:
        bb_args += ["--nu-limit", config.nu_limit]
    wf.add_step(
        "merge_bowtie_and_blat",
        _perl(config, "merge_Bowtie_and_Blat.pl", *bb_args),
        comment="Merge bowtie and blat results",
        depends_on=bb_deps,
        outputs=[_out(c("RUM_Unique_temp")), _out(c("RUM_NU_temp"), tracked=False)],
    )

    wf.add_step(
        "clean_rum_files",
        _perl(config, "RUM_finalcleanup.pl", c("RUM_Unique_temp"), c("RUM_NU_temp"),
              c("RUM_Unique"), c("RUM_NU"), idx.genome_fasta,
              *(["--count-mismatches"] if config.count_mismatches else []),
              "--match-length-cutoff", config.min_length or 0),
        comment="Clean up RUM files",
        depends_on=["merge_bowtie_and_blat"],
        outputs=[_out(c("RUM_Unique")), _out(c("RUM_NU"), tracked=False)],
    )

    sam_args: List[Any] = ["--genome-only" if config.genome_only else "--all",
                           "--unique", c("RUM_Unique"), "--non-unique", c("RUM_NU"),
                           "--reads", reads, "--output", c("RUM.sam")]
    if reads_have_quals(config):
        quals = config.in_output_dir(config.user_quals) if config.user_quals else quals_file(config, n)
        sam_args += ["--quals", quals]
    wf.add_step(
        "rum2sam",
        _perl(config, "rum2sam.pl", *sam_args),
        comment="Produce the SAM file",
        depends_on=["clean_rum_files"],
        outputs=[_out(c("RUM.sam"), PRECIOUS)],
    )

    wf.add_step(
        "sort_rum_unique",
        _perl(config, "sort_RUM_by_location.pl", c("RUM_Unique"), "-o", c("RUM_Unique.sorted")),
        comment="Sort unique mappers by location",
        depends_on=["clean_rum_files"],
        outputs=[_out(c("RUM_Unique.sorted"), PRECIOUS)],
    )
    wf.add_step(
        "sort_rum_nu",
        _perl(config, "sort_RUM_by_location.pl", c("RUM_NU"), "-o", c("RUM_NU.sorted")),
        comment="Sort non-unique mappers by location",
        depends_on=["clean_rum_files"],
        outputs=[_out(c("RUM_NU.sorted"), PRECIOUS, tracked=False)],
        complete_when=lambda cfg: cfg.chunk_suffixed("RUM_NU.sorted").exists(),
    )

    if config.quantify:
        annotation = config.alt_quant_model or idx.gene_annotation_file
        quant_args: List[Any] = [annotation, c("RUM_Unique.sorted"), c("RUM_NU.sorted"),
                                 "-o", c("quant")]
        if config.strand_specific:
            quant_args.append("-strand")
        wf.add_step(
            "quantify",
            _perl(config, "rum2quantifications.pl", *quant_args),
            comment="Generate quantified values",
            depends_on=["sort_rum_unique", "sort_rum_nu"],
            outputs=[_out(c("quant"), PRECIOUS)],
        )

    return wf


# =============================================================================
# Postprocess
# =============================================================================


def postprocessing_workflow(
    config: JobConfig,
    runner: Optional[Any] = None,
    probe: Probe = artifact_ready,
) -> Workflow:
    """Workflow that merges every chunk's results into the final outputs.

    Args:
        config: The global config.
    """
    out = config.in_output_dir
    chunks = list(range(1, config.effective_num_chunks + 1))

    def per_chunk(name: str) -> List[str]:
        return [str(out(f"{name}.{n}")) for n in chunks]

    wf = Workflow("postprocessing", config, runner=runner, probe=probe,
                  log_dir=_log_dir(config, "postprocessing"))

    wf.add_step(
        "merge_rum_unique",
        _perl(config, "merge_sorted_RUM_files.pl", "-o", out("RUM_Unique"),
              *per_chunk("RUM_Unique.sorted")),
        comment="Merge sorted unique mappers",
        outputs=[_out(out("RUM_Unique"), FINAL)],
    )
    wf.add_step(
        "merge_rum_nu",
        _perl(config, "merge_sorted_RUM_files.pl", "-o", out("RUM_NU"), *per_chunk("RUM_NU.sorted")),
        comment="Merge sorted non-unique mappers",
        outputs=[_out(out("RUM_NU"), FINAL, tracked=False)],
        complete_when=lambda cfg: cfg.in_output_dir("RUM_NU").exists(),
    )
    wf.add_step(
        "merge_sam",
        _perl(config, "merge_sam.pl", "-o", out("RUM.sam"), *per_chunk("RUM.sam")),
        comment="Merge SAM files",
        outputs=[_out(out("RUM.sam"), FINAL)],
    )
    wf.add_step(
        "compute_mapping_stats",
        _perl(config, "count_reads_mapped.pl", "-unique", out("RUM_Unique"), "-nu", out("RUM_NU"),
              stdout=out("mapping_stats.txt")),
        comment="Compute mapping statistics",
        depends_on=["merge_rum_unique", "merge_rum_nu"],
        outputs=[_out(out("mapping_stats.txt"), FINAL)],
    )

    if config.quantify:
        quant_out = out(f"feature_quantifications_{config.name}")
        quant_args: List[Any] = ["-o", quant_out, *per_chunk("quant")]
        if config.strand_specific:
            quant_args.append("-strand")
        wf.add_step(
            "merge_quants",
            _perl(config, "merge_quants.pl", *quant_args),
            comment="Merge quantifications",
            outputs=[_out(quant_out, FINAL)],
        )

    wf.add_step(
        "make_unique_coverage",
        _perl(config, "rum2cov.pl", out("RUM_Unique"), out("RUM_Unique.cov"),
              "-name", f"{config.name} Unique Mappers"),
        comment="Generate unique mapper coverage",
        depends_on=["merge_rum_unique"],
        outputs=[_out(out("RUM_Unique.cov"), FINAL)],
    )
    wf.add_step(
        "make_nu_coverage",
        _perl(config, "rum2cov.pl", out("RUM_NU"), out("RUM_NU.cov"),
              "-name", f"{config.name} Non-Unique Mappers"),
        comment="Generate non-unique mapper coverage",
        depends_on=["merge_rum_nu"],
        outputs=[_out(out("RUM_NU.cov"), FINAL)],
    )

    if config.junctions:
        annotation = config.alt_genes or config.index.gene_annotation_file
        wf.add_step(
            "make_junctions",
            _perl(config, "make_RUM_junctions_file.pl",
                  "--unique-in", out("RUM_Unique"), "--non-unique-in", out("RUM_NU"),
                  "--genome", config.index.genome_fasta, "--genes", annotation,
                  "--all-rum-out", out("junctions_all.rum"),
                  "--all-bed-out", out("junctions_all.bed"),
                  "--high-bed-out", out("junctions_high-quality.bed"),
                  *(["--strand", "p"] if config.strand_specific else [])),
            comment="Make junction files",
            depends_on=["merge_rum_unique", "merge_rum_nu"],
            outputs=[
                _out(out("junctions_all.rum"), FINAL),
                _out(out("junctions_all.bed"), FINAL),
                _out(out("junctions_high-quality.bed"), FINAL),
            ],
        )

    return wf
