"""
rumflow Command Line Interface.

This module provides the main CLI entry point for rumflow, using Click
for argument parsing and command organization.

Usage:
    rumflow --help
    rumflow run -o out --config job.yaml --name sample reads_1.fq reads_2.fq
    rumflow status -o out
    rumflow kill -o out
    rumflow clean -o out --very
"""

from __future__ import annotations

import logging
import shutil
import sys
from importlib import metadata
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import click

from rumflow.errors import RumflowError

LOGGER = logging.getLogger("rumflow")


def _fail(message: str) -> None:
    click.echo(message, err=True)
    if logging.getLogger().level == logging.DEBUG:
        import traceback

        traceback.print_exc()
    sys.exit(1)


def _attach(output_dir: str, **directive_flags: Any):
    """Reattach to an existing job, exiting with an error if there is none."""
    from rumflow.context import Directives
    from rumflow.logging_utils import add_job_log_file
    from rumflow.orchestrator import ChunkOrchestrator

    orchestrator = ChunkOrchestrator.attach(output_dir, Directives(**directive_flags))
    add_job_log_file(output_dir)
    return orchestrator


PHASE_OPTIONS = [
    click.option("--preprocess", is_flag=True, help="Select the preprocess phase"),
    click.option("--process", is_flag=True, help="Select the process phase"),
    click.option("--postprocess", is_flag=True, help="Select the postprocess phase"),
    click.option("--chunk", type=int, default=None, help="Select a single chunk (process phase only)"),
]


def phase_options(func: Callable) -> Callable:
    """Add the phase selection flags shared by several commands."""
    for option in reversed(PHASE_OPTIONS):
        func = option(func)
    return func


JOB_OPTIONS = [
    click.option(
        "-o",
        "--output-dir",
        required=True,
        type=click.Path(file_okay=False),
        help="Directory receiving all job output",
    ),
    click.option(
        "-c",
        "--config",
        "config_path",
        default=None,
        type=click.Path(exists=True, dir_okay=False),
        help="YAML job configuration (index locations, options)",
    ),
    click.option("--name", default=None, help="Job name"),
    click.option("--chunks", "num_chunks", type=int, default=None, help="Number of chunks"),
    click.option(
        "--platform",
        type=click.Choice(["local", "cluster"]),
        default=None,
        help="Where to run the job (default: local)",
    ),
    click.option("--ram", "ram_gb", type=float, default=None, help="RAM available, in GB"),
    click.option("--quantify", is_flag=True, help="Produce feature quantifications"),
    click.option("--junctions", is_flag=True, help="Produce junction files"),
    click.option("--strand-specific", is_flag=True, help="Reads are strand specific"),
    click.option("--dna", is_flag=True, help="DNA mode (no transcriptome, no splicing)"),
    click.option("--genome-only", is_flag=True, help="Skip the transcriptome alignment"),
    click.option("--blat-only", is_flag=True, help="Skip bowtie, align with BLAT only"),
    click.option("--preserve-names", is_flag=True, help="Keep the input read names"),
    click.option("--no-clean", is_flag=True, help="Keep intermediate files when the job finishes"),
    click.option("--dry-run", is_flag=True, help="Write cluster job scripts without submitting"),
    click.argument("reads", nargs=-1, type=click.Path(exists=True, dir_okay=False)),
]


def job_options(func: Callable) -> Callable:
    """Add the options that define a job."""
    for option in reversed(JOB_OPTIONS):
        func = option(func)
    return func


def _build_config(
    output_dir: str,
    config_path: Optional[str],
    reads: Tuple[str, ...],
    no_clean: bool,
    dry_run: bool,
    **options: Any,
):
    """Combine the saved job, the config file and command line options.

    Later sources win: command line options override the config file,
    which overrides the settings saved by an earlier invocation.
    """
    from rumflow.config import config_from_dict, load_config, load_job

    data: Dict[str, Any] = {}
    existing = load_job(output_dir)
    if existing is not None:
        data.update(existing.model_dump(mode="json", exclude={"chunk"}))

    if config_path:
        from_file = load_config(config_path)
        data.update(from_file.model_dump(mode="json", exclude_unset=True))

    # Flags can only switch an option on; an absent flag keeps the saved value.
    data.update({k: v for k, v in options.items() if v is not None and v is not False})
    if reads:
        data["reads"] = list(reads)
    if no_clean:
        data["cleanup"] = False
    if dry_run:
        data["slurm"] = {**data.get("slurm", {}), "dry_run": True}
    data["output_dir"] = output_dir

    return config_from_dict(data)


def _confirm_callback(yes: bool) -> Optional[Callable[[str], bool]]:
    if yes:
        return lambda message: True
    if sys.stdin.isatty():
        return lambda message: click.confirm("Do you really want to proceed?", default=False)
    return None


@click.group()
@click.version_option(prog_name="rumflow")
@click.option(
    "-q", "--quiet", is_flag=True, help="Suppress INFO messages, show warnings/errors only"
)
@click.option("--debug", is_flag=True, help="Enable DEBUG logging for troubleshooting")
def cli(quiet: bool, debug: bool) -> None:
    """rumflow: chunked, resumable RNA-Seq alignment jobs.

    Splits the reads into chunks, aligns each chunk on this machine or on a
    SLURM cluster, and merges the results. Run the same command again to
    resume an interrupted job.
    """
    from rumflow.logging_utils import setup_logging

    setup_logging(quiet=quiet, debug=debug)


# =============================================================================
# Run Command
# =============================================================================


@cli.command()
@job_options
@phase_options
@click.option("--all", "all_phases", is_flag=True, help="Run every phase (the default)")
@click.option("--child", is_flag=True, hidden=True, help="Running inside a submitted job")
@click.option("-y", "--yes", is_flag=True, help="Proceed without asking if RAM looks short")
def run(
    output_dir: str,
    config_path: Optional[str],
    reads: Tuple[str, ...],
    no_clean: bool,
    dry_run: bool,
    preprocess: bool,
    process: bool,
    postprocess: bool,
    chunk: Optional[int],
    all_phases: bool,
    child: bool,
    yes: bool,
    **options: Any,
) -> None:
    """Start or resume a job.

    Steps whose output files already exist are skipped, so an interrupted
    job picks up where it stopped.
    """
    from rumflow.context import Directives, RunContext
    from rumflow.logging_utils import add_job_log_file
    from rumflow.orchestrator import ChunkOrchestrator

    directives = Directives(
        preprocess=preprocess,
        process=process,
        postprocess=postprocess,
        all=all_phases,
        chunk=chunk,
        child=child,
    )

    try:
        if child:
            orchestrator = _attach(
                output_dir,
                preprocess=preprocess,
                process=process,
                postprocess=postprocess,
                chunk=chunk,
                child=True,
            )
        else:
            config = _build_config(output_dir, config_path, reads, no_clean, dry_run, **options)
            context = RunContext(config, directives, confirm=_confirm_callback(yes))
            orchestrator = ChunkOrchestrator(context)
            orchestrator.setup()
            add_job_log_file(output_dir)

        orchestrator.execute()
    except RumflowError as e:
        _fail(f"Error: {e}")


@cli.command()
@job_options
def save(
    output_dir: str,
    config_path: Optional[str],
    reads: Tuple[str, ...],
    no_clean: bool,
    dry_run: bool,
    **options: Any,
) -> None:
    """Validate and save a job's settings without running anything."""
    from rumflow.context import Directives, RunContext
    from rumflow.orchestrator import ChunkOrchestrator

    try:
        config = _build_config(output_dir, config_path, reads, no_clean, dry_run, **options)
        orchestrator = ChunkOrchestrator(RunContext(config, Directives(save=True)))
        orchestrator.setup()
        settings_file = orchestrator.execute()
    except RumflowError as e:
        _fail(f"Error: {e}")

    click.echo(f"Saved job settings to {settings_file}")


# =============================================================================
# Attach Commands
# =============================================================================


@cli.command()
@click.option("-o", "--output-dir", required=True, type=click.Path(file_okay=False))
@phase_options
def status(output_dir: str, preprocess: bool, process: bool, postprocess: bool, chunk: Optional[int]) -> None:
    """Show which steps of a job are done."""
    try:
        orchestrator = _attach(
            output_dir,
            preprocess=preprocess,
            process=process,
            postprocess=postprocess,
            chunk=chunk,
            status=True,
        )
        click.echo(orchestrator.execute(), nl=False)
    except RumflowError as e:
        _fail(f"Error: {e}")


@cli.command()
@click.option("-o", "--output-dir", required=True, type=click.Path(file_okay=False))
def kill(output_dir: str) -> None:
    """Stop a running job. Files already written are kept."""
    try:
        _attach(output_dir, kill=True).execute()
    except RumflowError as e:
        _fail(f"Error: {e}")


@cli.command()
@click.option("-o", "--output-dir", required=True, type=click.Path(file_okay=False))
@phase_options
@click.option("--very", is_flag=True, help="Also remove sorted per-chunk results")
def clean(
    output_dir: str,
    preprocess: bool,
    process: bool,
    postprocess: bool,
    chunk: Optional[int],
    very: bool,
) -> None:
    """Remove intermediate files. Final results are never removed."""
    try:
        orchestrator = _attach(
            output_dir,
            preprocess=preprocess,
            process=process,
            postprocess=postprocess,
            chunk=chunk,
            clean=not very,
            veryclean=very,
        )
        removed = orchestrator.execute()
    except RumflowError as e:
        _fail(f"Error: {e}")

    click.echo(f"Removed {len(removed)} file(s)")


@cli.command()
@click.option("-o", "--output-dir", required=True, type=click.Path(file_okay=False))
@phase_options
def diagram(output_dir: str, preprocess: bool, process: bool, postprocess: bool, chunk: Optional[int]) -> None:
    """Write Graphviz diagrams of the job's workflows."""
    try:
        orchestrator = _attach(
            output_dir,
            preprocess=preprocess,
            process=process,
            postprocess=postprocess,
            chunk=chunk,
            diagram=True,
        )
        for path in orchestrator.execute():
            click.echo(f"Wrote {path}")
    except RumflowError as e:
        _fail(f"Error: {e}")


@cli.command("shell-script")
@click.option("-o", "--output-dir", required=True, type=click.Path(file_okay=False))
@click.option("--chunk", type=int, default=None, help="Only this chunk")
def shell_script(output_dir: str, chunk: Optional[int]) -> None:
    """Write each chunk's steps as a standalone shell script."""
    try:
        orchestrator = _attach(output_dir, chunk=chunk, shell_script=True)
        for path in orchestrator.execute():
            click.echo(f"Wrote {path}")
    except RumflowError as e:
        _fail(f"Error: {e}")


# =============================================================================
# Split Reads Command
# =============================================================================


@cli.command("split-reads")
@click.option("--chunks", "num_chunks", type=int, required=True, help="Number of chunks")
@click.option(
    "-o", "--output-dir", required=True, type=click.Path(file_okay=False), help="Output directory"
)
@click.option("--preserve-names", is_flag=True, help="Keep the input read names")
@click.argument("reads", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
def split_reads_cmd(num_chunks: int, output_dir: str, preserve_names: bool, reads: Tuple[str, ...]) -> None:
    """Split one read file, or a forward/reverse pair, into chunk files."""
    from rumflow.workflow.split_reads import split_reads

    if num_chunks < 1:
        _fail("Error: --chunks must be at least 1")

    try:
        written = split_reads([Path(r) for r in reads], num_chunks, Path(output_dir), preserve_names)
    except ValueError as e:
        _fail(f"Error: {e}")

    for path in written:
        LOGGER.debug(f"Wrote {path}")


# =============================================================================
# Info Command
# =============================================================================


@cli.command()
def info() -> None:
    """Show rumflow installation information."""
    from rumflow import __version__
    from rumflow.resources import available_ram_gb

    click.echo("rumflow - chunked RNA-Seq alignment jobs")
    click.echo(f"Version: {__version__}")
    click.echo()

    click.echo("Dependencies:")
    for dist in ("pydantic", "PyYAML", "click", "psutil"):
        try:
            click.echo(f"  {dist}: {metadata.version(dist)}")
        except metadata.PackageNotFoundError:
            click.echo(f"  {dist}: NOT INSTALLED")
    click.echo()

    click.echo("Environment:")
    click.echo(f"  RAM: {available_ram_gb():.1f} GB")
    for tool in ("sbatch", "scancel", "dot", "bowtie", "blat", "mdust"):
        click.echo(f"  {tool}: {shutil.which(tool) or 'not found'}")


def main() -> int:
    """Main entry point."""
    try:
        cli()
        return 0
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else 1
    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
