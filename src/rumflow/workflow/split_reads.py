"""
Split the raw read files into per-chunk FASTA files.

This is the action of the preprocess phase. Reads are numbered in input
order and distributed in contiguous blocks, so chunk 1 holds the first
block of reads, chunk 2 the next, and so on. For paired input the forward
and reverse read of a pair always land in the same chunk, one after the
other (``seq.<n>a`` then ``seq.<n>b``).

FASTQ input also produces ``quals.fa.<chunk>`` files holding the quality
strings in the same FASTA-like layout.
"""

from __future__ import annotations

import logging
from itertools import islice
from pathlib import Path
from typing import IO, Dict, Iterator, List, Optional, Sequence, Tuple

LOGGER = logging.getLogger(__name__)

Record = Tuple[str, str, Optional[str]]


def detect_format(path: Path) -> str:
    """Return ``"fasta"`` or ``"fastq"`` based on the first record marker.

    Raises:
        ValueError: If the file is empty or is neither FASTA nor FASTQ.
    """
    with open(path, "r") as f:
        for line in f:
            if not line.strip():
                continue
            if line.startswith(">"):
                return "fasta"
            if line.startswith("@"):
                return "fastq"
            break
    raise ValueError(f"{path} does not look like a FASTA or FASTQ file")


def _iter_fasta(handle: IO[str]) -> Iterator[Record]:
    name: Optional[str] = None
    seq: List[str] = []
    for line in handle:
        line = line.rstrip("\n")
        if line.startswith(">"):
            if name is not None:
                yield name, "".join(seq), None
            name = line[1:].strip()
            seq = []
        elif line.strip():
            seq.append(line.strip())
    if name is not None:
        yield name, "".join(seq), None


def _iter_fastq(handle: IO[str]) -> Iterator[Record]:
    while True:
        header = handle.readline()
        if not header:
            return
        if not header.strip():
            continue
        seq = handle.readline().strip()
        handle.readline()
        qual = handle.readline().strip()
        if not header.startswith("@"):
            raise ValueError(f"Malformed FASTQ record header: {header.strip()!r}")
        yield header[1:].strip(), seq, qual


def iter_records(path: Path) -> Iterator[Record]:
    """Yield ``(name, sequence, quality)`` for each record in a read file.

    ``quality`` is None for FASTA input.
    """
    fmt = detect_format(path)
    with open(path, "r") as f:
        reader = _iter_fastq(f) if fmt == "fastq" else _iter_fasta(f)
        yield from reader


def count_records(path: Path, limit: Optional[int] = None) -> int:
    """Number of records in a read file, counting no further than ``limit``."""
    return sum(1 for _ in islice(iter_records(path), limit))


def chunk_sizes(total: int, num_chunks: int) -> List[int]:
    """Split ``total`` reads into ``num_chunks`` contiguous block sizes.

    Sizes differ by at most one; earlier chunks get the extra reads.

    Example:
        >>> chunk_sizes(10, 3)
        [4, 3, 3]
    """
    if num_chunks < 1:
        raise ValueError("num_chunks must be at least 1")
    base, extra = divmod(total, num_chunks)
    return [base + (1 if i < extra else 0) for i in range(num_chunks)]


def _paired(reads: Sequence[Path]) -> Iterator[List[Record]]:
    if len(reads) == 1:
        for record in iter_records(reads[0]):
            yield [record]
        return

    forward = iter_records(reads[0])
    reverse = iter_records(reads[1])
    while True:
        fwd = next(forward, None)
        rev = next(reverse, None)
        if fwd is None and rev is None:
            return
        if fwd is None or rev is None:
            raise ValueError(f"{reads[0]} and {reads[1]} have different numbers of reads")
        yield [fwd, rev]


def split_reads(
    reads: Sequence[Path],
    num_chunks: int,
    output_dir: Path,
    preserve_names: bool = False,
) -> List[Path]:
    """Write ``reads.fa.<chunk>`` (and ``quals.fa.<chunk>``) files.

    Args:
        reads: One read file, or a forward/reverse pair.
        num_chunks: Number of chunks to split into.
        output_dir: Directory receiving the chunk files.
        preserve_names: Keep the input read names instead of renumbering.

    Returns:
        The read files written, in chunk order.
    """
    reads = [Path(r) for r in reads]
    if len(reads) not in (1, 2):
        raise ValueError("Expected one or two read files")

    has_quals = detect_format(reads[0]) == "fastq"
    total = count_records(reads[0])
    if total < num_chunks:
        raise ValueError(f"Cannot split {total} read(s) into {num_chunks} non-empty chunks")

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    sizes = chunk_sizes(total, num_chunks)
    LOGGER.info(f"Splitting {total} reads into {num_chunks} chunk(s)")

    final: Dict[Path, Path] = {}

    def open_chunk(chunk: int) -> Tuple[IO[str], Optional[IO[str]]]:
        reads_path = output_dir / f"reads.fa.{chunk}"
        final[reads_path.with_name(reads_path.name + ".tmp")] = reads_path
        reads_out = open(reads_path.with_name(reads_path.name + ".tmp"), "w")
        quals_out = None
        if has_quals:
            quals_path = output_dir / f"quals.fa.{chunk}"
            final[quals_path.with_name(quals_path.name + ".tmp")] = quals_path
            quals_out = open(quals_path.with_name(quals_path.name + ".tmp"), "w")
        return reads_out, quals_out

    chunk = 1
    written = 0
    reads_out, quals_out = open_chunk(chunk)
    try:
        for number, group in enumerate(_paired(reads), start=1):
            while chunk < num_chunks and written >= sizes[chunk - 1]:
                reads_out.close()
                if quals_out is not None:
                    quals_out.close()
                chunk += 1
                written = 0
                reads_out, quals_out = open_chunk(chunk)

            for mate, (name, seq, qual) in zip("ab", group):
                label = name if preserve_names else f"seq.{number}{mate}"
                reads_out.write(f">{label}\n{seq}\n")
                if quals_out is not None and qual is not None:
                    quals_out.write(f">{label}\n{qual}\n")
            written += 1
    finally:
        reads_out.close()
        if quals_out is not None:
            quals_out.close()

    for tmp, path in final.items():
        tmp.replace(path)

    return [output_dir / f"reads.fa.{n}" for n in range(1, num_chunks + 1)]
