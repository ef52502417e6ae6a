#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "polars",
#     "pysam",
# ]
# ///
"""
Base composition and Nx statistics for an assembly FASTA.

Three length populations are reported:
  - contig:           every maximal run of non-N bases in every sequence
  - scaffold:         full sequence length
  - gapless scaffold: sequence length minus its N bases
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, NamedTuple

import polars as pl
import pysam
from loguru import logger

from logging_setup import add_verbosity_args, configure_logging

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

GAP_SYMBOL = "N"
NX_LEVELS: tuple[int, ...] = (10, 20, 30, 40, 50, 60, 70, 80, 90)

CONTIG = "contig"
SCAFFOLD = "scaffold"
GAPLESS_SCAFFOLD = "gapless scaffold"


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass
class BaseCounts:
    """Base totals over every sequence in the run."""

    a: int = 0
    t: int = 0
    c: int = 0
    g: int = 0
    n: int = 0

    def add(self, seq_upper: str) -> int:
        """Count the bases of an upper-cased sequence; returns how many were recognised."""
        a = seq_upper.count("A")
        t = seq_upper.count("T")
        c = seq_upper.count("C")
        g = seq_upper.count("G")
        n = seq_upper.count("N")
        self.a += a
        self.t += t
        self.c += c
        self.g += g
        self.n += n
        return a + t + c + g + n

    @property
    def gc_fraction(self) -> float | None:
        """(C + G) / (A + T + C + G), or None when there are no called bases."""
        called = self.a + self.t + self.c + self.g
        if called == 0:
            return None
        return (self.c + self.g) / called


@dataclass
class LengthPopulations:
    contigs: list[int] = field(default_factory=list)
    scaffolds: list[int] = field(default_factory=list)
    gapless_scaffolds: list[int] = field(default_factory=list)

    def labelled(self) -> list[tuple[str, list[int]]]:
        """Populations in report order."""
        return [
            (CONTIG, self.contigs),
            (SCAFFOLD, self.scaffolds),
            (GAPLESS_SCAFFOLD, self.gapless_scaffolds),
        ]


class SequenceLengths(NamedTuple):
    scaffold: int
    gapless: int
    contigs: list[int]


class NxPoint(NamedTuple):
    x: int
    rank: int  # 1-based position in the length-descending order
    length: int


@dataclass(frozen=True)
class NxReport:
    label: str
    points: tuple[NxPoint, ...]
    count: int
    total: int
    longest: int | None
    shortest: int | None

    @property
    def insufficient_data(self) -> bool:
        return self.total == 0


# --------------------------- PER-SEQUENCE STATS ---------------------------- #


def stat_sequence(name: str, seq: str, bases: BaseCounts) -> SequenceLengths:
    """Add one sequence to `bases` and return its scaffold, gapless and contig lengths."""
    seq_upper = seq.upper()
    scaffold_len = len(seq_upper)
    recognised = bases.add(seq_upper)
    if recognised != scaffold_len:
        logger.warning(
            f"Sequence '{name}' has {scaffold_len - recognised} base(s) not in A, T, C, G, N",
        )

    gaps = seq_upper.count(GAP_SYMBOL)
    contigs = [len(ctg) for ctg in seq_upper.split(GAP_SYMBOL) if ctg]
    return SequenceLengths(scaffold_len, scaffold_len - gaps, contigs)


def accumulate(
    records: Iterable[tuple[str, str]],
    bases: BaseCounts,
    populations: LengthPopulations,
) -> int:
    """
    Single pass over (name, sequence) records; returns the number of sequences
    seen. Records with an empty sequence are skipped and not counted.
    """
    seen = 0
    for name, seq in records:
        if not seq:
            logger.debug(f"Skipping '{name}': empty sequence")
            continue
        lengths = stat_sequence(name, seq, bases)
        populations.scaffolds.append(lengths.scaffold)
        populations.gapless_scaffolds.append(lengths.gapless)
        populations.contigs.extend(lengths.contigs)
        seen += 1
    logger.debug(f"Accumulated {seen} sequences, {len(populations.contigs)} contigs")
    return seen


def read_fasta(path: Path) -> Iterator[tuple[str, str]]:
    """Yield (name, sequence) from a FASTA, plain or gzipped."""
    with pysam.FastxFile(str(path)) as fh:
        for entry in fh:
            yield entry.name, entry.sequence or ""


# ------------------------------ NX METRICS --------------------------------- #


def compute_nx(lengths: Iterable[int], label: str = "") -> NxReport:
    """
    Nx breakpoints for one population.

    For each x the reported element is the first one, in descending length
    order, whose cumulative sum reaches x% of the total. The comparison is done
    in integers so it matches cumulative / total >= x / 100 exactly.
    """
    ordered = sorted(lengths, reverse=True)
    total = sum(ordered)
    longest = ordered[0] if ordered else None
    shortest = ordered[-1] if ordered else None
    if total == 0:
        return NxReport(label, (), len(ordered), 0, longest, shortest)

    points: list[NxPoint] = []
    levels = iter(NX_LEVELS)
    pending = next(levels, None)
    cumulative = 0
    for rank, length in enumerate(ordered, start=1):
        cumulative += length
        while pending is not None and cumulative * 100 >= total * pending:
            points.append(NxPoint(pending, rank, length))
            pending = next(levels, None)
        if pending is None:
            break

    assert len(points) == len(NX_LEVELS), f"Missing Nx breakpoints for '{label}': {points}"
    return NxReport(label, tuple(points), len(ordered), total, longest, shortest)


# ------------------------------- REPORTING --------------------------------- #


def format_bases(bases: BaseCounts) -> str:
    gc = bases.gc_fraction
    gc_text = "NA" if gc is None else f"{gc}"
    return (
        "#### base statistics ####\n"
        f"A: {bases.a}, T: {bases.t}, C: {bases.c}, G: {bases.g}, N: {bases.n}\n"
        f"GC%: {gc_text}\n\n"
    )


def format_nx(report: NxReport) -> str:
    lines = [f"#### {report.label} statistics ####"]
    if report.insufficient_data:
        lines.append("insufficient data")
    else:
        lines.append("Nx\tNumber\tLength")
        lines.extend(f"N{p.x}\t{p.rank}\t{p.length}" for p in report.points)
        lines.append(
            f"longest {report.label}: {report.longest}, "
            f"shortest {report.label}: {report.shortest}",
        )
    lines.append(f"total number: {report.count}, total length: {report.total}")
    return "\n".join(lines) + "\n\n"


def nx_table(reports: Iterable[NxReport]) -> pl.DataFrame:
    """Long-format Nx table: one row per population and breakpoint."""
    rows = [
        {"population": r.label, "nx": f"N{p.x}", "rank": p.rank, "length": p.length}
        for r in reports
        for p in r.points
    ]
    return pl.DataFrame(
        rows,
        schema={"population": pl.Utf8, "nx": pl.Utf8, "rank": pl.Int64, "length": pl.Int64},
    )


def summarize(records: Iterable[tuple[str, str]]) -> tuple[BaseCounts, list[NxReport]]:
    bases = BaseCounts()
    populations = LengthPopulations()
    accumulate(records, bases, populations)
    reports = [compute_nx(values, label) for label, values in populations.labelled()]
    for report in reports:
        if report.insufficient_data:
            logger.warning(f"No {report.label} length to compute Nx from")
    return bases, reports


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Base composition and contig/scaffold Nx statistics for a FASTA file",
    )
    p.add_argument("fasta", type=Path, help="Input FASTA (optionally gzipped)")
    p.add_argument(
        "--tsv",
        type=Path,
        default=None,
        help="Also write the Nx breakpoints as a tab-separated table",
    )
    add_verbosity_args(p)
    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    if not args.fasta.exists():
        logger.error(f"Input file does not exist: {args.fasta}")
        sys.exit(1)

    try:
        bases, reports = summarize(read_fasta(args.fasta))
    except (OSError, ValueError) as e:
        logger.error(f"Could not read {args.fasta}: {e}")
        sys.exit(1)

    sys.stdout.write(format_bases(bases))
    for report in reports:
        sys.stdout.write(format_nx(report))

    if args.tsv is not None:
        args.tsv.parent.mkdir(parents=True, exist_ok=True)
        nx_table(reports).write_csv(args.tsv, separator="\t")
        logger.info(f"Wrote Nx table to {args.tsv}")

    logger.success(f"Summarized {reports[1].count} sequences from {args.fasta}")


if __name__ == "__main__":
    main()
