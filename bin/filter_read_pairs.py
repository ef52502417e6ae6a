#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Filter paired SAM records by mapping quality, edit distance and duplicate status.

The input must be grouped by read name (mates on consecutive lines), as produced
by an aligner or by `samtools sort -n`. Records are streamed one mate pair at a
time; survivors and header lines are written back out verbatim.

Filters, in order of precedence:
  1. NM (edit distance): a pair is dropped when either mate has NM >= --nm.
     Pairs where a mate carries no NM tag skip this filter.
  2. MAPQ: both mates must reach the cutoff, or only one of them with
     --single-end-mapq-filtering.
Duplicate-flagged records (FLAG & 1024) are removed before pairing when
--remove-dup is given.
"""

from __future__ import annotations

import argparse
import sys
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, NamedTuple, TextIO

import pysam
from loguru import logger
from pydantic import Field, ValidationError
from pydantic.dataclasses import dataclass as pydantic_dataclass

from logging_setup import add_verbosity_args, configure_logging

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

# ------------------------------- CONSTANTS -------------------------------- #

HEADER_PREFIX = "@"

# SAM mandatory columns: QNAME FLAG RNAME POS MAPQ CIGAR RNEXT PNEXT TLEN SEQ QUAL
SAM_MANDATORY_COLUMNS = 11
QNAME_COL = 0
FLAG_COL = 1
MAPQ_COL = 4
MAX_MAPQ = 255

NM_TAG_PREFIX = "NM:i:"
DUPLICATE_FLAG = 0x400  # 1024, PCR or optical duplicate

# Emit a progress debug line after processing this many mate pairs
DEBUG_EVERY: int = 100_000


# -------------------------------- ERRORS ----------------------------------- #


class PairFilterError(Exception):
    """Base class for fatal problems with the input stream."""


class PairingError(PairFilterError):
    """Records are not grouped into consecutive mate pairs."""


class MalformedFieldError(PairFilterError, ValueError):
    """A field required by the filters cannot be parsed."""


# ------------------------------- DATA TYPES -------------------------------- #


def _parse_digits(raw: str) -> int | None:
    """Parse an unsigned decimal integer, or return None if `raw` is not one."""
    if raw and raw.isascii() and raw.isdigit():
        return int(raw)
    return None


class HeaderLine(NamedTuple):
    """A metadata line (starts with '@'); passed through untouched."""

    text: str


@dataclass(frozen=True)
class AlignmentRecord:
    """
    One SAM alignment line.

    `text` is the line exactly as read (minus its newline) and is what gets
    written back out; `fields` is only used to evaluate the filters.
    """

    text: str
    fields: tuple[str, ...]

    @classmethod
    def parse(cls, text: str) -> AlignmentRecord:
        fields = tuple(text.rstrip("\r").split("\t"))
        # columns past MAPQ are never read, so truncated records still filter
        if len(fields) <= MAPQ_COL:
            msg = (
                f"Alignment record has {len(fields)} tab-separated columns, "
                f"expected at least {MAPQ_COL + 1}: {text[:80]!r}"
            )
            raise MalformedFieldError(msg)
        if not fields[QNAME_COL]:
            msg = f"Alignment record has an empty read name: {text[:80]!r}"
            raise MalformedFieldError(msg)
        return cls(text=text, fields=fields)

    @property
    def qname(self) -> str:
        return self.fields[QNAME_COL]

    @property
    def flag(self) -> int:
        value = _parse_digits(self.fields[FLAG_COL])
        if value is None:
            msg = f"Unparsable FLAG {self.fields[FLAG_COL]!r} for read '{self.qname}'"
            raise MalformedFieldError(msg)
        return value

    @property
    def is_duplicate(self) -> bool:
        return bool(self.flag & DUPLICATE_FLAG)

    @property
    def mapq(self) -> int:
        raw = self.fields[MAPQ_COL]
        value = _parse_digits(raw)
        if value is None or value > MAX_MAPQ:
            msg = f"Unparsable MAPQ {raw!r} for read '{self.qname}' (expected 0-{MAX_MAPQ})"
            raise MalformedFieldError(msg)
        return value

    @property
    def edit_distance(self) -> int | None:
        """
        Value of the first NM:i: tag among the optional fields, or None when
        the record has no NM tag.

        Optional fields start after the 11 mandatory columns; on a truncated
        record they start right after MAPQ.
        """
        if len(self.fields) >= SAM_MANDATORY_COLUMNS:
            first_tag = SAM_MANDATORY_COLUMNS
        else:
            first_tag = MAPQ_COL + 1
        for tag in self.fields[first_tag:]:
            if tag.startswith(NM_TAG_PREFIX):
                raw = tag[len(NM_TAG_PREFIX) :]
                value = _parse_digits(raw)
                if value is None:
                    msg = f"Unparsable NM tag {tag!r} for read '{self.qname}'"
                    raise MalformedFieldError(msg)
                return value
        return None


class ReadPair(NamedTuple):
    """Two consecutive records sharing a read name."""

    first: AlignmentRecord
    second: AlignmentRecord


@pydantic_dataclass(frozen=True)
class FilterConfig:
    """Filter settings, fixed for the whole run."""

    mapq_cutoff: int = Field(ge=0, le=MAX_MAPQ)
    single_end_mapq: bool = False
    nm_cutoff: int | None = Field(default=None, ge=0)
    remove_duplicates: bool = False
    remove_singletons: bool = False
    threads: int = Field(default=8, ge=1)  # htslib decompression threads for BAM/CRAM


@dataclass
class FilterStats:
    """Running counters for one filtering run."""

    headers: int = 0
    pairs_seen: int = 0
    pairs_kept: int = 0
    dropped_nm: int = 0
    dropped_mapq: int = 0
    singletons_removed: int = 0
    duplicates_skipped: int = 0
    unpaired_tail: int = 0


class Verdict(Enum):
    KEEP = auto()
    DROP_EDIT_DISTANCE = auto()
    DROP_MAPQ = auto()


# ---------------------------- RECORD READING ------------------------------- #


def classify_lines(
    lines: Iterable[str],
    remove_duplicates: bool = False,  # noqa: FBT001, FBT002
    stats: FilterStats | None = None,
) -> Iterator[HeaderLine | AlignmentRecord]:
    """
    Turn raw text lines into header lines and parsed alignment records.

    Blank lines are skipped. With `remove_duplicates`, records flagged as
    duplicates never make it past this point.
    """
    if stats is None:
        stats = FilterStats()
    for raw in lines:
        text = raw.rstrip("\n")
        if not text.strip():
            continue
        if text.startswith(HEADER_PREFIX):
            yield HeaderLine(text)
            continue
        record = AlignmentRecord.parse(text)
        if remove_duplicates and record.is_duplicate:
            stats.duplicates_skipped += 1
            logger.trace(f"Skipping duplicate-flagged record '{record.qname}'")
            continue
        yield record


# ---------------------------- PAIR ASSEMBLY -------------------------------- #


class AssemblerState(Enum):
    AWAITING_FIRST = auto()
    HAVE_FIRST = auto()
    DONE = auto()


class PairAssembler:
    """
    Pull iterator grouping consecutive records into mate pairs.

    Yields `HeaderLine`s as they arrive and a `ReadPair` for every two
    consecutive records with the same read name. A record followed by a header
    or by a record with a different name is a singleton: it is dropped when
    `remove_singletons` is set, otherwise `PairingError` is raised and the
    iterator is exhausted.
    """

    def __init__(
        self,
        items: Iterable[HeaderLine | AlignmentRecord],
        remove_singletons: bool = False,  # noqa: FBT001, FBT002
        stats: FilterStats | None = None,
    ) -> None:
        self._items = iter(items)
        self._remove_singletons = remove_singletons
        self.stats = stats if stats is not None else FilterStats()
        self.state = AssemblerState.AWAITING_FIRST
        self._pending: AlignmentRecord | None = None

    def __iter__(self) -> PairAssembler:
        return self

    def __next__(self) -> HeaderLine | ReadPair:
        while self.state is not AssemblerState.DONE:
            item = next(self._items, None)
            if item is None:
                self._finish()
                break

            if self.state is AssemblerState.AWAITING_FIRST:
                if isinstance(item, HeaderLine):
                    self.stats.headers += 1
                    return item
                self._pending = item
                self.state = AssemblerState.HAVE_FIRST
                continue

            first = self._pending
            assert first is not None, "HAVE_FIRST state without a pending record"

            if isinstance(item, HeaderLine):
                if not self._remove_singletons:
                    self.state = AssemblerState.DONE
                    msg = (
                        f"Header line found after read '{first.qname}' and before its mate: "
                        f"{item.text[:80]!r}. Sort the input by read name or rerun with "
                        "--remove-singletons."
                    )
                    raise PairingError(msg)
                # the pending record cannot have a mate any more
                self.stats.singletons_removed += 1
                logger.debug(f"Dropping singleton '{first.qname}' before a header line")
                self._pending = None
                self.state = AssemblerState.AWAITING_FIRST
                self.stats.headers += 1
                return item

            if item.qname != first.qname:
                self._on_singleton(first, item)
                continue

            self._pending = None
            self.state = AssemblerState.AWAITING_FIRST
            self.stats.pairs_seen += 1
            return ReadPair(first, item)

        raise StopIteration

    def _on_singleton(self, first: AlignmentRecord, following: AlignmentRecord) -> None:
        if not self._remove_singletons:
            self.state = AssemblerState.DONE
            msg = (
                f"Read '{first.qname}' is followed by '{following.qname}' instead of its mate. "
                "The input may be coordinate-sorted or contain singletons: sort it by read "
                "name (samtools sort -n) or rerun with --remove-singletons."
            )
            raise PairingError(msg)
        self.stats.singletons_removed += 1
        logger.debug(f"Dropping singleton '{first.qname}'")
        self._pending = following

    def _finish(self) -> None:
        if self.state is AssemblerState.HAVE_FIRST and self._pending is not None:
            self.stats.unpaired_tail += 1
            logger.warning(
                f"Input ended after read '{self._pending.qname}' without its mate; dropping it.",
            )
        self._pending = None
        self.state = AssemblerState.DONE


# ------------------------------- FILTERS ----------------------------------- #


def edit_distance_passes(pair: ReadPair, cutoff: int) -> bool:
    """False when both mates carry NM and either is at or above `cutoff`."""
    nm1 = pair.first.edit_distance
    nm2 = pair.second.edit_distance
    if nm1 is None or nm2 is None:
        return True
    return nm1 < cutoff and nm2 < cutoff


def mapq_passes(pair: ReadPair, cutoff: int, single_end: bool) -> bool:  # noqa: FBT001
    mapq1 = pair.first.mapq
    mapq2 = pair.second.mapq
    if single_end:
        return mapq1 >= cutoff or mapq2 >= cutoff
    return mapq1 >= cutoff and mapq2 >= cutoff


def evaluate_pair(pair: ReadPair, config: FilterConfig) -> Verdict:
    if config.nm_cutoff is not None and not edit_distance_passes(pair, config.nm_cutoff):
        return Verdict.DROP_EDIT_DISTANCE
    if not mapq_passes(pair, config.mapq_cutoff, config.single_end_mapq):
        return Verdict.DROP_MAPQ
    return Verdict.KEEP


# ------------------------------ CORE LOGIC --------------------------------- #


def filter_pairs(
    lines: Iterable[str],
    config: FilterConfig,
    stats: FilterStats | None = None,
) -> Iterator[str]:
    """
    Lazily yield output lines (without newlines): every header, and both
    records of every pair that clears the filters, in input order.
    """
    if stats is None:
        stats = FilterStats()
    items = classify_lines(lines, remove_duplicates=config.remove_duplicates, stats=stats)

    for item in PairAssembler(items, remove_singletons=config.remove_singletons, stats=stats):
        if isinstance(item, HeaderLine):
            yield item.text
            continue

        match evaluate_pair(item, config):
            case Verdict.KEEP:
                stats.pairs_kept += 1
                yield item.first.text
                yield item.second.text
            case Verdict.DROP_EDIT_DISTANCE:
                stats.dropped_nm += 1
                logger.trace(f"Dropping pair '{item.first.qname}': NM >= {config.nm_cutoff}")
            case Verdict.DROP_MAPQ:
                stats.dropped_mapq += 1
                logger.trace(f"Dropping pair '{item.first.qname}': MAPQ below {config.mapq_cutoff}")

        if stats.pairs_seen % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: pairs={stats.pairs_seen}, kept={stats.pairs_kept}, "
                f"dropped_nm={stats.dropped_nm}, dropped_mapq={stats.dropped_mapq}",
            )


def run_filter(lines: Iterable[str], out: TextIO, config: FilterConfig) -> FilterStats:
    """Stream `lines` through the filters into `out` and return the counters."""
    stats = FilterStats()
    for line in filter_pairs(lines, config, stats):
        out.write(line)
        out.write("\n")

    assert stats.pairs_seen == stats.pairs_kept + stats.dropped_nm + stats.dropped_mapq, (
        f"Pair count inconsistency: seen={stats.pairs_seen}, kept={stats.pairs_kept}, "
        f"dropped_nm={stats.dropped_nm}, dropped_mapq={stats.dropped_mapq}"
    )
    logger.info(
        f"Filter totals: headers={stats.headers}, pairs={stats.pairs_seen}, "
        f"kept={stats.pairs_kept}, dropped_nm={stats.dropped_nm}, "
        f"dropped_mapq={stats.dropped_mapq}, singletons_removed={stats.singletons_removed}, "
        f"duplicates_skipped={stats.duplicates_skipped}",
    )
    return stats


# ----------------------------- I/O UTILITIES ------------------------------- #


def _read_mode_from_ext(path: str) -> str:
    """Determine pysam open mode for a binary alignment container."""
    lower = path.lower()
    if lower.endswith(".bam"):
        return "rb"
    if lower.endswith(".cram"):
        return "rc"
    msg = "Input must be '-' (SAM on stdin) or end with .sam, .bam, or .cram"
    logger.error(msg)
    raise ValueError(msg)


def open_alignment(
    path: str,
    threads: int = 1,
    reference: str | None = None,
) -> pysam.AlignmentFile:
    """Open a BAM/CRAM for streaming reads in file order."""
    mode = _read_mode_from_ext(path)

    kwargs: dict = {"threads": threads, "check_sq": False}
    if path.lower().endswith(".cram"):
        if reference is None:
            logger.warning(
                f"Opening CRAM without explicit reference: {path}. "
                "Decoding may fail unless the reference is resolvable.",
            )
        else:
            kwargs["reference_filename"] = reference

    logger.debug(f"Opening for read: {path} (mode={mode}, threads={threads})")
    return pysam.AlignmentFile(path, mode, **kwargs)


def iter_sam_lines(aln_file: pysam.AlignmentFile) -> Iterator[str]:
    """Render an open AlignmentFile as SAM text: header lines, then records in file order."""
    yield from str(aln_file.header).splitlines()
    for aln in aln_file:
        yield aln.to_string()


@contextmanager
def input_lines(
    path: str,
    threads: int = 1,
    reference: str | None = None,
) -> Iterator[Iterable[str]]:
    """
    Yield an iterable of SAM text lines for `path`.

    '-' is stdin and `.sam` is read as text, so records pass through
    byte-for-byte; BAM/CRAM are decoded with pysam.
    """
    if path == "-":
        yield sys.stdin
        return
    if path.lower().endswith(".sam"):
        with open(path, newline="") as fh:
            yield fh
        return
    aln_file = open_alignment(path, threads=threads, reference=reference)
    try:
        yield iter_sam_lines(aln_file)
    finally:
        aln_file.close()


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description=(
            "Filter read pairs in a name-grouped SAM/BAM/CRAM by MAPQ, NM and duplicate flag.\n"
            "Do NOT sort the input by coordinate: mates must be on consecutive records.\n"
            "Surviving records are written as SAM text."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument(
        "mapq",
        type=int,
        help="MAPQ cutoff: read pairs with both MAPQ >= this value are kept",
    )

    # I/O
    p.add_argument(
        "-i",
        "--in",
        dest="in_path",
        default="-",
        help="Input SAM/BAM/CRAM, name-grouped ('-' for SAM on stdin, default)",
    )
    p.add_argument(
        "-o",
        "--out",
        dest="out_path",
        default="-",
        help="Output SAM ('-' for stdout, default)",
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA for CRAM input",
    )

    # Filters
    p.add_argument(
        "--single-end-mapq-filtering",
        action="store_true",
        help="Keep a pair when either end has MAPQ >= cutoff",
    )
    p.add_argument(
        "--nm",
        type=int,
        default=None,
        help="Edit distance cutoff: pairs with a single-end NM >= this value are removed",
    )
    p.add_argument(
        "--remove-dup",
        action="store_true",
        help="Remove PCR duplicates (must already be marked with flag 1024)",
    )
    p.add_argument(
        "--remove-singletons",
        action="store_true",
        help="Drop unpaired records instead of aborting",
    )
    p.add_argument(
        "--threads",
        type=int,
        default=8,
        help="Threads for reading BAM/CRAM input (default: 8)",
    )

    add_verbosity_args(p)
    return p


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    try:
        config = FilterConfig(
            mapq_cutoff=args.mapq,
            single_end_mapq=args.single_end_mapq_filtering,
            nm_cutoff=args.nm,
            remove_duplicates=args.remove_dup,
            remove_singletons=args.remove_singletons,
            threads=args.threads,
        )
    except ValidationError as e:
        logger.error(f"Invalid filter settings: {e}")
        sys.exit(1)
    logger.debug(f"FilterConfig: {config}")

    try:
        with ExitStack() as stack:
            lines = stack.enter_context(
                input_lines(args.in_path, threads=config.threads, reference=args.reference),
            )
            if args.out_path == "-":
                out = sys.stdout
            else:
                out = stack.enter_context(open(args.out_path, "w"))
            stats = run_filter(lines, out, config)
    except (PairFilterError, ValueError, OSError) as e:
        logger.error(f"Filtering failed: {e}")
        sys.exit(1)

    logger.success(
        f"Kept pairs: {stats.pairs_kept}/{stats.pairs_seen} | "
        f"Dropped (NM): {stats.dropped_nm} | Dropped (MAPQ): {stats.dropped_mapq} | "
        f"Singletons removed: {stats.singletons_removed} | "
        f"Duplicates skipped: {stats.duplicates_skipped}",
    )


if __name__ == "__main__":
    main()
