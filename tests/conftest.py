# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures for the read-pair filter and assembly statistics tools.

Provides SAM line factories, a small name-grouped BAM built with pysam, FASTA
files, and a loguru sink for asserting on warnings.
"""

import sys
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest
from loguru import logger

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

SamLineFactory = Callable[..., str]


def build_sam_line(
    qname: str,
    flag: int | str = 0,
    mapq: int | str = 60,
    nm: int | str | None = None,
    tags: tuple[str, ...] = (),
) -> str:
    """A SAM record with all 11 mandatory columns, plus NM and any extra tags."""
    fields = [
        qname,
        str(flag),
        "chr1",
        "100",
        str(mapq),
        "8M",
        "=",
        "150",
        "58",
        "ACGTACGT",
        "IIIIIIII",
    ]
    if nm is not None:
        fields.append(f"NM:i:{nm}")
    fields.extend(tags)
    return "\t".join(fields)


@pytest.fixture
def sam_line() -> SamLineFactory:
    return build_sam_line


@pytest.fixture
def sam_pair() -> Callable[..., list[str]]:
    """Two mate lines (flags 99/147) for one read name."""

    def _pair(
        qname: str,
        mapq1: int = 60,
        mapq2: int = 60,
        nm1: int | None = None,
        nm2: int | None = None,
        dup: bool = False,
    ) -> list[str]:
        dup_bit = 1024 if dup else 0
        return [
            build_sam_line(qname, flag=99 + dup_bit, mapq=mapq1, nm=nm1),
            build_sam_line(qname, flag=147 + dup_bit, mapq=mapq2, nm=nm2),
        ]

    return _pair


@pytest.fixture
def sam_header_lines() -> list[str]:
    return [
        "@HD\tVN:1.6\tSO:queryname",
        "@SQ\tSN:chr1\tLN:1000",
        "@PG\tID:bwa\tPN:bwa",
    ]


def create_sam_header() -> dict[str, Any]:
    """Minimal name-sorted header for BAM fixtures."""
    return {
        "HD": {"VN": "1.6", "SO": "queryname"},
        "SQ": [{"SN": "chr1", "LN": 1000}],
    }


def _segment(qname: str, flag: int, pos: int, mapq: int, nm: int) -> pysam.AlignedSegment:
    read = pysam.AlignedSegment()
    read.query_name = qname
    read.flag = flag
    read.reference_id = 0
    read.reference_start = pos
    read.mapping_quality = mapq
    read.cigartuples = [(0, 8)]  # 8M
    read.query_sequence = "ACGTACGT"
    read.query_qualities = [30] * 8
    read.next_reference_id = 0
    read.next_reference_start = pos + 50
    read.template_length = 58
    read.set_tag("NM", nm)
    return read


@pytest.fixture
def paired_bam_file(tmp_path: Path) -> Path:
    """
    Name-grouped BAM with four pairs:
      keep_me   - MAPQ 60/60, NM 0/1
      low_mapq  - MAPQ 60/5
      duplicate - MAPQ 60/60, both flagged 1024
      high_nm   - MAPQ 30/30, NM 6/0
    """
    bam_path = tmp_path / "pairs.bam"
    pairs = [
        ("keep_me", 0, 60, 60, 0, 1),
        ("low_mapq", 0, 60, 5, 0, 0),
        ("duplicate", 1024, 60, 60, 0, 0),
        ("high_nm", 0, 30, 30, 6, 0),
    ]
    with pysam.AlignmentFile(str(bam_path), "wb", header=create_sam_header()) as bam_file:
        for qname, dup_bit, mapq1, mapq2, nm1, nm2 in pairs:
            bam_file.write(_segment(qname, 99 + dup_bit, 100, mapq1, nm1))
            bam_file.write(_segment(qname, 147 + dup_bit, 150, mapq2, nm2))
    return bam_path


@pytest.fixture
def assembly_fasta(tmp_path: Path) -> Path:
    """Two scaffolds, wrapped over several lines, one with a gap and lower case."""
    fasta_path = tmp_path / "assembly.fasta"
    fasta_path.write_text(
        ">scaffold_1 len=11\n"
        "ACGTN\n"
        "NNACGT\n"
        ">scaffold_2\n"
        "acgtacgtac\n"
        "gg\n",
    )
    return fasta_path


@pytest.fixture
def log_messages() -> Iterator[list[str]]:
    """Collect WARNING-and-above loguru messages emitted during a test."""
    messages: list[str] = []
    handler_id = logger.add(messages.append, level="WARNING", format="{message}")
    yield messages
    logger.remove(handler_id)


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    logger.remove()
    logger.add(sys.stderr, level="WARNING")
