# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for read clipper testing.

This module provides shared fixtures for testing read_model.py, clipping_op.py
and read_clipper.py: a factory for AlignedRead records, a few representative
reads, and pysam segments for the conversion tests.
"""

import sys
from collections.abc import Callable
from pathlib import Path

import pysam
import pytest

# Add bin directory to Python path so we can import the modules under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

# Now we can import the modules we're testing
from read_model import AlignedRead, Cigar


def make_read(
    cigar: str = "10M",
    start: int | None = 100,
    bases: str | None = None,
    qualities: list[int] | None = None,
    **kwargs,
) -> AlignedRead:
    """
    Build an AlignedRead from a CIGAR string. Bases default to a repeating
    ACGT pattern of the CIGAR's read length, qualities to Q30.
    """
    cig = Cigar.parse(cigar)
    if bases is None:
        bases = ("ACGT" * (cig.read_length // 4 + 1))[: cig.read_length]
    if qualities is None:
        qualities = [30] * len(bases)
    return AlignedRead(
        name=kwargs.pop("name", "test_read"),
        bases=bases,
        qualities=tuple(qualities),
        cigar=cig,
        start=start,
        **kwargs,
    )


@pytest.fixture
def read_factory() -> Callable[..., AlignedRead]:
    """Factory for AlignedRead records keyed by CIGAR string."""
    return make_read


@pytest.fixture
def simple_read() -> AlignedRead:
    """10M at position 100 (covers 100..109)."""
    return make_read("10M", start=100, bases="ACGTACGTAC")


@pytest.fixture
def soft_clipped_read() -> AlignedRead:
    """3S5M2S at position 50: aligned 50..54, unclipped 47..56."""
    return make_read("3S5M2S", start=50, bases="TTTACGTAGG")


@pytest.fixture
def deletion_read() -> AlignedRead:
    """5M2D5M at position 1: bases on 1..5 and 8..12, deletion on 6..7."""
    return make_read("5M2D5M", start=1, bases="AAAAACCCCC")


@pytest.fixture
def insertion_read() -> AlignedRead:
    """3M2I5M at position 20: insertion between reference 22 and 23."""
    return make_read("3M2I5M", start=20, bases="ACGTTACGTA")


@pytest.fixture
def complex_read() -> AlignedRead:
    """2H2S5M1I8M1D6M2S at position 200."""
    return make_read("2H2S5M1I8M1D6M2S", start=200)


@pytest.fixture
def sample_segment() -> pysam.AlignedSegment:
    """A mapped, paired, forward-strand pysam segment (0-based start 99)."""
    seg = pysam.AlignedSegment()
    seg.query_name = "pysam_read"
    seg.query_sequence = "ACGTACGTAC"
    seg.query_qualities = [30, 31, 32, 33, 34, 35, 36, 37, 38, 39]
    seg.cigartuples = [(4, 2), (0, 8)]  # 2S8M
    seg.reference_id = 0
    seg.reference_start = 99
    seg.mapping_quality = 60
    seg.is_paired = True
    seg.mate_is_reverse = True
    seg.next_reference_start = 149
    seg.template_length = 60
    return seg


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
