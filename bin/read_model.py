# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pysam",
# ]
# ///
"""
Aligned-read model used by the read clipper.

Holds the CIGAR helpers, the immutable AlignedRead record (with conversion
to and from pysam), the canonical empty read, and the two coordinate
services the clipper consumes: reference-to-read index lookup and adaptor
boundary estimation.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from typing import NamedTuple

import pysam
from loguru import logger

# ------------------------------- CONSTANTS -------------------------------- #

# CIGAR op codes
# 0:M, 1:I, 2:D, 3:N, 4:S, 5:H, 6:P, 7:=, 8:X
MATCH = 0
INSERTION = 1
DELETION = 2
SKIPPED = 3
SOFT_CLIP = 4
HARD_CLIP = 5

REF_CONSUME = {0, 2, 3, 7, 8}
QRY_CONSUME = {0, 1, 4, 7, 8}
BOTH_CONSUME = {0, 7, 8}
CLIP_OPS = {SOFT_CLIP, HARD_CLIP}

CIGAR_CHARS = "MIDNSHP=X"

# Largest run length representable in BAM
MAX_RUN_LENGTH = (1 << 28) - 1

# pysam fills absent qualities with 0xff
MISSING_QUALITY = 255


# ---------------------------- CIGAR UTILITIES ------------------------------ #


class CigarOp(NamedTuple):
    """One CIGAR run: (operation code, run length)."""

    op: int
    length: int

    @staticmethod
    def from_tuple(t: tuple[int, int]) -> CigarOp:
        """Convert a raw (op, len) tuple to CigarOp."""
        op, ln = t
        return CigarOp(op, ln)

    @staticmethod
    def to_tuple(run: CigarOp) -> tuple[int, int]:
        """Convert a CigarOp back to a raw (op, len) tuple."""
        return (run.op, run.length)


class Cigar(list[CigarOp]):
    """A list of CigarOp with helpers for conversion and compaction."""

    @classmethod
    def from_pysam(cls, cig_raw: list[tuple[int, int]] | None) -> Cigar:
        """
        Convert pysam's list[(op, len)] to a Cigar. A missing CIGAR becomes
        an empty one.
        """
        if cig_raw is None:
            return cls()
        return cls(CigarOp.from_tuple(t) for t in cig_raw)

    @classmethod
    def parse(cls, text: str) -> Cigar:
        """Parse a SAM CIGAR string such as '5M2I3M'. '*' and '' are empty."""
        if text in ("", "*"):
            return cls()
        runs = re.findall(r"(\d+)([MIDNSHP=X])", text)
        if "".join(f"{n}{c}" for n, c in runs) != text:
            msg = f"Invalid CIGAR string: {text!r}"
            logger.error(msg)
            raise ValueError(msg)
        out = cls()
        for num, char in runs:
            out.push_compact(CIGAR_CHARS.index(char), int(num))
        return out

    def to_pysam(self) -> list[tuple[int, int]]:
        """Convert this Cigar back to list[(op, len)] for pysam."""
        return [CigarOp.to_tuple(run) for run in self]

    def push_compact(self, op: int, ln: int) -> None:
        """
        Append (op, ln), merging with the last run if `op` matches.
        Ignores non-positive lengths.
        """
        # Positive invariant: operation code must be valid CIGAR operation (0-8)
        assert 0 <= op <= 8, (  # noqa: PLR2004
            f"Invalid CIGAR operation code {op}: must be 0-8 (M,I,D,N,S,H,P,=,X)"
        )

        if ln <= 0:
            return
        if self and self[-1].op == op:
            last = self[-1]
            # Negative invariant: merged run must stay representable
            assert last.length + ln <= MAX_RUN_LENGTH, (
                f"CIGAR length overflow: {last.length} + {ln} exceeds maximum safe integer"
            )
            self[-1] = CigarOp(op, last.length + ln)
            return
        self.append(CigarOp(op, ln))

    @property
    def read_length(self) -> int:
        return sum(run.length for run in self if run.op in QRY_CONSUME)

    @property
    def reference_length(self) -> int:
        return sum(run.length for run in self if run.op in REF_CONSUME)

    @property
    def leading_clip_length(self) -> int:
        """Summed H and S run lengths before the first non-clip run."""
        total = 0
        for run in self:
            if run.op not in CLIP_OPS:
                break
            total += run.length
        return total

    @property
    def trailing_clip_length(self) -> int:
        """Summed H and S run lengths after the last non-clip run."""
        total = 0
        for run in reversed(self):
            if run.op not in CLIP_OPS:
                break
            total += run.length
        return total

    def __str__(self) -> str:
        """Inverse of `Cigar.parse`."""
        if not self:
            return "*"
        return "".join(f"{run.length}{CIGAR_CHARS[run.op]}" for run in self)


# ------------------------------- DATA TYPES -------------------------------- #


@dataclass(frozen=True)
class AlignedRead:
    """
    Immutable aligned read.

    `start` is the 1-based position of the first reference-consuming base, or
    None for an unmapped read. `mate_start` follows the same convention.
    Every clipping operation returns a new AlignedRead; no method mutates one.
    """

    name: str = "read"
    bases: str = ""
    qualities: tuple[int, ...] = ()
    cigar: Cigar = field(default_factory=Cigar)
    start: int | None = None
    reference_id: int = -1
    is_reverse: bool = False
    mapping_quality: int = 0
    is_paired: bool = False
    mate_is_unmapped: bool = False
    mate_is_reverse: bool = False
    mate_start: int | None = None
    fragment_length: int = 0

    def __post_init__(self) -> None:
        # Positive invariant: sequence and qualities must have consistent lengths
        assert len(self.qualities) == len(self.bases), (
            f"Sequence/quality length mismatch for '{self.name}': "
            f"seq={len(self.bases)}, qual={len(self.qualities)}"
        )
        if self.cigar:
            # Negative invariant: CIGAR must describe exactly the stored bases
            assert self.cigar.read_length == len(self.bases), (
                f"CIGAR/sequence mismatch for '{self.name}': "
                f"cigar={self.cigar} ({self.cigar.read_length} bases), seq={len(self.bases)}"
            )

    @property
    def length(self) -> int:
        return len(self.bases)

    @property
    def is_empty(self) -> bool:
        return len(self.bases) == 0

    @property
    def is_unmapped(self) -> bool:
        return self.start is None

    @property
    def end(self) -> int | None:
        """1-based inclusive position of the last reference-consuming base."""
        if self.start is None:
            return None
        return self.start + self.cigar.reference_length - 1

    @property
    def unclipped_start(self) -> int | None:
        """Alignment start if every leading soft and hard clip were undone."""
        if self.start is None:
            return None
        return self.start - self.cigar.leading_clip_length

    @property
    def unclipped_end(self) -> int | None:
        """Alignment end if every trailing soft and hard clip were undone."""
        if self.start is None:
            return None
        return self.end + self.cigar.trailing_clip_length

    def replace(self, **changes: object) -> AlignedRead:
        return replace(self, **changes)

    @classmethod
    def from_pysam(cls, aln: pysam.AlignedSegment) -> AlignedRead:
        """Build an AlignedRead from a pysam segment (0-based -> 1-based)."""
        seq: str = aln.query_sequence or ""
        qual = aln.query_qualities
        if qual is None:
            qualities = (MISSING_QUALITY,) * len(seq)
        else:
            qualities = tuple(qual)

        mapped = not aln.is_unmapped and aln.reference_start >= 0
        return cls(
            name=aln.query_name or "",
            bases=seq,
            qualities=qualities,
            cigar=Cigar.from_pysam(aln.cigartuples),
            start=aln.reference_start + 1 if mapped else None,
            reference_id=aln.reference_id,
            is_reverse=aln.is_reverse,
            mapping_quality=aln.mapping_quality,
            is_paired=aln.is_paired,
            mate_is_unmapped=aln.mate_is_unmapped,
            mate_is_reverse=aln.mate_is_reverse,
            mate_start=(
                aln.next_reference_start + 1 if aln.next_reference_start >= 0 else None
            ),
            fragment_length=aln.template_length,
        )

    def to_pysam(
        self,
        header: pysam.AlignmentHeader | None = None,
    ) -> pysam.AlignedSegment:
        """Build a new pysam segment from this read (1-based -> 0-based)."""
        seg = pysam.AlignedSegment(header) if header is not None else pysam.AlignedSegment()
        seg.query_name = self.name
        seg.is_paired = self.is_paired
        seg.is_reverse = self.is_reverse
        seg.mate_is_unmapped = self.mate_is_unmapped
        seg.mate_is_reverse = self.mate_is_reverse
        seg.is_unmapped = self.start is None
        seg.reference_id = self.reference_id
        seg.reference_start = self.start - 1 if self.start is not None else -1
        seg.mapping_quality = self.mapping_quality
        seg.next_reference_start = self.mate_start - 1 if self.mate_start is not None else -1
        seg.template_length = self.fragment_length
        if self.bases:
            # query_sequence must be set before qualities; setting it resets them
            seg.query_sequence = self.bases
            seg.query_qualities = list(self.qualities)
        if self.cigar:
            seg.cigartuples = self.cigar.to_pysam()
        return seg


def empty_read(read: AlignedRead) -> AlignedRead:
    """The canonical fully-clipped read: no bases, no CIGAR, unmapped."""
    return AlignedRead(name=read.name, is_paired=read.is_paired)


# ------------------------ REFERENCE -> READ LOOKUP ------------------------- #


class ReadIndex(NamedTuple):
    """Read index covering a reference coordinate and the CIGAR op found there."""

    index: int
    op: int


def read_index_for_reference_coordinate(
    read: AlignedRead,
    ref_coord: int,
) -> ReadIndex | None:
    """
    Map a 1-based reference coordinate to a 0-based read index.

    Returns None when the coordinate lies outside the read's alignment span.
    When the coordinate falls inside a deletion or skipped region, the index
    of the first base after it is returned together with that op, so callers
    can tell it apart from a coordinate that lands on an aligned base.
    """
    if read.start is None or ref_coord < read.start:
        return None

    read_pos = 0
    ref_pos = read.start
    for run in read.cigar:
        read_next = read_pos + (run.length if run.op in QRY_CONSUME else 0)
        ref_next = ref_pos + (run.length if run.op in REF_CONSUME else 0)
        if ref_pos <= ref_coord < ref_next:
            offset = ref_coord - ref_pos if run.op in QRY_CONSUME else 0
            return ReadIndex(read_pos + offset, run.op)
        read_pos, ref_pos = read_next, ref_next
    return None


# --------------------------- ADAPTOR BOUNDARY ------------------------------ #


def has_well_defined_fragment_size(read: AlignedRead) -> bool:
    """True if read and mate are mapped facing each other with a known insert."""
    if read.fragment_length == 0:
        # mates on different contigs or unmapped pairs
        return False
    if not read.is_paired:
        return False
    if read.start is None or read.mate_is_unmapped or read.mate_start is None:
        return False
    if read.is_reverse == read.mate_is_reverse:
        return False

    if read.is_reverse:
        return read.end > read.mate_start
    return read.start <= read.mate_start + read.fragment_length


def adaptor_boundary(read: AlignedRead) -> int | None:
    """
    First reference position past the end of the sequenced fragment, i.e.
    where adaptor sequence would begin. None if it cannot be computed.

    Reverse reads: the mate's start marks the fragment start, so the adaptor
    ends at mate_start - 1. Forward reads: the adaptor starts at
    start + |fragment_length|.
    """
    if not has_well_defined_fragment_size(read):
        return None
    if read.is_reverse:
        return read.mate_start - 1
    return read.start + abs(read.fragment_length)


def is_inside_read(read: AlignedRead, ref_coord: int) -> bool:
    if read.start is None:
        return False
    return read.start <= ref_coord <= read.end
