# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
Clipping tool for aligned reads.

General contract:
  - Every clipping operation returns a new read; the input is never modified.
  - A fully clipped read comes back as the canonical empty read, never None.
  - Hard clipping records every removed reference base (M, S, D, not I) as H,
    so unclipped_start / unclipped_end still describe the original alignment.

Use the module-level functions for the common clipping modes. Build a
ReadClipper directly to stack several ranges on one read; ranges are applied
in the order added, so queue right-tail ranges before left-tail ones.
"""

from __future__ import annotations

import sys
from typing import NamedTuple

from loguru import logger

from clipping_op import (
    ClippingRepresentation,
    ClipRange,
    ReadClipperError,
    apply_clip,
)
from read_model import (
    HARD_CLIP,
    QRY_CONSUME,
    SOFT_CLIP,
    AlignedRead,
    adaptor_boundary,
    empty_read,
    is_inside_read,
    read_index_for_reference_coordinate,
)

# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ------------------------------- DATA TYPES -------------------------------- #


class LeftTailTo(NamedTuple):
    """Clip from the first base up to (and including) reference position `ref_stop`."""

    ref_stop: int


class RightTailFrom(NamedTuple):
    """Clip from reference position `ref_start` (inclusive) to the last base."""

    ref_start: int


Tail = LeftTailTo | RightTailFrom


# ------------------------------ ORCHESTRATOR ------------------------------- #


class ReadClipper:
    """
    Collects clip ranges for one read and applies them in a single pass.

    A ReadClipper belongs to exactly one read and one call path. Ranges are
    clamped against the read length at the moment they are applied, because
    earlier (hard) clips shorten the read seen by later ones.
    """

    def __init__(self, read: AlignedRead) -> None:
        self.read = read
        self.was_clipped = False
        self._ranges: list[ClipRange] = []

    @property
    def ranges(self) -> tuple[ClipRange, ...]:
        return tuple(self._ranges)

    def add_range(self, clip: ClipRange) -> None:
        self._ranges.append(clip)

    def clip_read(self, representation: ClippingRepresentation) -> AlignedRead:
        """
        Apply every queued range under `representation`.

        Returns the original read when nothing is queued, and the canonical
        empty read when the clips consumed all of it.
        """
        if not self._ranges:
            return self.read

        clipped = self.read
        for clip in self._ranges:
            read_length = clipped.length
            if clip.start >= read_length:
                logger.debug(
                    f"Skipping clip {clip.start}-{clip.stop} for '{clipped.name}': "
                    f"read is now {read_length} bases long"
                )
                continue
            if clip.stop >= read_length:
                clip = ClipRange(clip.start, read_length - 1)
            clipped = apply_clip(clip, representation, clipped)

        self.was_clipped = True
        self._ranges.clear()
        if clipped.is_empty:
            return empty_read(clipped)
        return clipped

    def clip_by_reference_coordinates(
        self,
        tail: Tail,
        representation: ClippingRepresentation,
    ) -> AlignedRead:
        """
        Clip one tail of the read, bounded by a reference coordinate.

        A reference position inside a deletion clips up to the last base
        before the deletion on the left tail, and from the first base after it
        on the right tail; the deletion itself is never over-clipped. A
        coordinate outside the alignment leaves the read unchanged.
        """
        read = self.read
        if read.is_empty:
            return read
        if representation is ClippingRepresentation.SOFTCLIP_BASES and read.is_unmapped:
            msg = f"Cannot soft clip read '{read.name}' by reference coordinates because it is unmapped"
            logger.error(msg)
            raise ReadClipperError(msg)

        match tail:
            case LeftTailTo(ref_stop):
                found = read_index_for_reference_coordinate(read, ref_stop)
                if found is None:
                    return read
                start = 0
                stop = found.index - (0 if found.op in QRY_CONSUME else 1)
            case RightTailFrom(ref_start):
                found = read_index_for_reference_coordinate(read, ref_start)
                if found is None:
                    return read
                start = found.index
                stop = read.length - 1
            case _:
                msg = f"Unknown clipping tail: {tail!r}"
                logger.error(msg)
                raise ReadClipperError(msg)

        if start < 0 or stop > read.length - 1:
            msg = f"Trying to clip before the start or after the end of read '{read.name}'"
            logger.error(msg)
            raise ReadClipperError(msg)
        if start > stop:
            msg = (
                f"START ({start}) > ({stop}) STOP -- this should never happen, "
                f"please check read '{read.name}' (CIGAR: {read.cigar})"
            )
            logger.error(msg)
            raise ReadClipperError(msg)
        if start > 0 and stop < read.length - 1:
            msg = (
                f"Trying to clip the middle of read '{read.name}': "
                f"start {start}, stop {stop}, cigar: {read.cigar}"
            )
            logger.error(msg)
            raise ReadClipperError(msg)

        self.add_range(ClipRange(start, stop))
        return self.clip_read(representation)


# ----------------------------- PRIMITIVE CLIPS ----------------------------- #


def clip_by_reference_coordinates(
    read: AlignedRead,
    tail: Tail,
    representation: ClippingRepresentation,
) -> AlignedRead:
    return ReadClipper(read).clip_by_reference_coordinates(tail, representation)


def clip_by_read_coordinates(
    read: AlignedRead,
    start: int,
    stop: int,
    representation: ClippingRepresentation = ClippingRepresentation.SOFTCLIP_BASES,
) -> AlignedRead:
    """Clip read indices start..stop (inclusive) under `representation`."""
    if read.is_empty:
        return empty_read(read)
    if start == 0 and stop == read.length - 1:
        logger.warning(f"Attempting to clip the entirety of read '{read.name}' by read coordinates")
        return empty_read(read)

    clipper = ReadClipper(read)
    clipper.add_range(ClipRange(start, stop))
    return clipper.clip_read(representation)


def hard_clip_by_reference_coordinates_left_tail(read: AlignedRead, ref_stop: int) -> AlignedRead:
    """Hard clip the left tail up to (and including) reference position `ref_stop`."""
    return clip_by_reference_coordinates(
        read, LeftTailTo(ref_stop), ClippingRepresentation.HARDCLIP_BASES
    )


def hard_clip_by_reference_coordinates_right_tail(read: AlignedRead, ref_start: int) -> AlignedRead:
    """Hard clip the right tail from (and including) reference position `ref_start`."""
    return clip_by_reference_coordinates(
        read, RightTailFrom(ref_start), ClippingRepresentation.HARDCLIP_BASES
    )


# ------------------------------- STRATEGIES -------------------------------- #


def _clip_both_ends_by_reference_coordinates(
    read: AlignedRead,
    left: int,
    right: int,
    representation: ClippingRepresentation,
) -> AlignedRead:
    # The right tail goes first: clipping it never moves left-tail indices
    left_tail_read = clip_by_reference_coordinates(read, RightTailFrom(right), representation)

    # Clipping the right tail can drop deletions next to the cut, which may
    # leave `left` beyond the new end; then nothing of the read survives
    if left_tail_read.is_empty or left > left_tail_read.end:
        return empty_read(read)

    return clip_by_reference_coordinates(left_tail_read, LeftTailTo(left), representation)


def hard_clip_both_ends_by_reference_coordinates(
    read: AlignedRead,
    left: int,
    right: int,
) -> AlignedRead:
    """
    Hard clip both tails of a read.

    The left tail runs from the first base to reference position `left`
    (inclusive); the right tail from `right` (inclusive) to the last base.
    """
    if read.is_empty or left == right:
        return empty_read(read)
    return _clip_both_ends_by_reference_coordinates(
        read, left, right, ClippingRepresentation.HARDCLIP_BASES
    )


def soft_clip_both_ends_by_reference_coordinates(
    read: AlignedRead,
    left: int,
    right: int,
) -> AlignedRead:
    """Soft clip counterpart of hard_clip_both_ends_by_reference_coordinates."""
    if read.is_empty:
        return empty_read(read)
    if left == right:
        logger.warning(
            f"Attempting to clip the entirety of read '{read.name}' by reference coordinates"
        )
        return empty_read(read)
    return _clip_both_ends_by_reference_coordinates(
        read, left, right, ClippingRepresentation.SOFTCLIP_BASES
    )


def clip_low_qual_ends(
    read: AlignedRead,
    low_qual: int,
    representation: ClippingRepresentation,
) -> AlignedRead:
    """
    Clip the contiguous tails whose base qualities are all <= `low_qual`.

    A tail ends at the first base with quality above `low_qual`. If no such
    base exists the whole read goes and the canonical empty read is returned.
    """
    if read.is_empty:
        return read

    read_length = read.length
    left_clip_index = 0
    right_clip_index = read_length - 1

    while right_clip_index >= 0 and read.qualities[right_clip_index] <= low_qual:
        right_clip_index -= 1
    while left_clip_index < read_length and read.qualities[left_clip_index] <= low_qual:
        left_clip_index += 1

    if left_clip_index > right_clip_index:
        logger.debug(f"Every base of '{read.name}' is at or below Q{low_qual}; clipping it all")
        return empty_read(read)

    clipper = ReadClipper(read)
    if right_clip_index < read_length - 1:
        clipper.add_range(ClipRange(right_clip_index + 1, read_length - 1))
    if left_clip_index > 0:
        clipper.add_range(ClipRange(0, left_clip_index - 1))
    return clipper.clip_read(representation)


def hard_clip_low_qual_ends(read: AlignedRead, low_qual: int) -> AlignedRead:
    return clip_low_qual_ends(read, low_qual, ClippingRepresentation.HARDCLIP_BASES)


def soft_clip_low_qual_ends(read: AlignedRead, low_qual: int) -> AlignedRead:
    return clip_low_qual_ends(read, low_qual, ClippingRepresentation.SOFTCLIP_BASES)


def hard_clip_soft_clipped_bases(read: AlignedRead, extra_bases: int = 0) -> AlignedRead:
    """
    Hard clip every soft clipped base of the read.

    `extra_bases` widens each cut by that many bases into the aligned part,
    for callers that distrust the bases next to a soft clip.
    """
    if read.is_empty:
        return read

    read_index = 0
    cut_left = -1  # last position to hard clip on the left (inclusive)
    cut_right = -1  # first position to hard clip on the right (inclusive)
    right_tail = False  # set once the first aligned run has been passed

    for run in read.cigar:
        if run.op == SOFT_CLIP:
            if right_tail:
                cut_right = read_index
            else:
                cut_left = read_index + run.length - 1
        elif run.op != HARD_CLIP:
            right_tail = True

        if run.op in QRY_CONSUME:
            read_index += run.length

    clipper = ReadClipper(read)
    # Cut the right end first, otherwise the read coordinates change
    if cut_right >= 0:
        clipper.add_range(ClipRange(max(cut_right - extra_bases, 0), read.length - 1))
    if cut_left >= 0:
        clipper.add_range(ClipRange(0, cut_left + extra_bases))
    return clipper.clip_read(ClippingRepresentation.HARDCLIP_BASES)


def hard_clip_to_region(read: AlignedRead, ref_start: int, ref_stop: int) -> AlignedRead:
    """
    Hard clip the read to the region ref_start..ref_stop (inclusive).

    A read that does not overlap the region comes back as the canonical empty
    read; a read inside it comes back unchanged.
    """
    alignment_start = read.start
    alignment_stop = read.end
    if alignment_start is None or not (
        alignment_start <= ref_stop and alignment_stop >= ref_start
    ):
        return empty_read(read)

    if alignment_start < ref_start and alignment_stop > ref_stop:
        return hard_clip_both_ends_by_reference_coordinates(read, ref_start - 1, ref_stop + 1)
    if alignment_start < ref_start:
        return hard_clip_by_reference_coordinates_left_tail(read, ref_start - 1)
    if alignment_stop > ref_stop:
        return hard_clip_by_reference_coordinates_right_tail(read, ref_stop + 1)
    return read


def soft_clip_to_region_including_clipped_bases(
    read: AlignedRead,
    ref_start: int,
    ref_stop: int,
) -> AlignedRead:
    """
    Soft clip the read to the region ref_start..ref_stop (inclusive), judging
    overlap by the unclipped span so already-clipped bases are considered.
    """
    start = read.unclipped_start
    stop = read.unclipped_end
    if start is None or not (start <= ref_stop and stop >= ref_start):
        logger.warning(f"Attempting to clip the entirety of read '{read.name}' by region")
        return empty_read(read)

    if start < ref_start and stop > ref_stop:
        return soft_clip_both_ends_by_reference_coordinates(read, ref_start - 1, ref_stop + 1)
    if start < ref_start:
        return clip_by_reference_coordinates(
            read, LeftTailTo(ref_start - 1), ClippingRepresentation.SOFTCLIP_BASES
        )
    if stop > ref_stop:
        return clip_by_reference_coordinates(
            read, RightTailFrom(ref_stop + 1), ClippingRepresentation.SOFTCLIP_BASES
        )
    return read


def hard_clip_adaptor_sequence(read: AlignedRead) -> AlignedRead:
    """
    Hard clip adaptor sequence read past the end of a short fragment.

    Reverse-strand reads lose their left tail, forward-strand reads their
    right tail. Reads without a computable boundary are returned unchanged.
    """
    boundary = adaptor_boundary(read)
    if boundary is None or not is_inside_read(read, boundary):
        return read

    logger.debug(f"Adaptor boundary for '{read.name}' at {boundary}")
    if read.is_reverse:
        return hard_clip_by_reference_coordinates_left_tail(read, boundary)
    return hard_clip_by_reference_coordinates_right_tail(read, boundary)


def revert_soft_clipped_bases(read: AlignedRead) -> AlignedRead:
    """
    Turn every soft clipped base into an aligned match.

    The start moves back by the leading soft clip. Bases that would then
    fall before the contig start are hard clipped away.
    """
    if read.is_empty:
        return read

    clipper = ReadClipper(read)
    # The range only triggers the pass; reverting rewrites the whole CIGAR
    clipper.add_range(ClipRange(0, 0))
    return clipper.clip_read(ClippingRepresentation.REVERT_SOFTCLIPPED_BASES)
