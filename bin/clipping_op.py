# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic",
#     "pysam",
# ]
# ///
"""
A single clipping operation: one contiguous range of read indices rendered
under one clipping representation.

Hard clipping keeps the read's unclipped footprint recoverable from its CIGAR:
every reference-consuming base removed (M, =, X, S, D, N but not I) is
counted into the H run at the clipped end.
"""

from __future__ import annotations

from enum import Enum, auto
from typing import NoReturn

from loguru import logger
from pydantic import Field, ValidationInfo, field_validator
from pydantic.dataclasses import dataclass

from read_model import (
    HARD_CLIP,
    INSERTION,
    MATCH,
    QRY_CONSUME,
    REF_CONSUME,
    SOFT_CLIP,
    AlignedRead,
    Cigar,
    empty_read,
)


class ReadClipperError(ValueError):
    """A clip was requested that no read could satisfy (caller logic error)."""


class ClippingRepresentation(Enum):
    """How the bases inside a clip range are rendered."""

    WRITE_NS = auto()  # Bases become N, nothing else changes
    WRITE_Q0S = auto()  # Qualities become 0, nothing else changes
    WRITE_NS_AND_Q0S = auto()  # Both of the above
    SOFTCLIP_BASES = auto()  # Mark as S in the CIGAR, keep bases
    HARDCLIP_BASES = auto()  # Remove bases, record them as H in the CIGAR
    REVERT_SOFTCLIPPED_BASES = auto()  # Turn every S back into M


@dataclass(frozen=True)
class ClipRange:
    """Inclusive 0-based read-index range to clip."""

    start: int = Field(ge=0)
    stop: int = Field(ge=0)

    @field_validator("stop")
    @classmethod
    def stop_not_before_start(cls, v: int, info: ValidationInfo) -> int:
        if info.data and "start" in info.data and v < info.data["start"]:
            msg = "stop must not be before start"
            raise ValueError(msg)
        return v

    @property
    def length(self) -> int:
        return self.stop - self.start + 1


def _fail(msg: str) -> NoReturn:
    logger.error(msg)
    raise ReadClipperError(msg)


# ----------------------------- CIGAR REWRITES ------------------------------ #


def _hard_clip_cigar_left(cig: Cigar, n_bases: int) -> tuple[Cigar, int]:
    """
    Hard clip the first `n_bases` read bases from the LEFT edge of `cig`.

    Returns
    -------
    new_cigar : Cigar
        The CIGAR with a single leading H run (already compacted).
    ref_advance : int
        Reference bases removed from {M,=,X,D,N}. Add this to `start`.
    """
    # Positive invariant: clip amount must be non-negative
    assert n_bases >= 0, f"Left clip amount must be non-negative, got {n_bases}"

    hard = 0
    ref_advance = 0
    remaining = n_bases
    rest = Cigar()
    '''
    per-op handling while bases remain to be clipped:

    M/=/X: H += take, advance += take, reduce
    S:     H += take, reduce
    I:     reduce (insertions leave no H)
    D/N:   H += len, advance += len
    H:     H += len (existing clip merges)
    P:     dropped
    '''
    i = 0
    while i < len(cig) and remaining > 0:
        run = cig[i]
        i += 1
        if run.op == HARD_CLIP:
            hard += run.length
            continue
        if run.op not in QRY_CONSUME:
            if run.op in REF_CONSUME:
                hard += run.length
                ref_advance += run.length
            continue

        take = min(run.length, remaining)
        remaining -= take
        if run.op in REF_CONSUME:
            ref_advance += take
        if run.op != INSERTION:
            hard += take
        if take < run.length:
            rest.push_compact(run.op, run.length - take)

    for j in range(i, len(cig)):
        rest.push_compact(cig[j].op, cig[j].length)

    # Deletions left dangling at the new edge fold into the clip
    while rest and rest[0].op not in QRY_CONSUME and rest[0].op != HARD_CLIP:
        dangling = rest.pop(0)
        if dangling.op in REF_CONSUME:
            hard += dangling.length
            ref_advance += dangling.length

    out = Cigar()
    out.push_compact(HARD_CLIP, hard)
    for run in rest:
        out.push_compact(run.op, run.length)

    # Negative invariant: reference advance cannot exceed what the CIGAR spans
    assert ref_advance <= cig.reference_length, (
        f"Reference advance {ref_advance} exceeds CIGAR reference span {cig.reference_length}"
    )
    return out, ref_advance


def _hard_clip_cigar_right(cig: Cigar, n_bases: int) -> Cigar:
    """
    Hard clip the last `n_bases` read bases from the RIGHT edge of `cig`.
    Start is unaffected by definition.
    """
    # Positive invariant: clip amount must be non-negative
    assert n_bases >= 0, f"Right clip amount must be non-negative, got {n_bases}"

    # Clipping the right edge is clipping the left edge of the reversed CIGAR
    reversed_cig = Cigar(reversed(cig))
    out_rev, _ = _hard_clip_cigar_left(reversed_cig, n_bases)
    return Cigar(reversed(out_rev))


def _soft_clip_cigar(cig: Cigar, keep_start: int, keep_end: int) -> tuple[Cigar, int]:
    """
    Soft clip every read base outside [keep_start, keep_end).

    D/N/P runs are kept only strictly inside the retained span. Returns the
    new CIGAR and the number of reference bases the alignment start moves by.
    """
    # Positive invariant: the retained span must be non-empty
    assert 0 <= keep_start < keep_end, (
        f"Soft clip must keep at least one base: keep=[{keep_start}, {keep_end})"
    )

    out = Cigar()
    ref_advance = 0
    pos = 0
    for run in cig:
        if run.op == HARD_CLIP:
            out.push_compact(run.op, run.length)
            continue
        if run.op not in QRY_CONSUME:
            if keep_start < pos < keep_end:
                out.push_compact(run.op, run.length)
            elif pos <= keep_start and run.op in REF_CONSUME:
                ref_advance += run.length
            continue

        end = pos + run.length
        left = min(max(keep_start - pos, 0), run.length)
        right = min(max(end - keep_end, 0), run.length - left)
        out.push_compact(SOFT_CLIP, left)
        out.push_compact(run.op, run.length - left - right)
        out.push_compact(SOFT_CLIP, right)
        if run.op in REF_CONSUME:
            ref_advance += left
        pos = end

    return out, ref_advance


# --------------------------- REPRESENTATIONS ------------------------------- #


def _write_ns(read: AlignedRead, clip: ClipRange) -> str:
    return read.bases[: clip.start] + "N" * clip.length + read.bases[clip.stop + 1 :]


def _write_q0s(read: AlignedRead, clip: ClipRange) -> tuple[int, ...]:
    quals = read.qualities
    return quals[: clip.start] + (0,) * clip.length + quals[clip.stop + 1 :]


def _soft_clip(read: AlignedRead, clip: ClipRange) -> AlignedRead:
    if read.is_unmapped:
        _fail(f"Cannot soft clip unmapped read '{read.name}'")

    stop = clip.stop
    if clip.length == read.length:
        # A read cannot be soft clipped away entirely; keep its last base
        stop -= 1

    if clip.start > 0 and stop != read.length - 1:
        _fail(
            f"Cannot soft clip the middle of read '{read.name}': "
            f"{clip.start}-{stop}, cigar: {read.cigar}"
        )

    if clip.start == 0:
        keep_start, keep_end = stop + 1, read.length
    else:
        keep_start, keep_end = 0, clip.start

    cig, ref_advance = _soft_clip_cigar(read.cigar, keep_start, keep_end)
    logger.debug(
        f"Soft clip '{read.name}': {read.cigar} -> {cig}, start {read.start} -> {read.start + ref_advance}"
    )
    return read.replace(cigar=cig, start=read.start + ref_advance)


def _hard_clip(read: AlignedRead, clip: ClipRange) -> AlignedRead:
    if clip.start > 0 and clip.stop != read.length - 1:
        _fail(
            f"Cannot hard clip the middle of read '{read.name}': "
            f"{clip.start}-{clip.stop}, cigar: {read.cigar}"
        )

    new_len = read.length - clip.length
    if new_len <= 0:
        return empty_read(read)

    clip_left = clip.start == 0
    if clip_left:
        new_seq = read.bases[clip.stop + 1 :]
        new_qual = read.qualities[clip.stop + 1 :]
    else:
        new_seq = read.bases[: clip.start]
        new_qual = read.qualities[: clip.start]

    # Positive invariant: the kept slice has the predicted length
    assert len(new_seq) == new_len, (
        f"Hard clip slicing error for '{read.name}': expected {new_len}, got {len(new_seq)}"
    )

    if not read.cigar:
        logger.debug(f"Hard clipped sequence/qualities only (no CIGAR) for '{read.name}'.")
        return read.replace(bases=new_seq, qualities=new_qual)

    new_start = read.start
    if clip_left:
        cig, ref_advance = _hard_clip_cigar_left(read.cigar, clip.length)
        if read.start is not None:
            new_start = read.start + ref_advance
    else:
        cig = _hard_clip_cigar_right(read.cigar, clip.length)

    logger.debug(
        f"Hard clip '{read.name}': {read.cigar} -> {cig}, start {read.start} -> {new_start}"
    )
    return read.replace(bases=new_seq, qualities=new_qual, cigar=cig, start=new_start)


def _revert_soft_clips(read: AlignedRead) -> AlignedRead:
    cig = Cigar()
    for run in read.cigar:
        cig.push_compact(MATCH if run.op == SOFT_CLIP else run.op, run.length)

    leading_soft = 0
    for run in read.cigar:
        if run.op == HARD_CLIP:
            continue
        if run.op != SOFT_CLIP:
            break
        leading_soft += run.length

    if read.start is None:
        return read.replace(cigar=cig)

    new_start = read.start - leading_soft
    unclipped = read.replace(cigar=cig, start=new_start)
    if new_start >= 1:
        return unclipped

    # Bases now hanging off the contig start cannot be represented; remove them
    logger.debug(
        f"Reverted soft clip of '{read.name}' starts at {new_start}; "
        f"hard clipping {1 - new_start} bases before the contig start"
    )
    return _hard_clip(unclipped, ClipRange(0, -new_start))


def apply_clip(
    clip: ClipRange,
    representation: ClippingRepresentation,
    read: AlignedRead,
) -> AlignedRead:
    """
    Render `clip` onto `read` under `representation`, returning a new read.

    `clip` must already fit inside the read. Soft and hard clips must touch
    one edge of the read; soft clips need a mapped read.
    """
    # Positive invariant: the range fits the current read
    assert clip.stop < read.length, (
        f"Clip {clip.start}-{clip.stop} exceeds read '{read.name}' of length {read.length}"
    )

    match representation:
        case ClippingRepresentation.WRITE_NS:
            return read.replace(bases=_write_ns(read, clip))
        case ClippingRepresentation.WRITE_Q0S:
            return read.replace(qualities=_write_q0s(read, clip))
        case ClippingRepresentation.WRITE_NS_AND_Q0S:
            return read.replace(bases=_write_ns(read, clip), qualities=_write_q0s(read, clip))
        case ClippingRepresentation.SOFTCLIP_BASES:
            return _soft_clip(read, clip)
        case ClippingRepresentation.HARDCLIP_BASES:
            return _hard_clip(read, clip)
        case ClippingRepresentation.REVERT_SOFTCLIPPED_BASES:
            return _revert_soft_clips(read)
        case _:
            msg = f"Unexpected clipping representation: {representation!r}"
            logger.error(msg)
            raise ValueError(msg)
