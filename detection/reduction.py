"""Parallel max-reduction over (score, hypothesis) pairs."""

from dataclasses import dataclass
from typing import Sequence
import numpy as np

from .backend import Buffer, BackendError, ComputeBackend

DEFAULT_GROUP_SIZE = 64


@dataclass
class ReductionResult:
    """Best entry after reduction; payload rows 0 hold its hypothesis."""
    score: int
    lane: int
    passes: int


def round_up_div(a: int, b: int) -> int:
    return -(-a // b)


def expected_passes(count: int, group_size: int = DEFAULT_GROUP_SIZE) -> int:
    """ceil(log_G(N)) computed without floating point."""
    passes = 0
    while count > 1:
        count = round_up_div(count, group_size)
        passes += 1
    return passes


def reduce_max(
    backend: ComputeBackend,
    scores: Buffer,
    payload: Sequence[Buffer],
    count: int,
    group_size: int = DEFAULT_GROUP_SIZE
) -> ReductionResult:
    """
    Collapse the first `count` entries to the single highest-scoring one.

    Each pass keeps the best entry of every group of `group_size`, leaving
    ceil(remaining / group_size) survivors at the front of every buffer.
    Ties are broken in favour of the lowest initial lane id, independent of
    how groups are evaluated.

    Args:
        backend: Backend owning the buffers
        scores: Integer score per hypothesis
        payload: Hypothesis buffers reordered alongside the scores
        count: Number of valid entries
        group_size: Entries reduced per work-group

    Returns:
        ReductionResult; scores[0] and every payload[0] hold the winner
    """
    if count <= 0 or count > len(scores):
        raise BackendError(f"Cannot reduce {count} entries of a buffer of {len(scores)}")
    for buffer in payload:
        if len(buffer) < count:
            raise BackendError(f"Payload buffer '{buffer.name}' is shorter than {count}")

    lanes = backend.create_buffer(f"{scores.name}_lanes", (count,), dtype=np.int64)
    backend.write_buffer(lanes, np.arange(count, dtype=np.int64))

    remaining = count
    passes = 0
    while remaining > 1:
        groups = round_up_div(remaining, group_size)
        backend.dispatch(
            "reduce_max",
            groups * group_size,
            [scores, lanes, remaining, *payload],
            local_size=group_size,
        )
        remaining = groups
        passes += 1
    backend.finish()

    score = backend.read_buffer(scores, rows=1)[0]
    lane = backend.read_buffer(lanes, rows=1)[0]
    return ReductionResult(score=int(score), lane=int(lane), passes=passes)
