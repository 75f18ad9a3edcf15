"""
A5 – Greedy Best-Path Scoring
==============================
Frame-level arg-max decoding followed by repeat collapse and blank
removal, then Levenshtein scoring against the reference labels.

    argmax per frame  ->  [1, 1, 0, 2, 2, 0]
    collapse repeats  ->  [1, 0, 2, 0]
    remove blanks     ->  [1, 2]

Usage
-----
    from ctc_objective.scoring import best_path, error_rate
    hyp = best_path(net_out)
    rate, edits = error_rate(reference, hyp)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
from edit_distance import SequenceMatcher

from .constants import BLANK_IDX


# ======================================================================
# Greedy decoding
# ======================================================================


def greedy_decode(net_out: np.ndarray) -> np.ndarray:
    """Index of the most probable class in every row."""
    return np.argmax(net_out, axis=1)


def collapse_repeats(seq: Sequence[int]) -> List[int]:
    """Merge runs of identical consecutive labels into one."""
    out: List[int] = []
    for v in seq:
        v = int(v)
        if not out or out[-1] != v:
            out.append(v)
    return out


def remove_blanks(seq: Sequence[int], blank: int = BLANK_IDX) -> List[int]:
    return [int(v) for v in seq if int(v) != blank]


def best_path(net_out: np.ndarray, blank: int = BLANK_IDX) -> List[int]:
    """Greedy CTC hypothesis of a single sequence."""
    return remove_blanks(collapse_repeats(greedy_decode(net_out)), blank)


def best_path_batch(
    net_out: np.ndarray,
    frame_counts: Sequence[int],
    blank: int = BLANK_IDX,
) -> List[List[int]]:
    """
    Greedy CTC hypotheses of a packed batch.

    Frame ``f`` of sequence ``s`` sits at row ``f * N + s``; only the
    first ``frame_counts[s]`` frames of each sequence are decoded.
    """
    N = len(frame_counts)
    maxid = greedy_decode(net_out)
    hyps = []
    for s in range(N):
        raw = maxid[s : int(frame_counts[s]) * N : N]
        hyps.append(remove_blanks(collapse_repeats(raw), blank))
    return hyps


# ======================================================================
# Edit distance
# ======================================================================


@dataclass
class EditOps:
    """Breakdown of a Levenshtein alignment of hypothesis to reference."""

    insertions: int = 0
    deletions: int = 0
    substitutions: int = 0

    @property
    def total(self) -> int:
        return self.insertions + self.deletions + self.substitutions


def edit_distance(ref: Sequence[int], hyp: Sequence[int]) -> int:
    """Levenshtein edit distance between two sequences."""
    ref, hyp = list(ref), list(hyp)
    if not ref or not hyp:
        return max(len(ref), len(hyp))
    matcher = SequenceMatcher(a=ref, b=hyp)
    return matcher.distance()


def edit_ops(ref: Sequence[int], hyp: Sequence[int]) -> EditOps:
    """Insertions, deletions and substitutions turning *ref* into *hyp*."""
    ref, hyp = list(ref), list(hyp)
    if not ref:
        return EditOps(insertions=len(hyp))
    if not hyp:
        return EditOps(deletions=len(ref))
    ops = EditOps()
    for tag, i1, i2, j1, j2 in SequenceMatcher(a=ref, b=hyp).get_opcodes():
        if tag == "insert":
            ops.insertions += j2 - j1
        elif tag == "delete":
            ops.deletions += i2 - i1
        elif tag == "replace":
            ops.substitutions += i2 - i1
    return ops


def error_rate(ref: Sequence[int], hyp: Sequence[int]) -> Tuple[float, int]:
    """
    Token error rate in percent.

    Returns
    -------
    rate : float
        ``100 * edits / len(ref)``; 0 for an empty reference matched
        exactly, ``inf`` for an empty reference with insertions.
    edits : int
    """
    edits = edit_distance(ref, hyp)
    if len(ref) == 0:
        return (0.0 if edits == 0 else float("inf")), edits
    return 100.0 * edits / len(ref), edits
