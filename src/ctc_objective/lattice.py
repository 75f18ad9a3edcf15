"""
A1 – Label Expansion
=====================
Builds the CTC lattice sequence by inserting a blank before, after and
between every label:

    [a, b, a]  ->  [blank, a, blank, b, blank, a, blank]

For a batch, every sequence is laid out on a common stride of
``2 * max_L + 1`` positions.  Positions past a sequence's own lattice are
filled with ``NO_LABEL`` so the forward-backward engine can tell them
apart from real states.

Usage
-----
    from ctc_objective.lattice import expand_labels, expand_labels_batch
    expanded = expand_labels([3, 1, 3], num_classes=5)
    rows, lengths = expand_labels_batch([[1], [2, 2]], num_classes=5)
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np

from .constants import BLANK_IDX, NO_LABEL


class LabelError(ValueError):
    """A reference label cannot be placed on the output alphabet."""


def _check_label(label: Sequence[int], num_classes: int) -> None:
    for pos, value in enumerate(label):
        value = int(value)
        if value >= num_classes:
            raise LabelError(
                f"label {value} at position {pos} is out of range for "
                f"{num_classes} output classes"
            )
        if value <= BLANK_IDX:
            raise LabelError(
                f"label {value} at position {pos} is not a real label "
                f"(labels must be in [1, {num_classes - 1}])"
            )


def expand_labels(label: Sequence[int], num_classes: int) -> np.ndarray:
    """
    Expand a single label sequence into its CTC lattice sequence.

    Parameters
    ----------
    label : sequence of int
        Reference labels, each in ``[1, num_classes)``.
    num_classes : int
        Size of the output alphabet, blank included.

    Returns
    -------
    np.ndarray of int64, shape [2 * len(label) + 1]
    """
    _check_label(label, num_classes)
    L = len(label)
    expanded = np.full(2 * L + 1, BLANK_IDX, dtype=np.int64)
    if L:
        expanded[1::2] = np.asarray(label, dtype=np.int64)
    return expanded


def expand_labels_batch(
    labels: Sequence[Sequence[int]],
    num_classes: int,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Expand a batch of label sequences on a common stride.

    Returns
    -------
    expanded : np.ndarray of int64, shape [N, 2 * max_L + 1]
        Row ``s`` holds the lattice of sequence ``s`` followed by
        ``NO_LABEL`` fillers.
    lattice_lengths : np.ndarray of int64, shape [N]
        ``2 * len(labels[s]) + 1`` for every sequence.
    """
    num_sequence = len(labels)
    max_len = max((len(label) for label in labels), default=0)
    stride = 2 * max_len + 1

    expanded = np.full((num_sequence, stride), NO_LABEL, dtype=np.int64)
    lattice_lengths = np.zeros(num_sequence, dtype=np.int64)
    for s, label in enumerate(labels):
        row = expand_labels(label, num_classes)
        expanded[s, : len(row)] = row
        lattice_lengths[s] = len(row)
    return expanded, lattice_lengths


def lattice_min_frames(label: Sequence[int]) -> int:
    """
    Minimal number of frames that can emit *label* under CTC.

    Adjacent repeated labels need a blank frame between them.
    """
    label: List[int] = [int(v) for v in label]
    repeats = sum(1 for a, b in zip(label, label[1:]) if a == b)
    return len(label) + repeats
