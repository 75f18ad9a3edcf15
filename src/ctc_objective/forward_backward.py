"""
A2 – CTC Forward-Backward Engine
=================================
Log-domain alpha (forward) and beta (backward) recursions over the
expanded label lattice, for a single sequence or for a packed batch.

Conventions
-----------
* ``alpha[t, s]`` includes the emission of state ``s`` at frame ``t``.
* ``beta[t, s]`` covers frames ``t+1 .. T-1`` only and is seeded with
  ``log 1`` at the two final states, so ``alpha + beta - log P(z|x)`` is
  the log posterior occupancy of state ``s`` at frame ``t``.
* Unreachable cells hold ``LOG_ZERO``, never ``-inf``.
* Batched tables use the interleaved row layout ``t * N + s`` (frame
  ``t`` of sequence ``s``).  Frames past a sequence's own frame count
  stay at ``LOG_ZERO`` in both tables.

The outer time loops are sequential; every lattice position (and every
sequence of a batch) inside one time step is updated with a single
vectorized numpy expression.

The optional ``out`` buffers are overwritten in place and returned, so a
caller can reuse scratch tables across calls.  A buffer must not be
shared by two calls running at the same time.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from .constants import LOG_ZERO, NO_LABEL


# ======================================================================
# Log-domain helpers
# ======================================================================


def log_add(a: float, b: float) -> float:
    """Numerically stable log(exp(a) + exp(b))."""
    if a <= LOG_ZERO:
        return b
    if b <= LOG_ZERO:
        return a
    if a > b:
        return a + math.log1p(math.exp(b - a))
    return b + math.log1p(math.exp(a - b))


def log_add_arrays(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Elementwise :func:`log_add`."""
    hi = np.maximum(a, b)
    lo = np.minimum(a, b)
    with np.errstate(under="ignore"):
        summed = hi + np.log1p(np.exp(lo - hi))
    return np.where(lo <= LOG_ZERO, hi, summed)


def safe_log(x: np.ndarray) -> np.ndarray:
    """Elementwise log with non-positive entries mapped to LOG_ZERO."""
    x = np.asarray(x, dtype=np.float64)
    out = np.full(x.shape, LOG_ZERO, dtype=np.float64)
    np.log(x, out=out, where=x > 0)
    return np.maximum(out, LOG_ZERO)


def _scratch(out: Optional[np.ndarray], shape) -> np.ndarray:
    if out is None:
        return np.empty(shape, dtype=np.float64)
    if out.shape != tuple(shape):
        raise ValueError(f"scratch buffer has shape {out.shape}, expected {tuple(shape)}")
    return out


def skip_mask(expanded: np.ndarray) -> np.ndarray:
    """
    Lattice positions that may be entered from two positions back.

    The skip is allowed only onto a real label (odd position) that
    differs from the label two positions back, so repeated labels stay
    separated by a blank.  Works for a single row ``[S]`` or a batch
    ``[N, S]``.
    """
    expanded = np.asarray(expanded)
    mask = np.zeros(expanded.shape, dtype=bool)
    S = expanded.shape[-1]
    if S < 3:
        return mask
    cur = expanded[..., 2:]
    mask[..., 2:] = (cur != expanded[..., :-2]) & (cur != NO_LABEL)
    mask[..., 0::2] = False
    return mask


# ======================================================================
# Single sequence
# ======================================================================


def _alpha_step(prev: np.ndarray, skip: np.ndarray) -> np.ndarray:
    acc = prev.copy()
    acc[..., 1:] = log_add_arrays(acc[..., 1:], prev[..., :-1])
    if prev.shape[-1] > 2:
        acc[..., 2:] = np.where(
            skip[..., 2:], log_add_arrays(acc[..., 2:], prev[..., :-2]), acc[..., 2:]
        )
    return acc


def _beta_step(nxt: np.ndarray, skip: np.ndarray) -> np.ndarray:
    acc = nxt.copy()
    acc[..., :-1] = log_add_arrays(acc[..., :-1], nxt[..., 1:])
    if nxt.shape[-1] > 2:
        acc[..., :-2] = np.where(
            skip[..., 2:], log_add_arrays(acc[..., :-2], nxt[..., 2:]), acc[..., :-2]
        )
    return acc


def ctc_alpha(
    log_out: np.ndarray,
    expanded: np.ndarray,
    out: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Forward recursion for one sequence.

    Parameters
    ----------
    log_out : np.ndarray, shape [T, C]
        Log of the network output.
    expanded : np.ndarray, shape [S]
        Expanded label sequence (see :mod:`ctc_objective.lattice`).
    out : np.ndarray or None
        Optional [T, S] scratch buffer.

    Returns
    -------
    alpha : np.ndarray, shape [T, S]
    """
    T = log_out.shape[0]
    S = len(expanded)
    alpha = _scratch(out, (T, S))
    alpha.fill(LOG_ZERO)
    if T == 0:
        return alpha

    emit = log_out[:, expanded]
    skip = skip_mask(expanded)

    alpha[0, 0] = emit[0, 0]
    if S > 1:
        alpha[0, 1] = emit[0, 1]
    for t in range(1, T):
        alpha[t] = np.maximum(_alpha_step(alpha[t - 1], skip) + emit[t], LOG_ZERO)
    return alpha


def ctc_beta(
    log_out: np.ndarray,
    expanded: np.ndarray,
    out: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Backward recursion for one sequence; mirror of :func:`ctc_alpha`.

    Returns
    -------
    beta : np.ndarray, shape [T, S]
    """
    T = log_out.shape[0]
    S = len(expanded)
    beta = _scratch(out, (T, S))
    beta.fill(LOG_ZERO)
    if T == 0:
        return beta

    emit = log_out[:, expanded]
    skip = skip_mask(expanded)

    beta[T - 1, S - 1] = 0.0
    if S > 1:
        beta[T - 1, S - 2] = 0.0
    for t in range(T - 2, -1, -1):
        beta[t] = np.maximum(_beta_step(beta[t + 1] + emit[t + 1], skip), LOG_ZERO)
    return beta


def sequence_log_likelihood(alpha_row: np.ndarray, lattice_length: int) -> float:
    """
    log P(z|x) from the last valid alpha row of a sequence.

    Sums the final blank and the final label state; with an empty label
    only the single blank state exists.
    """
    end = float(alpha_row[lattice_length - 1])
    if lattice_length < 2:
        return end
    return log_add(end, float(alpha_row[lattice_length - 2]))


# ======================================================================
# Batched (interleaved) sequences
# ======================================================================


def _check_frame_counts(frame_counts: np.ndarray, frames_per_sequence: int) -> None:
    if np.any(frame_counts < 1) or np.any(frame_counts > frames_per_sequence):
        raise ValueError(
            f"frame counts {frame_counts.tolist()} must lie in "
            f"[1, {frames_per_sequence}]"
        )


def _batch_emissions(log_out_rows: np.ndarray, expanded: np.ndarray) -> np.ndarray:
    """Gather [N, S] emission log-probs for one frame of every sequence."""
    valid = expanded != NO_LABEL
    idx = np.where(valid, expanded, 0)
    emit = np.take_along_axis(log_out_rows, idx, axis=1)
    return np.where(valid, emit, LOG_ZERO)


def ctc_alpha_batch(
    log_out: np.ndarray,
    expanded: np.ndarray,
    frame_counts: Sequence[int],
    out: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Forward recursion for a packed batch.

    Parameters
    ----------
    log_out : np.ndarray, shape [T_max * N, C]
        Interleaved log network output, row ``t * N + s``.
    expanded : np.ndarray, shape [N, S]
        Batched expanded labels with ``NO_LABEL`` fillers.
    frame_counts : sequence of int, length N
        True (unpadded) frame count of every sequence.
    out : np.ndarray or None
        Optional [T_max * N, S] scratch buffer.

    Returns
    -------
    alpha : np.ndarray, shape [T_max * N, S]
    """
    N, S = expanded.shape
    frame_counts = np.asarray(frame_counts, dtype=np.int64)
    T_max = log_out.shape[0] // N
    _check_frame_counts(frame_counts, T_max)

    alpha = _scratch(out, (log_out.shape[0], S))
    alpha.fill(LOG_ZERO)
    skip = skip_mask(expanded)

    emit = _batch_emissions(log_out[0:N], expanded)
    first = alpha[0:N]
    first[:, 0] = emit[:, 0]
    if S > 1:
        first[:, 1] = emit[:, 1]

    for t in range(1, T_max):
        active = (t < frame_counts)[:, None]
        if not active.any():
            break
        emit = _batch_emissions(log_out[t * N : (t + 1) * N], expanded)
        prev = alpha[(t - 1) * N : t * N]
        cur = np.maximum(_alpha_step(prev, skip) + emit, LOG_ZERO)
        alpha[t * N : (t + 1) * N] = np.where(active, cur, LOG_ZERO)
    return alpha


def ctc_beta_batch(
    log_out: np.ndarray,
    expanded: np.ndarray,
    frame_counts: Sequence[int],
    lattice_lengths: Sequence[int],
    out: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Backward recursion for a packed batch.

    Each sequence starts its recursion at its own last valid frame, not
    at the padded batch maximum.

    Returns
    -------
    beta : np.ndarray, shape [T_max * N, S]
    """
    N, S = expanded.shape
    frame_counts = np.asarray(frame_counts, dtype=np.int64)
    lattice_lengths = np.asarray(lattice_lengths, dtype=np.int64)
    T_max = log_out.shape[0] // N
    _check_frame_counts(frame_counts, T_max)

    beta = _scratch(out, (log_out.shape[0], S))
    beta.fill(LOG_ZERO)
    skip = skip_mask(expanded)
    last = frame_counts - 1

    for t in range(T_max - 1, -1, -1):
        if t + 1 < T_max:
            emit = _batch_emissions(log_out[(t + 1) * N : (t + 2) * N], expanded)
            nxt = beta[(t + 1) * N : (t + 2) * N] + emit
            cur = np.maximum(_beta_step(nxt, skip), LOG_ZERO)
        else:
            cur = np.full((N, S), LOG_ZERO, dtype=np.float64)

        cur[t > last] = LOG_ZERO
        seeded = np.nonzero(last == t)[0]
        if seeded.size:
            cur[seeded] = LOG_ZERO
            cur[seeded, lattice_lengths[seeded] - 1] = 0.0
            two = seeded[lattice_lengths[seeded] >= 2]
            cur[two, lattice_lengths[two] - 2] = 0.0
        beta[t * N : (t + 1) * N] = cur
    return beta


def batch_log_likelihood(
    alpha: np.ndarray,
    frame_counts: Sequence[int],
    lattice_lengths: Sequence[int],
) -> np.ndarray:
    """Per-sequence log P(z|x) from a batched alpha table, shape [N]."""
    N = len(frame_counts)
    pzx = np.zeros(N, dtype=np.float64)
    for s in range(N):
        row = (int(frame_counts[s]) - 1) * N + s
        pzx[s] = sequence_log_likelihood(alpha[row], int(lattice_lengths[s]))
    return pzx
