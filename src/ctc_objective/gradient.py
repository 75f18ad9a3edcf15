"""
A3 – CTC Error Signal
======================
Turns alpha/beta tables into the per-frame, per-class training signal.

1. Posterior occupancy of every lattice state,
   ``gamma[t, s] = exp(alpha[t, s] + beta[t, s] - log P(z|x))``,
   summed over all states that carry the same class.
2. The error with respect to the linear-scale output,
   ``err[t, c] = -gamma[t, c] / out[t, c]`` (derivative of the negative
   log-likelihood).
3. Back-propagation through the softmax that produced ``out``:
   ``diff = err * out - out * rowsum(err * out)``, which for a valid
   frame reduces to ``out - gamma``.

Rows of padded frames carry no occupancy and therefore a zero gradient.
"""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

from .constants import GRAD_CLIP, NO_LABEL, PZX_CLIP


def _class_occupancy(log_occ: np.ndarray, expanded: np.ndarray, num_classes: int) -> np.ndarray:
    """Sum [T, S] occupancies into [T, C] by the class of each state."""
    valid = expanded != NO_LABEL
    onehot = np.zeros((len(expanded), num_classes), dtype=np.float64)
    onehot[np.nonzero(valid)[0], expanded[valid]] = 1.0
    with np.errstate(over="ignore", under="ignore"):
        occ = np.exp(log_occ)
    return occ @ onehot


def _occupancy_to_error(occ: np.ndarray, out_rows: np.ndarray) -> np.ndarray:
    err = np.zeros_like(occ)
    with np.errstate(invalid="ignore"):
        np.divide(-occ, out_rows, out=err, where=out_rows > 0)
    return err


def ctc_error(
    alpha: np.ndarray,
    beta: np.ndarray,
    net_out: np.ndarray,
    expanded: np.ndarray,
    pzx: float,
    out: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Error signal of one sequence w.r.t. the linear-scale network output.

    Parameters
    ----------
    alpha, beta : np.ndarray, shape [T, S]
    net_out : np.ndarray, shape [T, C]
        Row-normalized network output (not log).
    expanded : np.ndarray, shape [S]
    pzx : float
        log P(z|x) of the sequence.
    out : np.ndarray or None
        Optional [T, C] buffer to write into.

    Returns
    -------
    err : np.ndarray, shape [T, C]
    """
    net_out = np.asarray(net_out, dtype=np.float64)
    occ = _class_occupancy(alpha + beta - pzx, np.asarray(expanded), net_out.shape[1])
    err = _occupancy_to_error(occ, net_out)
    if out is None:
        return err
    out[...] = err
    return out


def ctc_error_batch(
    alpha: np.ndarray,
    beta: np.ndarray,
    net_out: np.ndarray,
    expanded: np.ndarray,
    frame_counts: Sequence[int],
    pzx: np.ndarray,
    out: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Error signal for a packed batch (row ``t * N + s``).

    Rows past a sequence's frame count are left at zero.
    """
    net_out = np.asarray(net_out, dtype=np.float64)
    N = expanded.shape[0]
    err = np.zeros(net_out.shape, dtype=np.float64) if out is None else out
    err.fill(0.0)
    for s in range(N):
        rows = slice(s, int(frame_counts[s]) * N, N)
        occ = _class_occupancy(
            alpha[rows] + beta[rows] - pzx[s], expanded[s], net_out.shape[1]
        )
        err[rows] = _occupancy_to_error(occ, net_out[rows])
    return err


def softmax_backprop(err: np.ndarray, net_out: np.ndarray) -> np.ndarray:
    """
    Back-propagate *err* through the softmax that produced *net_out*.

    ``diff = err * out - out * rowsum(err * out)``
    """
    net_out = np.asarray(net_out, dtype=np.float64)
    with np.errstate(invalid="ignore", over="ignore"):
        scaled = err * net_out
        row_sum = scaled.sum(axis=1, keepdims=True)
        return scaled - net_out * row_sum


def clip_gradient(diff: np.ndarray) -> np.ndarray:
    """Clip every element of *diff* to [-GRAD_CLIP, GRAD_CLIP] in place."""
    return np.clip(diff, -GRAD_CLIP, GRAD_CLIP, out=diff)


def clip_log_likelihood(pzx):
    """Clip log P(z|x) to [-PZX_CLIP, PZX_CLIP] before it enters statistics."""
    return np.clip(pzx, -PZX_CLIP, PZX_CLIP)
