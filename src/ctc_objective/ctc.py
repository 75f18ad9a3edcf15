"""
CTC Objective
==============
Loss, gradient and running statistics of Connectionist Temporal
Classification for one sequence or for a packed batch.

Pipeline per call:

  net_out -> log -> alpha/beta -> log P(z|x) -> error -> softmax backprop
          -> robustness policy + statistics -> non-finite fail-safe -> clip

The returned gradient is with respect to the pre-softmax activations of
the network and always has the shape of ``net_out``.  Rows of rejected
sequences are zero; callers must not treat them as failures.

Batched layout: frame ``t`` of sequence ``s`` is row ``t * N + s`` of
``net_out``; every sequence is padded to ``num_frames / N`` frames and
``frame_counts`` holds the unpadded lengths.

Usage
-----
    from ctc_objective.ctc import Ctc
    from ctc_objective.config import CtcConfig
    ctc = Ctc(CtcConfig(policy="sum_loss_check", report_interval=500))
    result = ctc.eval_parallel(utt_ids, frame_counts, net_out, labels)
    ctc.error_rate_mseq(frame_counts, net_out, labels)
    print(ctc.report())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import CtcConfig
from .constants import labels_to_str
from .forward_backward import (
    batch_log_likelihood,
    ctc_alpha,
    ctc_alpha_batch,
    ctc_beta,
    ctc_beta_batch,
    safe_log,
    sequence_log_likelihood,
)
from .gradient import (
    clip_gradient,
    clip_log_likelihood,
    ctc_error,
    ctc_error_batch,
    softmax_backprop,
)
from .lattice import expand_labels, expand_labels_batch, lattice_min_frames
from .robustness import LossPolicy, build_policy, zero_nonfinite
from .scoring import best_path, best_path_batch, error_rate
from .statistics import CtcStats

logger = logging.getLogger(__name__)


@dataclass
class CtcResult:
    """Outcome of one evaluation call."""

    diff: np.ndarray  # [num_frames, C] gradient w.r.t. pre-softmax activations
    pzx: np.ndarray  # [N] log P(z|x) per sequence, unclipped
    accepted: np.ndarray  # [N] bool, loss entered the running objective

    @property
    def loss(self) -> float:
        """Summed clipped negative log-likelihood of the accepted sequences."""
        return float(-clip_log_likelihood(self.pzx)[self.accepted].sum())


class CtcWorkspace:
    """
    Reusable scratch tables (alpha, beta, error).

    Storage only grows; a smaller request returns a view of the existing
    allocation.  Not safe for two evaluation calls at the same time.
    """

    def __init__(self):
        self._storage: Dict[str, np.ndarray] = {}

    def get(self, name: str, shape: Tuple[int, ...]) -> np.ndarray:
        size = int(np.prod(shape))
        flat = self._storage.get(name)
        if flat is None or flat.size < size:
            flat = np.empty(size, dtype=np.float64)
            self._storage[name] = flat
        return flat[:size].reshape(shape)


def _as_matrix(net_out) -> np.ndarray:
    net_out = np.asarray(net_out)
    if net_out.ndim != 2:
        raise ValueError(f"network output must be a [frames, classes] matrix, got shape {net_out.shape}")
    if net_out.shape[0] == 0:
        raise ValueError("network output has no frames")
    return net_out


def _output_dtype(net_out: np.ndarray):
    return net_out.dtype if np.issubdtype(net_out.dtype, np.floating) else np.float64


class Ctc:
    """
    CTC objective with running statistics.

    Parameters
    ----------
    config : CtcConfig or None
        Reporting interval and robustness policy selection.
    stats : CtcStats or None
        Registers to accumulate into; a fresh one is created if omitted.
    policy : LossPolicy or None
        Overrides the policy named in *config*.
    workspace : CtcWorkspace or None
        Scratch tables reused across calls.
    """

    def __init__(
        self,
        config: Optional[CtcConfig] = None,
        stats: Optional[CtcStats] = None,
        policy: Optional[LossPolicy] = None,
        workspace: Optional[CtcWorkspace] = None,
    ):
        self.config = config if config is not None else CtcConfig()
        self.stats = stats if stats is not None else CtcStats()
        self.policy = (
            policy
            if policy is not None
            else build_policy(self.config.policy, self.config.check_window)
        )
        self.workspace = workspace if workspace is not None else CtcWorkspace()

    # ------------------------------------------------------------------
    # Loss and gradient
    # ------------------------------------------------------------------

    def eval(
        self,
        net_out: np.ndarray,
        label: Sequence[int],
        utt_id: str = "sequence",
    ) -> CtcResult:
        """
        Loss and gradient of a single sequence.

        Parameters
        ----------
        net_out : np.ndarray, shape [T, C]
            Row-normalized network output.
        label : sequence of int
            Reference labels in ``[1, C)``.
        """
        net_out = _as_matrix(net_out)
        T, C = net_out.shape
        expanded = expand_labels(label, C)
        S = len(expanded)
        log_out = safe_log(net_out)

        alpha = ctc_alpha(log_out, expanded, out=self.workspace.get("alpha", (T, S)))
        beta = ctc_beta(log_out, expanded, out=self.workspace.get("beta", (T, S)))
        pzx = np.array([sequence_log_likelihood(alpha[T - 1], S)])
        self._log_infeasible([utt_id], [T], [label])

        err = ctc_error(alpha, beta, net_out, expanded, pzx[0], out=self.workspace.get("err", (T, C)))
        diff = softmax_backprop(err, net_out)
        accepted = self._apply_policy([utt_id], [T], pzx, diff)
        return CtcResult(diff=diff.astype(_output_dtype(net_out), copy=False), pzx=pzx, accepted=accepted)

    def eval_parallel(
        self,
        utt_ids: Sequence[str],
        frame_counts: Sequence[int],
        net_out: np.ndarray,
        labels: Sequence[Sequence[int]],
    ) -> CtcResult:
        """
        Loss and gradient of a packed batch of sequences.

        Parameters
        ----------
        utt_ids : sequence of str
            Identifier of every sequence, for diagnostics.
        frame_counts : sequence of int
            Unpadded frame count of every sequence.
        net_out : np.ndarray, shape [T_max * N, C]
            Interleaved network output, row ``t * N + s``.
        labels : sequence of label sequences
        """
        net_out = _as_matrix(net_out)
        num_frames, C = net_out.shape
        num_sequence = len(frame_counts)
        if num_sequence == 0:
            raise ValueError("empty batch")
        if len(labels) != num_sequence or len(utt_ids) != num_sequence:
            raise ValueError(
                f"batch has {num_sequence} frame counts, {len(labels)} labels "
                f"and {len(utt_ids)} ids"
            )
        if num_frames % num_sequence != 0:
            raise ValueError(
                f"{num_frames} frames cannot be split evenly into {num_sequence} padded sequences"
            )
        frame_counts = np.asarray(frame_counts, dtype=np.int64)

        expanded, lattice_lengths = expand_labels_batch(labels, C)
        S = expanded.shape[1]
        log_out = safe_log(net_out)

        alpha = ctc_alpha_batch(
            log_out, expanded, frame_counts, out=self.workspace.get("alpha", (num_frames, S))
        )
        beta = ctc_beta_batch(
            log_out,
            expanded,
            frame_counts,
            lattice_lengths,
            out=self.workspace.get("beta", (num_frames, S)),
        )
        pzx = batch_log_likelihood(alpha, frame_counts, lattice_lengths)
        self._log_infeasible(utt_ids, frame_counts, labels)

        err = ctc_error_batch(
            alpha,
            beta,
            net_out,
            expanded,
            frame_counts,
            pzx,
            out=self.workspace.get("err", (num_frames, C)),
        )
        diff = softmax_backprop(err, net_out)
        accepted = self._apply_policy(utt_ids, frame_counts, pzx, diff)
        return CtcResult(diff=diff.astype(_output_dtype(net_out), copy=False), pzx=pzx, accepted=accepted)

    def _apply_policy(
        self,
        utt_ids: Sequence[str],
        frame_counts: Sequence[int],
        pzx: np.ndarray,
        diff: np.ndarray,
    ) -> np.ndarray:
        losses = -clip_log_likelihood(pzx)
        with self.stats.lock:
            accepted = self.policy.check(utt_ids, frame_counts, losses, diff, self.stats)
            if zero_nonfinite(diff):
                # the whole batch is dropped, take its losses back out
                self.stats.add_objective(-float(losses[accepted].sum()))
                accepted[:] = False
            clip_gradient(diff)
            self._maybe_report()
        return accepted

    def _log_infeasible(self, utt_ids, frame_counts, labels) -> None:
        if not logger.isEnabledFor(logging.DEBUG):
            return
        for utt_id, frame_count, label in zip(utt_ids, frame_counts, labels):
            needed = lattice_min_frames(label)
            if frame_count < needed:
                logger.debug(
                    "Sequence %s has %d frames, its %d labels need at least %d",
                    utt_id,
                    frame_count,
                    len(label),
                    needed,
                )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _maybe_report(self) -> None:
        if not self.stats.progress_due(self.config.report_interval):
            return
        logger.info(self.stats.progress_summary())
        if self.config.log_to_wandb:
            self._log_wandb(self.stats.progress_metrics())
        self.stats.reset_progress()

    @staticmethod
    def _log_wandb(metrics: Dict[str, float]) -> None:
        import wandb

        if wandb.run is not None:
            wandb.log(metrics)

    def report(self) -> str:
        """Cumulative objective and token accuracy over the whole run."""
        return self.stats.report()

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def error_rate(self, net_out: np.ndarray, label: Sequence[int]) -> Tuple[float, List[int]]:
        """
        Greedy-decode one sequence and score it against *label*.

        Returns
        -------
        err_rate : float
            Token error rate in percent.
        hyp : list of int
            Decoded hypothesis.
        """
        hyp = best_path(_as_matrix(net_out))
        rate, edits = error_rate(label, hyp)
        logger.debug("REF: %s | HYP: %s", labels_to_str(label), labels_to_str(hyp))
        with self.stats.lock:
            self.stats.add_errors(edits, len(label))
        return rate, hyp

    def error_rate_mseq(
        self,
        frame_counts: Sequence[int],
        net_out: np.ndarray,
        labels: Sequence[Sequence[int]],
    ) -> Tuple[int, int]:
        """
        Greedy-decode a packed batch and score every sequence.

        Returns
        -------
        errors : int
            Total edit count of the batch.
        ref_len : int
            Total reference length of the batch.
        """
        hyps = best_path_batch(_as_matrix(net_out), frame_counts)
        total_errors = 0
        total_ref = 0
        for label, hyp in zip(labels, hyps):
            _, edits = error_rate(label, hyp)
            total_errors += edits
            total_ref += len(label)
        with self.stats.lock:
            self.stats.add_errors(total_errors, total_ref)
        return total_errors, total_ref
