"""
A4 – Loss Robustness Policies
==============================
Per-batch decisions on which sequence losses enter the running
objective and which gradients survive.

Policies
--------
* ``stat_only``: every loss is accumulated, nothing is suppressed.
* ``sum_loss_check``: a sequence whose negative log-likelihood falls
  outside ``[0, 3000]`` is dropped.
* ``average_loss_check``: sliding 6-sigma check on the per-frame loss.
  The first ``window // 2`` plausible sequences build a baseline.  After
  that a sequence is kept only if its per-frame loss lies within
  ``mean +/- 6 * sigma``, where sigma is the root mean square of the
  accepted per-frame losses.  When ``window`` samples
  have been accepted, the oldest half (the backup) is subtracted from
  the running sums so the statistics follow the recent past.

A dropped sequence has the rows of all its valid frames zeroed in the
gradient and contributes nothing to the objective sums; frames and
sequences are counted either way.  After the policy has run,
:func:`zero_nonfinite` wipes the whole gradient if any element is NaN
or infinite.

Usage
-----
    from ctc_objective.robustness import build_policy
    policy = build_policy("average_loss_check", window=1000)
    accepted = policy.check(utt_ids, frame_counts, losses, diff, stats)
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Dict, Sequence, Type

import numpy as np

from .constants import MAX_SEQUENCE_LOSS, MIN_SEQUENCE_LOSS, SIGMA_WIDTH
from .statistics import CtcStats

logger = logging.getLogger(__name__)


POLICY_REGISTRY: Dict[str, Type["LossPolicy"]] = {}


def register_policy(name: str) -> Callable[[Type["LossPolicy"]], Type["LossPolicy"]]:
    if name in POLICY_REGISTRY:
        raise KeyError(f"Policy registry already contains '{name}'")

    def decorator(cls: Type["LossPolicy"]) -> Type["LossPolicy"]:
        cls.name = name
        POLICY_REGISTRY[name] = cls
        return cls

    return decorator


def build_policy(name: str, window: int = 1000) -> "LossPolicy":
    """Instantiate a registered policy by name."""
    try:
        cls = POLICY_REGISTRY[name]
    except KeyError as exc:
        raise ValueError(
            f"Unknown robustness policy '{name}'. Available: {sorted(POLICY_REGISTRY)}"
        ) from exc
    return cls.from_window(window)


# ======================================================================
# Gradient suppression helpers
# ======================================================================


def zero_sequence_rows(diff: np.ndarray, seq: int, frame_count: int, num_sequence: int) -> None:
    """Zero the gradient rows ``t * num_sequence + seq`` for ``t < frame_count``."""
    diff[seq : frame_count * num_sequence : num_sequence] = 0.0


def zero_nonfinite(diff: np.ndarray) -> bool:
    """Zero the whole matrix if it holds any NaN/inf.  Returns True if it did."""
    if np.isfinite(diff).all():
        return False
    logger.warning("Non-finite value in the CTC gradient, zeroing the whole batch")
    diff.fill(0.0)
    return True


def is_plausible_loss(loss: float) -> bool:
    return math.isfinite(loss) and MIN_SEQUENCE_LOSS <= loss <= MAX_SEQUENCE_LOSS


# ======================================================================
# Policies
# ======================================================================


class LossPolicy:
    """Base class: decide per sequence, update ``stats``, suppress gradients."""

    name = ""

    @classmethod
    def from_window(cls, window: int) -> "LossPolicy":
        return cls()

    def check(
        self,
        utt_ids: Sequence[str],
        frame_counts: Sequence[int],
        losses: np.ndarray,
        diff: np.ndarray,
        stats: CtcStats,
    ) -> np.ndarray:
        """
        Apply the policy to one batch.

        Parameters
        ----------
        utt_ids : sequence of str
            Identifier of every sequence, used in warnings.
        frame_counts : sequence of int
            True frame count of every sequence.
        losses : np.ndarray, shape [N]
            Per-sequence negative log-likelihood.
        diff : np.ndarray, shape [T_max * N, C]
            Gradient, modified in place for rejected sequences.
        stats : CtcStats
            Registers to update.

        Returns
        -------
        np.ndarray of bool, shape [N]
            True for every sequence whose loss was accepted.
        """
        num_sequence = len(frame_counts)
        accepted = np.ones(num_sequence, dtype=bool)
        for s in range(num_sequence):
            loss = float(losses[s])
            frame_count = int(frame_counts[s])
            if self.accept(loss, frame_count):
                stats.add_objective(loss)
            else:
                accepted[s] = False
                self.log_rejection(utt_ids[s], loss, frame_count)
                zero_sequence_rows(diff, s, frame_count, num_sequence)
        stats.count_batch(frame_counts)
        return accepted

    def accept(self, loss: float, frame_count: int) -> bool:
        raise NotImplementedError

    def log_rejection(self, utt_id: str, loss: float, frame_count: int) -> None:
        logger.warning("Sequence %s obj is abnormal (%g), drop its diff and stat", utt_id, loss)


@register_policy("stat_only")
class StatOnly(LossPolicy):
    """Accumulate every loss, suppress nothing."""

    def accept(self, loss: float, frame_count: int) -> bool:
        return True


@register_policy("sum_loss_check")
class SumLossCheck(LossPolicy):
    """Drop sequences whose total loss is outside the plausible range."""

    def accept(self, loss: float, frame_count: int) -> bool:
        return is_plausible_loss(loss)


@register_policy("average_loss_check")
class AverageLossCheck(LossPolicy):
    """
    Sliding 6-sigma check on the per-frame loss.

    Parameters
    ----------
    window : int
        Number of accepted samples after which the oldest half of the
        statistics is dropped.  Must be even and at least 2.
    """

    def __init__(self, window: int = 1000):
        if window < 2 or window % 2:
            raise ValueError(f"average_loss_check window must be an even number >= 2, got {window}")
        self.window = window
        self.normal_num = 0
        self.loss_sum = 0.0
        self.loss_square_sum = 0.0
        # statistics of the oldest half, removed on the next halving
        self.backup_num = 0
        self.loss_sum_bak = 0.0
        self.loss_square_sum_bak = 0.0

    @classmethod
    def from_window(cls, window: int) -> "AverageLossCheck":
        return cls(window)

    @property
    def in_baseline(self) -> bool:
        return self.normal_num < self.window // 2

    def mean_sigma(self):
        if self.normal_num == 0:
            return float("nan"), float("nan")
        mean = self.loss_sum / self.normal_num
        # root mean square of the accepted per-frame losses
        sigma = math.sqrt(self.loss_square_sum / self.normal_num)
        return mean, sigma

    def accept(self, loss: float, frame_count: int) -> bool:
        if not is_plausible_loss(loss):
            return False
        per_frame = loss / frame_count

        if self.in_baseline:
            self._add(per_frame)
            self.backup_num += 1
            self.loss_sum_bak += per_frame
            self.loss_square_sum_bak += per_frame * per_frame
            return True

        mean, sigma = self.mean_sigma()
        if not (mean - SIGMA_WIDTH * sigma <= per_frame <= mean + SIGMA_WIDTH * sigma):
            return False
        self._add(per_frame)
        if self.normal_num == self.window:
            self._halve()
        return True

    def _add(self, per_frame: float) -> None:
        self.normal_num += 1
        self.loss_sum += per_frame
        self.loss_square_sum += per_frame * per_frame

    def _halve(self) -> None:
        self.loss_sum -= self.loss_sum_bak
        self.loss_square_sum -= self.loss_square_sum_bak
        self.normal_num -= self.backup_num
        self.backup_num = self.normal_num
        self.loss_sum_bak = self.loss_sum
        self.loss_square_sum_bak = self.loss_square_sum

    def log_rejection(self, utt_id: str, loss: float, frame_count: int) -> None:
        mean, sigma = self.mean_sigma()
        logger.warning(
            "Sequence %s obj is abnormal (sum %g per_frame %g mean %g sigma %g), "
            "drop its diff and stat",
            utt_id,
            loss,
            loss / frame_count,
            mean,
            sigma,
        )
