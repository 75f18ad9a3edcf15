"""
Running CTC objective statistics.

One ``CtcStats`` lives for a whole training run.  The cumulative
registers are never reset; the ``*_progress`` registers cover the
current reporting window and are zeroed by :meth:`CtcStats.reset_progress`
once a progress report has been emitted.

The object is not thread-safe.  Workers sharing one instance must hold
``stats.lock`` around a whole evaluation call.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Sequence

from .constants import FRAMES_PER_HOUR


def _ratio(num: float, den: float) -> float:
    return num / den if den else float("nan")


def _accuracy(errors: float, refs: float) -> float:
    return 100.0 * (1.0 - errors / refs) if refs else float("nan")


@dataclass
class CtcStats:
    """Cumulative and windowed objective, frame, sequence and token counters."""

    obj: float = 0.0
    obj_progress: float = 0.0
    frames: int = 0
    frames_progress: int = 0
    sequences: int = 0
    sequences_progress: int = 0
    error_num: int = 0
    ref_num: int = 0
    error_num_progress: int = 0
    ref_num_progress: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add_objective(self, loss: float) -> None:
        self.obj += loss
        self.obj_progress += loss

    def add_frames(self, num_frames: int) -> None:
        self.frames += num_frames
        self.frames_progress += num_frames

    def add_sequences(self, num_sequences: int) -> None:
        self.sequences += num_sequences
        self.sequences_progress += num_sequences

    def add_errors(self, errors: int, ref_len: int) -> None:
        self.error_num += errors
        self.ref_num += ref_len
        self.error_num_progress += errors
        self.ref_num_progress += ref_len

    def count_batch(self, frame_counts: Sequence[int]) -> None:
        """Count every sequence of a batch and its frames, accepted or not."""
        self.add_frames(int(sum(int(f) for f in frame_counts)))
        self.add_sequences(len(frame_counts))

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def progress_due(self, report_interval: int) -> bool:
        return self.sequences_progress >= report_interval

    def progress_metrics(self) -> Dict[str, float]:
        return {
            "ctc/sequences": self.sequences,
            "ctc/hours": self.frames / FRAMES_PER_HOUR,
            "ctc/obj_per_sequence": _ratio(self.obj_progress, self.sequences_progress),
            "ctc/obj_per_frame": _ratio(self.obj_progress, self.frames_progress),
            "ctc/token_accuracy": _accuracy(self.error_num_progress, self.ref_num_progress),
        }

    def progress_summary(self) -> str:
        m = self.progress_metrics()
        return (
            f"Progress {self.sequences} sequences ({m['ctc/hours']:.4f}Hr):"
            f" Obj(log[Pzx]) = {m['ctc/obj_per_sequence']:.6g}"
            f" Obj(frame) = {m['ctc/obj_per_frame']:.6g}"
            f" TokenAcc = {m['ctc/token_accuracy']:.4g} %"
        )

    def reset_progress(self) -> None:
        self.obj_progress = 0.0
        self.frames_progress = 0
        self.sequences_progress = 0
        self.error_num_progress = 0
        self.ref_num_progress = 0

    def report(self) -> str:
        """Cumulative summary over the whole run."""
        return (
            f" Obj(log[Pzx]) = {_ratio(self.obj, self.sequences):.6g}"
            f" Obj(frame) = {_ratio(self.obj, self.frames):.6g}"
            f" TOKEN_ACCURACY >> {_accuracy(self.error_num, self.ref_num):.4g} % <<"
        )
