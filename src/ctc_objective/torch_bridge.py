"""
Torch Bridge
=============
Plugs the numpy CTC objective into a PyTorch graph.  The forward pass
applies a softmax to the logits and runs :meth:`Ctc.eval_parallel`; the
backward pass hands the (policy-filtered, clipped) CTC gradient back to
the logits.

Accepted logit layouts:
  * ``[T_max * N, C]`` interleaved, row ``t * N + s``
  * ``[T_max, N, C]`` time-major, as used by ``torch.nn.CTCLoss``

Usage
-----
    from ctc_objective.torch_bridge import ctc_loss
    loss = ctc_loss(logits, frame_counts, labels, ctc)
    loss.backward()
"""

from __future__ import annotations

from typing import Optional, Sequence

import torch

from .ctc import Ctc


class CtcFunction(torch.autograd.Function):
    """Summed negative log-likelihood of the accepted sequences."""

    @staticmethod
    def forward(ctx, logits, ctc, utt_ids, frame_counts, labels):
        flat = logits.detach().reshape(-1, logits.shape[-1]).double()
        probs = torch.softmax(flat, dim=-1).cpu().numpy()
        result = ctc.eval_parallel(utt_ids, frame_counts, probs, labels)

        diff = torch.from_numpy(result.diff).to(device=logits.device, dtype=logits.dtype)
        ctx.save_for_backward(diff.reshape(logits.shape))
        return logits.new_tensor(result.loss)

    @staticmethod
    def backward(ctx, grad_output):
        (diff,) = ctx.saved_tensors
        return grad_output * diff, None, None, None, None


def ctc_loss(
    logits: torch.Tensor,
    frame_counts: Sequence[int],
    labels: Sequence[Sequence[int]],
    ctc: Optional[Ctc] = None,
    utt_ids: Optional[Sequence[str]] = None,
) -> torch.Tensor:
    """
    CTC loss of a padded batch of logits, differentiable w.r.t. *logits*.

    Parameters
    ----------
    logits : torch.Tensor, shape [T_max * N, C] or [T_max, N, C]
        Pre-softmax network activations.
    frame_counts : sequence of int
        Unpadded frame count of every sequence.
    labels : sequence of label sequences
    ctc : Ctc or None
        Objective (and its statistics) to evaluate with.
    utt_ids : sequence of str or None
        Identifiers for diagnostics; defaults to the batch positions.

    Returns
    -------
    torch.Tensor
        Scalar loss.
    """
    if ctc is None:
        ctc = Ctc()
    if isinstance(frame_counts, torch.Tensor):
        frame_counts = frame_counts.tolist()
    frame_counts = [int(f) for f in frame_counts]
    if utt_ids is None:
        utt_ids = [str(i) for i in range(len(frame_counts))]
    return CtcFunction.apply(logits, ctc, list(utt_ids), frame_counts, labels)
