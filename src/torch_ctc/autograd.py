r"""Autograd wrapper routing the CTC gradient back into the model."""

from collections.abc import Sequence
from typing import Optional, Union

import torch
from torch import Tensor

from .labels import LabelLike
from .loss import Ctc
from .stats import CtcStats

__all__ = ["CtcFunction", "ctc_objective"]


class CtcFunction(torch.autograd.Function):
    r"""CTC objective on pre-softmax activations.

    Forward applies a softmax over the class axis of the time-major
    :math:`(T_{max} N, C)` activations, runs :meth:`Ctc.eval_parallel` and returns
    the summed objective of the utterances the outlier policy accepted. Backward
    returns the assembled (policy-filtered, clipped) gradient scaled by
    ``grad_output``.
    """

    @staticmethod
    def forward(
        ctx,
        logits: Tensor,
        labels: Sequence[LabelLike],
        frame_counts: Union[Tensor, Sequence[int]],
        ctc: Ctc,
        utt_ids: Optional[Sequence[str]] = None,
        stats: Optional[CtcStats] = None,
    ) -> Tensor:
        if utt_ids is None:
            utt_ids = [str(n) for n in range(len(frame_counts))]
        posteriors = torch.softmax(logits.detach(), dim=-1)
        diff = ctc.eval_parallel(utt_ids, frame_counts, posteriors, labels, stats=stats)

        losses = ctc.last_losses
        accepted = torch.tensor(ctc.last_accepted, device=losses.device)
        objective = torch.where(accepted, losses, torch.zeros_like(losses)).sum()

        ctx.save_for_backward(diff)
        return objective.to(logits.dtype)

    @staticmethod
    def backward(ctx, grad_output: Tensor):
        (diff,) = ctx.saved_tensors
        return diff * grad_output, None, None, None, None, None


def ctc_objective(
    logits: Tensor,
    labels: Sequence[LabelLike],
    frame_counts: Union[Tensor, Sequence[int]],
    ctc: Optional[Ctc] = None,
    utt_ids: Optional[Sequence[str]] = None,
    stats: Optional[CtcStats] = None,
) -> Tensor:
    r"""ctc_objective(logits, labels, frame_counts, ctc=None, utt_ids=None, stats=None) -> Tensor

    Summed CTC objective of a padded batch, differentiable w.r.t. ``logits``.

    Args:
        logits (Tensor): :math:`(T_{max} N, C)` time-major pre-softmax activations
        labels: one reference label sequence per sequence
        frame_counts: real frame count per sequence
        ctc (Ctc, optional): objective carrying the policy and statistics;
          a default :class:`Ctc` is created when omitted
        utt_ids (Sequence[str], optional): identifiers used in warnings
        stats (CtcStats, optional): statistics to update instead of ``ctc.stats``

    Examples::

        >>> ctc = Ctc(outlier_policy="sum_loss_check")
        >>> logits = model(features).transpose(0, 1).reshape(-1, num_classes)
        >>> loss = ctc_objective(logits, labels, frame_counts, ctc)
        >>> loss.backward()
    """
    if ctc is None:
        ctc = Ctc()
    return CtcFunction.apply(logits, labels, frame_counts, ctc, utt_ids, stats)
