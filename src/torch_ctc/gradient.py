r"""Gradient of the CTC objective with respect to the model output.

For frame :math:`t` and class :math:`k` the state occupancy is

.. math::
    \gamma_t(k) = \sum_{s : \text{ext}[s] = k} \exp(\alpha_t(s) + \beta_t(s) - \log P)

The error term is :math:`e_t(k) = -\gamma_t(k)` and, with
:math:`m_t = \sum_k e_t(k)`, the gradient with respect to the pre-softmax
activations is

.. math::
    \text{diff}_t(k) = e_t(k) - p_t(k)\, m_t

which reduces to :math:`p_t(k) - \gamma_t(k)` when the occupancy of the frame
sums to one. The softmax Jacobian is already folded in.
"""

from typing import Optional

import torch
from torch import Tensor

from .constants import LOG_ZERO, PAD_LABEL
from .logspace import safe_exp

__all__ = ["class_occupancy", "assemble_gradient", "clip_gradient"]


def class_occupancy(
    alpha: Tensor,
    beta: Tensor,
    expanded: Tensor,
    log_likelihood: Tensor,
    num_classes: int,
    out: Optional[Tensor] = None,
) -> Tensor:
    r"""class_occupancy(alpha, beta, expanded, log_likelihood, num_classes, out=None) -> Tensor

    Accumulate state occupancies onto their output classes.

    Args:
        alpha (Tensor): :math:`(T, N, S)` forward table
        beta (Tensor): :math:`(T, N, S)` backward table
        expanded (Tensor): :math:`(N, S)` expanded labels
        log_likelihood (Tensor): :math:`(N,)` total log-likelihood per sequence
        num_classes (int): number of output classes :math:`C`
        out (Tensor, optional): :math:`(T, N, C)` buffer, fully overwritten

    Returns:
        Tensor: :math:`(T, N, C)` linear-scale occupancy per frame and class.
    """
    T, N, S = alpha.shape
    log_occ = alpha + beta - log_likelihood.view(1, N, 1)
    occ = safe_exp(log_occ)
    # Sequences with no valid alignment carry no occupancy
    valid = (expanded != PAD_LABEL) & (log_likelihood > LOG_ZERO).unsqueeze(1)
    occ = torch.where(valid.unsqueeze(0), occ, torch.zeros_like(occ))

    if out is None:
        out = torch.zeros(T, N, num_classes, dtype=alpha.dtype, device=alpha.device)
    else:
        out.zero_()
    index = expanded.clamp(min=0).unsqueeze(0).expand(T, N, S)
    return out.scatter_add_(2, index, occ)


@torch.no_grad()
def assemble_gradient(
    alpha: Tensor,
    beta: Tensor,
    posteriors: Tensor,
    expanded: Tensor,
    log_likelihood: Tensor,
    frame_mask: Tensor,
    error_out: Optional[Tensor] = None,
) -> Tensor:
    r"""assemble_gradient(alpha, beta, posteriors, expanded, log_likelihood, frame_mask, error_out=None) -> Tensor

    Combine alpha, beta and the model output into :math:`\partial(-\log P) / \partial a`.

    Args:
        alpha (Tensor): :math:`(T, N, S)` forward table
        beta (Tensor): :math:`(T, N, S)` backward table
        posteriors (Tensor): :math:`(T, N, C)` time-major model output
        expanded (Tensor): :math:`(N, S)` expanded labels
        log_likelihood (Tensor): :math:`(N,)` total log-likelihood per sequence
        frame_mask (Tensor): :math:`(T, N)` True on real (non-padded) frames
        error_out (Tensor, optional): :math:`(T, N, C)` scratch buffer for the error term

    Returns:
        Tensor: :math:`(T, N, C)` unclipped gradient; zero on padded frames.
    """
    num_classes = posteriors.shape[-1]
    error = class_occupancy(
        alpha, beta, expanded, log_likelihood, num_classes, out=error_out
    ).neg_()
    error.masked_fill_(~frame_mask.unsqueeze(-1), 0.0)

    row_mass = error.sum(dim=-1, keepdim=True)
    diff = error - posteriors * row_mass
    return diff.masked_fill_(~frame_mask.unsqueeze(-1), 0.0)


def clip_gradient(diff: Tensor, bound: float = 1.0) -> Tensor:
    """Clamp every component of ``diff`` to ``[-bound, bound]`` in place."""
    return diff.clamp_(min=-bound, max=bound)
