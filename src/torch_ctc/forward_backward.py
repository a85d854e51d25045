r"""CTC forward-backward recursions in log space.

All sequences of a padded batch are advanced together at each time step: the
recurrence is sequential in :math:`t` but independent across sequences and
vectorized across expanded-label states. The single-sequence form is the batch
form with :math:`N = 1`.

Tables have shape :math:`(T_{max}, N, S)` with :math:`S = 2 \max(L_i) + 1`.

- ``alpha[t, n, s]``: log mass of all prefixes ending in state ``s`` at frame
  ``t``, including the emission at ``t``.
- ``beta[t, n, s]``: log mass of all suffixes leaving state ``s`` at frame ``t``
  and ending in a final state, excluding the emission at ``t``.

So ``alpha + beta - log P`` is the log occupancy of state ``s`` at frame ``t``.

Recurrences (``ext`` is the expanded label sequence)::

    alpha[t, s] = log_add(alpha[t-1, s], alpha[t-1, s-1], alpha[t-1, s-2]) + lp[t, ext[s]]
    beta[t, s]  = log_add(beta[t+1, s]   + lp[t+1, ext[s]],
                          beta[t+1, s+1] + lp[t+1, ext[s+1]],
                          beta[t+1, s+2] + lp[t+1, ext[s+2]])

The two-state skip is only allowed into a label position whose label differs
from the label two states back (no merging through a repeated label without
an intervening blank).

Frames at or beyond ``frame_counts[n]`` and states at or beyond
``exp_lengths[n]`` hold ``LOG_ZERO`` and never feed a valid state.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import torch
from torch import Tensor

from .constants import LOG_ZERO, PAD_LABEL
from .logspace import log_add, saturate

__all__ = [
    "ForwardBackwardEngine",
    "ForwardBackwardResult",
    "ctc_alpha",
    "ctc_beta",
    "emission_scores",
    "skip_mask",
    "log_likelihood_from_alpha",
    "log_likelihood_from_beta",
    "reuse_buffer",
]

logger = logging.getLogger(__name__)


@dataclass
class ForwardBackwardResult:
    """Tables and per-sequence log-likelihood of one evaluation.

    ``alpha`` and ``beta`` may be views into buffers owned by a
    :class:`ForwardBackwardEngine`; they are only valid until the engine's
    next call.
    """

    alpha: Tensor
    beta: Tensor
    log_likelihood: Tensor
    emissions: Tensor


def emission_scores(log_probs: Tensor, expanded: Tensor) -> Tensor:
    r"""Gather ``lp[t, n, ext[n, s]]`` into a :math:`(T, N, S)` tensor.

    Padded states (``PAD_LABEL``) get ``LOG_ZERO``.
    """
    T, N, _ = log_probs.shape
    S = expanded.shape[1]
    index = expanded.clamp(min=0).unsqueeze(0).expand(T, N, S)
    emit = log_probs.gather(2, index)
    valid = (expanded != PAD_LABEL).unsqueeze(0)
    return torch.where(valid, emit, torch.full_like(emit, LOG_ZERO))


def skip_mask(expanded: Tensor) -> Tensor:
    r"""``(N, S)`` bool mask, True where state ``s`` may be entered from ``s - 2``.

    Holds only for label (odd) positions whose label differs from ``ext[s - 2]``.
    """
    mask = torch.zeros_like(expanded, dtype=torch.bool)
    if expanded.shape[1] > 2:
        mask[:, 2:] = expanded[:, 2:] != expanded[:, :-2]
    mask[:, 0::2] = False
    return mask & (expanded != PAD_LABEL)


def _shift_right(x: Tensor, k: int) -> Tensor:
    """``out[..., s] = x[..., s - k]``, ``LOG_ZERO`` for ``s < k``."""
    out = torch.full_like(x, LOG_ZERO)
    if k < x.shape[-1]:
        out[..., k:] = x[..., :-k]
    return out


def _shift_left(x: Tensor, k: int) -> Tensor:
    """``out[..., s] = x[..., s + k]``, ``LOG_ZERO`` past the end."""
    out = torch.full_like(x, LOG_ZERO)
    if k < x.shape[-1]:
        out[..., :-k] = x[..., k:]
    return out


def ctc_alpha(
    emissions: Tensor,
    expanded: Tensor,
    frame_counts: Tensor,
    out: Optional[Tensor] = None,
) -> Tensor:
    r"""ctc_alpha(emissions, expanded, frame_counts, out=None) -> Tensor

    Forward table for a padded batch.

    Args:
        emissions (Tensor): :math:`(T_{max}, N, S)` output of :func:`emission_scores`
        expanded (Tensor): :math:`(N, S)` expanded labels
        frame_counts (Tensor): :math:`(N,)` real frame counts
        out (Tensor, optional): buffer of the same shape, fully overwritten

    Returns:
        Tensor: alpha table of shape :math:`(T_{max}, N, S)`.
    """
    T, N, S = emissions.shape
    if out is None:
        out = torch.empty_like(emissions)
    out.fill_(LOG_ZERO)

    skip = skip_mask(expanded)
    log_zero = torch.full((N, S), LOG_ZERO, dtype=emissions.dtype, device=emissions.device)

    # Paths start in the leading blank or the first label
    out[0, :, :2] = emissions[0, :, :2]

    for t in range(1, T):
        prev = out[t - 1]
        acc = log_add(prev, _shift_right(prev, 1))
        acc = log_add(acc, torch.where(skip, _shift_right(prev, 2), log_zero))
        new = saturate(acc + emissions[t])
        active = (t < frame_counts).unsqueeze(1)
        out[t] = torch.where(active, new, log_zero)

    return out


def ctc_beta(
    emissions: Tensor,
    expanded: Tensor,
    exp_lengths: Tensor,
    frame_counts: Tensor,
    out: Optional[Tensor] = None,
) -> Tensor:
    r"""ctc_beta(emissions, expanded, exp_lengths, frame_counts, out=None) -> Tensor

    Backward table for a padded batch, run from :math:`T_{max} - 1` down to 0.

    Each sequence is initialized at its own last frame ``frame_counts[n] - 1``
    with log-one in its two final states (trailing blank, trailing label).

    Args:
        emissions (Tensor): :math:`(T_{max}, N, S)` output of :func:`emission_scores`
        expanded (Tensor): :math:`(N, S)` expanded labels
        exp_lengths (Tensor): :math:`(N,)` expanded length per sequence
        frame_counts (Tensor): :math:`(N,)` real frame counts
        out (Tensor, optional): buffer of the same shape, fully overwritten

    Returns:
        Tensor: beta table of shape :math:`(T_{max}, N, S)`.
    """
    T, N, S = emissions.shape
    if out is None:
        out = torch.empty_like(emissions)
    out.fill_(LOG_ZERO)

    # Skip from s to s + 2 is allowed when s + 2 may be entered from s
    skip_into = skip_mask(expanded)
    skip = torch.zeros_like(skip_into)
    if S > 2:
        skip[:, :-2] = skip_into[:, 2:]
    log_zero = torch.full((N, S), LOG_ZERO, dtype=emissions.dtype, device=emissions.device)

    states = torch.arange(S, device=emissions.device).unsqueeze(0)
    final_states = (states == (exp_lengths - 1).unsqueeze(1)) | (
        states == (exp_lengths - 2).unsqueeze(1)
    )
    init = torch.where(final_states, torch.zeros_like(log_zero), log_zero)
    last = (frame_counts - 1).unsqueeze(1)

    for t in range(T - 1, -1, -1):
        if t + 1 < T:
            nxt = saturate(out[t + 1] + emissions[t + 1])
            rec = log_add(nxt, _shift_left(nxt, 1))
            rec = log_add(rec, torch.where(skip, _shift_left(nxt, 2), log_zero))
        else:
            rec = log_zero
        out[t] = torch.where(t == last, init, torch.where(t < last, rec, log_zero))

    return out


def log_likelihood_from_alpha(
    alpha: Tensor, exp_lengths: Tensor, frame_counts: Tensor
) -> Tensor:
    r"""Per-sequence :math:`\log P(y|x)` read from the alpha table boundary.

    ``log_add(alpha[T_n - 1, n, 2L_n], alpha[T_n - 1, n, 2L_n - 1])``; only the
    trailing blank exists when :math:`L_n = 0`.
    """
    N = alpha.shape[1]
    seq = torch.arange(N, device=alpha.device)
    final = alpha[frame_counts - 1, seq]
    last = final.gather(1, (exp_lengths - 1).unsqueeze(1)).squeeze(1)
    before_last = final.gather(1, (exp_lengths - 2).clamp(min=0).unsqueeze(1)).squeeze(1)
    before_last = torch.where(exp_lengths > 1, before_last, torch.full_like(before_last, LOG_ZERO))
    return log_add(last, before_last)


def log_likelihood_from_beta(beta: Tensor, emissions: Tensor) -> Tensor:
    r"""Per-sequence :math:`\log P(y|x)` read from the beta table at frame 0.

    ``log_add(beta[0, n, 0] + lp[0, blank], beta[0, n, 1] + lp[0, y_1])``
    """
    first = saturate(beta[0] + emissions[0])
    blank = first[:, 0]
    if first.shape[1] > 1:
        return log_add(blank, first[:, 1])
    return blank


def reuse_buffer(buf: Optional[Tensor], like: Tensor) -> Tensor:
    """Return ``buf`` resized to the shape of ``like``, or a new tensor if dtype or device differ.

    Contents are unspecified; callers overwrite every element.
    """
    if buf is None or buf.dtype != like.dtype or buf.device != like.device:
        return torch.empty_like(like)
    return buf.resize_(like.shape)


class ForwardBackwardEngine:
    """Owner of the alpha/beta scratch tables.

    Buffers are reused across calls by resizing when dtype and device match,
    and every element is overwritten before it is read, including padded
    frames and states. Results returned by :meth:`run` alias these buffers.
    """

    def __init__(self):
        self._alpha: Optional[Tensor] = None
        self._beta: Optional[Tensor] = None

    @torch.no_grad()
    def run(
        self,
        log_probs: Tensor,
        expanded: Tensor,
        exp_lengths: Tensor,
        frame_counts: Tensor,
    ) -> ForwardBackwardResult:
        r"""Run both recursions on a time-major :math:`(T_{max}, N, C)` log-posterior tensor."""
        emissions = emission_scores(log_probs, expanded)
        self._alpha = reuse_buffer(self._alpha, emissions)
        self._beta = reuse_buffer(self._beta, emissions)

        alpha = ctc_alpha(emissions, expanded, frame_counts, out=self._alpha)
        beta = ctc_beta(emissions, expanded, exp_lengths, frame_counts, out=self._beta)
        log_likelihood = log_likelihood_from_alpha(alpha, exp_lengths, frame_counts)

        if logger.isEnabledFor(logging.DEBUG):
            from_beta = log_likelihood_from_beta(beta, emissions)
            logger.debug(
                "log-likelihood alpha %s beta %s",
                log_likelihood.tolist(),
                from_beta.tolist(),
            )

        return ForwardBackwardResult(alpha, beta, log_likelihood, emissions)

    def run_single(self, log_probs: Tensor, expanded: Tensor) -> ForwardBackwardResult:
        r"""Run both recursions for one :math:`(T, C)` sequence; tables come back as :math:`(T, S)`."""
        T = log_probs.shape[0]
        device = log_probs.device
        result = self.run(
            log_probs.unsqueeze(1),
            expanded.unsqueeze(0),
            torch.tensor([expanded.numel()], device=device),
            torch.tensor([T], device=device),
        )
        return ForwardBackwardResult(
            result.alpha[:, 0],
            result.beta[:, 0],
            result.log_likelihood,
            result.emissions[:, 0],
        )
