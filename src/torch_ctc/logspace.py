r"""Saturating log-domain arithmetic.

All functions are pure and element-wise. The log of zero is represented by the
finite sentinel :data:`~torch_ctc.constants.LOG_ZERO` rather than ``-inf`` so
that sums and differences of "impossible" scores stay well defined; results
never go below the sentinel.

Functions:
    safe_log: Natural log with ``LOG_ZERO`` for non-positive inputs.
    safe_exp: Exponential that maps ``LOG_ZERO`` back to exactly zero.
    log_add: Binary log-sum-exp, :math:`\log(e^a + e^b)`.

Examples::

    >>> p = torch.tensor([0.0, 0.5, 1.0])
    >>> safe_log(p)
    tensor([-1.0000e+30, -6.9315e-01,  0.0000e+00])
    >>> log_add(safe_log(torch.tensor(0.25)), safe_log(torch.tensor(0.25)))
    tensor(-0.6931)
"""

from typing import Union

import torch
from torch import Tensor

from .constants import EXP_LIMIT, LOG_ZERO

__all__ = ["safe_log", "safe_exp", "log_add", "saturate"]

Number = Union[Tensor, float]


def _as_tensor(x: Number) -> Tensor:
    if isinstance(x, Tensor):
        return x
    return torch.tensor(x, dtype=torch.get_default_dtype())


def saturate(x: Tensor) -> Tensor:
    """Clamp log-domain values from below at ``LOG_ZERO``. NaN passes through."""
    return torch.clamp(x, min=LOG_ZERO)


def safe_log(x: Number) -> Tensor:
    r"""safe_log(x) -> Tensor

    Element-wise :math:`\log x`, returning ``LOG_ZERO`` where ``x`` is zero,
    negative or below the smallest normal number of its dtype.
    """
    x = _as_tensor(x)
    tiny = torch.finfo(x.dtype).tiny
    log_zero = torch.full_like(x, LOG_ZERO)
    return torch.where(x <= tiny, log_zero, torch.log(torch.clamp(x, min=tiny)))


def safe_exp(x: Number) -> Tensor:
    r"""safe_exp(x) -> Tensor

    Element-wise :math:`e^x` with inputs at or below ``LOG_ZERO`` mapped to 0
    and inputs above ``EXP_LIMIT`` saturated instead of overflowing.
    """
    x = _as_tensor(x)
    out = torch.exp(torch.clamp(x, max=EXP_LIMIT))
    return torch.where(x <= LOG_ZERO, torch.zeros_like(out), out)


def log_add(a: Number, b: Number) -> Tensor:
    r"""log_add(a, b) -> Tensor

    Computes :math:`\log(e^a + e^b)` element-wise with broadcasting.

    If either operand is at the ``LOG_ZERO`` sentinel the other one is
    returned unchanged, so adding an impossible path never perturbs a
    possible one. NaN in either operand propagates.
    """
    a = _as_tensor(a)
    b = _as_tensor(b)
    hi = torch.maximum(a, b)
    lo = torch.minimum(a, b)
    out = hi + torch.log1p(torch.exp(lo - hi))
    out = torch.where(lo <= LOG_ZERO, hi, out)
    return saturate(out)
